"""Command line entry point: template, provision and teardown."""

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click
import pydantic

from pve_provisioner.clients.proxmox import ProxmoxClient
from pve_provisioner.clients.ssh import SFTPImageCopier
from pve_provisioner.config import Settings, get_settings
from pve_provisioner.errors import EXIT_USER, ProvisionerError, ValidationError
from pve_provisioner.logging_config import configure_logging
from pve_provisioner.schemas import (
    ProvisionSpec,
    TemplateSpec,
    parse_skip_indexes,
    validate_host,
    validate_user,
)
from pve_provisioner.services.provisioning import ProvisioningWorkflow
from pve_provisioner.services.teardown import TeardownWorkflow
from pve_provisioner.services.template_build import TemplateBuildWorkflow
from pve_provisioner.workflow import WorkflowContext


logger = logging.getLogger("pve_provisioner")

S = TypeVar("S")


def _validation_error(exc: pydantic.ValidationError) -> ValidationError:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
        for err in exc.errors()
    )
    return ValidationError(problems)


def load_settings() -> Settings:
    try:
        return get_settings()
    except pydantic.ValidationError as exc:
        raise _validation_error(exc) from exc


def resolve_settings(overrides: dict[str, Any]) -> Settings:
    settings = load_settings()
    update = {key: value for key, value in overrides.items() if value is not None}
    settings = settings.model_copy(update=update)
    validate_host(settings.host)
    validate_user(settings.user)
    if settings.ca_cert and not Path(settings.ca_cert).is_file():
        raise ValidationError(f"Missing or unreadable file for --ca-cert: {settings.ca_cert}")
    return settings


def ensure_password(settings: Settings) -> Settings:
    if settings.uses_api_token or settings.password:
        return settings
    password = click.prompt(f"Password for {settings.user}", hide_input=True, err=True)
    return settings.model_copy(update={"password": password})


def open_context(settings: Settings) -> WorkflowContext:
    client = ProxmoxClient.from_settings(settings)
    return WorkflowContext.create(settings, client)


def _execute(
    ctx: click.Context,
    prepare: Callable[[Settings], S],
    runner: Callable[[WorkflowContext, S], Any],
) -> None:
    """Validate input, open a session, run one workflow, map errors to exit codes."""
    try:
        settings = resolve_settings(ctx.obj)
        spec = prepare(settings)
        workflow_ctx = open_context(ensure_password(settings))
        try:
            runner(workflow_ctx, spec)
        finally:
            workflow_ctx.client.close()
        return
    except pydantic.ValidationError as exc:
        error: ProvisionerError = _validation_error(exc)
    except ProvisionerError as exc:
        error = exc
    logger.error("%s", error)
    ctx.exit(error.exit_code)


@click.group()
@click.option("--host", help="Proxmox server IP or hostname.")
@click.option("--port", type=int, help="Proxmox API port (default 8006).")
@click.option("--user", help="Proxmox API username, e.g. root@pam.")
@click.option("--password", help="Proxmox API password (prompted when omitted).")
@click.option("--token-id", help="API token id, e.g. root@pam!automation.")
@click.option("--token-secret", help="API token secret.")
@click.option("--node", help="Proxmox node name.")
@click.option("--ca-cert", help="CA bundle used for TLS validation.")
@click.option("--insecure", is_flag=True, help="Disable TLS validation. Not recommended.")
@click.option("--debug", is_flag=True, help="Log API requests and responses (secrets redacted).")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx: click.Context, **options: Any) -> None:
    """Build templates, provision and tear down Proxmox VMs."""
    # unset flags fall back to the environment instead of forcing False
    for flag in ("insecure", "debug"):
        if not options[flag]:
            options[flag] = None
    ctx.obj = options
    try:
        settings = load_settings()
    except ValidationError as exc:
        configure_logging(bool(options["debug"]))
        logger.error("invalid environment settings: %s", exc)
        ctx.exit(exc.exit_code)
    configure_logging(bool(options["debug"] or settings.debug))


def _template_options(func: Callable) -> Callable:
    options = [
        click.option("--template-id", type=int, required=True, help="VM id for the template."),
        click.option("--name", "template_name", required=True, help="Template VM name."),
        click.option("--cores", type=int, required=True, help="Number of CPU cores."),
        click.option("--memory", type=int, required=True, help="Memory size in MB."),
        click.option("--image", required=True, help="QCOW2 image file name or local path."),
        click.option("--storage", help="Storage for the imported disk."),
        click.option("--image-dir", help="Image directory on the hypervisor host."),
        click.option("--copy-image", is_flag=True, help="Copy the image to the host first."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _copier(settings: Settings) -> SFTPImageCopier:
    return SFTPImageCopier(
        settings.host or "",
        settings.ssh_user,
        port=settings.ssh_port,
        key_path=settings.ssh_key_path,
    )


def _run_template(ctx: click.Context, build_spec: Callable[[Settings], TemplateSpec]) -> None:
    def prepare(settings: Settings) -> TemplateSpec:
        spec = build_spec(settings)
        if spec.copy_image and not Path(spec.image_path).is_file():
            raise ValidationError(
                f"--image must point to a valid QCOW2 file when copying: {spec.image_path}"
            )
        return spec

    def runner(workflow_ctx: WorkflowContext, spec: TemplateSpec) -> None:
        copier = _copier(workflow_ctx.settings) if spec.copy_image else None
        TemplateBuildWorkflow(workflow_ctx, copier).run(spec)

    _execute(ctx, prepare, runner)


@cli.group()
def template() -> None:
    """Import a disk image and convert it into a template VM."""


@template.command("gateway")
@_template_options
@click.option("--nics", type=int, default=4, show_default=True, help="Number of network interfaces.")
@click.option("--skip-bridge-indexes", help="Comma-separated bridge indexes to skip, e.g. '1,3'.")
@click.option("--bridge-base", help="Bridge name prefix (default vmbr).")
@click.pass_context
def template_gateway(ctx: click.Context, **opts: Any) -> None:
    """Multi-interface gateway appliance template."""

    def build_spec(settings: Settings) -> TemplateSpec:
        return TemplateSpec.gateway(
            template_id=opts["template_id"],
            name=opts["template_name"],
            cores=opts["cores"],
            memory=opts["memory"],
            nics=opts["nics"],
            skip_bridge_indexes=parse_skip_indexes(opts["skip_bridge_indexes"]),
            bridge_base=opts["bridge_base"] or settings.bridge_base,
            image_path=opts["image"],
            image_dir=opts["image_dir"] or settings.image_dir,
            storage=opts["storage"] or settings.disk_storage,
            copy_image=opts["copy_image"],
        )

    _run_template(ctx, build_spec)


@template.command("management")
@_template_options
@click.option("--bridge", help="Bridge for the single interface (default vmbr0).")
@click.pass_context
def template_management(ctx: click.Context, **opts: Any) -> None:
    """Single-interface management appliance template."""

    def build_spec(settings: Settings) -> TemplateSpec:
        return TemplateSpec.management(
            bridge=opts["bridge"] or settings.mngt_bridge,
            template_id=opts["template_id"],
            name=opts["template_name"],
            cores=opts["cores"],
            memory=opts["memory"],
            image_path=opts["image"],
            image_dir=opts["image_dir"] or settings.image_dir,
            storage=opts["storage"] or settings.disk_storage,
            copy_image=opts["copy_image"],
        )

    _run_template(ctx, build_spec)


@cli.command()
@click.option("--template", "template_id", type=int, required=True, help="Template VM id.")
@click.option("--name", required=True, help="Name of the new VM.")
@click.option("--resize", default="+80G", show_default=True, help="Disk growth, +<number>[G|M].")
@click.option("--start-id", type=int, default=501, show_default=True, help="Start searching for a VM id here.")
@click.option("--user-data", required=True, help="First-boot user data file.")
@click.option("--storage", help="Storage for the config drive ISO.")
@click.pass_context
def provision(ctx: click.Context, **opts: Any) -> None:
    """Clone a VM from a template and attach a config drive."""

    def prepare(settings: Settings) -> ProvisionSpec:
        return ProvisionSpec(
            template_id=opts["template_id"],
            name=opts["name"],
            resize=opts["resize"],
            start_id=opts["start_id"],
            user_data_path=Path(opts["user_data"]),
            iso_storage=opts["storage"] or settings.iso_storage,
        )

    def runner(workflow_ctx: WorkflowContext, spec: ProvisionSpec) -> None:
        vm = ProvisioningWorkflow(workflow_ctx).run(spec)
        click.echo(vm.vmid)

    _execute(ctx, prepare, runner)


@cli.command()
@click.option("--vmid", type=int, required=True, help="Id of the VM to delete.")
@click.option("--storage", help="Storage holding the config drive ISO.")
@click.pass_context
def teardown(ctx: click.Context, vmid: int, storage: str | None) -> None:
    """Stop and delete a VM together with its config drive."""

    def prepare(settings: Settings) -> str:
        if vmid < 1:
            raise ValidationError(f"--vmid must be a positive integer (got: '{vmid}')")
        return storage or settings.iso_storage

    def runner(workflow_ctx: WorkflowContext, iso_storage: str) -> None:
        TeardownWorkflow(workflow_ctx).run(vmid, iso_storage)

    _execute(ctx, prepare, runner)


def main(argv: list[str] | None = None) -> None:
    try:
        code = cli.main(args=argv, prog_name="pve-provisioner", standalone_mode=False)
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(EXIT_USER)
    except click.ClickException as exc:
        exc.show()
        sys.exit(EXIT_USER)
    sys.exit(code if isinstance(code, int) else 0)


if __name__ == "__main__":
    main()
