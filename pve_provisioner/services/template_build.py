import logging
from collections.abc import Iterable
from typing import Protocol

from pve_provisioner.errors import ValidationError
from pve_provisioner.models import NetworkInterface
from pve_provisioner.schemas import TemplateSpec
from pve_provisioner.workflow import WorkflowContext, WorkflowRun


logger = logging.getLogger(__name__)

BOOT_DISK = "scsi0"
SCSI_CONTROLLER = "virtio-scsi-pci"
BOOT_CONFIG = {
    "boot": f"order={BOOT_DISK}",
    "serial0": "socket",
    "vga": "serial0",
    "agent": "enabled=1,type=isa",
}


class ImageCopier(Protocol):
    def copy(self, local_path: str, remote_path: str) -> None: ...


def build_interfaces(
    nics: int, bridge_base: str, skip: Iterable[int] = ()
) -> list[NetworkInterface]:
    """One interface per bridge index, slots renumbered without gaps."""
    skipped = set(skip)
    interfaces: list[NetworkInterface] = []
    for index in range(nics):
        if index in skipped:
            logger.debug("skipping bridge index %d", index)
            continue
        interfaces.append(
            NetworkInterface(
                slot=len(interfaces),
                bridge=f"{bridge_base}{index}",
                source_index=index,
            )
        )
    return interfaces


def interfaces_for(spec: TemplateSpec) -> list[NetworkInterface]:
    if spec.bridge:
        return [NetworkInterface(slot=0, bridge=spec.bridge)]
    return build_interfaces(spec.nics, spec.bridge_base, spec.skip_bridge_indexes)


class TemplateBuildWorkflow:
    name = "template-build"

    def __init__(self, ctx: WorkflowContext, copier: ImageCopier | None = None):
        self.ctx = ctx
        self.copier = copier

    def run(self, spec: TemplateSpec) -> int:
        run = WorkflowRun(self.name, 6 if spec.copy_image else 5)

        if spec.copy_image:
            with run.step("Transferring disk image to the hypervisor host"):
                self.copy_image(spec)
        else:
            logger.info("skipping image transfer, expecting %s on the host", spec.server_image_path)

        with run.step(f"Creating VM {spec.template_id}"):
            self.create_vm(spec)
        with run.step("Importing disk image"):
            self.import_image(spec)
        with run.step(f"Waiting for {BOOT_DISK} to appear in the VM config"):
            self.ctx.poller.wait_for_config_key(
                spec.template_id,
                BOOT_DISK,
                timeout=self.ctx.settings.disk_timeout_sec,
                interval=self.ctx.settings.disk_interval_sec,
            )
        with run.step("Configuring VM for boot"):
            data = self.ctx.client.update_config(
                self.ctx.node, spec.template_id, dict(BOOT_CONFIG), action="configure the VM"
            )
            self.ctx.await_if_task(data, "configure the VM")
        with run.step("Converting VM to a template"):
            data = self.ctx.client.convert_to_template(self.ctx.node, spec.template_id)
            self.ctx.await_if_task(data, "convert to template")

        run.complete(f"template {spec.template_id} ({spec.name}) created successfully")
        return spec.template_id

    def copy_image(self, spec: TemplateSpec) -> None:
        if self.copier is None:
            raise ValidationError("image transfer requested without an image copier")
        self.copier.copy(spec.image_path, spec.server_image_path)

    def create_vm(self, spec: TemplateSpec) -> None:
        interfaces = interfaces_for(spec)
        data = self.ctx.client.create_vm(
            self.ctx.node,
            spec.template_id,
            spec.name,
            cores=spec.cores,
            memory=spec.memory,
            interfaces=interfaces,
            scsihw=SCSI_CONTROLLER,
        )
        self.ctx.await_if_task(data, "create VM")
        logger.info(
            "VM %s created with interfaces %s",
            spec.template_id,
            ", ".join(f"{i.key}={i.bridge}" for i in interfaces),
        )
        if spec.skip_bridge_indexes:
            logger.info(
                "skipped bridge indexes: %s",
                ",".join(str(i) for i in sorted(spec.skip_bridge_indexes)),
            )

    def import_image(self, spec: TemplateSpec) -> None:
        params = {BOOT_DISK: f"{spec.storage}:0,import-from={spec.server_image_path}"}
        data = self.ctx.client.update_config(
            self.ctx.node, spec.template_id, params, action="import disk image"
        )
        task = self.ctx.poller.task(data, "import disk image")
        self.ctx.poller.wait_task(
            task,
            timeout=self.ctx.settings.task_timeout_sec,
            interval=self.ctx.settings.task_interval_sec,
        )
