from pathlib import Path

import pydantic
import pytest

from pve_provisioner import media
from pve_provisioner.errors import (
    APIError,
    IdAllocationExhausted,
    ResizeFailed,
    StepFailed,
    TaskFailed,
)
from pve_provisioner.schemas import ProvisionSpec
from pve_provisioner.services.provisioning import ProvisioningWorkflow


@pytest.fixture(autouse=True)
def fake_config_drive(monkeypatch):
    built: list[Path] = []

    def build(user_data, output_path, work_dir, vmid):
        output_path.write_bytes(b"ISO:" + user_data)
        built.append(output_path)
        return output_path

    monkeypatch.setattr(media, "build_config_drive", build)
    return built


@pytest.fixture
def user_data(tmp_path) -> Path:
    path = tmp_path / "user-data.yaml"
    path.write_text("#cloud-config\nhostname: web-01\n")
    return path


def _spec(user_data: Path, **overrides) -> ProvisionSpec:
    values = dict(
        template_id=9600,
        name="web-01",
        resize="+80G",
        start_id=100,
        user_data_path=user_data,
        iso_storage="media",
    )
    values.update(overrides)
    return ProvisionSpec(**values)


def test_provision_end_to_end(workflow_ctx, fake_proxmox, user_data, settings):
    fake_proxmox.next_ids = [None, 101]

    vm = ProvisioningWorkflow(workflow_ctx).run(_spec(user_data))

    assert (vm.vmid, vm.name) == (101, "web-01")
    assert fake_proxmox.args_of("next_id") == [(100,), (101,)]
    assert fake_proxmox.names() == [
        "next_id",
        "next_id",
        "upload_iso",
        "task_status",
        "clone_vm",
        "task_status",
        "resize_disk",
        "task_status",
        "update_config",
        "task_status",
    ]
    upload = fake_proxmox.args_of("upload_iso")[0]
    assert upload[:2] == ("pve02", "media")
    assert Path(upload[2]).name == "CI_101_web-01.iso"
    assert fake_proxmox.args_of("clone_vm") == [("pve02", 9600, 101, "web-01")]
    assert fake_proxmox.args_of("resize_disk") == [("pve02", 101, "scsi0", "+80G")]
    attach = fake_proxmox.args_of("update_config")[0]
    assert attach[2] == {"ide2": "media:iso/CI_101_web-01.iso,media=cdrom"}

    # the local ISO directory is gone once the upload step finished
    assert not Path(upload[2]).parent.exists()
    assert list(Path(settings.work_dir).iterdir()) == []


def test_provision_exhausts_id_search_without_cloning(workflow_ctx, fake_proxmox, user_data):
    fake_proxmox.next_ids = [None]

    with pytest.raises(StepFailed) as excinfo:
        ProvisioningWorkflow(workflow_ctx, max_id_attempts=5).run(_spec(user_data, start_id=200))

    assert isinstance(excinfo.value.cause, IdAllocationExhausted)
    assert excinfo.value.exit_code == 3
    assert fake_proxmox.args_of("next_id") == [(200,), (201,), (202,), (203,), (204,)]
    assert "upload_iso" not in fake_proxmox.names()
    assert "clone_vm" not in fake_proxmox.names()


def test_provision_default_id_search_is_bounded(workflow_ctx, fake_proxmox, user_data):
    fake_proxmox.next_ids = [None]
    with pytest.raises(StepFailed):
        ProvisioningWorkflow(workflow_ctx).run(_spec(user_data))
    assert len(fake_proxmox.args_of("next_id")) == 100


def test_provision_resize_without_data_fails(workflow_ctx, fake_proxmox, user_data):
    fake_proxmox.resize_result = None

    with pytest.raises(StepFailed) as excinfo:
        ProvisioningWorkflow(workflow_ctx).run(_spec(user_data))

    assert isinstance(excinfo.value.cause, ResizeFailed)
    assert excinfo.value.step == "Resizing scsi0 by +80G"
    assert "update_config" not in fake_proxmox.names()


def test_provision_resize_api_error_is_resize_failed(workflow_ctx, fake_proxmox, user_data):
    fake_proxmox.failures["resize_disk"] = APIError("resize the disk", "disk too small", 500)

    with pytest.raises(StepFailed) as excinfo:
        ProvisioningWorkflow(workflow_ctx).run(_spec(user_data))

    cause = excinfo.value.cause
    assert isinstance(cause, ResizeFailed)
    assert cause.details == "disk too small"
    # no rollback: the clone stays for inspection
    assert "delete_vm" not in fake_proxmox.names()


def test_provision_failed_attach_task_aborts(workflow_ctx, fake_proxmox, user_data):
    fake_proxmox.task_statuses = [
        {"status": "stopped", "exitstatus": "OK"},
        {"status": "stopped", "exitstatus": "OK"},
        {"status": "stopped", "exitstatus": "OK"},
        {"status": "stopped", "exitstatus": "volume does not exist"},
    ]

    with pytest.raises(StepFailed) as excinfo:
        ProvisioningWorkflow(workflow_ctx).run(_spec(user_data))

    assert excinfo.value.step == "Attaching config drive media"
    assert isinstance(excinfo.value.cause, TaskFailed)
    assert excinfo.value.exit_code == 3
    assert fake_proxmox.names()[-2:] == ["update_config", "task_status"]


def test_provision_upload_failure_still_removes_local_media(
    workflow_ctx, fake_proxmox, user_data, settings
):
    fake_proxmox.failures["upload_iso"] = APIError("upload ISO", "storage full", 500)

    with pytest.raises(StepFailed) as excinfo:
        ProvisioningWorkflow(workflow_ctx).run(_spec(user_data))

    assert excinfo.value.step == "Uploading CI_100_web-01.iso to storage media"
    assert "clone_vm" not in fake_proxmox.names()
    assert list(Path(settings.work_dir).iterdir()) == []


def test_provision_spec_rejects_bad_input(user_data, tmp_path):
    with pytest.raises(pydantic.ValidationError):
        _spec(user_data, resize="80G")
    with pytest.raises(pydantic.ValidationError):
        _spec(user_data, resize="+80T")
    with pytest.raises(pydantic.ValidationError):
        _spec(user_data, name="web_01!")
    with pytest.raises(pydantic.ValidationError):
        _spec(tmp_path / "missing.yaml")
    assert _spec(user_data, resize="+512M").resize == "+512M"
    assert _spec(user_data, resize="+10").resize == "+10"
