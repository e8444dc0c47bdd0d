import pytest

from pve_provisioner.errors import APIError, PollTimeout, StepFailed, VMNotFound
from pve_provisioner.services.teardown import TeardownWorkflow


def test_teardown_stops_deletes_and_removes_media(workflow_ctx, fake_proxmox):
    fake_proxmox.vm_statuses = [
        {"status": "running"},
        {"status": "running"},
        {"status": "stopped"},
    ]
    fake_proxmox.configs = [{"name": "gw-01"}]

    vm = TeardownWorkflow(workflow_ctx).run(100, "media")

    assert (vm.vmid, vm.name) == (100, "gw-01")
    assert fake_proxmox.names() == [
        "vm_status",
        "get_config",
        "stop_vm",
        "vm_status",
        "vm_status",
        "delete_vm",
        "task_status",
        "delete_volume",
    ]
    assert fake_proxmox.args_of("delete_volume") == [
        ("pve02", "media", "media:iso/CI_100_gw-01.iso")
    ]


def test_teardown_missing_vm(workflow_ctx, fake_proxmox):
    fake_proxmox.vm_statuses = [{}]

    with pytest.raises(StepFailed) as excinfo:
        TeardownWorkflow(workflow_ctx).run(404, "media")

    assert isinstance(excinfo.value.cause, VMNotFound)
    assert excinfo.value.exit_code == 3
    assert fake_proxmox.names() == ["vm_status"]


def test_teardown_requires_vm_name(workflow_ctx, fake_proxmox):
    fake_proxmox.configs = [{"cores": 2}]

    with pytest.raises(StepFailed) as excinfo:
        TeardownWorkflow(workflow_ctx).run(100, "media")

    assert isinstance(excinfo.value.cause, APIError)
    assert "stop_vm" not in fake_proxmox.names()


def test_teardown_delete_failure_keeps_media(workflow_ctx, fake_proxmox):
    fake_proxmox.configs = [{"name": "gw-01"}]
    fake_proxmox.failures["delete_vm"] = APIError("delete the VM", "VM is locked", 500)

    with pytest.raises(StepFailed) as excinfo:
        TeardownWorkflow(workflow_ctx).run(100, "media")

    assert excinfo.value.step == "Deleting VM 100"
    assert "delete_volume" not in fake_proxmox.names()


def test_teardown_stop_timeout(workflow_ctx, fake_proxmox, clock):
    fake_proxmox.vm_statuses = [{"status": "running"}]
    fake_proxmox.configs = [{"name": "gw-01"}]

    with pytest.raises(StepFailed) as excinfo:
        TeardownWorkflow(workflow_ctx).run(100, "media")

    assert isinstance(excinfo.value.cause, PollTimeout)
    assert excinfo.value.exit_code == 2
    assert clock.now >= workflow_ctx.settings.power_timeout_sec
    assert "delete_vm" not in fake_proxmox.names()


def test_teardown_media_failure_reports_orphan(workflow_ctx, fake_proxmox):
    fake_proxmox.configs = [{"name": "gw-01"}]
    fake_proxmox.failures["delete_volume"] = APIError("delete ISO", "volume does not exist", 500)

    with pytest.raises(StepFailed) as excinfo:
        TeardownWorkflow(workflow_ctx).run(100, "media")

    assert excinfo.value.step == "Deleting CI_100_gw-01.iso from storage media"
    assert "delete_vm" in fake_proxmox.names()
