from pathlib import Path
from typing import Any, cast

import pytest

from pve_provisioner.config import Settings
from pve_provisioner.workflow import WorkflowContext


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProxmox:
    """In-memory stand-in for ProxmoxClient recording every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.failures: dict[str, Exception] = {}
        self.task_statuses: list[dict] = [{"status": "stopped", "exitstatus": "OK"}]
        self.configs: list[dict] = [{"name": "vm", "scsi0": "local-lvm:vm-1-disk-0"}]
        self.vm_statuses: list[dict] = [{"status": "stopped"}]
        self.next_ids: list[int | None] = [100]
        self.resize_result: Any = "UPID:pve:resize"
        self.uploaded_paths: list[str] = []
        self.closed = False

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.failures:
            raise self.failures[name]

    @staticmethod
    def _next(values: list) -> Any:
        return values.pop(0) if len(values) > 1 else values[0]

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def args_of(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]

    def create_vm(self, node, vmid, name, *, cores, memory, interfaces, scsihw="virtio-scsi-pci"):
        self._record("create_vm", node, vmid, name, cores, memory, interfaces, scsihw)
        return "UPID:pve:create"

    def update_config(self, node, vmid, params, *, action):
        self._record("update_config", node, vmid, params, action)
        if "scsi0" in params:
            return "UPID:pve:import"
        return "UPID:pve:qmconfig"

    def get_config(self, node, vmid):
        self._record("get_config", node, vmid)
        return self._next(self.configs)

    def convert_to_template(self, node, vmid):
        self._record("convert_to_template", node, vmid)
        return None

    def vm_status(self, node, vmid):
        self._record("vm_status", node, vmid)
        return self._next(self.vm_statuses)

    def stop_vm(self, node, vmid):
        self._record("stop_vm", node, vmid)
        return "UPID:pve:stop"

    def delete_vm(self, node, vmid):
        self._record("delete_vm", node, vmid)
        return "UPID:pve:destroy"

    def next_id(self, candidate):
        self._record("next_id", candidate)
        return self._next(self.next_ids)

    def clone_vm(self, node, template_id, newid, name):
        self._record("clone_vm", node, template_id, newid, name)
        return "UPID:pve:clone"

    def resize_disk(self, node, vmid, disk, size):
        self._record("resize_disk", node, vmid, disk, size)
        return self.resize_result

    def task_status(self, node, upid):
        self._record("task_status", node, upid)
        return self._next(self.task_statuses)

    def upload_iso(self, node, storage, path):
        self.uploaded_paths.append(path)
        assert Path(path).is_file()
        self._record("upload_iso", node, storage, path)
        return "UPID:pve:upload"

    def delete_volume(self, node, storage, volid):
        self._record("delete_volume", node, storage, volid)
        return None

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_proxmox() -> FakeProxmox:
    return FakeProxmox()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        host="10.0.0.12",
        node="pve02",
        password="secret",
        iso_storage="media",
        disk_storage="vm_data",
        work_dir=str(tmp_path / "work"),
    )


@pytest.fixture
def workflow_ctx(settings, fake_proxmox, clock) -> WorkflowContext:
    return WorkflowContext.create(
        settings, cast(Any, fake_proxmox), clock=clock, sleep=clock.sleep
    )
