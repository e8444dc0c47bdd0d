import time
from dataclasses import dataclass, field


MEDIA_PREFIX = "CI"


def media_filename(vmid: int, vm_name: str) -> str:
    # Teardown recomputes this name from the VM config; keep the scheme stable.
    return f"{MEDIA_PREFIX}_{vmid}_{vm_name}.iso"


def iso_volid(storage: str, filename: str) -> str:
    return f"{storage}:iso/{filename}"


@dataclass
class AsyncTask:
    upid: str
    label: str
    started_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class NetworkInterface:
    slot: int
    bridge: str
    source_index: int = 0
    model: str = "virtio"

    @property
    def key(self) -> str:
        return f"net{self.slot}"

    def to_param(self) -> str:
        return f"{self.model},bridge={self.bridge}"


@dataclass
class GeneratedMedia:
    vmid: int
    vm_name: str
    local_path: str
    storage: str

    @property
    def filename(self) -> str:
        return media_filename(self.vmid, self.vm_name)

    @property
    def volid(self) -> str:
        return iso_volid(self.storage, self.filename)


@dataclass
class VMRef:
    vmid: int
    name: str

    @property
    def media_filename(self) -> str:
        return media_filename(self.vmid, self.name)
