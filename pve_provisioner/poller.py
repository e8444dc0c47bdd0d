import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from pve_provisioner.clients.proxmox import ProxmoxClient
from pve_provisioner.errors import (
    APIError,
    PollTimeout,
    TaskError,
    TaskFailed,
    TaskTimeout,
)
from pve_provisioner.models import AsyncTask


logger = logging.getLogger(__name__)

T = TypeVar("T")

TASK_OK = "OK"
TASK_STOPPED = "stopped"


def is_upid(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("UPID:")


class Poller:
    """Blocking waits on remote state with an injectable clock and sleep."""

    def __init__(
        self,
        client: ProxmoxClient,
        node: str,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.node = node
        self.clock = clock
        self.sleep = sleep

    def task(self, upid: Any, label: str) -> AsyncTask:
        if not upid or not isinstance(upid, str):
            raise TaskError(f"no task id returned for {label}")
        return AsyncTask(upid=upid, label=label, started_at=self.clock())

    def wait_task(
        self, task: AsyncTask, timeout: float = 300, interval: float = 5
    ) -> dict[str, Any]:
        if not task.upid:
            raise TaskError(f"no task id to wait for ({task.label})")
        logger.info("waiting for task %s (%s)", task.label, task.upid)
        started = self.clock()
        while True:
            try:
                status = self.client.task_status(self.node, task.upid)
            except APIError as exc:
                raise TaskError(
                    f"task {task.label} ({task.upid}) not found: {exc.details}"
                ) from exc
            if not status:
                raise TaskError(f"task {task.label} ({task.upid}) not found")
            if status.get("status") == TASK_STOPPED:
                exitstatus = status.get("exitstatus")
                if exitstatus != TASK_OK:
                    raise TaskFailed(task, exitstatus)
                logger.info("task %s completed", task.label)
                return status
            waited = self.clock() - started
            if waited >= timeout:
                raise TaskTimeout(task, waited)
            logger.debug(
                "task %s status=%s waited=%.0fs", task.label, status.get("status"), waited
            )
            self.sleep(interval)

    def wait_for(
        self,
        probe: Callable[[], T],
        predicate: Callable[[T], bool],
        label: str,
        *,
        timeout: float,
        interval: float,
    ) -> T:
        logger.info("waiting for %s", label)
        started = self.clock()
        while True:
            value = probe()
            if predicate(value):
                logger.info("%s: done", label)
                return value
            waited = self.clock() - started
            if waited >= timeout:
                raise PollTimeout(label, waited)
            self.sleep(interval)

    def wait_for_power_state(
        self, vmid: int, target: str, *, timeout: float = 300, interval: float = 2
    ) -> dict[str, Any]:
        return self.wait_for(
            lambda: self.client.vm_status(self.node, vmid),
            lambda status: status.get("status") == target,
            f"VM {vmid} to reach power state '{target}'",
            timeout=timeout,
            interval=interval,
        )

    def wait_for_config_key(
        self, vmid: int, key: str, *, timeout: float = 120, interval: float = 5
    ) -> dict[str, Any]:
        return self.wait_for(
            lambda: self.client.get_config(self.node, vmid),
            lambda config: bool(config.get(key)),
            f"{key} to appear in VM {vmid} config",
            timeout=timeout,
            interval=interval,
        )
