import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from pve_provisioner.clients.proxmox import ProxmoxClient
from pve_provisioner.config import Settings
from pve_provisioner.errors import LocalIOError, ProvisionerError, StepFailed
from pve_provisioner.poller import Poller, is_upid


logger = logging.getLogger(__name__)


@dataclass
class WorkflowContext:
    """Everything one workflow invocation needs, built once and passed down."""

    settings: Settings
    client: ProxmoxClient
    poller: Poller

    @classmethod
    def create(
        cls,
        settings: Settings,
        client: ProxmoxClient,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "WorkflowContext":
        poller = Poller(client, settings.node, clock=clock, sleep=sleep)
        return cls(settings=settings, client=client, poller=poller)

    @property
    def node(self) -> str:
        return self.settings.node

    def await_if_task(self, data: object, label: str) -> None:
        if not is_upid(data):
            logger.debug("%s completed synchronously", label)
            return
        task = self.poller.task(data, label)
        self.poller.wait_task(
            task,
            timeout=self.settings.task_timeout_sec,
            interval=self.settings.task_interval_sec,
        )


@dataclass
class WorkflowRun:
    name: str
    total_steps: int
    current: int = 0
    completed: list[str] = field(default_factory=list)

    @contextmanager
    def step(self, description: str) -> Iterator[None]:
        self.current += 1
        logger.info("[%s] step %d/%d: %s", self.name, self.current, self.total_steps, description)
        try:
            yield
        except StepFailed:
            raise
        except ProvisionerError as exc:
            raise StepFailed(workflow=self.name, step=description, cause=exc) from exc
        except OSError as exc:
            cause = LocalIOError(str(exc))
            raise StepFailed(workflow=self.name, step=description, cause=cause) from exc
        self.completed.append(description)

    def complete(self, message: str) -> None:
        logger.info("[%s] %s", self.name, message)
