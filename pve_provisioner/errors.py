EXIT_USER = 1
EXIT_SYSTEM = 2
EXIT_API = 3


class ProvisionerError(RuntimeError):
    exit_code = EXIT_SYSTEM


class ValidationError(ProvisionerError):
    exit_code = EXIT_USER


class LocalIOError(ProvisionerError):
    exit_code = EXIT_SYSTEM


class AuthError(ProvisionerError):
    exit_code = EXIT_API


class TransportError(ProvisionerError):
    exit_code = EXIT_API

    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        super().__init__(
            f"request failed after {attempts} attempts: {method} {url} ({error_type}: {detail})"
        )


class APIError(ProvisionerError):
    exit_code = EXIT_API

    def __init__(self, action: str, details: object, status_code: int | None = None):
        self.action = action
        self.details = details
        self.status_code = status_code
        status = f" (HTTP {status_code})" if status_code else ""
        super().__init__(f"failed to {action}{status}: {details}")


class VMNotFound(ProvisionerError):
    exit_code = EXIT_API

    def __init__(self, vmid: int):
        self.vmid = vmid
        super().__init__(f"VM {vmid} does not exist")


class TaskError(ProvisionerError):
    exit_code = EXIT_SYSTEM


class TaskFailed(ProvisionerError):
    exit_code = EXIT_API

    def __init__(self, task, exitstatus: str | None):
        self.task = task
        self.exitstatus = exitstatus
        super().__init__(f"task {task.label} ({task.upid}) failed: {exitstatus}")


class TaskTimeout(ProvisionerError):
    exit_code = EXIT_SYSTEM

    def __init__(self, task, waited: float):
        self.task = task
        self.waited = waited
        super().__init__(
            f"task {task.label} ({task.upid}) still running after {waited:.0f}s"
        )


class PollTimeout(ProvisionerError):
    exit_code = EXIT_SYSTEM

    def __init__(self, label: str, waited: float):
        self.label = label
        self.waited = waited
        super().__init__(f"timeout waiting for {label} after {waited:.0f}s")


class IdAllocationExhausted(ProvisionerError):
    exit_code = EXIT_API

    def __init__(self, start: int, attempts: int):
        self.start = start
        self.attempts = attempts
        super().__init__(
            f"unable to find an available VM id after {attempts} attempts starting at {start}"
        )


class ResizeFailed(ProvisionerError):
    exit_code = EXIT_API

    def __init__(self, *, vmid: int, disk: str, size: str, details: object):
        self.vmid = vmid
        self.disk = disk
        self.size = size
        self.details = details
        super().__init__(
            f"failed to resize {disk} of VM {vmid} by {size}: {details}"
        )


class StepFailed(ProvisionerError):
    def __init__(self, *, workflow: str, step: str, cause: ProvisionerError):
        self.workflow = workflow
        self.step = step
        self.cause = cause
        self.exit_code = cause.exit_code
        super().__init__(f"{workflow} failed at step '{step}': {cause}")
