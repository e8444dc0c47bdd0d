import logging
import time
from collections.abc import Callable, Iterator
from typing import Any

import httpx

from pve_provisioner.errors import TransportError


logger = logging.getLogger(__name__)


class RetryPolicy:
    def __init__(self, attempts: int = 3, initial_sec: float = 2, max_sec: float = 30):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.initial_sec = initial_sec
        self.max_sec = max_sec

    def delays(self) -> Iterator[float]:
        """Backoff taken between attempts: initial, doubled each time, capped at max."""
        delay = self.initial_sec
        for _ in range(self.attempts - 1):
            yield min(delay, self.max_sec)
            delay *= 2


def request_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    retry: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying transport failures only.

    HTTP error statuses are returned to the caller untouched: the remote
    side answered and the request is not assumed safe to repeat.
    """
    delays = retry.delays()
    error: httpx.TransportError | None = None
    detail = "unknown error"
    error_type = "TransportError"
    for attempt in range(1, retry.attempts + 1):
        try:
            return client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            error = exc
            detail = str(exc)
            error_type = exc.__class__.__name__
        if attempt < retry.attempts:
            delay = next(delays)
            logger.warning(
                "request failed (%s: %s), retrying in %ss (%d/%d)",
                error_type,
                detail,
                delay,
                attempt,
                retry.attempts,
            )
            sleep(delay)
    logger.error("request failed after %d attempts: %s %s", retry.attempts, method, url)
    raise TransportError(
        method=method,
        url=url,
        attempts=retry.attempts,
        error_type=error_type,
        detail=detail,
    ) from error
