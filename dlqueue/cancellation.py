import threading
import time
from typing import Optional

from .errors import CancellationError


class CancellationToken:
    """
    Cancellation context handed to every blocking call of one job.

    It trips when the process-wide stop event is set (shutdown) or when the
    job's own deadline passes (timeout), whichever comes first.
    """

    def __init__(self, stop: threading.Event, timeout: Optional[float] = None):
        self._stop = stop
        self.timeout = timeout
        self._deadline = None if timeout is None else time.monotonic() + timeout

    @property
    def reason(self) -> Optional[str]:
        if self._stop.is_set():
            return CancellationError.SHUTDOWN
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return CancellationError.TIMEOUT
        return None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`, waking early on cancellation. Returns `cancelled`."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._stop.wait(seconds)
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        reason = self.reason
        if reason == CancellationError.TIMEOUT:
            raise CancellationError(reason, f"timed out after {self.timeout:g}s")
        if reason:
            raise CancellationError(reason, "cancelled: shutdown requested")
