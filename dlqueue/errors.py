"""
Error types raised across the job lifecycle.

They subclass the builtins the CLI already handles (ValueError for bad
input, RuntimeError for everything that happens while running), so callers
that only know about the builtins keep working.
"""


class ValidationError(ValueError):
    """Input rejected before any job is created (empty or malformed URL)."""


class ExecutionError(RuntimeError):
    """The download executor ran and failed; the message is kept verbatim."""


class DownloadError(ExecutionError):
    """yt-dlp exited non-zero, could not start, or left no output file."""


class CancellationError(RuntimeError):
    """A job was stopped by shutdown or by its own timeout."""

    SHUTDOWN = "shutdown"
    TIMEOUT = "timeout"

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or f"cancelled: {reason}")

    @property
    def is_timeout(self) -> bool:
        return self.reason == self.TIMEOUT


class StoreError(RuntimeError):
    """A persistence call failed; callers back off and try again."""
