from dataclasses import dataclass


@dataclass(frozen=True)
class RetryDecision:
    requeue: bool
    delay_seconds: float = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Decides whether a failed job goes back to the queue.

    A job that has been retried `retry_count` times is requeued while
    retry_count < max_retries, after backoff_base ** (retry_count + 1) seconds.
    """
    max_retries: int = 3
    backoff_base: int = 2

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_base < 0:
            raise ValueError("backoff_base must be >= 0")

    def decide(self, retry_count: int) -> RetryDecision:
        if retry_count >= self.max_retries:
            return RetryDecision(requeue=False)
        return RetryDecision(requeue=True, delay_seconds=float(self.backoff_base ** (retry_count + 1)))
