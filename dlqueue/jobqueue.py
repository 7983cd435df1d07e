"""
Job queue: creation, FIFO selection and the status state machine.

    Queued -> InProgress -> Completed
                         -> Failed -> Queued   (retry, while retry_count < max)

Completed, and Failed once retries are exhausted, are terminal. Any other
transition is ignored with a warning.
"""
import logging
import uuid
from typing import List, Optional, Tuple

from .errors import ValidationError
from .models import Job, QueueStats, QUEUED, IN_PROGRESS, COMPLETED, FAILED
from .retry import RetryPolicy
from .store import JobStore
from .urls import is_valid_url
from .utils import now_iso, iso_in_utc_from_seconds_from_now

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "interrupted: process stopped while job was running"


class JobQueue:
    def __init__(self, store: JobStore, policy: Optional[RetryPolicy] = None):
        self.store = store
        self.policy = policy or RetryPolicy()

    # ---------- creation / selection ----------
    def new_job(self, source_event_id: str, url: str) -> Job:
        """Validate and build a Queued job without persisting it."""
        if source_event_id is None or not str(source_event_id).strip():
            raise ValidationError("Source event id cannot be empty.")
        if not url or not url.strip():
            raise ValidationError("URL cannot be empty.")
        url = url.strip()
        if not is_valid_url(url):
            raise ValidationError(f"Not an absolute http(s) URL: {url!r}")

        ts = now_iso()
        return Job(
            id=str(uuid.uuid4()),
            source_event_id=str(source_event_id),
            url=url,
            status=QUEUED,
            created_at=ts,
            updated_at=ts,
            available_at=ts,
        )

    def enqueue(self, source_event_id: str, url: str) -> str:
        job = self.new_job(source_event_id, url)
        self.store.save_job(job)
        logger.info("Enqueued job %s for event %s: %s", job.id, job.source_event_id, job.url)
        return job.id

    def dequeue_next(self) -> Optional[Job]:
        """Peek at the next eligible Queued job without claiming it."""
        return self.store.next_queued_job()

    def claim_next(self) -> Optional[Job]:
        """Select the next eligible job and mark it InProgress in one store call."""
        job = self.store.claim_next_job()
        if job:
            logger.info("Claimed job %s (attempt %d): %s", job.id, job.retry_count + 1, job.url)
        return job

    # ---------- transitions ----------
    def _transition(self, job_id: str, status: str, from_states, **fields) -> bool:
        if self.store.update_job_status(job_id, status, from_states=from_states, **fields):
            return True
        job = self.store.get_job(job_id)
        if job is None:
            logger.warning("Ignoring %s for unknown job %s", status, job_id)
            return False
        if job.status == status:
            logger.debug("Job %s already %s", job_id, status)
            return True
        logger.warning("Ignoring illegal transition %s -> %s for job %s", job.status, status, job_id)
        return False

    def mark_in_progress(self, job_id: str) -> bool:
        return self._transition(job_id, IN_PROGRESS, (QUEUED,))

    def mark_completed(self, job_id: str, output_path: str) -> bool:
        return self._transition(job_id, COMPLETED, (IN_PROGRESS,), output_path=output_path)

    def mark_failed(self, job_id: str, error_message: str) -> bool:
        return self._transition(
            job_id, FAILED, (IN_PROGRESS,), error_message=error_message or "unknown error"
        )

    def retry(self, job_id: str) -> bool:
        """
        Requeue a Failed job if the retry policy allows it.

        Returns True when the job is back in Queued (retry_count + 1, eligible
        after the backoff delay). Returns False when retries are exhausted; the
        job then stays terminally Failed with retry_count unchanged.
        """
        job = self.store.get_job(job_id)
        if job is None:
            logger.warning("Cannot retry unknown job %s", job_id)
            return False
        if job.status != FAILED:
            logger.warning("Cannot retry job %s in status %s", job_id, job.status)
            return False

        decision = self.policy.decide(job.retry_count)
        if not decision.requeue:
            logger.info(
                "Job %s exhausted %d retries; leaving it Failed", job_id, self.policy.max_retries
            )
            return False

        available_at = iso_in_utc_from_seconds_from_now(decision.delay_seconds)
        if not self.store.requeue_job(job_id, self.policy.max_retries, available_at):
            logger.warning("Job %s changed while being requeued; not retried", job_id)
            return False
        logger.info(
            "Requeued job %s (retry %d/%d), eligible in %gs",
            job_id, job.retry_count + 1, self.policy.max_retries, decision.delay_seconds,
        )
        return True

    def recover_stranded(self) -> Tuple[List[str], List[str]]:
        """
        Startup scan: nothing owns a job left InProgress by a previous process,
        so each one is failed and run through the retry policy.
        """
        requeued, failed = [], []
        for job in self.store.jobs_in_status(IN_PROGRESS):
            self.mark_failed(job.id, INTERRUPTED_MESSAGE)
            if self.retry(job.id):
                requeued.append(job.id)
            else:
                failed.append(job.id)
        if requeued or failed:
            logger.warning(
                "Recovered %d stranded job(s): %d requeued, %d failed",
                len(requeued) + len(failed), len(requeued), len(failed),
            )
        return requeued, failed

    # ---------- reads ----------
    def stats(self) -> QueueStats:
        return self.store.queue_stats()

    def get(self, job_id: str) -> Optional[Job]:
        return self.store.get_job(job_id)

    def list(self, status: Optional[str] = None) -> List[Job]:
        return self.store.list_jobs(status)
