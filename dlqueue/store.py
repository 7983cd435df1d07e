"""
SQLite-backed job store.

Each call opens its own connection and runs in a single transaction, so the
ingestion thread and the worker thread can use one JobStore instance without
sharing a connection. sqlite3 errors surface as StoreError.
"""
import sqlite3
from typing import Dict, List, Optional

from . import repository
from .db import connect_db, init_db
from .errors import StoreError
from .models import Job, QueueStats, QUEUED, IN_PROGRESS, COMPLETED, FAILED
from .utils import now_iso


class JobStore:
    def __init__(self, path: str, initialize: bool = True):
        self.path = path
        if initialize:
            self.initialize()

    def initialize(self) -> None:
        """Create the schema if needed; safe to call repeatedly."""
        try:
            init_db(self.path)
        except sqlite3.Error as e:
            raise StoreError(f"DB error while creating schema: {e}") from e

    def _call(self, fn, *args, **kwargs):
        conn = None
        try:
            conn = connect_db(self.path)
            with conn:
                return fn(conn, *args, **kwargs)
        except sqlite3.Error as e:
            raise StoreError(f"DB error in {fn.__name__}: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    # ---------- jobs ----------
    def save_job(self, job: Job) -> None:
        self._call(repository.save_job, job)

    def get_job(self, job_id: str) -> Optional[Job]:
        row = self._call(repository.get_job, job_id)
        return Job.from_row(row) if row else None

    def next_queued_job(self, now: Optional[str] = None) -> Optional[Job]:
        row = self._call(repository.next_queued_job, now or now_iso())
        return Job.from_row(row) if row else None

    def claim_next_job(self, now: Optional[str] = None) -> Optional[Job]:
        row = self._call(repository.claim_next, now or now_iso())
        return Job.from_row(row) if row else None

    def update_job_status(
        self,
        job_id: str,
        status: str,
        error_message: Optional[str] = None,
        output_path: Optional[str] = None,
        from_states=None,
    ) -> bool:
        changed = self._call(
            repository.update_job_status,
            job_id,
            status,
            now_iso(),
            error_message=error_message,
            output_path=output_path,
            from_states=from_states,
        )
        return changed == 1

    def increment_retry_count(self, job_id: str) -> bool:
        return self._call(repository.increment_retry_count, job_id) == 1

    def requeue_job(self, job_id: str, max_retries: int, available_at: str) -> bool:
        return self._call(
            repository.requeue_job,
            job_id,
            max_retries=max_retries,
            available_at=available_at,
            now=now_iso(),
        )

    def list_jobs(self, status: Optional[str] = None) -> List[Job]:
        return [Job.from_row(r) for r in self._call(repository.list_jobs, status)]

    def jobs_in_status(self, status: str) -> List[Job]:
        return self.list_jobs(status)

    def queue_stats(self) -> QueueStats:
        counts = self._call(repository.queue_stats)
        return QueueStats(
            queued_count=counts[QUEUED],
            in_progress_count=counts[IN_PROGRESS],
            completed_count=counts[COMPLETED],
            failed_count=counts[FAILED],
        )

    # ---------- processed events ----------
    def is_event_processed(self, event_id: str) -> bool:
        return self._call(repository.is_event_processed, str(event_id))

    def mark_event_processed(self, event_id: str, channel_id: Optional[str] = None, job_count: int = 0) -> None:
        self._call(
            repository.mark_event_processed,
            str(event_id),
            None if channel_id is None else str(channel_id),
            job_count,
            now_iso(),
        )

    def record_event(self, event_id: str, channel_id: Optional[str], jobs: List[Job]) -> bool:
        """Persist an event's jobs together with its processed marker, atomically."""
        return self._call(
            repository.record_event,
            str(event_id),
            None if channel_id is None else str(channel_id),
            list(jobs),
            now_iso(),
        )

    def processed_event_count(self) -> int:
        return self._call(repository.processed_event_count)

    # ---------- app state / config ----------
    def get_state(self, key: str) -> Optional[str]:
        return self._call(repository.get_state, key)

    def set_state(self, key: str, value: str) -> None:
        self._call(repository.set_state, key, value, now_iso())

    def get_config(self) -> Dict[str, str]:
        return self._call(repository.get_config)

    def set_config(self, key: str, value: str) -> None:
        self._call(repository.set_config, key, value)
