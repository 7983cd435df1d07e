"""
SQL for the job store.

Every function takes an open connection and leaves transaction control to
the caller, except where a function needs its own write lock.
"""
import sqlite3
from typing import Dict, Iterable, List, Optional

from .models import Job, QUEUED, IN_PROGRESS, COMPLETED, FAILED, JOB_STATES


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    conn.execute(
        "INSERT INTO config(key,value) VALUES(?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, str(value)),
    )


# ---------- App state ----------
def get_state(conn, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM app_state WHERE key=?", (key,)).fetchone()
    return row["value"] if row else None


def set_state(conn, key: str, value: str, now: str):
    conn.execute(
        "INSERT INTO app_state(key, value, updated_at) VALUES(?,?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
        (key, str(value), now),
    )


# ---------- Processed events ----------
def is_event_processed(conn, event_id: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM processed_events WHERE event_id=?", (event_id,)
    ).fetchone()
    return row is not None


def mark_event_processed(conn, event_id: str, channel_id: Optional[str], job_count: int, now: str):
    conn.execute(
        "INSERT OR IGNORE INTO processed_events(event_id, channel_id, job_count, processed_at) "
        "VALUES(?,?,?,?)",
        (event_id, channel_id, int(job_count), now),
    )


def processed_event_count(conn) -> int:
    return conn.execute("SELECT COUNT(1) AS c FROM processed_events").fetchone()["c"]


def record_event(conn, event_id: str, channel_id: Optional[str], jobs: List[Job], now: str) -> bool:
    """Insert an event's jobs, then its marker, under one write lock. False if already marked."""
    conn.execute("BEGIN IMMEDIATE")
    if is_event_processed(conn, event_id):
        return False
    for job in jobs:
        save_job(conn, job)
    mark_event_processed(conn, event_id, channel_id, len(jobs), now)
    return True


# ---------- Jobs ----------
def save_job(conn, job: Job):
    conn.execute(
        """INSERT INTO jobs
           (id, source_event_id, url, status, created_at, updated_at, available_at,
            completed_at, error_message, output_path, retry_count)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            job.id, job.source_event_id, job.url, job.status,
            job.created_at, job.updated_at, job.available_at or job.created_at,
            job.completed_at, job.error_message, job.output_path, job.retry_count,
        ),
    )


def get_job(conn, job_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()


def next_queued_job(conn, now: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        """SELECT * FROM jobs
           WHERE status=? AND available_at <= ?
           ORDER BY available_at ASC, seq ASC
           LIMIT 1""",
        (QUEUED, now),
    ).fetchone()


def claim_next(conn, now: str) -> Optional[sqlite3.Row]:
    """Select the next eligible job and mark it InProgress under one write lock."""
    conn.execute("BEGIN IMMEDIATE")
    row = next_queued_job(conn, now)
    if not row:
        return None
    updated = conn.execute(
        "UPDATE jobs SET status=?, updated_at=? WHERE id=? AND status=?",
        (IN_PROGRESS, now, row["id"], QUEUED),
    )
    if updated.rowcount != 1:
        return None
    return get_job(conn, row["id"])


def update_job_status(
    conn,
    job_id: str,
    status: str,
    now: str,
    *,
    error_message: Optional[str] = None,
    output_path: Optional[str] = None,
    from_states: Optional[Iterable[str]] = None,
) -> int:
    """
    Move a job to `status`. With `from_states`, the row only changes if its
    current status is one of them. Returns the number of rows changed.
    """
    if status not in JOB_STATES:
        raise ValueError(f"Unknown job status: {status!r}")
    completed_at = now if status in (COMPLETED, FAILED) else None
    sets = ["status=?", "updated_at=?", "completed_at=?", "output_path=COALESCE(?, output_path)"]
    params: List = [status, now, completed_at, output_path]
    if status == COMPLETED:
        # a completed job keeps its output path, not the error of an earlier attempt
        sets.append("error_message=NULL")
    else:
        sets.append("error_message=COALESCE(?, error_message)")
        params.append(error_message)
    sql = f"UPDATE jobs SET {', '.join(sets)} WHERE id=?"
    params.append(job_id)
    if from_states is not None:
        states = list(from_states)
        sql += f" AND status IN ({','.join('?' * len(states))})"
        params.extend(states)
    return conn.execute(sql, params).rowcount


def increment_retry_count(conn, job_id: str) -> int:
    return conn.execute(
        "UPDATE jobs SET retry_count = retry_count + 1 WHERE id=?", (job_id,)
    ).rowcount


def requeue_job(conn, job_id: str, *, max_retries: int, available_at: str, now: str) -> bool:
    """Failed -> Queued plus one retry, only while retry_count < max_retries."""
    updated = conn.execute(
        """UPDATE jobs
           SET status=?, available_at=?, completed_at=NULL, updated_at=?
           WHERE id=? AND status=? AND retry_count < ?""",
        (QUEUED, available_at, now, job_id, FAILED, int(max_retries)),
    )
    if updated.rowcount != 1:
        return False
    increment_retry_count(conn, job_id)
    return True


# ---------- Queries ----------
def list_jobs(conn, status: Optional[str] = None) -> List[sqlite3.Row]:
    if status:
        return conn.execute(
            "SELECT * FROM jobs WHERE status=? ORDER BY available_at ASC, seq ASC",
            (status,),
        ).fetchall()
    return conn.execute("SELECT * FROM jobs ORDER BY seq ASC").fetchall()


def queue_stats(conn) -> Dict[str, int]:
    out = {s: 0 for s in JOB_STATES}
    for r in conn.execute("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status"):
        out[r["status"]] = r["c"]
    return out
