import threading
import time

import pytest

from dlqueue.errors import CancellationError, ExecutionError, StoreError
from dlqueue.jobqueue import JobQueue, INTERRUPTED_MESSAGE
from dlqueue.models import QUEUED, IN_PROGRESS, COMPLETED, FAILED, PROCESSING, COMPLETE, ERROR
from dlqueue.retry import RetryPolicy
from dlqueue.worker import DownloadWorker, SHUTDOWN_MESSAGE

from conftest import FakeExecutor


def make_worker(job_queue, executor, notifier=None, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("store_retry_delay", 0.01)
    return DownloadWorker(job_queue, executor, notifier=notifier, output_dir="/downloads", **kwargs)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_process_next_with_empty_queue(job_queue, stop):
    executor = FakeExecutor()
    assert make_worker(job_queue, executor).process_next(stop) is False
    assert executor.calls == []


def test_successful_download_completes_job(job_queue, notifier, stop):
    job_id = job_queue.enqueue("evt-1", "https://example.com/v1")
    executor = FakeExecutor("/downloads/v1.mp4")

    assert make_worker(job_queue, executor, notifier).process_next(stop) is True

    job = job_queue.get(job_id)
    assert job.status == COMPLETED
    assert job.output_path == "/downloads/v1.mp4"
    assert executor.calls == [("https://example.com/v1", "/downloads")]
    assert notifier.calls == [("evt-1", PROCESSING), ("evt-1", COMPLETE)]


def test_failed_download_is_requeued(job_queue, notifier, stop):
    job_id = job_queue.enqueue("evt-1", "https://example.com/v1")
    executor = FakeExecutor(ExecutionError("Download failed: HTTP Error 403"))

    make_worker(job_queue, executor, notifier).process_next(stop)

    job = job_queue.get(job_id)
    assert job.status == QUEUED
    assert job.retry_count == 1
    assert job.error_message == "Download failed: HTTP Error 403"
    assert notifier.tags() == [PROCESSING]


def test_repeated_failures_become_terminal(store, notifier, stop):
    # max_retries=2 makes the third failure terminal; the default of 3 allows 1 run plus 3 retries
    job_queue = JobQueue(store, RetryPolicy(max_retries=2, backoff_base=0))
    job_id = job_queue.enqueue("evt-1", "https://example.com/v1")
    executor = FakeExecutor(*[ExecutionError("boom")] * 5)
    worker = make_worker(job_queue, executor, notifier)

    for _ in range(3):
        assert worker.process_next(stop) is True

    job = job_queue.get(job_id)
    assert job.status == FAILED
    assert job.retry_count == 2
    assert notifier.tags()[-1] == ERROR
    # no further attempt is scheduled
    assert worker.process_next(stop) is False
    assert len(executor.calls) == 3


def test_default_policy_allows_three_retries(job_queue, notifier, stop):
    job_id = job_queue.enqueue("evt-1", "https://example.com/v1")
    executor = FakeExecutor(*[ExecutionError("boom")] * 10)
    worker = make_worker(job_queue, executor, notifier)

    while worker.process_next(stop):
        pass

    job = job_queue.get(job_id)
    assert job.status == FAILED
    assert job.retry_count == 3
    assert len(executor.calls) == 4
    assert notifier.tags().count(ERROR) == 1


def test_timeout_follows_failure_path(job_queue, notifier, stop):
    job_id = job_queue.enqueue("evt-1", "https://example.com/slow")

    def slow(url, output_dir, token):
        while not token.wait(0.01):
            pass
        token.raise_if_cancelled()

    make_worker(job_queue, FakeExecutor(slow), notifier, job_timeout=0.05).process_next(stop)

    job = job_queue.get(job_id)
    assert job.status == QUEUED
    assert job.retry_count == 1
    assert job.error_message == "timed out after 0.05s"
    assert not stop.is_set()


def test_shutdown_cancellation_never_strands_job(job_queue, notifier, stop):
    job_id = job_queue.enqueue("evt-1", "https://example.com/v1")

    def interrupted(url, output_dir, token):
        stop.set()
        token.raise_if_cancelled()

    make_worker(job_queue, FakeExecutor(interrupted), notifier).process_next(stop)

    job = job_queue.get(job_id)
    assert job.status == QUEUED
    assert job.error_message == SHUTDOWN_MESSAGE
    assert job_queue.stats().in_progress_count == 0


def test_shutdown_cancellation_with_no_retries_left_fails_job(store, notifier, stop):
    job_queue = JobQueue(store, RetryPolicy(max_retries=0))
    job_id = job_queue.enqueue("evt-1", "https://example.com/v1")
    executor = FakeExecutor(CancellationError(CancellationError.SHUTDOWN))

    make_worker(job_queue, executor, notifier).process_next(stop)

    job = job_queue.get(job_id)
    assert job.status == FAILED
    assert job.error_message == SHUTDOWN_MESSAGE
    assert notifier.tags() == [PROCESSING, ERROR]


def test_notification_failures_do_not_abort_processing(job_queue, failing_notifier, stop):
    job_id = job_queue.enqueue("evt-1", "https://example.com/v1")
    make_worker(job_queue, FakeExecutor("/downloads/v1.mp4"), failing_notifier).process_next(stop)
    assert job_queue.get(job_id).status == COMPLETED
    assert failing_notifier.tags() == [PROCESSING, COMPLETE]


def test_store_errors_are_retried_not_dropped(job_queue, stop, monkeypatch):
    job_id = job_queue.enqueue("evt-1", "https://example.com/v1")
    real = job_queue.mark_completed
    calls = {"n": 0}

    def flaky(*args):
        calls["n"] += 1
        if calls["n"] < 3:
            raise StoreError("database is locked")
        return real(*args)

    monkeypatch.setattr(job_queue, "mark_completed", flaky)
    make_worker(job_queue, FakeExecutor("/downloads/v1.mp4")).process_next(stop)

    assert calls["n"] == 3
    assert job_queue.get(job_id).status == COMPLETED


def test_store_errors_give_up_once_stopping(job_queue, stop, monkeypatch):
    worker = make_worker(job_queue, FakeExecutor())
    stop.set()

    def broken():
        raise StoreError("disk I/O error")

    with pytest.raises(StoreError):
        worker._persist(stop, broken)


def test_run_processes_jobs_one_at_a_time(job_queue, notifier, stop):
    ids = [job_queue.enqueue("evt-1", f"https://example.com/{i}") for i in range(3)]

    def slow_success(url, output_dir, token):
        time.sleep(0.02)
        return f"/downloads/{url.rsplit('/', 1)[-1]}.mp4"

    executor = FakeExecutor(slow_success, slow_success, slow_success)
    worker = make_worker(job_queue, executor, notifier)
    thread = threading.Thread(target=worker.run, args=(stop,))
    thread.start()
    try:
        assert wait_for(lambda: job_queue.stats().completed_count == 3)
    finally:
        stop.set()
        thread.join(timeout=5)

    assert not thread.is_alive()
    assert executor.max_active == 1
    assert [c[0] for c in executor.calls] == [f"https://example.com/{i}" for i in range(3)]
    assert all(job_queue.get(i).output_path for i in ids)


def test_run_recovers_job_left_in_progress(store, stop):
    previous = JobQueue(store, RetryPolicy(backoff_base=0))
    job_id = previous.enqueue("evt-1", "https://example.com/v1")
    previous.claim_next()
    assert previous.get(job_id).status == IN_PROGRESS

    job_queue = JobQueue(store, RetryPolicy(backoff_base=0))
    seen_errors = []

    def download(url, output_dir, token):
        seen_errors.append(job_queue.get(job_id).error_message)
        return "/downloads/v1.mp4"

    executor = FakeExecutor(download)
    worker = make_worker(job_queue, executor)
    thread = threading.Thread(target=worker.run, args=(stop,))
    thread.start()
    try:
        assert wait_for(lambda: job_queue.get(job_id).status == COMPLETED)
    finally:
        stop.set()
        thread.join(timeout=5)

    assert seen_errors == [INTERRUPTED_MESSAGE]
    job = job_queue.get(job_id)
    assert job.retry_count == 1
    assert job.error_message is None
    assert len(executor.calls) == 1
