import threading

import pytest

from dlqueue.jobqueue import JobQueue
from dlqueue.retry import RetryPolicy
from dlqueue.store import JobStore


class RecordingNotifier:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def notify(self, event_id, tag):
        self.calls.append((event_id, tag))
        if self.fail:
            raise ConnectionError("transport down")

    def tags(self):
        return [tag for _event_id, tag in self.calls]


class FakeExecutor:
    """Plays back outcomes in order: a path string is a success, an exception is raised."""

    def __init__(self, *outcomes, default="/downloads/video.mp4"):
        self.outcomes = list(outcomes)
        self.default = default
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def download(self, url, output_dir, token=None):
        with self._lock:
            self.calls.append((url, output_dir))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            outcome = self.outcomes.pop(0) if self.outcomes else self.default
            if callable(outcome) and not isinstance(outcome, type):
                outcome = outcome(url, output_dir, token)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "dlqueue.db")


@pytest.fixture
def store(db_path):
    return JobStore(db_path)


@pytest.fixture
def job_queue(store):
    # no backoff so requeued jobs are eligible straight away
    return JobQueue(store, RetryPolicy(max_retries=3, backoff_base=0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def stop():
    return threading.Event()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)
