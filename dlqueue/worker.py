import logging
import signal
import threading
import time
from typing import Optional, TextIO

from .cancellation import CancellationToken
from .config import Settings, Tunables
from .errors import CancellationError, StoreError
from .executor import DownloadExecutor, YtDlpExecutor
from .ingest import EventChannel, EventIngestor, run_ingestion
from .jobqueue import JobQueue
from .listener import JsonLinesListener
from .models import Job, PROCESSING, COMPLETE, ERROR
from .notify import LoggingNotifier, Notifier, safe_notify
from .retry import RetryPolicy
from .store import JobStore

logger = logging.getLogger(__name__)

SHUTDOWN_MESSAGE = "cancelled: shutdown requested"
STORE_ATTEMPTS_WHILE_STOPPING = 3


def setup_signal_handlers(stop: threading.Event):
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping worker", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # only the main thread may install handlers
            logger.debug("Could not install handler for signal %s", sig)


class DownloadWorker:
    """
    The single consumer of the job queue. One job is in flight at a time;
    this class is the only writer of InProgress and terminal statuses.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        executor: DownloadExecutor,
        notifier: Optional[Notifier] = None,
        output_dir: str = "downloads",
        poll_interval: float = 1.0,
        job_timeout: Optional[float] = 3600.0,
        store_retry_delay: float = 5.0,
    ):
        self.queue = job_queue
        self.executor = executor
        self.notifier = notifier
        self.output_dir = output_dir
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.store_retry_delay = store_retry_delay
        self._single_flight = threading.Lock()

    def run(self, stop: threading.Event) -> None:
        logger.info("Worker started (output: %s)", self.output_dir)
        try:
            self._persist(stop, self.queue.recover_stranded)
        except StoreError as e:
            logger.error("Could not recover stranded jobs before shutdown: %s", e)

        while not stop.is_set():
            try:
                if not self.process_next(stop):
                    stop.wait(self.poll_interval)
            except StoreError as e:
                logger.warning("Store unavailable: %s; backing off %gs", e, self.store_retry_delay)
                stop.wait(self.store_retry_delay)
            except Exception:
                logger.exception("Unexpected error in worker loop")
                stop.wait(self.store_retry_delay)

        logger.info("Worker stopped.")

    def process_next(self, stop: threading.Event) -> bool:
        """Claim and run one job. Returns False when no job was eligible."""
        with self._single_flight:
            if stop.is_set():
                return False
            job = self.queue.claim_next()
            if job is None:
                return False
            self._execute(job, stop)
            return True

    def _execute(self, job: Job, stop: threading.Event) -> None:
        safe_notify(self.notifier, job.source_event_id, PROCESSING)
        token = CancellationToken(stop, self.job_timeout)
        try:
            output_path = self.executor.download(job.url, self.output_dir, token)
        except CancellationError as e:
            if e.is_timeout:
                logger.error("Job %s %s", job.id, e)
                self._fail(job, str(e), stop)
            else:
                logger.warning("Job %s cancelled by shutdown", job.id)
                self._fail(job, SHUTDOWN_MESSAGE, stop)
            return
        except Exception as e:
            logger.error("Job %s failed: %s", job.id, e)
            self._fail(job, str(e) or e.__class__.__name__, stop)
            return

        self._persist(stop, self.queue.mark_completed, job.id, output_path)
        safe_notify(self.notifier, job.source_event_id, COMPLETE)
        logger.info("Job %s completed: %s", job.id, output_path)

    def _fail(self, job: Job, message: str, stop: threading.Event) -> None:
        self._persist(stop, self.queue.mark_failed, job.id, message)
        if self._persist(stop, self.queue.retry, job.id):
            return
        safe_notify(self.notifier, job.source_event_id, ERROR)
        logger.warning("Job %s failed permanently: %s", job.id, message)

    def _persist(self, stop: threading.Event, fn, *args):
        """Run a store operation, retrying on StoreError so no write is lost."""
        attempts = 0
        while True:
            try:
                return fn(*args)
            except StoreError as e:
                attempts += 1
                if stop.is_set() and attempts >= STORE_ATTEMPTS_WHILE_STOPPING:
                    logger.error("Giving up on %s after %d attempts: %s", fn.__name__, attempts, e)
                    raise
                logger.warning(
                    "Store error in %s (attempt %d): %s; retrying in %gs",
                    fn.__name__, attempts, e, self.store_retry_delay,
                )
                if stop.is_set():
                    time.sleep(min(self.store_retry_delay, 1.0))
                else:
                    stop.wait(self.store_retry_delay)


def build_worker(store: JobStore, settings: Settings, notifier: Optional[Notifier] = None):
    tunables = Tunables.from_mapping(store.get_config())
    job_queue = JobQueue(store, RetryPolicy(tunables.max_retries, tunables.backoff_base))
    executor = YtDlpExecutor(
        settings.ytdlp_executable,
        format=settings.ytdlp_format,
        config_file=settings.ytdlp_config,
        grace_seconds=tunables.cancel_grace_seconds,
    )
    worker = DownloadWorker(
        job_queue,
        executor,
        notifier=notifier,
        output_dir=settings.output_dir,
        poll_interval=tunables.poll_interval_seconds,
        job_timeout=tunables.job_timeout_seconds or None,
        store_retry_delay=tunables.store_retry_seconds,
    )
    return job_queue, worker, tunables


def run_service(settings: Settings, events: Optional[TextIO] = None, notifier: Optional[Notifier] = None) -> None:
    """Run listener, ingestion and the worker until SIGINT/SIGTERM."""
    store = JobStore(settings.db_path)
    notifier = notifier or LoggingNotifier()
    job_queue, worker, tunables = build_worker(store, settings, notifier)
    channel = EventChannel()
    ingestor = EventIngestor(store, job_queue, notifier=notifier)

    stop = threading.Event()
    setup_signal_handlers(stop)

    if events is not None:
        listener = JsonLinesListener(events, channel)
        # blocking reads on the stream cannot be interrupted; never joined
        threading.Thread(target=listener.run, args=(stop,), name="listener", daemon=True).start()

    ingestion = threading.Thread(
        target=run_ingestion,
        args=(channel, ingestor, stop, tunables.store_retry_seconds),
        name="ingestion",
        daemon=True,
    )
    worker_thread = threading.Thread(target=worker.run, args=(stop,), name="worker", daemon=True)
    ingestion.start()
    worker_thread.start()
    logger.info("dlqueue running (db=%s, output=%s)", settings.db_path, settings.output_dir)

    try:
        while not stop.is_set() and worker_thread.is_alive():
            stop.wait(0.5)
    finally:
        stop.set()
        channel.close()
        ingestion.join()
        worker_thread.join()
        logger.info("All workers stopped gracefully.")
