"""
Event ingestion: inbound text events become queued download jobs.

Listeners publish events into an EventChannel; a single consumer drains it
and hands each event to EventIngestor. Deduplication is by event id, backed
by the processed_events table, so redelivered events are no-ops even across
restarts.
"""
import logging
import queue
import threading
from typing import Callable, List, Optional

from .errors import StoreError, ValidationError
from .jobqueue import JobQueue
from .models import InboundEvent, SEEN
from .notify import Notifier, safe_notify
from .store import JobStore
from .urls import extract_urls

logger = logging.getLogger(__name__)


class EventIngestor:
    def __init__(
        self,
        store: JobStore,
        job_queue: JobQueue,
        extractor: Callable[[str], List[str]] = extract_urls,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store
        self.queue = job_queue
        self.extractor = extractor
        self.notifier = notifier

    def handle(self, event: InboundEvent) -> List[str]:
        """
        Enqueue a job per unique URL in the event; returns the new job ids.

        The jobs and the processed marker are written in one transaction, so
        replaying an event after a store error never duplicates its jobs.
        """
        event_id = str(event.event_id)
        if self.store.is_event_processed(event_id):
            logger.debug("Event %s already processed; skipping", event_id)
            return []

        urls = self.extractor(event.text or "")
        jobs = []
        for url in urls:
            try:
                jobs.append(self.queue.new_job(event_id, url))
            except ValidationError as e:
                logger.warning("Skipping URL %r from event %s: %s", url, event_id, e)

        if not self.store.record_event(event_id, event.channel_id, jobs):
            logger.debug("Event %s recorded concurrently; skipping", event_id)
            return []

        if not urls:
            logger.debug("No URLs found in event %s", event_id)
            return []
        logger.info("Found %d URL(s) in event %s", len(urls), event_id)
        for job in jobs:
            logger.info("Enqueued job %s for event %s: %s", job.id, event_id, job.url)
        safe_notify(self.notifier, event_id, SEEN)
        return [job.id for job in jobs]


class EventChannel:
    """Bounded hand-off between listeners and the ingestion consumer."""

    def __init__(self, maxsize: int = 1000):
        self._queue = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def publish(self, event: InboundEvent, timeout: Optional[float] = None) -> bool:
        if self.closed:
            logger.warning("Channel closed; dropping event %s", event.event_id)
            return False
        try:
            self._queue.put(event, timeout=timeout)
        except queue.Full:
            logger.warning("Channel full; dropping event %s", event.event_id)
            return False
        return True

    def receive(self, timeout: float = 0.5) -> Optional[InboundEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._closed.set()

    def pending(self) -> int:
        return self._queue.qsize()


def run_ingestion(
    channel: EventChannel,
    ingestor: EventIngestor,
    stop: threading.Event,
    retry_delay: float = 5.0,
) -> None:
    """Consume events until `stop` is set. Store failures are retried, not dropped."""
    logger.info("Ingestion started")
    while not stop.is_set():
        event = channel.receive()
        if event is None:
            continue
        while True:
            try:
                ingestor.handle(event)
                break
            except StoreError as e:
                logger.warning("Store error ingesting event %s: %s; retrying in %gs",
                               event.event_id, e, retry_delay)
                if stop.wait(retry_delay):
                    # unmarked events are redelivered after restart
                    logger.warning("Shutdown while retrying event %s; leaving it unprocessed",
                                   event.event_id)
                    break
            except Exception:
                logger.exception("Unexpected error ingesting event %s", event.event_id)
                break
    logger.info("Ingestion stopped (%d event(s) left in channel)", channel.pending())
