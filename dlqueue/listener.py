import json
import logging
import threading
from typing import Optional, TextIO

from .ingest import EventChannel
from .models import InboundEvent

logger = logging.getLogger(__name__)


class ListenerState:
    IDLE = "idle"
    LISTENING = "listening"
    CLOSED = "closed"
    FAILED = "failed"


def parse_event(line: str) -> InboundEvent:
    """Parse one JSON event line; raises ValueError when it is not usable."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("event must be a JSON object")
    event_id = data.get("event_id")
    if event_id is None or not str(event_id).strip():
        raise ValueError("event_id is required")
    text = data.get("text")
    if not isinstance(text, str):
        raise ValueError("text must be a string")
    channel_id = data.get("channel_id")
    timestamp = data.get("timestamp")
    return InboundEvent(
        event_id=str(event_id),
        channel_id=None if channel_id is None else str(channel_id),
        text=text,
        timestamp=None if timestamp is None else str(timestamp),
    )


class JsonLinesListener:
    """
    Reads inbound events, one JSON object per line, and publishes them to the
    channel. `state()` reports where the listener is; only `run` changes it.
    """

    def __init__(self, stream: TextIO, channel: EventChannel):
        self.stream = stream
        self.channel = channel
        self._state = ListenerState.IDLE
        self._error: Optional[str] = None

    def state(self) -> str:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    def run(self, stop: threading.Event) -> None:
        self._state = ListenerState.LISTENING
        logger.info("Listening for events")
        try:
            for lineno, line in enumerate(self.stream, start=1):
                if stop.is_set() or self.channel.closed:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    event = parse_event(line)
                except ValueError as e:
                    logger.warning("Skipping malformed event on line %d: %s", lineno, e)
                    continue
                self.channel.publish(event)
        except (OSError, ValueError) as e:
            self._error = str(e)
            self._state = ListenerState.FAILED
            logger.error("Event listener failed: %s", e)
            return
        self._state = ListenerState.CLOSED
        logger.info("Event stream closed")
