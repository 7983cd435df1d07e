import json
import logging
import threading
from typing import Optional, Protocol, TextIO

from .models import SEEN, PROCESSING, COMPLETE, ERROR, NOTIFICATION_TAGS
from .utils import now_iso

logger = logging.getLogger(__name__)

STATUS_EMOJIS = {
    SEEN: "👀",
    PROCESSING: "⚙️",
    COMPLETE: "✅",
    ERROR: "❌",
}


class Notifier(Protocol):
    def notify(self, event_id: str, tag: str) -> None:
        ...


def _check_tag(tag: str) -> None:
    if tag not in NOTIFICATION_TAGS:
        raise ValueError(f"Unknown status tag {tag!r}; expected one of {', '.join(NOTIFICATION_TAGS)}")


class LoggingNotifier:
    def notify(self, event_id: str, tag: str) -> None:
        _check_tag(tag)
        logger.info("Event %s -> %s %s", event_id, STATUS_EMOJIS[tag], tag)


class JsonLinesNotifier:
    """Writes one JSON status line per notification, for an external transport to apply."""

    def __init__(self, stream: TextIO):
        self.stream = stream
        self._lock = threading.Lock()

    def notify(self, event_id: str, tag: str) -> None:
        _check_tag(tag)
        line = json.dumps(
            {"event_id": event_id, "status": tag, "emoji": STATUS_EMOJIS[tag], "at": now_iso()},
            ensure_ascii=False,
        )
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()


def safe_notify(notifier: Optional[Notifier], event_id: str, tag: str) -> bool:
    """Best-effort delivery: failures are logged and never propagate."""
    if notifier is None:
        return False
    try:
        notifier.notify(event_id, tag)
        return True
    except Exception as e:
        logger.warning("Failed to send %s notification for event %s: %s", tag, event_id, e)
        return False
