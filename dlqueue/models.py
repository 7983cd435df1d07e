from dataclasses import dataclass
from typing import Optional

# Job states
QUEUED = "Queued"
IN_PROGRESS = "InProgress"
COMPLETED = "Completed"
FAILED = "Failed"

JOB_STATES = (QUEUED, IN_PROGRESS, COMPLETED, FAILED)

# Notification tags
SEEN = "seen"
PROCESSING = "processing"
COMPLETE = "complete"
ERROR = "error"

NOTIFICATION_TAGS = (SEEN, PROCESSING, COMPLETE, ERROR)


@dataclass
class Job:
    id: str
    source_event_id: str
    url: str
    status: str = QUEUED
    created_at: str = ""
    updated_at: str = ""
    available_at: str = ""
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    output_path: Optional[str] = None
    retry_count: int = 0

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            source_event_id=row["source_event_id"],
            url=row["url"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            available_at=row["available_at"],
            completed_at=row["completed_at"],
            error_message=row["error_message"],
            output_path=row["output_path"],
            retry_count=row["retry_count"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_event_id": self.source_event_id,
            "url": self.url,
            "status": self.status,
            "created_at": self.created_at,
            "available_at": self.available_at,
            "completed_at": self.completed_at,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "output_path": self.output_path,
        }


@dataclass(frozen=True)
class QueueStats:
    queued_count: int = 0
    in_progress_count: int = 0
    completed_count: int = 0
    failed_count: int = 0

    def to_dict(self) -> dict:
        return {
            "queued": self.queued_count,
            "in_progress": self.in_progress_count,
            "completed": self.completed_count,
            "failed": self.failed_count,
        }


@dataclass(frozen=True)
class InboundEvent:
    event_id: str
    channel_id: str
    text: str
    timestamp: Optional[str] = None
