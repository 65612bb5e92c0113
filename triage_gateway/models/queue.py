"""Queue item, status and run summary models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank: lower ranks are dequeued first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED)


class QueueItem(BaseModel):
    issue_number: int
    repository: str = ""
    priority: Priority = Priority.NORMAL
    status: QueueStatus = QueueStatus.PENDING
    enqueued_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    error: str | None = None


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class EnqueueRequest(BaseModel):
    issue_number: int = Field(..., gt=0)
    priority: Priority = Priority.NORMAL
    repository: str = ""


class ProcessRequest(BaseModel):
    priority: Priority = Priority.URGENT
    repository: str = ""


class RunTrigger(str, Enum):
    CRON = "cron"
    MANUAL = "manual"
    IMMEDIATE = "immediate"


class ImmediateStatus(str, Enum):
    STARTED = "started"
    LOCKED = "locked"
    NO_HANDLER = "no_handler"


class RunSummary(BaseModel):
    """Outcome of one drain run."""

    trigger: RunTrigger
    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    completed: int = 0
    requeued: int = 0
    failed: int = 0
    cancelled: bool = False
    aborted: bool = False
