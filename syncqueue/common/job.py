# syncqueue/common/job.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Optional, Any

from syncqueue.common.states import PendingState


def as_utc(value: Optional[datetime]) -> datetime:
    """Returns ``value`` as an aware UTC datetime, or the current time for None.

    Naive datetimes are taken to already be in UTC.
    """
    if value is None:
        return datetime.now(UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass
class Job:
    """
    A unit of schedulable work in the sync queue.

    ``options`` and ``result`` are opaque JSON-compatible payloads; the queue
    never looks inside them.
    """

    # Discriminator for the work to perform ("court", "judge", ...)
    type: str
    options: Any = field(default_factory=dict)

    status: str = PendingState.NAME
    priority: int = 0
    scheduled_for: Optional[datetime] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error_message: Optional[str] = None

    retry_count: int = 0
    max_retries: int = 3

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = as_utc(self.created_at)
        self.scheduled_for = as_utc(self.scheduled_for or self.created_at)
        self.updated_at = as_utc(self.updated_at or self.created_at)

    @property
    def retries_remaining(self) -> int:
        return max(self.max_retries - self.retry_count, 0)
