from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum

from .clock import weekend_span


class WeekendStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SessionStatus(str, Enum):
    PENDING = "pending"
    NOTIFIED = "notified"
    STARTED = "started"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Weekend:
    id: int
    name: str
    series: str
    start_date: date
    status: WeekendStatus
    created_at: datetime

    def contains(self, when: datetime) -> bool:
        start, end = weekend_span(self.start_date)
        return start <= when < end


@dataclass(frozen=True)
class Session:
    id: int
    weekend_id: int
    start_time: datetime
    name: str
    duration: int  # secondes
    notify: str    # encodage brut des paliers, voir domain.tiers
    status: SessionStatus
    created_at: datetime

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(seconds=self.duration)


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    message_id: str
    channel_id: str
    kind: str
    series: str
    expires_at: datetime
    created_at: datetime
