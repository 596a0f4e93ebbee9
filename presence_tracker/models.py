from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .duration import Duration


class AuditAction(str, Enum):
    JOIN = "join"
    LEAVE = "leave"


class AccumulationMode(str, Enum):
    # OVERWRITE replaces the stored total with the last session's length.
    OVERWRITE = "overwrite"
    ADDITIVE = "additive"


@dataclass(frozen=True, slots=True)
class OpenSession:
    user_id: str
    entered_at: datetime


@dataclass(frozen=True, slots=True)
class PresenceEvent:
    user_id: str
    username: str
    previous_channel_id: int | None
    new_channel_id: int | None
    occurred_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class AuditEntry:
    username: str
    user_id: str
    action: AuditAction
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class CumulativeTimeRecord:
    user_id: str
    username: str
    cumulative_duration: Duration
    last_updated_at: datetime
