from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Tuple

EventKey = Tuple[datetime, datetime, str]


@dataclass(frozen=True)
class Event:
    start: datetime             # timezone-aware
    end: datetime               # timezone-aware
    summary: str


@dataclass(frozen=True)
class MirrorEvent:
    event: Event
    mirror_id: str              # resource name on the mirror, not part of equality


def event_key(event: Event) -> EventKey:
    """Identity used for diffing: exact start, end and summary, no tolerance."""
    return (
        event.start.astimezone(timezone.utc),
        event.end.astimezone(timezone.utc),
        event.summary,
    )
