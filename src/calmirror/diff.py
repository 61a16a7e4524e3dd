from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Sequence

from .models import Event, MirrorEvent, event_key


@dataclass(frozen=True)
class SyncPlan:
    to_delete: List[MirrorEvent] = field(default_factory=list)
    to_create: List[Event] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_delete and not self.to_create


def diff_events(mirror: Sequence[MirrorEvent], source: Sequence[Event]) -> SyncPlan:
    """Compute the writes that make ``mirror`` equal ``source`` by value.

    A retimed or retitled event shows up as one delete plus one create;
    identifiers never take part in matching. Content-identical source events
    are created once.
    """
    source_keys = {event_key(e) for e in source}
    mirror_keys = {event_key(m.event) for m in mirror}

    to_delete = [m for m in mirror if event_key(m.event) not in source_keys]

    to_create: List[Event] = []
    staged = set()
    for e in source:
        key = event_key(e)
        if key in mirror_keys or key in staged:
            continue
        staged.add(key)
        to_create.append(e)

    return SyncPlan(to_delete=to_delete, to_create=to_create)
