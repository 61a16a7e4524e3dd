from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import threading
import time
from typing import Callable, List, Optional, Protocol, Tuple

from .diff import SyncPlan, diff_events
from .errors import CalMirrorError, EmptySourceError
from .models import Event, MirrorEvent

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    def fetch_window(self, center: datetime, radius: timedelta) -> List[Event]: ...


class EventMirror(Protocol):
    def list_events(self) -> List[MirrorEvent]: ...

    def create_event(self, event: Event) -> str: ...

    def delete_event(self, mirror_id: str) -> None: ...


@dataclass
class CycleReport:
    started_at: datetime
    planned_deletes: int = 0
    planned_creates: int = 0
    deleted: int = 0
    created: int = 0
    skipped: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SyncDriver:
    """Periodic one-way reconciliation of a mirror against a source.

    A cycle moves through ``fetching``, ``diffing`` and ``applying`` and back
    to ``idle``. At most one cycle runs at a time; a tick that arrives while
    one is in flight is skipped. A failed cycle is logged and the loop
    carries on with the next tick.
    """

    def __init__(
        self,
        source: EventSource,
        mirror: EventMirror,
        window: timedelta,
        interval_seconds: float = 60,
        allow_empty_source: bool = False,
        fetch_timeout: Optional[float] = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.source = source
        self.mirror = mirror
        self.window = window
        self.interval_seconds = interval_seconds
        self.allow_empty_source = allow_empty_source
        self.fetch_timeout = fetch_timeout
        self.dry_run = dry_run
        self.clock = clock
        self.state = "idle"
        self._cycle_lock = threading.Lock()

    def tick(self) -> CycleReport:
        now = self.clock()
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous sync cycle still running; skipping tick at %s", now.isoformat())
            return CycleReport(started_at=now, skipped=True)

        report = CycleReport(started_at=now)
        try:
            self._run_cycle(now, report)
        except CalMirrorError as exc:
            report.error = str(exc)
            logger.error(
                "Sync cycle failed in state %s after %d/%d deletes and %d/%d creates: %s",
                self.state,
                report.deleted,
                report.planned_deletes,
                report.created,
                report.planned_creates,
                exc,
                exc_info=True,
            )
        except Exception as exc:
            report.error = f"{type(exc).__name__}: {exc}"
            logger.exception("Unexpected error in sync cycle (state %s)", self.state)
        finally:
            self.state = "idle"
            self._cycle_lock.release()
        return report

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("Sync loop started, interval %ss, window +/- %s", self.interval_seconds, self.window)
        while not stop_event.is_set():
            started = time.monotonic()
            self.tick()
            remaining = self.interval_seconds - (time.monotonic() - started)
            stop_event.wait(max(0.0, remaining))
        logger.info("Sync loop stopped")

    def _run_cycle(self, now: datetime, report: CycleReport) -> None:
        self.state = "fetching"
        mirror_events, source_events = self._fetch(now)

        self.state = "diffing"
        if not source_events and mirror_events and not self.allow_empty_source:
            raise EmptySourceError(
                f"Source returned no events but the mirror holds {len(mirror_events)}; refusing to clear it"
            )
        plan = diff_events(mirror_events, source_events)
        report.planned_deletes = len(plan.to_delete)
        report.planned_creates = len(plan.to_create)
        logger.info(
            "Plan: %d to delete, %d to create (mirror=%d, source=%d)",
            len(plan.to_delete),
            len(plan.to_create),
            len(mirror_events),
            len(source_events),
        )
        if plan.is_empty:
            return
        if self.dry_run:
            _log_plan(plan)
            return

        self.state = "applying"
        # Deletes first so no create can land next to a stale copy
        for stale in plan.to_delete:
            self.mirror.delete_event(stale.mirror_id)
            report.deleted += 1
        for event in plan.to_create:
            self.mirror.create_event(event)
            report.created += 1

    def _fetch(self, now: datetime) -> Tuple[List[MirrorEvent], List[Event]]:
        pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="calmirror-fetch")
        try:
            mirror_future = pool.submit(self.mirror.list_events)
            source_future = pool.submit(self.source.fetch_window, now, self.window)
            _done, pending = wait([mirror_future, source_future], timeout=self.fetch_timeout)
            if pending:
                raise CalMirrorError(f"Fetching events took longer than {self.fetch_timeout}s")
            mirror_events = mirror_future.result()
            source_events = source_future.result()
        finally:
            pool.shutdown(wait=False)
        return mirror_events, source_events


def _log_plan(plan: SyncPlan) -> None:
    for stale in plan.to_delete:
        logger.info("[dry-run] delete %s %r (%s - %s)", stale.mirror_id, stale.event.summary, stale.event.start, stale.event.end)
    for event in plan.to_create:
        logger.info("[dry-run] create %r (%s - %s)", event.summary, event.start, event.end)
