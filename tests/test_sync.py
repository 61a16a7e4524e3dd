import threading
import time
from datetime import datetime, timedelta, timezone

from calmirror.errors import MirrorError, SourceFetchError
from calmirror.models import Event, MirrorEvent
from calmirror.sync import SyncDriver

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
WINDOW = timedelta(days=7)


def _event(summary: str, start_hour: int, end_hour: int) -> Event:
    day = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Event(start=day + timedelta(hours=start_hour), end=day + timedelta(hours=end_hour), summary=summary)


class StubSource:
    def __init__(self, events=None, error=None):
        self.events = list(events or [])
        self.error = error
        self.calls = []

    def fetch_window(self, center, radius):
        self.calls.append((center, radius))
        if self.error:
            raise self.error
        return list(self.events)


class InMemoryMirror:
    def __init__(self, events=(), fail_on_create=None):
        self.store = {f"id{i}": e for i, e in enumerate(events)}
        self.ops = []
        self.fail_on_create = fail_on_create
        self._next = len(self.store)

    def list_events(self):
        return [MirrorEvent(event=e, mirror_id=i) for i, e in self.store.items()]

    def create_event(self, event):
        if self.fail_on_create is not None and event.summary == self.fail_on_create:
            raise MirrorError(f"PUT for {event.summary} failed")
        mirror_id = f"id{self._next}"
        self._next += 1
        self.store[mirror_id] = event
        self.ops.append(("create", event.summary))
        return mirror_id

    def delete_event(self, mirror_id):
        self.ops.append(("delete", self.store[mirror_id].summary))
        self.store.pop(mirror_id, None)


def _driver(source, mirror, **kwargs):
    return SyncDriver(source, mirror, window=WINDOW, clock=lambda: NOW, **kwargs)


def test_cycle_applies_deletes_before_creates():
    mirror = InMemoryMirror([_event("Old", 8, 9), _event("Standup", 10, 11)])
    source = StubSource([_event("Standup", 10, 11), _event("Lunch", 12, 13)])

    report = _driver(source, mirror).tick()

    assert report.ok
    assert (report.deleted, report.created) == (1, 1)
    assert mirror.ops == [("delete", "Old"), ("create", "Lunch")]
    assert sorted(e.summary for e in mirror.store.values()) == ["Lunch", "Standup"]
    assert source.calls == [(NOW, WINDOW)]


def test_second_cycle_is_a_no_op():
    mirror = InMemoryMirror([_event("Standup", 10, 11)])
    source = StubSource([_event("Standup", 10, 11), _event("Lunch", 12, 13)])
    driver = _driver(source, mirror)

    driver.tick()
    mirror.ops.clear()
    report = driver.tick()

    assert report.ok
    assert (report.planned_deletes, report.planned_creates) == (0, 0)
    assert mirror.ops == []


def test_failed_source_fetch_applies_nothing():
    mirror = InMemoryMirror([_event("Standup", 10, 11)])
    driver = _driver(StubSource(error=SourceFetchError("HTTP 500")), mirror)

    report = driver.tick()

    assert not report.ok
    assert "HTTP 500" in report.error
    assert mirror.ops == []
    assert driver.state == "idle"


def test_empty_source_does_not_clear_mirror_by_default():
    mirror = InMemoryMirror([_event("Standup", 10, 11)])

    report = _driver(StubSource([]), mirror).tick()

    assert not report.ok
    assert mirror.ops == []
    assert len(mirror.store) == 1


def test_empty_source_clears_mirror_when_allowed():
    mirror = InMemoryMirror([_event("Standup", 10, 11)])

    report = _driver(StubSource([]), mirror, allow_empty_source=True).tick()

    assert report.ok
    assert mirror.ops == [("delete", "Standup")]


def test_write_failure_stops_cycle_and_next_tick_recovers():
    mirror = InMemoryMirror([_event("Old", 8, 9)], fail_on_create="Lunch")
    source = StubSource([_event("Lunch", 12, 13)])
    driver = _driver(source, mirror)

    first = driver.tick()

    assert not first.ok
    assert first.deleted == 1
    assert first.created == 0

    mirror.fail_on_create = None
    second = driver.tick()

    assert second.ok
    assert second.created == 1
    assert [e.summary for e in mirror.store.values()] == ["Lunch"]


def test_unexpected_errors_do_not_escape_tick():
    class BrokenMirror(InMemoryMirror):
        def list_events(self):
            raise KeyError("boom")

    report = _driver(StubSource([_event("Lunch", 12, 13)]), BrokenMirror()).tick()

    assert not report.ok
    assert "KeyError" in report.error


def test_dry_run_computes_plan_without_writing():
    mirror = InMemoryMirror([_event("Old", 8, 9)])

    report = _driver(StubSource([_event("Lunch", 12, 13)]), mirror, dry_run=True).tick()

    assert report.ok
    assert (report.planned_deletes, report.planned_creates) == (1, 1)
    assert mirror.ops == []


def test_tick_is_skipped_while_a_cycle_is_in_flight():
    started = threading.Event()
    release = threading.Event()

    class SlowSource(StubSource):
        def fetch_window(self, center, radius):
            started.set()
            release.wait(5)
            return super().fetch_window(center, radius)

    mirror = InMemoryMirror()
    driver = _driver(SlowSource([_event("Lunch", 12, 13)]), mirror)
    results = []
    worker = threading.Thread(target=lambda: results.append(driver.tick()))
    worker.start()
    assert started.wait(5)

    skipped = driver.tick()
    release.set()
    worker.join(5)

    assert skipped.skipped
    assert not skipped.ok
    assert results[0].ok
    assert mirror.ops == [("create", "Lunch")]


def test_run_forever_stops_between_cycles():
    stop = threading.Event()
    mirror = InMemoryMirror()

    class StoppingSource(StubSource):
        def fetch_window(self, center, radius):
            stop.set()
            return super().fetch_window(center, radius)

    source = StoppingSource([_event("Lunch", 12, 13)])
    _driver(source, mirror, interval_seconds=3600).run_forever(stop)

    assert len(source.calls) == 1
    assert mirror.ops == [("create", "Lunch")]


def test_both_fetches_share_one_deadline():
    release = threading.Event()

    class SlowMirror(InMemoryMirror):
        def list_events(self):
            time.sleep(0.3)
            return super().list_events()

    class HangingSource(StubSource):
        def fetch_window(self, center, radius):
            release.wait(0.6)
            return super().fetch_window(center, radius)

    mirror = SlowMirror()
    driver = _driver(HangingSource([_event("Lunch", 12, 13)]), mirror, fetch_timeout=0.4)
    started = time.monotonic()
    try:
        report = driver.tick()
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert not report.ok
    assert "longer than 0.4s" in report.error
    assert elapsed < 0.55
    assert mirror.ops == []
