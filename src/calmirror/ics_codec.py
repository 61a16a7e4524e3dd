"""iCalendar decoding and encoding for mirror and feed documents.

Every timestamp is resolved to an absolute UTC instant. Values ending in
``Z`` are already absolute; anything else must carry a ``TZID`` naming an
IANA zone and is interpreted as wall-clock time in that zone. Wall-clock
values that fall into a DST gap or fold are rejected instead of guessed.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar
from icalendar import Event as ICalEvent

from .errors import CalMirrorError
from .models import Event, MirrorEvent

PRODID = "-//calmirror//calmirror 1.0//EN"
UTC_FORMAT = "%Y%m%dT%H%M%SZ"
LOCAL_FORMAT = "%Y%m%dT%H%M%S"


class DecodeError(CalMirrorError):
    """A calendar record (or the whole document) could not be decoded."""

    def __init__(self, message: str, *, uid: Optional[str] = None, prop: Optional[str] = None) -> None:
        self.message = message
        self.uid = uid
        self.prop = prop
        context = []
        if prop:
            context.append(prop)
        if uid:
            context.append(f"event {uid}")
        prefix = " of ".join(context)
        super().__init__(f"{prefix}: {message}" if prefix else message)


class AmbiguousLocalTime(DecodeError):
    """Wall-clock time maps to zero or two instants in its zone."""


DecodedRecord = Union[MirrorEvent, Event, DecodeError]


def resolve_timestamp(raw_value: str, tzid: Optional[str] = None) -> datetime:
    """Resolve a DATE-TIME value to an aware UTC datetime."""
    raw_value = raw_value.strip()
    if raw_value.endswith("Z"):
        try:
            return datetime.strptime(raw_value, UTC_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError as exc:
            raise DecodeError(f"invalid UTC timestamp {raw_value!r}") from exc

    if not tzid:
        raise DecodeError(f"timestamp {raw_value!r} has neither a UTC marker nor a TZID")
    try:
        zone = ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise DecodeError(f"unknown timezone {tzid!r}") from exc
    try:
        local = datetime.strptime(raw_value, LOCAL_FORMAT)
    except ValueError as exc:
        raise DecodeError(f"invalid local timestamp {raw_value!r}") from exc
    return _localize(local, zone)


def _localize(local: datetime, zone: ZoneInfo) -> datetime:
    earlier = local.replace(tzinfo=zone, fold=0)
    later = local.replace(tzinfo=zone, fold=1)
    if earlier.utcoffset() != later.utcoffset():
        round_trip = earlier.astimezone(timezone.utc).astimezone(zone).replace(tzinfo=None)
        kind = "does not exist" if round_trip != local else "is ambiguous"
        raise AmbiguousLocalTime(f"{local.isoformat()} {kind} in {zone.key}")
    return earlier.astimezone(timezone.utc)


def first_attendee_status(component: Any) -> Optional[str]:
    attendees = component.get("ATTENDEE")
    if attendees is None:
        return None
    if not isinstance(attendees, list):
        attendees = [attendees]
    if not attendees:
        return None
    status = getattr(attendees[0], "params", {}).get("PARTSTAT")
    return str(status).upper() if status else None


def _text(component: Any, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    return str(value)


def _resolve_property(component: Any, name: str, uid: Optional[str]) -> datetime:
    prop = component.get(name)
    if prop is None:
        raise DecodeError("missing required property", uid=uid, prop=name)
    raw = prop.to_ical()
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    tzid = prop.params.get("TZID")
    try:
        return resolve_timestamp(raw, str(tzid) if tzid else None)
    except DecodeError as exc:
        raise type(exc)(exc.message, uid=uid, prop=name) from exc


def _decode_event(
    component: Any,
    require_uid: bool,
    skip_declined: bool,
) -> Optional[Union[MirrorEvent, Event]]:
    uid = _text(component, "UID")

    dtstart = component.get("DTSTART")
    if dtstart is None:
        raise DecodeError("missing required property", uid=uid, prop="DTSTART")
    # All-day events have a DATE start; neither side mirrors them
    if not isinstance(dtstart.dt, datetime):
        return None

    if skip_declined and first_attendee_status(component) == "DECLINED":
        return None

    if require_uid and not uid:
        raise DecodeError("missing required property", prop="UID")
    summary = _text(component, "SUMMARY")
    if summary is None:
        raise DecodeError("missing required property", uid=uid, prop="SUMMARY")

    event = Event(
        start=_resolve_property(component, "DTSTART", uid),
        end=_resolve_property(component, "DTEND", uid),
        summary=summary,
    )
    if uid:
        return MirrorEvent(event=event, mirror_id=uid)
    return event


def decode_calendar(
    raw: Union[str, bytes],
    require_uid: bool = True,
    skip_declined: bool = False,
) -> List[DecodedRecord]:
    """Decode every timed VEVENT of ``raw``.

    Malformed events come back as ``DecodeError`` instances in place of the
    record so callers can report them and keep the rest of the document.
    Raises ``DecodeError`` only when the document itself cannot be parsed.
    """
    try:
        calendars = Calendar.from_ical(raw, multiple=True)
    except ValueError as exc:
        raise DecodeError(f"calendar document could not be parsed: {exc}") from exc

    records: List[DecodedRecord] = []
    for calendar in calendars:
        for component in calendar.walk("VEVENT"):
            try:
                record = _decode_event(component, require_uid, skip_declined)
            except DecodeError as exc:
                records.append(exc)
                continue
            if record is not None:
                records.append(record)
    return records


def _as_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(microsecond=0)


def encode_event(event: Event, uid: str) -> bytes:
    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")

    vevent = ICalEvent()
    vevent.add("uid", uid)
    vevent.add("summary", event.summary)
    vevent.add("dtstart", _as_utc(event.start))
    vevent.add("dtend", _as_utc(event.end))
    cal.add_component(vevent)
    return cal.to_ical()
