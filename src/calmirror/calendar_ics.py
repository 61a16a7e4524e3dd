from __future__ import annotations
from datetime import datetime, timedelta
import logging
from typing import Any, List

import requests

from .errors import SourceAuthError, SourceFetchError
from .ics_codec import DecodeError, decode_calendar
from .models import Event, MirrorEvent

logger = logging.getLogger(__name__)


class IcsFeedSource:
    """Source backed by a published iCalendar feed (already expanded)."""

    def __init__(self, url: str, timeout: float = 30, session: Any = None, user_agent: str = "calmirror/1.0") -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})

    def fetch_window(self, center: datetime, radius: timedelta) -> List[Event]:
        try:
            resp = self._session.get(self.url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise SourceFetchError(f"GET {self.url} failed: {exc}") from exc
        if resp.status_code in (401, 403):
            raise SourceAuthError(f"GET {self.url} was rejected with HTTP {resp.status_code}")
        try:
            resp.raise_for_status()
        except requests.HTTPError as exc:
            raise SourceFetchError(f"GET {self.url} failed with HTTP {resp.status_code}") from exc

        try:
            records = decode_calendar(resp.content, require_uid=False, skip_declined=True)
        except DecodeError as exc:
            raise SourceFetchError(f"Feed {self.url} is not a calendar document") from exc

        time_min = center - radius
        time_max = center + radius
        events: List[Event] = []
        for record in records:
            if isinstance(record, DecodeError):
                logger.warning("Skipping malformed feed event: %s", record)
                continue
            event = record.event if isinstance(record, MirrorEvent) else record
            if time_min <= event.start <= time_max:
                events.append(event)

        logger.info("Fetched %d source events from %s", len(events), self.url)
        return events
