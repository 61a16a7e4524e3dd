from __future__ import annotations
import logging
import secrets
import string
from typing import Any, List, Optional, Tuple

import requests

from .errors import IdentifierCollisionError, MirrorAuthError, MirrorError
from .ics_codec import DecodeError, decode_calendar, encode_event
from .models import Event, MirrorEvent

ID_ALPHABET = string.ascii_letters + string.digits

logger = logging.getLogger(__name__)


def generate_mirror_id(length: int = 32) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


class CalDavMirror:
    """Mirror calendar addressed with plain GET/PUT/DELETE on a CalDAV collection.

    Events are stored as ``<base_url>/<id>.ics`` where ``id`` is also the UID
    written into the record, so listing the collection yields the ids needed
    for deletes.
    """

    def __init__(
        self,
        base_url: str,
        auth: Optional[Tuple[str, str]] = None,
        timeout: float = 30,
        id_length: int = 32,
        session: Any = None,
        user_agent: str = "calmirror/1.0",
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.id_length = id_length
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})
        if auth:
            self._session.auth = auth

    def event_url(self, mirror_id: str) -> str:
        return f"{self.base_url.rstrip('/')}/{mirror_id}.ics"

    def list_events(self) -> List[MirrorEvent]:
        resp = self._request("GET", self.base_url)
        _raise_for_status(resp, "GET", self.base_url)

        events: List[MirrorEvent] = []
        for record in decode_calendar(resp.content):
            if isinstance(record, DecodeError):
                logger.warning("Skipping malformed mirror event: %s", record)
                continue
            events.append(record)
        logger.info("Fetched %d mirror events from %s", len(events), self.base_url)
        return events

    def create_event(self, event: Event) -> str:
        mirror_id = generate_mirror_id(self.id_length)
        url = self.event_url(mirror_id)
        resp = self._request(
            "PUT",
            url,
            data=encode_event(event, mirror_id),
            headers={
                "Content-Type": "text/calendar; charset=utf-8",
                # Never replace an existing resource
                "If-None-Match": "*",
            },
        )
        if resp.status_code == 412:
            raise IdentifierCollisionError(f"Mirror id {mirror_id} already exists at {url}")
        _raise_for_status(resp, "PUT", url)
        logger.info("Created %r (%s - %s) as %s", event.summary, event.start, event.end, mirror_id)
        return mirror_id

    def delete_event(self, mirror_id: str) -> None:
        url = self.event_url(mirror_id)
        resp = self._request("DELETE", url)
        if resp.status_code in (404, 410):
            logger.info("Mirror event %s already gone", mirror_id)
            return
        _raise_for_status(resp, "DELETE", url)
        logger.info("Deleted mirror event %s", mirror_id)

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            return self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise MirrorError(f"{method} {url} failed: {exc}") from exc


def _raise_for_status(resp: Any, method: str, url: str) -> None:
    if resp.status_code in (401, 403):
        raise MirrorAuthError(f"{method} {url} was rejected with HTTP {resp.status_code}")
    try:
        resp.raise_for_status()
    except requests.HTTPError as exc:
        raise MirrorError(f"{method} {url} failed with HTTP {resp.status_code}") from exc
