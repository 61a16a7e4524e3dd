from __future__ import annotations
from datetime import datetime, timedelta, timezone
import logging
import os
from typing import Any, Dict, List, Optional

import httplib2
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .errors import SourceAuthError, SourceFetchError
from .models import Event

SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]
MAX_RESULTS = 2500

logger = logging.getLogger(__name__)


def _get_creds(credentials_path: str, token_path: str) -> Credentials:
    creds: Optional[Credentials] = None
    if os.path.exists(token_path):
        creds = Credentials.from_authorized_user_file(token_path, SCOPES)
    if creds and creds.valid:
        return creds

    if creds and creds.expired and creds.refresh_token:
        creds.refresh(Request())
    else:
        flow = InstalledAppFlow.from_client_secrets_file(credentials_path, SCOPES)
        creds = flow.run_local_server(port=0)
    os.makedirs(os.path.dirname(token_path) or ".", exist_ok=True)
    with open(token_path, "w", encoding="utf-8") as f:
        f.write(creds.to_json())
    return creds


def _parse_api_datetime(value: str) -> datetime:
    # RFC 3339 from the API; fromisoformat only learned "Z" in 3.11
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value).astimezone(timezone.utc)


def _is_declined(item: Dict[str, Any]) -> bool:
    # Only the first attendee counts: the calendar owner is assumed to be the single relevant attendee.
    attendees = item.get("attendees") or []
    if not attendees:
        return False
    return attendees[0].get("responseStatus") == "declined"


def event_from_api_item(item: Dict[str, Any]) -> Optional[Event]:
    """Normalize one ``events.list`` item, or None when it is not mirrored."""
    start_obj = item.get("start") or {}
    end_obj = item.get("end") or {}

    # All-day events have "date" not "dateTime"
    if "dateTime" not in start_obj or "dateTime" not in end_obj:
        return None
    summary = item.get("summary")
    if summary is None:
        logger.debug("Skipping untitled source event %s", item.get("id"))
        return None
    if _is_declined(item):
        return None

    return Event(
        start=_parse_api_datetime(start_obj["dateTime"]),
        end=_parse_api_datetime(end_obj["dateTime"]),
        summary=summary,
    )


class GoogleCalendarSource:
    """Reads expanded single events from one Google calendar."""

    def __init__(
        self,
        calendar_id: str,
        credentials_path: str = "",
        token_path: str = "",
        service: Any = None,
        timeout: float = 30,
    ) -> None:
        self.calendar_id = calendar_id
        self.credentials_path = credentials_path
        self.token_path = token_path
        self.timeout = timeout
        self._service = service

    def connect(self) -> None:
        """Resolve credentials and build the API client.

        May run the interactive OAuth flow; call it before the sync loop starts.
        """
        if self._service is not None:
            return
        try:
            creds = _get_creds(self.credentials_path, self.token_path)
        except RefreshError as exc:
            raise SourceAuthError(f"Google credentials for {self.calendar_id} could not be refreshed") from exc
        except (OSError, ValueError) as exc:
            raise SourceAuthError(f"Google credentials for {self.calendar_id} could not be loaded: {exc}") from exc
        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=self.timeout))
        self._service = build("calendar", "v3", http=http, cache_discovery=False)

    @property
    def service(self) -> Any:
        if self._service is None:
            raise SourceAuthError(f"Google source for {self.calendar_id} is not connected")
        return self._service

    def fetch_window(self, center: datetime, radius: timedelta) -> List[Event]:
        time_min = center - radius
        time_max = center + radius
        items = self._list_items(time_min, time_max)

        events: List[Event] = []
        for item in items:
            event = event_from_api_item(item)
            if event is None:
                continue
            # The API matches on overlap; the window is defined on start time.
            if not (time_min <= event.start <= time_max):
                continue
            events.append(event)

        logger.info(
            "Fetched %d source events from %s (%d raw items)",
            len(events),
            self.calendar_id,
            len(items),
        )
        return events

    def _list_items(self, time_min: datetime, time_max: datetime) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page_token = None
        while True:
            try:
                resp = self.service.events().list(
                    calendarId=self.calendar_id,
                    timeMin=time_min.isoformat(),
                    timeMax=time_max.isoformat(),
                    eventTypes="default",
                    maxResults=MAX_RESULTS,
                    maxAttendees=1,
                    singleEvents=True,
                    orderBy="startTime",
                    pageToken=page_token,
                ).execute()
            except HttpError as exc:
                status = getattr(exc.resp, "status", None)
                if status in (401, 403):
                    raise SourceAuthError(f"Not authorized to list events of {self.calendar_id}") from exc
                raise SourceFetchError(f"Listing events of {self.calendar_id} failed (HTTP {status})") from exc
            except RefreshError as exc:
                raise SourceAuthError(f"Google credentials for {self.calendar_id} could not be refreshed") from exc
            except (OSError, httplib2.HttpLib2Error) as exc:
                raise SourceFetchError(f"Listing events of {self.calendar_id} failed: {exc}") from exc

            page_items = resp.get("items")
            if page_items is None:
                raise SourceFetchError(f"Response for {self.calendar_id} carried no event list")
            items.extend(page_items)

            page_token = resp.get("nextPageToken")
            if not page_token:
                break
        return items
