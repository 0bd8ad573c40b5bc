"""Google Calendar API client.

Provides the calls the two-way sync needs:
- Resolve the user's primary calendar
- List events in a time window (recurring events expanded to instances)
- Insert events, optionally with a Google Meet link

## API Documentation

https://developers.google.com/calendar/api/v3/reference

## Timeouts

google-api-python-client is synchronous. Requests run in a worker thread
with an httplib2 socket timeout, and the await is additionally bounded by
`asyncio.wait_for`, so a stuck call fails the user's sync instead of
blocking the scheduler.

## Rate Limits

Google Calendar API has quotas:
- 1,000,000 queries per day (default)
- 500 queries per 100 seconds per user

Listing uses the maximum page size (500) to keep the number of calls low.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from personal_crm.calendar.errors import ProviderRequestError
from personal_crm.calendar.store import Credential
from personal_crm.config import get_settings

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable datetime from Google: {value!r}")
        return None


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparseable date from Google: {value!r}")
        return None


@dataclass
class CalendarInfo:
    """Information about a calendar."""

    id: str
    summary: str
    time_zone: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> CalendarInfo:
        """Create from Google Calendar API response."""
        return cls(
            id=data["id"],
            summary=data.get("summary", ""),
            time_zone=data.get("timeZone"),
        )


@dataclass
class ExternalEvent:
    """A Google Calendar event as seen during one sync pass.

    Timed events carry `start`/`end` as aware datetimes; all-day events carry
    `start_date`/`end_date` instead.
    """

    id: str
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    start_date: date | None = None
    end_date: date | None = None
    cancelled: bool = False
    updated: datetime | None = None
    hangout_link: str | None = None
    attendees: list[str] = field(default_factory=list)
    raw_data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_all_day(self) -> bool:
        return self.start is None and self.start_date is not None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ExternalEvent:
        """Create from Google Calendar API response.

        Malformed times are kept as None; the translator decides whether the
        event is usable.
        """
        start_data = data.get("start") or {}
        end_data = data.get("end") or {}

        hangout_link = data.get("hangoutLink")
        if not hangout_link:
            # Non-Meet conferencing (Zoom add-on etc.) only shows up here
            for entry in (data.get("conferenceData") or {}).get("entryPoints", []):
                if entry.get("entryPointType") == "video" and entry.get("uri"):
                    hangout_link = entry["uri"]
                    break

        return cls(
            id=data["id"],
            summary=data.get("summary"),
            description=data.get("description"),
            location=data.get("location"),
            start=_parse_datetime(start_data.get("dateTime")),
            end=_parse_datetime(end_data.get("dateTime")),
            start_date=_parse_date(start_data.get("date")),
            end_date=_parse_date(end_data.get("date")),
            cancelled=data.get("status") == "cancelled",
            updated=_parse_datetime(data.get("updated")),
            hangout_link=hangout_link,
            attendees=[
                attendee["email"]
                for attendee in data.get("attendees", [])
                if attendee.get("email")
            ],
            raw_data=data,
        )


@dataclass
class InsertedEvent:
    """Result of creating an event in Google Calendar."""

    external_id: str
    conferencing_link: str | None = None


class CalendarClient(ABC):
    """Calendar operations the sync depends on."""

    @abstractmethod
    async def primary_calendar(self) -> CalendarInfo:
        """Resolve the user's primary calendar."""

    @abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[ExternalEvent]:
        """List non-cancelled event instances in a window, ordered by start."""

    @abstractmethod
    async def insert_event(
        self,
        calendar_id: str,
        body: dict[str, Any],
    ) -> InsertedEvent:
        """Create an event and return its Google id."""


CalendarClientFactory = Callable[[Credential], CalendarClient]


class GoogleCalendarClient(CalendarClient):
    """Client for Google Calendar API.

    Example:
        ```python
        client = GoogleCalendarClient(credential.access_token)

        events = await client.list_events("primary", time_min, time_max)
        created = await client.insert_event("primary", body)
        ```
    """

    def __init__(
        self,
        access_token: str,
        timeout: float | None = None,
        page_size: int | None = None,
        service: Any = None,
    ):
        """Initialize the client.

        Args:
            access_token: Valid OAuth access token (refresh happens upstream)
            timeout: Per-request timeout in seconds
            page_size: Events per page, capped at 500
            service: Prebuilt discovery service (tests)
        """
        settings = get_settings()
        self.timeout = timeout or settings.google_request_timeout_seconds
        self.page_size = min(page_size or settings.google_calendar_page_size, MAX_PAGE_SIZE)

        if service is None:
            credentials = Credentials(token=access_token)
            http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=self.timeout))
            service = build("calendar", "v3", http=http, cache_discovery=False)
        self._service = service

    @classmethod
    def for_credential(cls, credential: Credential) -> GoogleCalendarClient:
        """Client factory used by the sync service and scheduler."""
        return cls(credential.access_token)

    async def _execute(self, request: Any, action: str) -> dict[str, Any]:
        """Run a discovery request off the event loop with a bounded wait."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(request.execute),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderRequestError(
                f"{action} timed out after {self.timeout:g}s"
            ) from e
        except HttpError as e:
            raise ProviderRequestError(
                f"{action} failed: {e.reason}", status=e.resp.status
            ) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise ProviderRequestError(f"{action} failed: {e}") from e

    async def primary_calendar(self) -> CalendarInfo:
        result = await self._execute(
            self._service.calendarList().get(calendarId="primary"),
            "Get primary calendar",
        )
        return CalendarInfo.from_api(result)

    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[ExternalEvent]:
        """List events from a calendar.

        Args:
            calendar_id: Calendar ID
            time_min: Lower bound (exclusive) on event end time
            time_max: Upper bound (exclusive) on event start time

        Returns:
            Non-cancelled events ordered by start time
        """
        events = []
        page_token = None

        params: dict[str, Any] = {
            "calendarId": calendar_id,
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "maxResults": self.page_size,
            "singleEvents": True,  # Expand recurring events
            "orderBy": "startTime",
        }

        while True:
            if page_token:
                params["pageToken"] = page_token

            result = await self._execute(
                self._service.events().list(**params),
                f"List events of {calendar_id}",
            )

            for item in result.get("items", []):
                if item.get("status") == "cancelled":
                    continue
                events.append(ExternalEvent.from_api(item))

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return events

    async def insert_event(
        self,
        calendar_id: str,
        body: dict[str, Any],
    ) -> InsertedEvent:
        """Create an event.

        `conferenceDataVersion=1` is always sent so that a
        `conferenceData.createRequest` in the body produces a Meet link.
        """
        result = await self._execute(
            self._service.events().insert(
                calendarId=calendar_id,
                body=body,
                conferenceDataVersion=1,
            ),
            f"Insert event into {calendar_id}",
        )
        return InsertedEvent(
            external_id=result["id"],
            conferencing_link=result.get("hangoutLink"),
        )
