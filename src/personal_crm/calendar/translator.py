"""Translation between local calendar events and Google Calendar events.

Local events store naive start/end times in the owner's timezone. Google
events carry absolute instants (or dates for all-day events). Conversion
always goes through the user's explicit zone, never the process timezone.

## Google → local

- Missing title becomes "Untitled"
- A conferencing link makes the event a VIDEO_CALL
- Otherwise a location mentioning "call" makes it a CALL
- Otherwise it is a MEETING
- All-day events start and end at local midnight
- Cancelled events are never translated

## Local → Google

- Times are sent as RFC3339 instants together with the zone name
- VIDEO_CALL events ask Google to create a Meet link
- Attendees are sent in order, duplicates included
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from personal_crm.calendar.errors import TranslationError
from personal_crm.calendar.google_calendar import ExternalEvent
from personal_crm.config import get_settings
from personal_crm.database.models import CalendarEvent, EventStatus, EventType

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled"
MEET_SOLUTION_TYPE = "hangoutsMeet"


def user_zone(name: str | None) -> ZoneInfo:
    """Resolve a user's timezone, falling back to the configured default."""
    default = get_settings().default_timezone
    try:
        return ZoneInfo(name or default)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using {default}")
        return ZoneInfo(default)


def to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    """Convert an instant to naive local time in `tz`."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(tz).replace(tzinfo=None)


def to_instant(local: datetime, tz: ZoneInfo) -> datetime:
    """Interpret a naive local time in `tz`."""
    if local.tzinfo is not None:
        return local
    return local.replace(tzinfo=tz)


def event_span(external: ExternalEvent, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Absolute start and end of a Google event.

    All-day dates are anchored at midnight in `tz`. A missing end collapses
    to the start.

    Raises:
        TranslationError: If the event has no usable start
    """
    if external.start is not None:
        start = external.start
    elif external.start_date is not None:
        start = datetime.combine(external.start_date, time.min, tzinfo=tz)
    else:
        raise TranslationError(
            f"Event {external.id} has no start time", external_id=external.id
        )

    if external.end is not None:
        end = external.end
    elif external.end_date is not None:
        end = datetime.combine(external.end_date, time.min, tzinfo=tz)
    else:
        end = start

    return start, end


def infer_event_type(external: ExternalEvent) -> EventType:
    if external.hangout_link:
        return EventType.VIDEO_CALL
    if external.location and "call" in external.location.lower():
        return EventType.CALL
    return EventType.MEETING


def from_external(
    external: ExternalEvent,
    user_id: uuid.UUID,
    calendar_id: str,
    tz: ZoneInfo,
) -> CalendarEvent:
    """Create a new local event from a Google event."""
    if external.cancelled:
        raise TranslationError(
            f"Event {external.id} is cancelled", external_id=external.id
        )

    start, end = event_span(external, tz)

    return CalendarEvent(
        user_id=user_id,
        external_id=external.id,
        external_calendar_id=calendar_id,
        title=external.summary or DEFAULT_TITLE,
        description=external.description,
        location=external.location,
        start_time=to_local(start, tz),
        end_time=to_local(end, tz),
        type=infer_event_type(external).value,
        status=EventStatus.SCHEDULED.value,
        meet_link=external.hangout_link,
        attendees=list(external.attendees),
    )


def apply_external(event: CalendarEvent, external: ExternalEvent, tz: ZoneInfo) -> None:
    """Overwrite the Google-owned fields of an existing local event.

    Type and status stay as the local side set them; a conferencing link is
    only ever added or replaced, never cleared.
    """
    if external.cancelled:
        raise TranslationError(
            f"Event {external.id} is cancelled", external_id=external.id
        )

    start, end = event_span(external, tz)

    event.title = external.summary or DEFAULT_TITLE
    event.description = external.description
    event.location = external.location
    event.start_time = to_local(start, tz)
    event.end_time = to_local(end, tz)
    event.attendees = list(external.attendees)
    if external.hangout_link:
        event.meet_link = external.hangout_link


def to_external(event: CalendarEvent, tz: ZoneInfo) -> dict[str, Any]:
    """Build a Google Calendar insert body from a local event."""
    body: dict[str, Any] = {
        "summary": event.title,
        "start": {
            "dateTime": to_instant(event.start_time, tz).isoformat(),
            "timeZone": tz.key,
        },
        "end": {
            "dateTime": to_instant(event.end_time, tz).isoformat(),
            "timeZone": tz.key,
        },
        "status": (
            "cancelled" if event.status == EventStatus.CANCELLED.value else "confirmed"
        ),
    }

    if event.description is not None:
        body["description"] = event.description

    if event.location is not None:
        body["location"] = event.location

    if event.type == EventType.VIDEO_CALL.value:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": MEET_SOLUTION_TYPE},
            }
        }

    if event.attendees:
        body["attendees"] = [{"email": email} for email in event.attendees]

    return body
