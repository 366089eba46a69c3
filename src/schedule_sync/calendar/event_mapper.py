"""Map desired events to the Google Calendar API body format.

Converts :class:`~schedule_sync.models.events.DesiredEvent` instances into
``dict`` payloads suitable for ``events().insert()`` and ``events().update()``.
The mapping is a pure function of its inputs:

- **summary** -- the numbered part of the title (``"2.1"``) plus a type
  letter, or the full title, followed by the course.
- **start / end** with ISO 8601 datetimes and the configured IANA timezone.
- **location** (when assigned).
- **description** -- course, title, participant count, organizers and the
  time of the sync run that wrote it.
- **colorId** derived from the event category.
"""

from __future__ import annotations

import re
from datetime import datetime
from zoneinfo import ZoneInfo

from schedule_sync.models.events import DesiredEvent, EventCategory

# Google Calendar event colour IDs ("1" lavender ... "11" tomato).
_CATEGORY_COLORS: dict[EventCategory, str] = {
    EventCategory.LECTURE: "10",
    EventCategory.CONSULTATION: "2",
    EventCategory.MID_CHECK: "4",
    EventCategory.CUR_CHECK: "4",
    EventCategory.EVENT_OTHER: "8",
}
_DEFAULT_COLOR = "1"

_SECTION_NUMBER = re.compile(r"\d\.\d")

_REFRESH_FORMAT = "%d.%m.%Y %H:%M:%S"


def build_event_resource(
    event: DesiredEvent,
    timezone: str,
    refreshed_at: datetime,
) -> dict:
    """Convert a desired event into a Google Calendar API event body.

    Args:
        event: The desired event.
        timezone: IANA timezone string applied to start and end.
        refreshed_at: Start time of the sync run, shown in the description.

    Returns:
        A ``dict`` conforming to the Google Calendar Event resource schema.
        The body carries no ``id``; the planner adds one for inserts.
    """
    body: dict = {
        "summary": event_summary(event),
        "description": _build_description(event, timezone, refreshed_at),
        "start": _format_datetime(event.starts_at, timezone),
        "end": _format_datetime(event.ends_at, timezone),
        "colorId": category_color(event.category),
        "status": "confirmed",
    }

    if event.location_label:
        body["location"] = event.location_label

    return body


def event_summary(event: DesiredEvent) -> str:
    """Build the calendar title of *event*.

    Titles that carry a section number such as ``"2.1 Limits"`` are
    shortened to ``"2.1L"`` (lectures) or ``"2.1S"`` (everything else).
    """
    numbers = _SECTION_NUMBER.findall(event.title)
    if numbers:
        kind = "L" if event.category is EventCategory.LECTURE else "S"
        name = f"{','.join(numbers)}{kind}"
    else:
        name = event.title

    if event.course_label:
        return f"{name} / {event.course_label}"
    return name


def category_color(category: EventCategory) -> str:
    """Return the Google colour ID used for *category*."""
    return _CATEGORY_COLORS.get(category, _DEFAULT_COLOR)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _format_datetime(dt: datetime, timezone: str) -> dict:
    """Format a datetime for the Google Calendar API."""
    return {
        "dateTime": dt.isoformat(),
        "timeZone": timezone,
    }


def _build_description(event: DesiredEvent, timezone: str, refreshed_at: datetime) -> str:
    """Build the multi-line event description."""
    if refreshed_at.tzinfo is not None:
        refreshed_at = refreshed_at.astimezone(ZoneInfo(timezone))

    organizers = "\n".join(event.organizers) or "Not specified"
    lines = [
        f"Course: {event.course_label}",
        event.title,
        f"Participants: {event.participant_count}",
        "",
        "Organizers:",
        organizers,
        f"Updated: {refreshed_at.strftime(_REFRESH_FORMAT)}",
    ]
    return "\n".join(lines)
