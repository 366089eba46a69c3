"""Pydantic models for desired schedule events.

Defines the records produced by the upstream scheduling source:

- :class:`EventCategory` -- the upstream event type code.
- :class:`DesiredEvent` -- one event that should appear on a user's
  calendar, immutable for the duration of a sync run.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class EventCategory(str, Enum):
    """Upstream event type codes.

    Unknown codes coming from the source are folded into
    :attr:`EVENT_OTHER` by :class:`DesiredEvent` validation.
    """

    LECTURE = "LECT"
    SEMINAR = "SEMI"
    LAB = "LAB"
    CONSULTATION = "CONS"
    MID_CHECK = "MID_CHECK"
    CUR_CHECK = "CUR_CHECK"
    EVENT_OTHER = "EVENT_OTHER"


class DesiredEvent(BaseModel):
    """An event the scheduling source says belongs on a user's calendar.

    Keyed by the source-assigned :attr:`id`, which stays stable across runs
    until the source event is cancelled or expires.

    Attributes:
        id: Source-assigned event identifier.
        starts_at: Event start.
        ends_at: Event end; must be after ``starts_at``.
        title: Event name as published by the source.
        location_label: Room or venue, or ``None`` when not assigned.
        course_label: Course the event belongs to.
        organizers: Display names of the instructors running the event.
        attendee_count: Total number of attendees, organizers included.
        category: Upstream event type.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    starts_at: datetime
    ends_at: datetime
    title: str
    location_label: str | None = None
    course_label: str = ""
    organizers: list[str] = Field(default_factory=list)
    attendee_count: int = Field(default=0, ge=0)
    category: EventCategory = EventCategory.EVENT_OTHER

    @field_validator("category", mode="before")
    @classmethod
    def _fold_unknown_category(cls, value: Any) -> Any:
        if isinstance(value, EventCategory):
            return value
        try:
            return EventCategory(value)
        except ValueError:
            return EventCategory.EVENT_OTHER

    @model_validator(mode="after")
    def _check_time_window(self) -> DesiredEvent:
        if self.ends_at <= self.starts_at:
            raise ValueError(
                f"ends_at ({self.ends_at.isoformat()}) must be after "
                f"starts_at ({self.starts_at.isoformat()})"
            )
        return self

    @property
    def participant_count(self) -> int:
        """Attendees who are not organizers (never negative)."""
        return max(self.attendee_count - len(self.organizers), 0)
