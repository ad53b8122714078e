"""Domain models for event signups, waitlists and reminders."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator, model_validator


class EventState(StrEnum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    PUBLISHED = "published"


class Role(StrEnum):
    STUDENT = "student"
    VOLUNTEER = "volunteer"
    TEACHER = "teacher"
    TA = "ta"

    @property
    def is_capacity_limited(self) -> bool:
        # Teachers and TAs count as volunteers; only students take a slot.
        return self is Role.STUDENT


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class User(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    email: str | None = None
    is_admin: bool = False
    is_publisher: bool = False
    is_spammer: bool = False

    @property
    def can_approve(self) -> bool:
        return self.is_admin or self.is_publisher


class EventSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    starts_at: datetime
    ends_at: datetime
    volunteers_only: bool = False
    required_for_students: bool = True

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> EventSession:
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class Event(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str
    details: str | None = None
    time_zone: str = "UTC"
    current_state: EventState = EventState.DRAFT
    is_spam: bool = False
    student_rsvp_limit: int | None = Field(default=None, ge=0)
    creator_id: str | None = None
    sessions: list[EventSession] = Field(min_length=1)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def starts_at(self) -> datetime:
        """Earliest session start; drives the event-level due window."""
        return min(s.starts_at for s in self.sessions)

    @property
    def ends_at(self) -> datetime:
        return max(s.ends_at for s in self.sessions)

    @property
    def primary_session(self) -> EventSession | None:
        """The first session open to everybody (not volunteers-only)."""
        return next((s for s in self.sessions if not s.volunteers_only), None)

    @property
    def volunteer_sessions(self) -> list[EventSession]:
        return [s for s in self.sessions if s.volunteers_only]

    def session_ids(self) -> set[str]:
        return {s.id for s in self.sessions}


class Rsvp(BaseModel):
    id: str = Field(default_factory=_new_id)
    event_id: str
    user_id: str
    role: Role
    waitlist_position: int | None = Field(default=None, gt=0)
    reminded_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_waitlisted(self) -> bool:
        return self.waitlist_position is not None

    @property
    def is_confirmed(self) -> bool:
        return self.waitlist_position is None


class RsvpSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    rsvp_id: str
    event_session_id: str
    reminded_at: datetime | None = None


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class EventSessionDraft(BaseModel):
    name: str
    starts_at: datetime
    ends_at: datetime
    volunteers_only: bool = False
    required_for_students: bool = True


class EventDraft(BaseModel):
    title: str
    details: str | None = None
    time_zone: str = "UTC"
    student_rsvp_limit: int | None = Field(default=None, ge=0)
    creator_id: str
    sessions: list[EventSessionDraft] = Field(min_length=1)

    def to_event(self) -> Event:
        return Event(
            title=self.title,
            details=self.details,
            time_zone=self.time_zone,
            student_rsvp_limit=self.student_rsvp_limit,
            creator_id=self.creator_id,
            sessions=[EventSession(**s.model_dump()) for s in self.sessions],
        )


class EventUpdate(BaseModel):
    """Partial event edit. Only fields that were sent are applied."""

    title: str | None = None
    details: str | None = None
    time_zone: str | None = None
    student_rsvp_limit: int | None = Field(default=None, ge=0)


class LocalizedSession(BaseModel):
    id: str
    name: str
    starts_at: datetime
    ends_at: datetime
    local_starts_at: datetime
    local_ends_at: datetime
    volunteers_only: bool
    required_for_students: bool


class EventDetail(BaseModel):
    event: Event
    sessions: list[LocalizedSession]
    confirmed_count: int
    waitlist_count: int


class UserCreate(BaseModel):
    name: str
    email: str | None = None
    is_admin: bool = False
    is_publisher: bool = False
    is_spammer: bool = False


class SignupRequest(BaseModel):
    user_id: str
    role: Role
    session_ids: set[str] = Field(default_factory=set)


class SessionsUpdate(BaseModel):
    session_ids: set[str]


class RoleUpdate(BaseModel):
    role: Role


class RsvpDetail(BaseModel):
    rsvp: Rsvp
    session_ids: list[str]


class ReminderTickResult(BaseModel):
    event_reminders_sent: int = 0
    session_reminders_sent: int = 0
