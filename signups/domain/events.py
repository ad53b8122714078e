"""Domain events emitted by the publication workflow and the signup engine."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from signups.domain.models import EventState, Role


class EventSubmitted(BaseModel):
    """Fired whenever submit/edit settles an event's publication state."""

    event_id: str
    state: EventState
    is_spam: bool


class ApprovalRequested(BaseModel):
    """Fired when an event enters pending_approval."""

    event_id: str
    creator_id: str | None = None


class EventApproved(BaseModel):
    event_id: str


class RsvpCreated(BaseModel):
    event_id: str
    rsvp_id: str
    role: Role
    waitlist_position: int | None = None


class RsvpCancelled(BaseModel):
    event_id: str
    rsvp_id: str
    was_waitlisted: bool


class RsvpPromoted(BaseModel):
    """Fired when a waitlisted rsvp takes a freed slot."""

    event_id: str
    rsvp_id: str


class ReminderSent(BaseModel):
    event_id: str
    rsvp_id: str
    rsvp_session_id: str | None = None
    sent_at: datetime
