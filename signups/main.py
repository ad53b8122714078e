"""FastAPI application: entry point for the event signup service."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Literal

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from signups.core.config import get_settings
from signups.core.logging import configure_logging
from signups.domain.bus import EventBus
from signups.domain.errors import (
    AlreadySignedUp,
    EventBusy,
    InvalidTransition,
    NotFound,
    SignupsError,
    UnknownSession,
    UnknownTimeZone,
)
from signups.domain.handlers import HandlerRegistry
from signups.domain.models import (
    Event,
    EventDetail,
    EventDraft,
    EventUpdate,
    LocalizedSession,
    ReminderTickResult,
    RoleUpdate,
    Rsvp,
    RsvpDetail,
    SessionsUpdate,
    SignupRequest,
    User,
    UserCreate,
)
from signups.repos.memory import (
    EventLocks,
    EventRepository,
    RsvpRepository,
    RsvpSessionRepository,
    UserRepository,
)
from signups.services.capacity import CapacityWaitlistEngine
from signups.services.clock import localize, resolve_time_zone, utcnow
from signups.services.notifications import LogNotifier
from signups.services.publication import EventStateMachine
from signups.services.reminders import ReminderScheduler

settings = get_settings()
configure_logging(settings)
logger = structlog.get_logger(__name__)

app = FastAPI(title=settings.project_name)

# ── Singletons (created at import time for simplicity) ────────────────
event_bus = EventBus()
event_repo = EventRepository()
rsvp_repo = RsvpRepository()
rsvp_session_repo = RsvpSessionRepository()
user_repo = UserRepository()
event_locks = EventLocks()
notifier = LogNotifier()

handler_registry = HandlerRegistry(
    bus=event_bus,
    event_repo=event_repo,
    user_repo=user_repo,
    notifier=notifier,
)
state_machine = EventStateMachine(event_bus)
capacity = CapacityWaitlistEngine(
    bus=event_bus,
    event_repo=event_repo,
    rsvp_repo=rsvp_repo,
    rsvp_session_repo=rsvp_session_repo,
    locks=event_locks,
    retry_limit=settings.capacity_retry_limit,
)
reminder_scheduler = ReminderScheduler(
    bus=event_bus,
    event_repo=event_repo,
    rsvp_repo=rsvp_repo,
    rsvp_session_repo=rsvp_session_repo,
    notifier=notifier,
    window=timedelta(days=settings.reminder_window_days),
)


# ── Error mapping ─────────────────────────────────────────────────────

_STATUS_BY_ERROR: dict[type[SignupsError], int] = {
    NotFound: 404,
    UnknownSession: 422,
    UnknownTimeZone: 422,
    InvalidTransition: 409,
    AlreadySignedUp: 409,
    EventBusy: 503,
}


@app.exception_handler(SignupsError)
async def handle_signups_error(request: Request, exc: SignupsError) -> JSONResponse:
    status_code = next(
        (code for kind, code in _STATUS_BY_ERROR.items() if isinstance(exc, kind)), 400
    )
    logger.info("request_rejected", path=request.url.path, error=type(exc).__name__)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


_CLEARABLE_EVENT_FIELDS = frozenset({"details", "student_rsvp_limit"})


def _get_event(event_id: str) -> Event:
    event = event_repo.get(event_id)
    if event is None:
        raise NotFound("Event", event_id)
    return event


def _get_user(user_id: str) -> User:
    user = user_repo.get(user_id)
    if user is None:
        raise NotFound("User", user_id)
    return user


def _creator_is_trusted(event: Event) -> bool:
    creator = user_repo.get(event.creator_id) if event.creator_id else None
    return creator is not None and not creator.is_spammer


def _rsvp_detail(rsvp: Rsvp) -> RsvpDetail:
    return RsvpDetail(
        rsvp=rsvp, session_ids=sorted(rsvp_session_repo.session_ids_for_rsvp(rsvp.id))
    )


# ── Routes ────────────────────────────────────────────────────────────


@app.post("/users", response_model=User, status_code=201)
def create_user(payload: UserCreate) -> User:
    user = User(**payload.model_dump())
    user_repo.add(user)
    return user


@app.post("/events", response_model=Event, status_code=201)
def submit_event(payload: EventDraft) -> Event:
    """Create an event and settle its publication state."""
    _get_user(payload.creator_id)
    resolve_time_zone(payload.time_zone)
    event = payload.to_event()
    event_repo.add(event)
    state_machine.submit(event, creator_is_trusted=_creator_is_trusted(event))
    return event


@app.put("/events/{event_id}", response_model=Event)
def edit_event(event_id: str, payload: EventUpdate) -> Event:
    """Apply a partial edit. Raising the student limit promotes from the waitlist."""
    event = _get_event(event_id)
    changes = payload.model_dump(include=payload.model_fields_set)
    if changes.get("time_zone") is not None:
        resolve_time_zone(changes["time_zone"])

    limit_changed = False
    with event_locks.hold(event_id):
        for field, value in changes.items():
            # An explicit null clears optional fields and is ignored for required ones.
            if value is None and field not in _CLEARABLE_EVENT_FIELDS:
                continue
            if field == "student_rsvp_limit":
                limit_changed = value != event.student_rsvp_limit
            setattr(event, field, value)

    state_machine.edit(event, creator_is_trusted=_creator_is_trusted(event))
    if limit_changed:
        capacity.rebalance(event_id)
    return event


@app.post("/events/{event_id}/approve", response_model=Event)
def approve_event(event_id: str) -> Event:
    event = _get_event(event_id)
    state_machine.approve(event)
    return event


@app.get("/events", response_model=list[Event])
def list_events(when: Literal["upcoming", "past"] | None = None) -> list[Event]:
    """Return published, non-spam events."""
    return event_repo.list_published(utcnow(), when)


@app.get("/events/{event_id}", response_model=EventDetail)
def get_event(event_id: str) -> EventDetail:
    """Return a single event with its sessions in the event's own time zone."""
    event = _get_event(event_id)
    sessions = [
        LocalizedSession(
            **s.model_dump(),
            local_starts_at=localize(s.starts_at, event.time_zone),
            local_ends_at=localize(s.ends_at, event.time_zone),
        )
        for s in event.sessions
    ]
    return EventDetail(
        event=event,
        sessions=sessions,
        confirmed_count=len(capacity.attendees(event_id)),
        waitlist_count=len(capacity.waitlist(event_id)),
    )


@app.get("/events/{event_id}/waitlist", response_model=list[Rsvp])
def get_waitlist(event_id: str) -> list[Rsvp]:
    return capacity.waitlist(event_id)


@app.post("/events/{event_id}/rsvps", response_model=RsvpDetail, status_code=201)
def signup(event_id: str, payload: SignupRequest) -> RsvpDetail:
    rsvp = capacity.signup(event_id, payload.user_id, payload.role, payload.session_ids)
    return _rsvp_detail(rsvp)


@app.get("/rsvps/{rsvp_id}", response_model=RsvpDetail)
def get_rsvp(rsvp_id: str) -> RsvpDetail:
    rsvp = rsvp_repo.get(rsvp_id)
    if rsvp is None:
        raise HTTPException(status_code=404, detail="Rsvp not found")
    return _rsvp_detail(rsvp)


@app.delete("/rsvps/{rsvp_id}")
def cancel_rsvp(rsvp_id: str) -> dict:
    promoted = capacity.cancel(rsvp_id)
    return {"status": "cancelled", "promoted_rsvp_ids": [r.id for r in promoted]}


@app.put("/rsvps/{rsvp_id}/sessions", response_model=RsvpDetail)
def edit_rsvp_sessions(rsvp_id: str, payload: SessionsUpdate) -> RsvpDetail:
    capacity.edit_sessions(rsvp_id, payload.session_ids)
    return _rsvp_detail(rsvp_repo.get(rsvp_id))


@app.put("/rsvps/{rsvp_id}/role", response_model=RsvpDetail)
def change_rsvp_role(rsvp_id: str, payload: RoleUpdate) -> RsvpDetail:
    return _rsvp_detail(capacity.change_role(rsvp_id, payload.role))


@app.post("/tick", response_model=ReminderTickResult)
def tick(now: datetime | None = None) -> ReminderTickResult:
    """Run one reminder pass.

    Pass *now* as a query param to control the simulated clock.
    Defaults to the current UTC time when omitted; a naive value is read as UTC.
    """
    return reminder_scheduler.run_tick(now)
