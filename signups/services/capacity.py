"""Capacity and waitlist bookkeeping for event signups."""

from __future__ import annotations

from typing import Callable, TypeVar

import structlog

from signups.domain.bus import EventBus
from signups.domain.errors import (
    AlreadySignedUp,
    CapacityRaceLost,
    EventBusy,
    NotFound,
    UnknownSession,
)
from signups.domain.events import RsvpCancelled, RsvpCreated, RsvpPromoted
from signups.domain.models import Event, Role, Rsvp
from signups.domain.waitlist import Waitlist
from signups.repos.memory import (
    EventLocks,
    EventRepository,
    RsvpRepository,
    RsvpSessionRepository,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CapacityWaitlistEngine:
    """Confirms or waitlists rsvps and keeps each event's waitlist dense.

    Every decision for an event is taken while holding that event's lock, and
    the resulting write is checked against the rsvp revision the decision was
    based on. A moved revision means the lock was bypassed somewhere; the
    attempt is retried from a fresh read up to ``retry_limit`` times.
    """

    def __init__(
        self,
        bus: EventBus,
        event_repo: EventRepository,
        rsvp_repo: RsvpRepository,
        rsvp_session_repo: RsvpSessionRepository,
        locks: EventLocks,
        retry_limit: int = 3,
    ) -> None:
        self.bus = bus
        self.event_repo = event_repo
        self.rsvp_repo = rsvp_repo
        self.rsvp_session_repo = rsvp_session_repo
        self.locks = locks
        self.retry_limit = retry_limit

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def signup(
        self, event_id: str, user_id: str, role: Role, session_ids: set[str]
    ) -> Rsvp:
        event = self._get_event(event_id)
        sessions = self._resolve_sessions(event, role, set(session_ids))

        def attempt() -> Rsvp:
            with self.locks.hold(event_id):
                if self.rsvp_repo.find_for_user(event_id, user_id) is not None:
                    raise AlreadySignedUp(f"User {user_id} already signed up for {event_id}")
                revision = self.rsvp_repo.revision(event_id)
                rsvp = Rsvp(event_id=event_id, user_id=user_id, role=role)
                if role.is_capacity_limited and not self._has_room(event):
                    self._load_waitlist(event_id).insert_at_end(rsvp)
                self.rsvp_repo.add(rsvp, expected_revision=revision)
                self.rsvp_session_repo.replace_for_rsvp(rsvp.id, sessions)
                return rsvp

        rsvp = self._with_retries(event_id, attempt)
        if rsvp.is_waitlisted:
            logger.info(
                "rsvp_waitlisted",
                event_id=event_id,
                rsvp_id=rsvp.id,
                position=rsvp.waitlist_position,
            )
        else:
            logger.info("rsvp_confirmed", event_id=event_id, rsvp_id=rsvp.id, role=role)
        self.bus.publish(
            RsvpCreated(
                event_id=event_id,
                rsvp_id=rsvp.id,
                role=role,
                waitlist_position=rsvp.waitlist_position,
            )
        )
        return rsvp

    def cancel(self, rsvp_id: str) -> list[Rsvp]:
        """Delete an rsvp and its session rows. Returns the rsvps promoted as a result."""
        event = self._get_event(self._get_rsvp(rsvp_id).event_id)

        def attempt() -> tuple[Rsvp, list[Rsvp]]:
            with self.locks.hold(event.id):
                current = self._get_rsvp(rsvp_id)
                revision = self.rsvp_repo.revision(event.id)
                waitlist = self._load_waitlist(event.id)
                promoted: list[Rsvp] = []
                if current.is_waitlisted:
                    waitlist.remove_and_compact(current.model_copy())
                elif current.role.is_capacity_limited:
                    confirmed = self.rsvp_repo.count_confirmed_students(
                        event.id, exclude_id=current.id
                    )
                    promoted = self._promote_into_room(event, waitlist, confirmed)
                self.rsvp_repo.delete(
                    current,
                    expected_revision=revision,
                    reordered=[*waitlist, *promoted],
                )
                self.rsvp_session_repo.delete_for_rsvp(current.id)
                return current, promoted

        cancelled, promoted = self._with_retries(event.id, attempt)
        logger.info("rsvp_cancelled", event_id=event.id, rsvp_id=rsvp_id)
        self.bus.publish(
            RsvpCancelled(
                event_id=event.id,
                rsvp_id=rsvp_id,
                was_waitlisted=cancelled.is_waitlisted,
            )
        )
        self._announce_promotions(event.id, promoted)
        return promoted

    def edit_sessions(self, rsvp_id: str, session_ids: set[str]) -> set[str]:
        """Replace the sessions an rsvp attends. Capacity status is untouched."""
        rsvp = self._get_rsvp(rsvp_id)
        event = self._get_event(rsvp.event_id)
        sessions = self._resolve_sessions(event, rsvp.role, set(session_ids))
        with self.locks.hold(event.id):
            self._get_rsvp(rsvp_id)
            self.rsvp_session_repo.replace_for_rsvp(rsvp_id, sessions)
        logger.info("rsvp_sessions_updated", rsvp_id=rsvp_id, sessions=sorted(sessions))
        return sessions

    def change_role(self, rsvp_id: str, role: Role) -> Rsvp:
        """Switch an rsvp's role, re-deciding capacity as a fresh signup would.

        The rsvp leaves its current slot or waitlist spot first, is placed
        again under the new role, and any slot it frees is handed to the
        head of the waitlist.
        """
        event = self._get_event(self._get_rsvp(rsvp_id).event_id)

        def attempt() -> tuple[Rsvp, list[Rsvp]]:
            with self.locks.hold(event.id):
                current = self._get_rsvp(rsvp_id)
                if current.role == role:
                    return current, []
                revision = self.rsvp_repo.revision(event.id)
                waitlist = self._load_waitlist(event.id)
                updated = current.model_copy(update={"role": role})
                if current.is_waitlisted:
                    waitlist.remove_and_compact(updated)

                confirmed = self.rsvp_repo.count_confirmed_students(
                    event.id, exclude_id=current.id
                )
                if role.is_capacity_limited:
                    if self._limit_reached(event, confirmed):
                        waitlist.insert_at_end(updated)
                    else:
                        confirmed += 1
                promoted = self._promote_into_room(event, waitlist, confirmed)
                self.rsvp_repo.save_placement(
                    [updated, *waitlist, *promoted], event.id, expected_revision=revision
                )
                if role.is_capacity_limited:
                    sessions = self.rsvp_session_repo.session_ids_for_rsvp(current.id)
                    self.rsvp_session_repo.replace_for_rsvp(
                        current.id, sessions | self._required_for_students(event)
                    )
                return self._get_rsvp(rsvp_id), promoted

        rsvp, promoted = self._with_retries(event.id, attempt)
        logger.info(
            "rsvp_role_changed",
            rsvp_id=rsvp_id,
            role=role,
            waitlist_position=rsvp.waitlist_position,
        )
        self._announce_promotions(event.id, promoted)
        return rsvp

    def rebalance(self, event_id: str) -> list[Rsvp]:
        """Fill any free student slots from the waitlist, e.g. after the limit was raised."""
        event = self._get_event(event_id)

        def attempt() -> list[Rsvp]:
            with self.locks.hold(event_id):
                revision = self.rsvp_repo.revision(event_id)
                waitlist = self._load_waitlist(event_id)
                confirmed = self.rsvp_repo.count_confirmed_students(event_id)
                promoted = self._promote_into_room(event, waitlist, confirmed)
                if promoted:
                    self.rsvp_repo.save_placement(
                        [*promoted, *waitlist], event_id, expected_revision=revision
                    )
                return promoted

        promoted = self._with_retries(event_id, attempt)
        self._announce_promotions(event_id, promoted)
        return promoted

    def waitlist(self, event_id: str) -> list[Rsvp]:
        self._get_event(event_id)
        return self.rsvp_repo.list_waitlisted(event_id)

    def attendees(self, event_id: str) -> list[Rsvp]:
        self._get_event(event_id)
        return self.rsvp_repo.list_confirmed(event_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_event(self, event_id: str) -> Event:
        event = self.event_repo.get(event_id)
        if event is None:
            raise NotFound("Event", event_id)
        return event

    def _get_rsvp(self, rsvp_id: str) -> Rsvp:
        rsvp = self.rsvp_repo.get(rsvp_id)
        if rsvp is None:
            raise NotFound("Rsvp", rsvp_id)
        return rsvp

    def _load_waitlist(self, event_id: str) -> Waitlist:
        # Work on copies; the repository applies the outcome in one write.
        return Waitlist(r.model_copy() for r in self.rsvp_repo.list_waitlisted(event_id))

    @staticmethod
    def _required_for_students(event: Event) -> set[str]:
        return {
            s.id
            for s in event.sessions
            if s.required_for_students and not s.volunteers_only
        }

    def _resolve_sessions(self, event: Event, role: Role, requested: set[str]) -> set[str]:
        unknown = requested - event.session_ids()
        if unknown:
            raise UnknownSession(event.id, unknown)
        if role.is_capacity_limited:
            return requested | self._required_for_students(event)
        return requested

    @staticmethod
    def _limit_reached(event: Event, confirmed_students: int) -> bool:
        limit = event.student_rsvp_limit
        return limit is not None and confirmed_students >= limit

    def _has_room(self, event: Event) -> bool:
        confirmed = self.rsvp_repo.count_confirmed_students(event.id)
        return not self._limit_reached(event, confirmed)

    def _promote_into_room(
        self, event: Event, waitlist: Waitlist, confirmed_students: int
    ) -> list[Rsvp]:
        promoted: list[Rsvp] = []
        while len(waitlist) and not self._limit_reached(event, confirmed_students):
            head = waitlist.promote()
            if head is None:
                break
            promoted.append(head)
            confirmed_students += 1
        return promoted

    def _announce_promotions(self, event_id: str, promoted: list[Rsvp]) -> None:
        for rsvp in promoted:
            logger.info("rsvp_promoted", event_id=event_id, rsvp_id=rsvp.id)
            self.bus.publish(RsvpPromoted(event_id=event_id, rsvp_id=rsvp.id))

    def _with_retries(self, event_id: str, attempt: Callable[[], T]) -> T:
        for tries in range(1, self.retry_limit + 1):
            try:
                return attempt()
            except CapacityRaceLost:
                logger.warning("capacity_race_lost", event_id=event_id, attempt=tries)
        raise EventBusy(f"Could not settle capacity for event {event_id}")
