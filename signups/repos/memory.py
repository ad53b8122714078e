"""In-memory repositories for events, rsvps and users."""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from signups.domain.errors import CapacityRaceLost
from signups.domain.models import (
    Event,
    EventState,
    Role,
    Rsvp,
    RsvpSession,
    User,
)
from signups.services.clock import is_due


class EventLocks:
    """Registry of per-event re-entrant locks.

    Every signup, cancellation and promotion for one event runs while holding
    that event's lock; different events never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def for_event(self, event_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(event_id)
            if lock is None:
                lock = self._locks[event_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, event_id: str) -> Iterator[None]:
        with self.for_event(event_id):
            yield


class EventRepository:
    """Dict-backed store for Event instances, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, Event] = {}

    def add(self, event: Event) -> None:
        self._store[event.id] = event

    def get(self, event_id: str) -> Event | None:
        return self._store.get(event_id)

    def list_all(self) -> list[Event]:
        return list(self._store.values())

    def list_due(self, now: datetime, window: timedelta) -> list[Event]:
        """Non-spam events whose earliest session starts in ``(now, now + window)``."""
        return sorted(
            (
                e
                for e in list(self._store.values())
                if not e.is_spam and is_due(e.starts_at, now, window)
            ),
            key=lambda e: e.starts_at,
        )

    def list_published(self, now: datetime, when: str | None = None) -> list[Event]:
        """Published, non-spam events; ``when`` narrows to "upcoming" or "past"."""
        events = [
            e
            for e in list(self._store.values())
            if e.current_state == EventState.PUBLISHED and not e.is_spam
        ]
        if when == "upcoming":
            events = [e for e in events if e.ends_at > now]
        elif when == "past":
            events = [e for e in events if e.ends_at <= now]
        return sorted(events, key=lambda e: e.starts_at)


class RsvpRepository:
    """Dict-backed store for Rsvp instances.

    Keeps a revision counter per event that moves on every write touching that
    event's rsvps. Capacity writes pass the revision they based their decision
    on and fail with :class:`CapacityRaceLost` if it has moved since.
    """

    def __init__(self) -> None:
        self._store: dict[str, Rsvp] = {}
        self._revisions: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def revision(self, event_id: str) -> int:
        return self._revisions[event_id]

    def _check(self, event_id: str, expected_revision: int | None) -> None:
        if expected_revision is not None and self._revisions[event_id] != expected_revision:
            raise CapacityRaceLost(event_id)

    def add(self, rsvp: Rsvp, expected_revision: int | None = None) -> None:
        with self._lock:
            self._check(rsvp.event_id, expected_revision)
            self._store[rsvp.id] = rsvp
            self._revisions[rsvp.event_id] += 1

    def save_placement(
        self, rsvps: list[Rsvp], event_id: str, expected_revision: int | None = None
    ) -> None:
        """Write role and waitlist position of several rsvps as one unit.

        Only the capacity fields are copied onto the stored records, so a
        reminder flag set concurrently by the scheduler is never lost.
        """
        with self._lock:
            self._check(event_id, expected_revision)
            for rsvp in rsvps:
                stored = self._store.get(rsvp.id)
                if stored is None:
                    continue
                stored.role = rsvp.role
                stored.waitlist_position = rsvp.waitlist_position
            self._revisions[event_id] += 1

    def delete(
        self,
        rsvp: Rsvp,
        expected_revision: int | None = None,
        reordered: list[Rsvp] | None = None,
    ) -> None:
        """Remove an rsvp, applying the resulting waitlist changes in the same write."""
        with self._lock:
            self._check(rsvp.event_id, expected_revision)
            self._store.pop(rsvp.id, None)
            for other in reordered or []:
                stored = self._store.get(other.id)
                if stored is not None:
                    stored.waitlist_position = other.waitlist_position
            self._revisions[rsvp.event_id] += 1

    def get(self, rsvp_id: str) -> Rsvp | None:
        return self._store.get(rsvp_id)

    def list_for_event(self, event_id: str) -> list[Rsvp]:
        return [r for r in list(self._store.values()) if r.event_id == event_id]

    def find_for_user(self, event_id: str, user_id: str) -> Rsvp | None:
        return next(
            (
                r
                for r in list(self._store.values())
                if r.event_id == event_id and r.user_id == user_id
            ),
            None,
        )

    def list_confirmed(self, event_id: str) -> list[Rsvp]:
        return sorted(
            (r for r in self.list_for_event(event_id) if r.is_confirmed),
            key=lambda r: r.created_at,
        )

    def list_waitlisted(self, event_id: str) -> list[Rsvp]:
        return sorted(
            (r for r in self.list_for_event(event_id) if r.is_waitlisted),
            key=lambda r: r.waitlist_position,
        )

    def count_confirmed_students(self, event_id: str, exclude_id: str | None = None) -> int:
        return sum(
            1
            for r in self.list_for_event(event_id)
            if r.role == Role.STUDENT and r.is_confirmed and r.id != exclude_id
        )

    def list_unreminded_confirmed(self, event_id: str) -> list[Rsvp]:
        return [r for r in self.list_confirmed(event_id) if r.reminded_at is None]

    def mark_reminded(self, rsvp_id: str, reminded_at: datetime) -> bool:
        """Claim a confirmed, unreminded rsvp. Returns True if this call set ``reminded_at``.

        Confirmation is re-checked under the same lock placement writes take,
        so an rsvp moved to the waitlist after it was listed is never claimed.
        """
        with self._lock:
            rsvp = self._store.get(rsvp_id)
            if rsvp is None or rsvp.reminded_at is not None or rsvp.is_waitlisted:
                return False
            rsvp.reminded_at = reminded_at
            return True


class RsvpSessionRepository:
    """Dict-backed store for the rsvp x event-session join rows."""

    def __init__(self) -> None:
        self._store: dict[str, RsvpSession] = {}
        self._lock = threading.Lock()

    def get(self, rsvp_session_id: str) -> RsvpSession | None:
        return self._store.get(rsvp_session_id)

    def list_for_rsvp(self, rsvp_id: str) -> list[RsvpSession]:
        return [rs for rs in list(self._store.values()) if rs.rsvp_id == rsvp_id]

    def session_ids_for_rsvp(self, rsvp_id: str) -> set[str]:
        return {rs.event_session_id for rs in self.list_for_rsvp(rsvp_id)}

    def replace_for_rsvp(self, rsvp_id: str, session_ids: set[str]) -> list[RsvpSession]:
        """Make the rsvp's rows match ``session_ids``.

        Rows for sessions that stay selected are kept as they are, so their
        ``reminded_at`` survives the edit.
        """
        with self._lock:
            current = [rs for rs in list(self._store.values()) if rs.rsvp_id == rsvp_id]
            kept = {rs.event_session_id for rs in current}
            for rs in current:
                if rs.event_session_id not in session_ids:
                    del self._store[rs.id]
            for session_id in session_ids - kept:
                row = RsvpSession(rsvp_id=rsvp_id, event_session_id=session_id)
                self._store[row.id] = row
            return [rs for rs in list(self._store.values()) if rs.rsvp_id == rsvp_id]

    def delete_for_rsvp(self, rsvp_id: str) -> None:
        with self._lock:
            for rs in [rs for rs in list(self._store.values()) if rs.rsvp_id == rsvp_id]:
                del self._store[rs.id]

    def list_unreminded_for_session(self, event_session_id: str) -> list[RsvpSession]:
        return [
            rs
            for rs in list(self._store.values())
            if rs.event_session_id == event_session_id and rs.reminded_at is None
        ]

    def mark_reminded(self, rsvp_session_id: str, reminded_at: datetime) -> bool:
        """Set ``reminded_at`` only if it is still unset. Returns True if this call set it."""
        with self._lock:
            row = self._store.get(rsvp_session_id)
            if row is None or row.reminded_at is not None:
                return False
            row.reminded_at = reminded_at
            return True


class UserRepository:
    """Dict-backed store for User instances, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, User] = {}

    def add(self, user: User) -> None:
        self._store[user.id] = user

    def get(self, user_id: str) -> User | None:
        return self._store.get(user_id)

    def list_approvers(self) -> list[User]:
        """Admins and publishers: the people asked to approve new events."""
        return [u for u in self._store.values() if u.can_approve]
