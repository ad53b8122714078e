"""Errors raised by the signup core."""

from __future__ import annotations


class SignupsError(Exception):
    """Base class for every error this package raises on purpose."""


class NotFound(SignupsError):
    """Raised when an event, rsvp or user id does not exist."""

    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class UnknownSession(SignupsError):
    """Raised when requested session ids do not belong to the target event."""

    def __init__(self, event_id: str, session_ids: set[str]) -> None:
        listed = ", ".join(sorted(session_ids))
        super().__init__(f"Sessions not part of event {event_id}: {listed}")
        self.event_id = event_id
        self.session_ids = session_ids


class InvalidTransition(SignupsError):
    """Raised when an event cannot move to the requested publication state."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move event from {current} to {target}")
        self.current = current
        self.target = target


class AlreadySignedUp(SignupsError):
    """Raised when a user already holds an rsvp for the event."""


class UnknownTimeZone(SignupsError):
    """Raised when an event names a time zone that cannot be resolved."""


class CapacityRaceLost(SignupsError):
    """The event's rsvps changed between the capacity decision and the write.

    Internal: the capacity engine retries on it and never lets it escape.
    """


class EventBusy(SignupsError):
    """Raised when capacity retries for an event are exhausted."""
