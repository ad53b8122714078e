"""Outbound notification port and the default log-backed adapter."""

from __future__ import annotations

from typing import Protocol

import structlog
from pydantic import BaseModel

from signups.domain.models import Event, Rsvp, RsvpSession, User

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    """Send-once delivery port. Implementations own retries and failure reporting."""

    def send_event_reminder(self, rsvp: Rsvp) -> None: ...

    def send_session_reminder(self, rsvp_session: RsvpSession) -> None: ...

    def send_approval_request(self, event: Event, recipients: list[User]) -> None: ...

    def send_submission_ack(self, event: Event, creator: User) -> None: ...


class Delivery(BaseModel):
    kind: str
    subject_id: str
    recipients: list[str]


class LogNotifier:
    """Writes every delivery to the log and keeps it in an in-memory outbox."""

    def __init__(self) -> None:
        self.sent: list[Delivery] = []

    def _record(self, kind: str, subject_id: str, recipients: list[str]) -> None:
        self.sent.append(Delivery(kind=kind, subject_id=subject_id, recipients=recipients))
        logger.info("notification_sent", kind=kind, subject_id=subject_id, recipients=recipients)

    def send_event_reminder(self, rsvp: Rsvp) -> None:
        self._record("event_reminder", rsvp.id, [rsvp.user_id])

    def send_session_reminder(self, rsvp_session: RsvpSession) -> None:
        self._record("session_reminder", rsvp_session.id, [rsvp_session.rsvp_id])

    def send_approval_request(self, event: Event, recipients: list[User]) -> None:
        self._record("approval_request", event.id, [u.id for u in recipients])

    def send_submission_ack(self, event: Event, creator: User) -> None:
        self._record("submission_ack", event.id, [creator.id])

    def of_kind(self, kind: str) -> list[Delivery]:
        return [d for d in self.sent if d.kind == kind]
