"""Periodic reminder dispatch for imminent events."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

import structlog

from signups.domain.bus import EventBus
from signups.domain.events import ReminderSent
from signups.domain.models import Event, EventSession, ReminderTickResult
from signups.repos.memory import EventRepository, RsvpRepository, RsvpSessionRepository
from signups.services.clock import REMINDER_WINDOW, as_utc, is_due, utcnow
from signups.services.notifications import Notifier

logger = structlog.get_logger(__name__)


class ReminderScheduler:
    """Sends each confirmed rsvp (and each volunteers-only session row) one reminder, ever.

    A recipient is claimed by setting its ``reminded_at`` with a
    compare-and-set before the notifier is called, so overlapping ticks can
    never both send to it. A failed send is logged and not retried.
    """

    def __init__(
        self,
        bus: EventBus,
        event_repo: EventRepository,
        rsvp_repo: RsvpRepository,
        rsvp_session_repo: RsvpSessionRepository,
        notifier: Notifier,
        window: timedelta = REMINDER_WINDOW,
    ) -> None:
        self.bus = bus
        self.event_repo = event_repo
        self.rsvp_repo = rsvp_repo
        self.rsvp_session_repo = rsvp_session_repo
        self.notifier = notifier
        self.window = window
        self._running = threading.Lock()

    def run_tick(self, now: datetime | None = None) -> ReminderTickResult:
        now = as_utc(now) if now is not None else utcnow()
        result = ReminderTickResult()
        if not self._running.acquire(blocking=False):
            logger.warning("reminder_tick_overlap_skipped", now=now.isoformat())
            return result
        try:
            events = self.event_repo.list_due(now, self.window)
            for event in events:
                session_sent, event_sent = self.remind_attendees_for_event(event, now)
                result.session_reminders_sent += session_sent
                result.event_reminders_sent += event_sent
        finally:
            self._running.release()

        logger.info(
            "reminder_tick_finished",
            events_checked=len(events),
            event_reminders_sent=result.event_reminders_sent,
            session_reminders_sent=result.session_reminders_sent,
        )
        return result

    def remind_attendees_for_event(self, event: Event, now: datetime) -> tuple[int, int]:
        """Returns ``(session_reminders_sent, event_reminders_sent)``."""
        if event.is_spam:
            return 0, 0

        session_sent = sum(
            self.remind_attendees_for_session(event, session, now)
            for session in event.volunteer_sessions
        )

        # The earliest session may be a volunteers-only one; everybody else
        # waits until the primary session itself is inside the window.
        primary = event.primary_session
        if primary is None or not is_due(primary.starts_at, now, self.window):
            return session_sent, 0
        return session_sent, self._remind_event_attendees(event, primary, now)

    def remind_attendees_for_session(
        self, event: Event, session: EventSession, now: datetime
    ) -> int:
        due = self.rsvp_session_repo.list_unreminded_for_session(session.id)
        if due:
            logger.info(
                "sending_session_reminders",
                event_id=event.id,
                title=event.title,
                session=session.name,
                count=len(due),
            )
        sent = 0
        for row in due:
            if not self.rsvp_session_repo.mark_reminded(row.id, now):
                continue
            try:
                self.notifier.send_session_reminder(row)
            except Exception:
                logger.exception("session_reminder_failed", rsvp_session_id=row.id)
                continue
            sent += 1
            self.bus.publish(
                ReminderSent(
                    event_id=event.id,
                    rsvp_id=row.rsvp_id,
                    rsvp_session_id=row.id,
                    sent_at=now,
                )
            )
        return sent

    def _remind_event_attendees(
        self, event: Event, primary: EventSession, now: datetime
    ) -> int:
        due = self.rsvp_repo.list_unreminded_confirmed(event.id)
        if due:
            logger.info(
                "sending_event_reminders",
                event_id=event.id,
                title=event.title,
                primary_session_id=primary.id,
                count=len(due),
            )
        sent = 0
        for rsvp in due:
            if not self.rsvp_repo.mark_reminded(rsvp.id, now):
                continue
            try:
                self.notifier.send_event_reminder(rsvp)
            except Exception:
                logger.exception("event_reminder_failed", rsvp_id=rsvp.id)
                continue
            sent += 1
            self.bus.publish(ReminderSent(event_id=event.id, rsvp_id=rsvp.id, sent_at=now))
        return sent
