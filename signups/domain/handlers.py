"""Domain event handlers, wired up at application startup."""

from __future__ import annotations

import structlog

from signups.domain.bus import EventBus
from signups.domain.events import (
    ApprovalRequested,
    EventApproved,
    EventSubmitted,
    ReminderSent,
    RsvpCancelled,
    RsvpCreated,
    RsvpPromoted,
)
from signups.repos.memory import EventRepository, UserRepository
from signups.services.notifications import Notifier

logger = structlog.get_logger(__name__)


class HandlerRegistry:
    """Wires domain-event handlers to the bus with access to the notifier."""

    def __init__(
        self,
        bus: EventBus,
        event_repo: EventRepository,
        user_repo: UserRepository,
        notifier: Notifier,
    ) -> None:
        self.bus = bus
        self.event_repo = event_repo
        self.user_repo = user_repo
        self.notifier = notifier
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(EventSubmitted, self.on_event_submitted)
        self.bus.subscribe(ApprovalRequested, self.on_approval_requested)
        self.bus.subscribe(EventApproved, self.on_event_approved)
        self.bus.subscribe(RsvpCreated, self.on_rsvp_created)
        self.bus.subscribe(RsvpCancelled, self.on_rsvp_cancelled)
        self.bus.subscribe(RsvpPromoted, self.on_rsvp_promoted)
        self.bus.subscribe(ReminderSent, self.on_reminder_sent)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_event_submitted(self, event: EventSubmitted) -> None:
        logger.info(
            "event_submitted",
            event_id=event.event_id,
            state=event.state,
            is_spam=event.is_spam,
        )

    def on_approval_requested(self, event: ApprovalRequested) -> None:
        stored = self.event_repo.get(event.event_id)
        if stored is None or stored.is_spam:
            return

        # Delivery failures must not undo the submission that triggered them.
        approvers = self.user_repo.list_approvers()
        if approvers:
            try:
                self.notifier.send_approval_request(stored, approvers)
            except Exception:
                logger.exception("approval_request_failed", event_id=stored.id)

        creator = self.user_repo.get(event.creator_id) if event.creator_id else None
        if creator is not None:
            try:
                self.notifier.send_submission_ack(stored, creator)
            except Exception:
                logger.exception("submission_ack_failed", event_id=stored.id)

    def on_event_approved(self, event: EventApproved) -> None:
        logger.info("event_approved", event_id=event.event_id)

    def on_rsvp_created(self, event: RsvpCreated) -> None:
        logger.debug(
            "rsvp_created_handled",
            event_id=event.event_id,
            rsvp_id=event.rsvp_id,
            waitlist_position=event.waitlist_position,
        )

    def on_rsvp_cancelled(self, event: RsvpCancelled) -> None:
        logger.debug(
            "rsvp_cancelled_handled",
            event_id=event.event_id,
            rsvp_id=event.rsvp_id,
            was_waitlisted=event.was_waitlisted,
        )

    def on_rsvp_promoted(self, event: RsvpPromoted) -> None:
        # Promotion is recorded only; nobody is notified from here.
        logger.info("waitlist_promotion_recorded", event_id=event.event_id, rsvp_id=event.rsvp_id)

    def on_reminder_sent(self, event: ReminderSent) -> None:
        logger.debug(
            "reminder_sent",
            event_id=event.event_id,
            rsvp_id=event.rsvp_id,
            rsvp_session_id=event.rsvp_session_id,
        )
