"""Publication lifecycle of an event: draft -> pending_approval -> published."""

from __future__ import annotations

import structlog

from signups.domain.bus import EventBus
from signups.domain.errors import InvalidTransition
from signups.domain.events import ApprovalRequested, EventApproved, EventSubmitted
from signups.domain.models import Event, EventState

logger = structlog.get_logger(__name__)


class EventStateMachine:
    """Decides an event's publication state on submit, edit and approval.

    The spam flag is orthogonal to the state: once set it is never cleared,
    and a spam event is parked in ``draft`` without asking anyone to approve it.
    Whether approvers and the creator get told is published on the bus as
    ``ApprovalRequested``; delivery happens in the handlers.
    """

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    def submit(self, event: Event, creator_is_trusted: bool) -> EventState:
        """Settle the state of a newly created event."""
        return self._evaluate(event, creator_is_trusted)

    def edit(self, event: Event, creator_is_trusted: bool) -> EventState:
        """Re-settle the state after an edit. Published events stay published."""
        if event.current_state == EventState.PUBLISHED:
            logger.debug("event_edit_keeps_published", event_id=event.id)
            return event.current_state
        return self._evaluate(event, creator_is_trusted)

    def approve(self, event: Event) -> EventState:
        if event.current_state != EventState.PENDING_APPROVAL:
            raise InvalidTransition(event.current_state, EventState.PUBLISHED)
        event.current_state = EventState.PUBLISHED
        logger.info("event_published", event_id=event.id)
        self.bus.publish(EventApproved(event_id=event.id))
        return event.current_state

    def _evaluate(self, event: Event, creator_is_trusted: bool) -> EventState:
        if not creator_is_trusted and not event.is_spam:
            event.is_spam = True
            logger.warning("event_flagged_as_spam", event_id=event.id, creator_id=event.creator_id)

        if event.is_spam:
            event.current_state = EventState.DRAFT
            self.bus.publish(
                EventSubmitted(event_id=event.id, state=event.current_state, is_spam=True)
            )
            return event.current_state

        # Approvers only hear about an event when it enters the queue.
        entering = event.current_state != EventState.PENDING_APPROVAL
        event.current_state = EventState.PENDING_APPROVAL
        self.bus.publish(
            EventSubmitted(event_id=event.id, state=event.current_state, is_spam=False)
        )
        if entering:
            self.bus.publish(ApprovalRequested(event_id=event.id, creator_id=event.creator_id))
        return event.current_state
