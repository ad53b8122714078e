"""Tests for the reminder tick: windowing, idempotence and failure handling."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from signups.domain.bus import EventBus
from signups.domain.events import ReminderSent
from signups.domain.models import Event, EventSession, Role
from signups.repos.memory import (
    EventLocks,
    EventRepository,
    RsvpRepository,
    RsvpSessionRepository,
)
from signups.services.capacity import CapacityWaitlistEngine
from signups.services.notifications import LogNotifier
from signups.services.reminders import ReminderScheduler

_NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class FlakyNotifier(LogNotifier):
    """Fails every event reminder addressed to one user."""

    def __init__(self, failing_user_id: str) -> None:
        super().__init__()
        self.failing_user_id = failing_user_id

    def send_event_reminder(self, rsvp):
        if rsvp.user_id == self.failing_user_id:
            raise ConnectionError("mail relay unavailable")
        super().send_event_reminder(rsvp)


class RoleSwitchingNotifier(LogNotifier):
    """Moves one rsvp to the student role while the first reminder is being sent."""

    def __init__(self, engine: CapacityWaitlistEngine, rsvp_id: str) -> None:
        super().__init__()
        self.engine = engine
        self.rsvp_id = rsvp_id

    def send_event_reminder(self, rsvp):
        if not self.sent:
            self.engine.change_role(self.rsvp_id, Role.STUDENT)
        super().send_event_reminder(rsvp)


@pytest.fixture()
def env():
    """Fresh repos, engine and scheduler for each test."""
    bus = EventBus()
    event_repo = EventRepository()
    rsvp_repo = RsvpRepository()
    rsvp_session_repo = RsvpSessionRepository()
    notifier = LogNotifier()

    class Env:
        pass

    e = Env()
    e.bus = bus
    e.event_repo = event_repo
    e.rsvp_repo = rsvp_repo
    e.rsvp_session_repo = rsvp_session_repo
    e.notifier = notifier
    e.engine = CapacityWaitlistEngine(
        bus=bus,
        event_repo=event_repo,
        rsvp_repo=rsvp_repo,
        rsvp_session_repo=rsvp_session_repo,
        locks=EventLocks(),
    )

    def make_scheduler(notifier=notifier) -> ReminderScheduler:
        return ReminderScheduler(
            bus=bus,
            event_repo=event_repo,
            rsvp_repo=rsvp_repo,
            rsvp_session_repo=rsvp_session_repo,
            notifier=notifier,
        )

    e.make_scheduler = make_scheduler
    e.scheduler = make_scheduler()
    return e


def _session(name: str, starts_in: timedelta, volunteers_only: bool = False) -> EventSession:
    return EventSession(
        name=name,
        starts_at=_NOW + starts_in,
        ends_at=_NOW + starts_in + timedelta(hours=4),
        volunteers_only=volunteers_only,
        required_for_students=not volunteers_only,
    )


def _make_event(env, starts_in: timedelta, **overrides) -> Event:
    defaults = dict(
        title="Ruby on Rails Workshop",
        sessions=[_session("Workshop", starts_in)],
    )
    defaults.update(overrides)
    event = Event(**defaults)
    env.event_repo.add(event)
    return event


# ---------------------------------------------------------------------------
# Event-level reminders
# ---------------------------------------------------------------------------


def test_reminds_every_confirmed_rsvp_once(env):
    event = _make_event(env, timedelta(days=1), student_rsvp_limit=1)
    env.engine.signup(event.id, "v1", Role.VOLUNTEER, set())
    env.engine.signup(event.id, "s1", Role.STUDENT, set())
    already = env.engine.signup(event.id, "v2", Role.TEACHER, set())
    env.rsvp_repo.mark_reminded(already.id, _NOW - timedelta(hours=1))
    waitlisted = env.engine.signup(event.id, "s2", Role.STUDENT, set())

    first = env.scheduler.run_tick(_NOW)
    second = env.scheduler.run_tick(_NOW)

    assert first.event_reminders_sent == 2
    assert second.event_reminders_sent == 0
    reminded = {d.recipients[0] for d in env.notifier.of_kind("event_reminder")}
    assert reminded == {"v1", "s1"}
    assert env.rsvp_repo.get(waitlisted.id).reminded_at is None


def test_reminder_sets_reminded_at_to_tick_time(env):
    event = _make_event(env, timedelta(hours=6))
    rsvp = env.engine.signup(event.id, "s1", Role.STUDENT, set())

    env.scheduler.run_tick(_NOW)

    assert env.rsvp_repo.get(rsvp.id).reminded_at == _NOW


def test_promoted_rsvp_is_reminded_on_next_tick(env):
    event = _make_event(env, timedelta(days=1), student_rsvp_limit=1)
    first = env.engine.signup(event.id, "s1", Role.STUDENT, set())
    env.engine.signup(event.id, "s2", Role.STUDENT, set())
    env.scheduler.run_tick(_NOW)

    env.engine.cancel(first.id)
    result = env.scheduler.run_tick(_NOW + timedelta(minutes=10))

    assert result.event_reminders_sent == 1
    assert env.notifier.of_kind("event_reminder")[-1].recipients == ["s2"]


@pytest.mark.parametrize(
    "starts_in, expected",
    [
        (timedelta(days=2, hours=23), 1),
        (timedelta(days=3), 0),
        (timedelta(days=3, hours=1), 0),
        (timedelta(days=4), 0),
    ],
)
def test_only_events_inside_window_are_reminded(env, starts_in, expected):
    event = _make_event(env, starts_in)
    env.engine.signup(event.id, "s1", Role.STUDENT, set())

    assert env.scheduler.run_tick(_NOW).event_reminders_sent == expected


def test_started_events_are_not_reminded(env):
    event = _make_event(env, timedelta(days=-2))
    env.engine.signup(event.id, "s1", Role.STUDENT, set())

    assert env.scheduler.run_tick(_NOW).event_reminders_sent == 0


def test_spam_events_are_never_reminded(env):
    event = _make_event(
        env,
        timedelta(days=1),
        is_spam=True,
        sessions=[
            _session("Installfest", timedelta(hours=12), volunteers_only=True),
            _session("Workshop", timedelta(days=1)),
        ],
    )
    volunteer = env.engine.signup(event.id, "v1", Role.VOLUNTEER, {event.sessions[0].id})
    env.engine.signup(event.id, "s1", Role.STUDENT, set())

    for hours in (0, 6, 12):
        result = env.scheduler.run_tick(_NOW + timedelta(hours=hours))
        assert result.event_reminders_sent == 0
        assert result.session_reminders_sent == 0
    assert env.notifier.sent == []
    assert env.scheduler.remind_attendees_for_event(event, _NOW) == (0, 0)
    assert env.rsvp_repo.get(volunteer.id).reminded_at is None


def test_tick_publishes_reminder_sent(env):
    event = _make_event(env, timedelta(days=1))
    rsvp = env.engine.signup(event.id, "s1", Role.STUDENT, set())
    seen: list[ReminderSent] = []
    env.bus.subscribe(ReminderSent, seen.append)

    env.scheduler.run_tick(_NOW)

    assert seen == [ReminderSent(event_id=event.id, rsvp_id=rsvp.id, sent_at=_NOW)]


# ---------------------------------------------------------------------------
# Volunteers-only sessions
# ---------------------------------------------------------------------------


def test_volunteer_session_before_main_session_reminds_volunteers_only(env):
    event = _make_event(
        env,
        timedelta(days=4),
        sessions=[
            _session("Workshop", timedelta(days=4)),
            _session("Installfest", timedelta(days=2), volunteers_only=True),
        ],
    )
    installfest = event.sessions[1]
    env.engine.signup(event.id, "v1", Role.VOLUNTEER, {installfest.id})
    env.engine.signup(event.id, "s1", Role.STUDENT, set())

    first = env.scheduler.run_tick(_NOW)
    second = env.scheduler.run_tick(_NOW)

    assert (first.session_reminders_sent, first.event_reminders_sent) == (1, 0)
    assert (second.session_reminders_sent, second.event_reminders_sent) == (0, 0)


def test_main_reminder_follows_once_primary_session_is_due(env):
    event = _make_event(
        env,
        timedelta(days=4),
        sessions=[
            _session("Workshop", timedelta(days=4)),
            _session("Installfest", timedelta(days=2), volunteers_only=True),
        ],
    )
    env.engine.signup(event.id, "v1", Role.VOLUNTEER, {event.sessions[1].id})
    env.engine.signup(event.id, "s1", Role.STUDENT, set())
    env.scheduler.run_tick(_NOW)

    later = env.scheduler.run_tick(_NOW + timedelta(days=1, hours=12))

    assert later.session_reminders_sent == 0
    assert later.event_reminders_sent == 2


def test_session_reminder_and_event_reminder_are_independent(env):
    event = _make_event(
        env,
        timedelta(days=1),
        sessions=[
            _session("Workshop", timedelta(days=1)),
            _session("Installfest", timedelta(hours=20), volunteers_only=True),
        ],
    )
    rsvp = env.engine.signup(event.id, "v1", Role.VOLUNTEER, {event.sessions[1].id})

    result = env.scheduler.run_tick(_NOW)

    assert (result.session_reminders_sent, result.event_reminders_sent) == (1, 1)
    (row,) = env.rsvp_session_repo.list_for_rsvp(rsvp.id)
    assert row.reminded_at == _NOW
    assert env.rsvp_repo.get(rsvp.id).reminded_at == _NOW


def test_event_without_primary_session_only_sends_session_reminders(env):
    event = _make_event(
        env,
        timedelta(days=1),
        sessions=[_session("Setup", timedelta(days=1), volunteers_only=True)],
    )
    env.engine.signup(event.id, "v1", Role.VOLUNTEER, {event.sessions[0].id})

    result = env.scheduler.run_tick(_NOW)

    assert (result.session_reminders_sent, result.event_reminders_sent) == (1, 0)


# ---------------------------------------------------------------------------
# Failures and overlapping ticks
# ---------------------------------------------------------------------------


def test_send_failure_does_not_stop_the_tick(env):
    notifier = FlakyNotifier(failing_user_id="s1")
    scheduler = env.make_scheduler(notifier)
    event = _make_event(env, timedelta(days=1))
    broken = env.engine.signup(event.id, "s1", Role.STUDENT, set())
    env.engine.signup(event.id, "s2", Role.STUDENT, set())
    env.engine.signup(event.id, "v1", Role.VOLUNTEER, set())

    first = scheduler.run_tick(_NOW)
    second = scheduler.run_tick(_NOW)

    assert first.event_reminders_sent == 2
    assert second.event_reminders_sent == 0
    # Claimed before the send, so a failed delivery is not retried.
    assert env.rsvp_repo.get(broken.id).reminded_at == _NOW


def test_overlapping_tick_is_skipped(env):
    event = _make_event(env, timedelta(days=1))
    env.engine.signup(event.id, "s1", Role.STUDENT, set())

    with env.scheduler._running:
        skipped = env.scheduler.run_tick(_NOW)

    assert skipped.event_reminders_sent == 0
    assert env.scheduler.run_tick(_NOW).event_reminders_sent == 1


def test_concurrent_schedulers_never_double_send(env):
    event = _make_event(env, timedelta(days=1))
    for n in range(50):
        env.engine.signup(event.id, f"u{n}", Role.VOLUNTEER, set())
    schedulers = [env.make_scheduler() for _ in range(4)]
    barrier = threading.Barrier(len(schedulers))
    totals: list[int] = []

    def run(scheduler: ReminderScheduler) -> None:
        barrier.wait()
        totals.append(scheduler.run_tick(_NOW).event_reminders_sent)

    threads = [threading.Thread(target=run, args=(s,)) for s in schedulers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(totals) == 50
    assert len(env.notifier.of_kind("event_reminder")) == 50


def test_rsvp_waitlisted_during_tick_is_not_reminded(env):
    event = _make_event(env, timedelta(days=1), student_rsvp_limit=1)
    env.engine.signup(event.id, "s1", Role.STUDENT, set())
    volunteer = env.engine.signup(event.id, "v1", Role.VOLUNTEER, set())
    notifier = RoleSwitchingNotifier(env.engine, volunteer.id)

    result = env.make_scheduler(notifier).run_tick(_NOW)

    moved = env.rsvp_repo.get(volunteer.id)
    assert moved.waitlist_position == 1
    assert moved.reminded_at is None
    assert result.event_reminders_sent == 1
    assert [d.recipients for d in notifier.of_kind("event_reminder")] == [["s1"]]


def test_waitlisted_rsvp_cannot_be_claimed(env):
    event = _make_event(env, timedelta(days=1), student_rsvp_limit=0)
    waitlisted = env.engine.signup(event.id, "s1", Role.STUDENT, set())

    assert env.rsvp_repo.mark_reminded(waitlisted.id, _NOW) is False
    assert env.rsvp_repo.get(waitlisted.id).reminded_at is None


def test_naive_now_is_read_as_utc(env):
    event = _make_event(env, timedelta(hours=6))
    rsvp = env.engine.signup(event.id, "s1", Role.STUDENT, set())

    result = env.scheduler.run_tick(_NOW.replace(tzinfo=None))

    assert result.event_reminders_sent == 1
    assert env.rsvp_repo.get(rsvp.id).reminded_at == _NOW
