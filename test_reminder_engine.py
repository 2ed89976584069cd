"""Tests for the notification orchestrator and its administrative operations."""

import asyncio

import pytest

import crud
from database import CallStatusEnum, TriggerType
from reminder_engine import PUSH_EVENT, ReminderNotFoundError, UserNotFoundError

STORE = {"latitude": 40.7128, "longitude": -74.0060}
NEARBY = {"latitude": 40.7130, "longitude": -74.0062}
FAR = {"latitude": 40.7228, "longitude": -74.0060}


async def test_due_time_reminder_notifies_all_channels(
    reminder_engine, make_user, make_reminder, fetch_reminder, email, voice, push, past
):
    user = make_user(firstname="Grace", email="grace@example.com")
    reminder = make_reminder(user, description="Team standup", trigger_time=past)

    processed = await reminder_engine.check_time_reminders()

    assert processed == [reminder.id]

    assert len(email.sent) == 1
    assert email.sent[0]["to"] == "grace@example.com"
    assert email.sent[0]["subject"] == "Reminder: Team standup"
    assert "Hello Grace," in email.sent[0]["text"]
    assert "Time-based reminder triggered" in email.sent[0]["text"]

    assert len(voice.calls) == 1
    assert voice.calls[0]["message"] == "Hi, this is Botie. You have a reminder: Team standup."

    assert len(push.events) == 1
    event = push.events[0]
    assert event["user_id"] == user.id
    assert event["event"] == PUSH_EVENT
    assert event["payload"]["type"] == "reminder_triggered"
    assert event["payload"]["data"]["reminder_id"] == reminder.id
    assert event["payload"]["data"]["trigger_type"] == "time"

    stored = fetch_reminder(reminder.id)
    assert stored.time_notified is True
    assert stored.time_notified_at is not None
    assert stored.location_notified is False
    assert stored.call_status == CallStatusEnum.CALLING


async def test_repeated_ticks_notify_once(reminder_engine, make_user, make_reminder, email, past):
    user = make_user()
    reminder = make_reminder(user, trigger_time=past)

    assert await reminder_engine.check_time_reminders() == [reminder.id]
    assert await reminder_engine.check_time_reminders() == []
    assert await reminder_engine.check_time_reminders() == []
    assert len(email.sent) == 1


async def test_future_and_deleted_reminders_are_skipped(
    reminder_engine, db, make_user, make_reminder, email, past, future
):
    user = make_user()
    make_reminder(user, trigger_time=future)
    deleted = make_reminder(user, trigger_time=past)
    crud.soft_delete_reminder(db, deleted.id, user.id)

    assert await reminder_engine.check_time_reminders() == []
    assert email.sent == []


async def test_hybrid_reminder_fires_once_per_trigger(
    reminder_engine, make_user, make_reminder, fetch_reminder, email, past
):
    user = make_user(**NEARBY)
    reminder = make_reminder(user, trigger_time=past, coordinates=STORE, location_name="Main St Market")

    assert await reminder_engine.check_time_reminders() == [reminder.id]
    stored = fetch_reminder(reminder.id)
    assert stored.time_notified is True
    assert stored.location_notified is False

    assert await reminder_engine.check_location_reminders() == [reminder.id]
    stored = fetch_reminder(reminder.id)
    assert stored.time_notified is True
    assert stored.location_notified is True

    assert len(email.sent) == 2
    assert "Location: Main St Market" in email.sent[1]["text"]


async def test_email_failure_does_not_block_other_channels(
    reminder_engine, make_user, make_reminder, fetch_reminder, email, voice, push, past
):
    user = make_user()
    reminder = make_reminder(user, trigger_time=past)
    email.fail = True

    assert await reminder_engine.check_time_reminders() == [reminder.id]

    assert len(voice.calls) == 1
    assert len(push.events) == 1
    assert fetch_reminder(reminder.id).time_notified is True


async def test_call_failure_does_not_block_email(
    reminder_engine, make_user, make_reminder, fetch_reminder, email, voice, past
):
    user = make_user()
    reminder = make_reminder(user, trigger_time=past)
    voice.placement_failures = 1

    assert await reminder_engine.check_time_reminders() == [reminder.id]

    assert len(email.sent) == 1
    stored = fetch_reminder(reminder.id)
    assert stored.time_notified is True
    assert stored.call_status == CallStatusEnum.FAILED


async def test_owner_without_calling_number_gets_no_call(
    reminder_engine, make_user, make_reminder, email, voice, past
):
    user = make_user(calling_number=None)
    make_reminder(user, trigger_time=past)

    await reminder_engine.check_time_reminders()

    assert voice.calls == []
    assert len(email.sent) == 1


async def test_reserved_reminder_is_skipped(reminder_engine, make_user, make_reminder, email, past):
    user = make_user()
    reminder = make_reminder(user, trigger_time=past)

    reminder_engine.add_to_tracking(reminder.id, "time")
    assert reminder_engine.in_flight_count == 1
    assert await reminder_engine.check_time_reminders() == []
    assert email.sent == []

    reminder_engine.remove_from_tracking(reminder.id, "time")
    assert await reminder_engine.check_time_reminders() == [reminder.id]
    assert reminder_engine.in_flight_count == 0


async def test_concurrent_ticks_process_once(reminder_engine, make_user, make_reminder, email, past):
    user = make_user()
    make_reminder(user, trigger_time=past)

    results = await asyncio.gather(
        reminder_engine.check_time_reminders(),
        reminder_engine.check_time_reminders(),
    )

    assert sorted(len(r) for r in results) == [0, 1]
    assert len(email.sent) == 1


async def test_store_failure_returns_none(reminder_engine):
    class BrokenEvaluator:
        def time_candidates(self, db, now=None):
            raise RuntimeError("store unavailable")

        def location_candidates(self, db, user_id=None, current_location=None):
            raise RuntimeError("store unavailable")

    reminder_engine.evaluator = BrokenEvaluator()

    assert await reminder_engine.check_time_reminders() is None
    assert await reminder_engine.check_location_reminders() is None


async def test_location_update_triggers_nearby_reminder(
    reminder_engine, session_factory, make_user, make_reminder, fetch_reminder, push
):
    user = make_user()
    reminder = make_reminder(user, coordinates=STORE)
    make_reminder(user, description="Somewhere else", coordinates={"latitude": 41.0, "longitude": -73.0})

    triggered = await reminder_engine.handle_location_update(user.id, **NEARBY)

    assert triggered == [reminder.id]
    assert fetch_reminder(reminder.id).location_notified is True
    assert push.events[0]["payload"]["data"]["trigger_type"] == "location"

    session = session_factory()
    try:
        stored_user = crud.get_user(session, user.id)
        assert stored_user.current_location == NEARBY
        assert stored_user.location_updated_at is not None
    finally:
        session.close()


async def test_location_update_far_away_triggers_nothing(reminder_engine, make_user, make_reminder, email):
    user = make_user()
    make_reminder(user, coordinates=STORE)

    assert await reminder_engine.handle_location_update(user.id, **FAR) == []
    assert email.sent == []


async def test_location_update_unknown_user(reminder_engine):
    with pytest.raises(UserNotFoundError):
        await reminder_engine.handle_location_update("missing-user", **NEARBY)


async def test_location_marker_retained_after_notification(build_engine, make_user, make_reminder, email):
    engine = build_engine(location_retrigger_window=0.05)
    user = make_user()
    reminder = make_reminder(user, coordinates=STORE)

    assert await engine.handle_location_update(user.id, **NEARBY) == [reminder.id]
    assert engine.guard.is_reserved(reminder.id, TriggerType.LOCATION)

    # Reset so only the retained marker stands in the way
    engine.reset_notification(reminder.id, "location")
    assert await engine.handle_location_update(user.id, **NEARBY) == []

    await asyncio.sleep(0.1)
    assert not engine.guard.is_reserved(reminder.id, TriggerType.LOCATION)
    assert await engine.handle_location_update(user.id, **NEARBY) == [reminder.id]
    assert len(email.sent) == 2


async def test_time_marker_released_immediately(reminder_engine, make_user, make_reminder, past):
    user = make_user()
    reminder = make_reminder(user, trigger_time=past)

    await reminder_engine.check_time_reminders()

    assert not reminder_engine.guard.is_reserved(reminder.id, TriggerType.TIME)


async def test_call_status_forwarded_to_tracker(
    reminder_engine, make_user, make_reminder, fetch_reminder, past
):
    user = make_user()
    reminder = make_reminder(user, trigger_time=past)
    await reminder_engine.check_time_reminders()
    reference = fetch_reminder(reminder.id).active_call_reference

    assert await reminder_engine.handle_call_status(reference, "completed", 12) == CallStatusEnum.COMPLETED
    assert fetch_reminder(reminder.id).call_status == CallStatusEnum.COMPLETED


async def test_reset_notification(reminder_engine, make_user, make_reminder, fetch_reminder, past):
    user = make_user()
    reminder = make_reminder(user, trigger_time=past)
    await reminder_engine.check_time_reminders()

    reset = reminder_engine.reset_notification(reminder.id, "time")

    assert reset.time_notified is False
    assert reset.time_notified_at is None
    # Call state survives a reset
    assert reset.call_attempts == 1
    assert fetch_reminder(reminder.id).call_status == CallStatusEnum.CALLING


async def test_reset_notification_errors(reminder_engine, make_user, make_reminder):
    user = make_user()
    reminder = make_reminder(user)

    with pytest.raises(ValueError):
        reminder_engine.reset_notification(reminder.id, "sometime")
    with pytest.raises(ReminderNotFoundError):
        reminder_engine.reset_notification("missing", "time")


async def test_notification_history(reminder_engine, make_user, make_reminder, past):
    user = make_user()
    reminder = make_reminder(user, trigger_time=past)

    before = reminder_engine.get_notification_history(reminder.id)
    assert before == {
        "time_notified": False,
        "time_notified_at": None,
        "location_notified": False,
        "location_notified_at": None,
    }

    await reminder_engine.check_time_reminders()
    after = reminder_engine.get_notification_history(reminder.id)

    assert after["time_notified"] is True
    assert after["time_notified_at"].tzinfo is not None
    assert after["location_notified"] is False

    with pytest.raises(ReminderNotFoundError):
        reminder_engine.get_notification_history("missing")


async def test_pending_reminders(reminder_engine, db, make_user, make_reminder, past, future):
    user = make_user()
    timed = make_reminder(user, trigger_time=future)
    placed = make_reminder(user, coordinates=STORE)
    hybrid = make_reminder(user, trigger_time=future, coordinates=STORE)
    done = make_reminder(user, trigger_time=past)
    crud.mark_notified(db, done.id, TriggerType.TIME)

    pending = reminder_engine.get_pending_reminders(user.id)

    assert {r.id for r in pending["time_based"]} == {timed.id, hybrid.id}
    assert {r.id for r in pending["location_based"]} == {placed.id, hybrid.id}
    assert pending["total"] == 4


async def test_hybrid_triggers_firing_together_use_both_attempts(
    reminder_engine, make_user, make_reminder, fetch_reminder, voice, email, past
):
    user = make_user(**NEARBY)
    reminder = make_reminder(user, trigger_time=past, coordinates=STORE)

    results = await asyncio.gather(
        reminder_engine.check_time_reminders(),
        reminder_engine.check_location_reminders(),
    )

    assert results == [[reminder.id], [reminder.id]]
    assert len(email.sent) == 2
    assert len(voice.calls) == 2
    stored = fetch_reminder(reminder.id)
    assert stored.call_attempts == 2
    assert stored.time_notified is True
    assert stored.location_notified is True
    assert reminder_engine.tracker.pending_tasks() == 2
