"""Tests for NotificationScheduler trigger computation and dispatch."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from fakes import T0, FakeClock, RecordingBridge, make_event
from termcal.api.cache import EventStore
from termcal.core.models import MergeDiff
from termcal.reminders.scheduler import NotificationScheduler

LEAD = timedelta(minutes=10)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def bridge():
    return RecordingBridge()


@pytest.fixture
def scheduler(bridge, clock):
    return NotificationScheduler(bridge, lead_time=LEAD, clock=clock)


# ---------------------------------------------------------------------------
# recompute
# ---------------------------------------------------------------------------


def test_future_event_gets_pending_trigger(scheduler):
    trigger = scheduler.recompute(make_event("a", T0 + timedelta(hours=1)))

    assert trigger.fire_time == T0 + timedelta(minutes=50)
    assert not trigger.dispatched
    assert trigger.version == "v1"


def test_started_event_is_suppressed(scheduler):
    trigger = scheduler.recompute(make_event("a", T0 - timedelta(minutes=1)))

    assert trigger.dispatched
    assert scheduler.tick(T0) == []


def test_event_inside_lead_time_fires_immediately(scheduler, bridge):
    scheduler.recompute(make_event("a", T0 + timedelta(minutes=3), title="Standup"))

    sent = scheduler.tick(T0)

    assert [n.event_id for n in sent] == ["a"]
    assert sent[0].title == "Standup"
    assert "in 3 min" in sent[0].body
    assert bridge.calls == [("Standup", sent[0].body)]


def test_title_edit_does_not_refire(scheduler):
    scheduler.recompute(make_event("a", T0 + timedelta(minutes=5)))
    assert len(scheduler.tick(T0)) == 1

    scheduler.recompute(make_event("a", T0 + timedelta(minutes=5), etag="v2", title="Renamed"))

    assert scheduler.get("a").dispatched
    assert scheduler.get("a").version == "v2"
    assert scheduler.tick(T0 + timedelta(minutes=1)) == []


def test_rescheduled_event_gets_a_new_reminder(scheduler):
    scheduler.recompute(make_event("a", T0 + timedelta(minutes=5)))
    scheduler.tick(T0)

    scheduler.recompute(make_event("a", T0 + timedelta(hours=2), etag="v2"))

    trigger = scheduler.get("a")
    assert not trigger.dispatched
    assert trigger.fire_time == T0 + timedelta(hours=1, minutes=50)


# ---------------------------------------------------------------------------
# tick
# ---------------------------------------------------------------------------


def test_tick_emits_in_fire_time_order(scheduler):
    scheduler.recompute(make_event("late", T0 + timedelta(minutes=9)))
    scheduler.recompute(make_event("early", T0 + timedelta(minutes=2)))
    scheduler.recompute(make_event("b-tie", T0 + timedelta(minutes=5)))
    scheduler.recompute(make_event("a-tie", T0 + timedelta(minutes=5)))
    scheduler.recompute(make_event("later", T0 + timedelta(hours=1)))

    sent = scheduler.tick(T0)

    assert [n.event_id for n in sent] == ["early", "a-tie", "b-tie", "late"]
    assert [t.event_id for t in scheduler.pending()] == ["later"]


def test_tick_is_idempotent_for_non_decreasing_now(scheduler):
    for i in range(6):
        scheduler.recompute(make_event(f"e{i}", T0 + timedelta(minutes=15 + 7 * i)))

    emitted = []
    now = T0
    for _ in range(40):
        emitted.extend(n.event_id for n in scheduler.tick(now))
        scheduler.tick(now)
        now += timedelta(minutes=2)

    assert sorted(emitted) == [f"e{i}" for i in range(6)]
    assert len(emitted) == len(set(emitted))


def test_failed_delivery_keeps_dispatched(clock):
    bridge = RecordingBridge(result=False)
    scheduler = NotificationScheduler(bridge, lead_time=LEAD, clock=clock)
    scheduler.recompute(make_event("a", T0 + timedelta(minutes=5)))

    assert len(scheduler.tick(T0)) == 1
    assert scheduler.get("a").dispatched
    assert scheduler.tick(T0 + timedelta(minutes=1)) == []
    assert len(bridge.calls) == 1


def test_raising_bridge_does_not_break_tick(clock):
    bridge = RecordingBridge(error=RuntimeError("zellij vanished"))
    scheduler = NotificationScheduler(bridge, lead_time=LEAD, clock=clock)
    scheduler.recompute(make_event("a", T0 + timedelta(minutes=5)))
    scheduler.recompute(make_event("b", T0 + timedelta(minutes=6)))

    sent = scheduler.tick(T0)

    assert [n.event_id for n in sent] == ["a", "b"]
    assert len(bridge.calls) == 2
    # later triggers are still computed normally
    scheduler.recompute(make_event("c", T0 + timedelta(hours=1)))
    assert not scheduler.get("c").dispatched


def test_discard_removes_dispatched_trigger(scheduler):
    scheduler.recompute(make_event("a", T0 + timedelta(minutes=5)))
    scheduler.tick(T0)

    removed = scheduler.discard("a")

    assert removed.dispatched
    assert scheduler.get("a") is None
    assert len(scheduler) == 0


def test_all_day_and_location_in_body(scheduler):
    scheduler.recompute(make_event("a", T0 + timedelta(minutes=5), location="Room 4"))
    scheduler.recompute(make_event("h", T0 + timedelta(minutes=8), minutes=24 * 60, all_day=True))

    body_a, body_h = [n.body for n in scheduler.tick(T0)]

    assert body_a.endswith("\nRoom 4")
    assert body_h == "All day"


# ---------------------------------------------------------------------------
# Wired to the EventStore
# ---------------------------------------------------------------------------


def test_reminder_scenario_with_one_minute_ticks():
    """Event A at 10:00, lead time 10 minutes, ticks every minute."""
    ten = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
    clock = FakeClock(ten - timedelta(hours=1))
    bridge = RecordingBridge()
    store = EventStore(clock=clock)
    scheduler = NotificationScheduler(bridge, lead_time=LEAD, early_fire=timedelta(minutes=1), clock=clock)
    store.add_listener(scheduler.on_merge)
    store.apply_merge(MergeDiff(upserts=(make_event("A", ten, title="A"),), replace_all=True))

    assert scheduler.tick(ten - timedelta(minutes=12)) == []
    assert [n.title for n in scheduler.tick(ten - timedelta(minutes=11))] == ["A"]
    assert scheduler.tick(ten - timedelta(minutes=10)) == []
    assert scheduler.tick(ten - timedelta(minutes=9)) == []

    clock.set(ten - timedelta(minutes=5))
    store.apply_merge(MergeDiff(replace_all=True))

    assert scheduler.get("A") is None
    assert scheduler.tick(ten + timedelta(minutes=5)) == []
    assert len(bridge.calls) == 1


def test_store_merge_updates_and_removes_triggers(clock):
    store = EventStore(clock=clock)
    scheduler = NotificationScheduler(None, lead_time=LEAD, clock=clock)
    store.add_listener(scheduler.on_merge)

    store.apply_merge(MergeDiff(upserts=(make_event("a", T0 + timedelta(hours=1)),
                                         make_event("b", T0 + timedelta(hours=2)))))
    store.apply_merge(MergeDiff(upserts=(make_event("a", T0 + timedelta(hours=3), etag="v2"),),
                                removals=frozenset({"b"})))

    assert scheduler.get("a").fire_time == T0 + timedelta(hours=2, minutes=50)
    assert scheduler.get("b") is None
