from datetime import datetime, timezone

from agent_teams.events import EventBus, make_event


def test_publish_reaches_subscribers_of_that_type_only():
    bus = EventBus()
    seen = []
    bus.subscribe("task.created", seen.append)
    bus.subscribe("task.claimed", lambda event: seen.append("wrong"))

    event = make_event("task.created", "T", {"task_id": "TASK-1"})
    bus.publish(event)

    assert seen == [event]


def test_failing_handler_does_not_stop_others(caplog):
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.subscribe("agent.idle", broken)
    bus.subscribe("agent.idle", seen.append)
    bus.publish(make_event("agent.idle", "T", {"agent_id": "w1"}))

    assert len(seen) == 1
    assert "handler bug" in caplog.text


def test_unsubscribe():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe("session.idle", seen.append)
    assert bus.handler_count("session.idle") == 1

    unsubscribe()
    unsubscribe()
    bus.publish(make_event("session.idle", "T"))

    assert seen == []
    assert bus.handler_count("session.idle") == 0


def test_handler_subscribing_during_publish_waits_for_next_event():
    bus = EventBus()
    late = []

    def subscribe_more(event):
        bus.subscribe("task.created", late.append)

    bus.subscribe("task.created", subscribe_more)
    bus.publish(make_event("task.created", "T"))
    assert late == []

    bus.publish(make_event("task.created", "T"))
    assert len(late) == 1


def test_make_event_defaults_and_overrides():
    stamp = datetime(2026, 3, 1, tzinfo=timezone.utc)
    event = make_event("task.completed", "T", {"task_id": "x"}, timestamp=stamp, event_id="EVT-1")
    assert event.id == "EVT-1"
    assert event.timestamp == stamp
    assert event.payload == {"task_id": "x"}

    generated = make_event("task.completed", "T")
    assert generated.id.startswith("EVT-")
    assert generated.payload == {}
    assert generated.timestamp.tzinfo is not None
