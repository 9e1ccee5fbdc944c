from application.events import EventBus, RecordingObserver
from core.task_event import (
    TaskCreated,
    TaskDeleted,
    TaskStatusChanged,
    TaskUpdated,
    events_to_timeline,
)


def test_typed_subscription_filters_events():
    bus = EventBus()
    everything = RecordingObserver()
    status_only = RecordingObserver()
    bus.subscribe(everything)
    bus.subscribe(status_only, TaskStatusChanged)

    bus.publish(TaskUpdated("1", changed_fields=("status",)))
    bus.publish(TaskStatusChanged("1", old_status="pending", new_status="done"))

    assert len(everything.events) == 2
    assert [e.new_status for e in status_only.events] == ["done"]
    assert everything.of_type(TaskUpdated)[0].changed_fields == ("status",)


def test_failing_observer_is_skipped():
    bus = EventBus()
    seen = RecordingObserver()

    def broken(event):
        raise RuntimeError("observer bug")

    bus.subscribe(broken)
    bus.subscribe(seen)

    assert bus.publish(TaskDeleted("3")) == 1
    assert len(seen.events) == 1


def test_unsubscribe_handle():
    bus = EventBus()
    seen = RecordingObserver()
    unsubscribe = bus.subscribe(seen)
    unsubscribe()

    assert bus.publish(TaskDeleted("3")) == 0
    assert seen.events == []


def test_event_serialization_and_timeline():
    created = TaskCreated("2", backends=("local",), timestamp="2024-01-02T00:00:00+00:00", task={"id": 2})
    deleted = TaskDeleted("2", timestamp="2024-01-01T00:00:00+00:00")

    data = created.to_dict()
    assert data["event_type"] == "created"
    assert data["backends"] == ["local"]
    assert data["task"] == {"id": 2}
    assert [e["event_type"] for e in events_to_timeline([created, deleted])] == ["deleted", "created"]
