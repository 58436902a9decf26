from cycle_core.events import CYCLE_END, CYCLE_START, EventChannel, LifecycleEvent
from cycle_core.models import SafetyVerdict


def test_observers_called_in_subscription_order():
    channel = EventChannel()
    calls = []
    channel.subscribe(lambda event: calls.append(("first", event.name)))
    channel.subscribe(lambda event: calls.append(("second", event.name)))

    channel.emit(CYCLE_START, {"cycle_id": 0})

    assert calls == [("first", CYCLE_START), ("second", CYCLE_START)]


def test_failing_observer_is_isolated():
    channel = EventChannel()
    received = []

    @channel.subscribe
    def broken(event):
        raise RuntimeError("observer bug")

    channel.subscribe(received.append)
    event = channel.emit(CYCLE_END, {"cycle_id": 3})

    assert received == [event]


def test_unsubscribe():
    channel = EventChannel()
    received = []
    observer = channel.subscribe(received.append)

    assert channel.unsubscribe(observer)
    assert not channel.unsubscribe(observer)
    channel.emit(CYCLE_START)
    assert received == []
    assert len(channel) == 0


def test_recent_is_bounded():
    channel = EventChannel(history_size=3)
    for i in range(5):
        channel.emit(CYCLE_START, {"cycle_id": i})

    assert [e.payload["cycle_id"] for e in channel.recent()] == [2, 3, 4]
    assert [e.payload["cycle_id"] for e in channel.recent(1)] == [4]
    assert channel.recent(0) == []


def test_to_dict_serializes_records():
    verdict = SafetyVerdict(contradiction=0.2, uncertainty=0.0, rule_violation=False,
                            should_halt=False, reason="compliant")
    data = LifecycleEvent("tribunal-decision", {"cycle_id": 1, "verdict": verdict}).to_dict()

    assert data["name"] == "tribunal-decision"
    assert data["payload"]["verdict"]["reason"] == "compliant"
    assert data["payload"]["cycle_id"] == 1
