import threading
import time

from addonrt.errors import FrameError
from addonrt.events import (
    END,
    ERROR,
    STATE,
    EventBus,
    EventSubscription,
    end_event,
    error_event,
    state_event,
    unexpected_message_event,
)


def test_error_event_reports_fatal_frames():
    assert error_event(FrameError("bad prefix", fatal=True)).fatal
    assert not error_event(FrameError("bad json", fatal=False)).fatal
    assert not error_event(OSError("reset")).fatal


def test_unexpected_message_exposes_actor():
    event = unexpected_message_event({"from": "tab3", "type": "tabNavigated"})
    assert event.actor == "tab3"


def test_subscription_filters_by_kind():
    bus = EventBus()
    received = []
    bus.subscribe(EventSubscription(kinds=[END], handler=received.append))
    bus.publish(error_event(OSError("x")))
    bus.publish(end_event())
    bus.pump()
    assert [event.kind for event in received] == [END]


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received = []
    token = bus.subscribe(EventSubscription(handler=received.append))
    bus.unsubscribe(token)
    bus.publish(end_event())
    bus.pump()
    assert received == []


def test_full_backlog_drops_oldest():
    bus = EventBus(backlog=2)
    received = []
    bus.subscribe(EventSubscription(kinds=[STATE], handler=received.append))
    for state in ("a", "b", "c"):
        bus.publish(state_event("", state))
    assert bus.pump() == 2
    assert [event.state for event in received] == ["b", "c"]
    assert bus.dropped == 1


def test_handler_failure_does_not_stop_dispatch():
    bus = EventBus()
    received = []

    def flaky(event):
        if event.kind == ERROR:
            raise RuntimeError("boom")
        received.append(event)

    bus.subscribe(EventSubscription(handler=flaky))
    bus.publish(error_event(OSError("x")))
    bus.publish(end_event())
    bus.pump()
    assert [event.kind for event in received] == [END]


def test_event_bus_start_stop_handles_events():
    bus = EventBus()
    received = []
    bus.subscribe(EventSubscription(handler=received.append))
    bus.start()
    bus.publish(end_event())
    deadline = time.monotonic() + 1.0
    while not received and time.monotonic() < deadline:
        time.sleep(0.005)
    bus.stop()
    assert received and received[0].kind == END


def test_stop_delivers_queued_events_in_order():
    bus = EventBus()
    received = []
    release = threading.Event()

    def slow(event):
        release.wait(1.0)
        received.append(event.state)

    bus.subscribe(EventSubscription(handler=slow, kinds=[STATE]))
    bus.start()
    for state in ("a", "b", "c"):
        bus.publish(state_event("", state))
    release.set()
    bus.stop()
    assert received == ["a", "b", "c"]
