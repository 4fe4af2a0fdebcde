"""Tests for the EventBus."""

import threading

from looprunner.engine.events import EventBus, EventType


class TestEventBus:

    def test_subscribers_receive_events_in_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe(lambda e: seen.append(e.type))
        bus.emit(EventType.STARTED, "t1")
        bus.emit(EventType.TASK_COMPLETED, "t1", iteration=3)
        assert seen == [EventType.STARTED, EventType.TASK_COMPLETED]

    def test_failing_subscriber_is_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("render failed")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        event = bus.emit(EventType.HALTED, message="budget_exceeded")
        assert seen == [event]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append)
        bus.unsubscribe(seen.append)
        bus.emit(EventType.STARTED)
        assert seen == []

    def test_history_filter_and_bound(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            bus.emit(EventType.ITERATION_COMPLETED, iteration=i)
        bus.emit(EventType.FINISHED)
        history = bus.get_history()
        assert len(history) == 3
        assert [e.iteration for e in bus.get_history(EventType.ITERATION_COMPLETED)] == [3, 4]

    def test_concurrent_publishers(self):
        bus = EventBus(max_history=1000)
        count = []
        lock = threading.Lock()

        def on_event(event):
            with lock:
                count.append(event.task_id)

        bus.subscribe(on_event)
        threads = [
            threading.Thread(target=lambda n=n: [bus.emit(EventType.ITERATION_STARTED, f"t{n}")
                                                 for _ in range(50)])
            for n in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(count) == 200
        assert len(bus.get_history()) == 200
