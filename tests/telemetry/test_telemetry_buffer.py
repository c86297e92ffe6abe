"""
Tests for the in-process telemetry buffer.
"""

import threading

from freezegun import freeze_time

from meridian.platform.telemetry.buffer import TelemetryBuffer


class TestAppend:
    def test_below_threshold_returns_nothing(self):
        buffer = TelemetryBuffer(max_size=3)
        for i in range(3):
            assert buffer.append("events", {"n": i}) is None
        assert buffer.size("events") == 3

    def test_growing_past_threshold_returns_the_batch(self):
        buffer = TelemetryBuffer(max_size=3)
        for i in range(3):
            buffer.append("events", {"n": i})

        batch = buffer.append("events", {"n": 3})

        assert [item["n"] for item in batch] == [0, 1, 2, 3]
        assert buffer.size("events") == 0
        assert buffer.drain_count == 1

    def test_categories_are_independent(self):
        buffer = TelemetryBuffer(max_size=1)
        buffer.append("events", {"n": 0})
        assert buffer.append("metrics", {"n": 0}) is None
        assert buffer.size() == 2

    @freeze_time("2024-03-01 12:00:00")
    def test_entries_are_stamped(self):
        buffer = TelemetryBuffer()
        buffer.append("events", {"eventName": "click"})
        entry = buffer.drain()["events"][0]
        assert entry == {"eventName": "click", "capturedAt": "2024-03-01T12:00:00+00:00"}

    def test_append_does_not_mutate_input(self):
        item = {"n": 1}
        TelemetryBuffer().append("events", item)
        assert item == {"n": 1}


class TestFlushCorrectness:
    def test_150_events_with_threshold_100(self):
        buffer = TelemetryBuffer(max_size=100)
        flushed = []

        for i in range(150):
            batch = buffer.append("events", {"n": i})
            if batch is not None:
                flushed.extend(batch)

        assert buffer.drain_count >= 1
        assert len(flushed) + buffer.size("events") == 150
        remaining = buffer.drain()["events"]
        assert sorted(item["n"] for item in flushed + remaining) == list(range(150))

    def test_concurrent_appends_lose_nothing(self):
        buffer = TelemetryBuffer(max_size=50)
        flushed: list[dict] = []
        flushed_lock = threading.Lock()

        def producer(offset: int) -> None:
            for i in range(250):
                batch = buffer.append("events", {"n": offset + i})
                if batch is not None:
                    with flushed_lock:
                        flushed.extend(batch)

        threads = [threading.Thread(target=producer, args=(k * 1000,)) for k in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        remaining = buffer.drain().get("events", [])
        assert len(flushed) + len(remaining) == 1000
        assert len({item["n"] for item in flushed + remaining}) == 1000


class TestDrainAndRequeue:
    def test_drain_skips_empty_categories(self):
        buffer = TelemetryBuffer()
        buffer.append("events", {"n": 1})
        assert set(buffer.drain()) == {"events"}
        assert buffer.drain() == {}

    def test_requeue_goes_in_front(self):
        buffer = TelemetryBuffer()
        buffer.append("events", {"n": 1})
        failed = buffer.drain()["events"]
        buffer.append("events", {"n": 2})

        buffer.requeue("events", failed)

        assert [item["n"] for item in buffer.drain()["events"]] == [1, 2]

    def test_requeue_empty_batch_is_noop(self):
        buffer = TelemetryBuffer()
        buffer.requeue("events", [])
        assert buffer.size() == 0


class TestHoldAndBacklog:
    def test_held_category_returns_no_second_batch(self):
        buffer = TelemetryBuffer(max_size=2)
        for i in range(3):
            buffer.append("events", {"n": i})

        assert buffer.is_held("events")
        for i in range(3, 6):
            assert buffer.append("events", {"n": i}) is None
        assert buffer.size("events") == 3

        buffer.release("events")

        batch = buffer.append("events", {"n": 6})
        assert [item["n"] for item in batch] == [3, 4, 5, 6]

    def test_backlog_keeps_newest_entries(self):
        buffer = TelemetryBuffer(max_size=2, max_backlog=5)
        for i in range(3):
            buffer.append("events", {"n": i})

        for i in range(3, 20):
            buffer.append("events", {"n": i})

        assert [item["n"] for item in buffer.drain()["events"]] == [15, 16, 17, 18, 19]
        assert buffer.dropped_count == 12

    def test_requeue_respects_backlog(self):
        buffer = TelemetryBuffer(max_size=10, max_backlog=10)
        for i in range(4):
            buffer.append("events", {"n": i})

        buffer.requeue("events", [{"n": -i} for i in range(10, 0, -1)])

        items = buffer.drain()["events"]
        assert len(items) == 10
        assert [item["n"] for item in items[-4:]] == [0, 1, 2, 3]

    def test_backlog_never_below_threshold(self):
        assert TelemetryBuffer(max_size=50, max_backlog=10).max_backlog == 50
