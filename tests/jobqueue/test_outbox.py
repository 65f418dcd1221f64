"""
Broadcast Outbox Tests.

- broadcast() returns without waiting on the real broadcaster
- Delivery order is enqueue order
- A full outbox drops and counts instead of blocking
- Broadcaster failures are contained
"""

import time

import pytest

from src.jobqueue import BroadcastOutbox

from .conftest import FailingBroadcaster, RecordingBroadcaster, SlowBroadcaster


class TestEnqueue:
    def test_broadcast_does_not_wait(self):
        slow = SlowBroadcaster(delay=0.5)
        outbox = BroadcastOutbox(slow)

        started = time.monotonic()
        for n in range(4):
            outbox.broadcast("job-status", {"n": n})

        assert time.monotonic() - started < 0.5
        assert outbox.pending == 4
        assert slow.messages == []

    def test_full_outbox_drops_newest(self):
        recording = RecordingBroadcaster()
        outbox = BroadcastOutbox(recording, maxsize=2)

        for n in range(3):
            outbox.broadcast("job-status", {"n": n})
        outbox.flush()

        assert outbox.dropped == 1
        assert [payload["n"] for payload in recording.on("job-status")] == [0, 1]

    def test_rejects_empty_queue_size(self):
        with pytest.raises(ValueError):
            BroadcastOutbox(RecordingBroadcaster(), maxsize=0)


class TestDelivery:
    def test_flush_delivers_in_order(self):
        recording = RecordingBroadcaster()
        outbox = BroadcastOutbox(recording)
        outbox.broadcast("job-status", {"n": 1})
        outbox.broadcast("metrics", {"n": 2})

        assert outbox.flush() == 2
        assert recording.messages == [("job-status", {"n": 1}), ("metrics", {"n": 2})]
        assert outbox.pending == 0

    def test_background_thread_delivers(self):
        recording = RecordingBroadcaster()
        outbox = BroadcastOutbox(recording)
        outbox.start()
        try:
            outbox.broadcast("job-status", {"n": 1})

            deadline = time.monotonic() + 5
            while not recording.messages and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            outbox.stop(timeout=5)

        assert recording.messages == [("job-status", {"n": 1})]

    def test_stop_sends_what_is_queued(self):
        recording = RecordingBroadcaster()
        outbox = BroadcastOutbox(recording)
        for n in range(5):
            outbox.broadcast("job-status", {"n": n})

        outbox.start()
        outbox.stop(timeout=5)

        assert len(recording.messages) == 5
        assert outbox.delivered == 5

    def test_start_twice_rejected(self):
        outbox = BroadcastOutbox(RecordingBroadcaster())
        outbox.start()
        try:
            with pytest.raises(RuntimeError):
                outbox.start()
        finally:
            outbox.stop(timeout=5)

    def test_failing_broadcaster_is_contained(self):
        outbox = BroadcastOutbox(FailingBroadcaster())
        outbox.broadcast("job-status", {"n": 1})

        assert outbox.flush() == 1
        assert outbox.delivered == 0
