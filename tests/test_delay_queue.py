"""Tests for the per-synapse delay queue: timing, exactly-once delivery,
coalescing, range checks and persistence.
"""

import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from delay_queue import DELAY_QUEUE_LENGTH, DelayQueue, delay_to_ticks


def _ticks(q, n):
    return [q.tick() for _ in range(n)]


class TestDelivery:
    """A spike enqueued with delay d is delivered on the d-th tick, once."""

    @pytest.mark.parametrize("delay", list(range(1, DELAY_QUEUE_LENGTH)))
    def test_delivered_exactly_at_delay(self, delay):
        q = DelayQueue()
        q.enqueue(delay)
        results = _ticks(q, delay)
        assert results[-1] is True
        assert not any(results[:-1])

    @pytest.mark.parametrize("delay", [1, 7, 16, DELAY_QUEUE_LENGTH - 1])
    def test_delivered_only_once(self, delay):
        q = DelayQueue()
        q.enqueue(delay)
        results = _ticks(q, 3 * DELAY_QUEUE_LENGTH)
        assert results.count(True) == 1

    def test_delay_measured_from_current_tick(self):
        q = DelayQueue()
        _ticks(q, 45)  # wrap the cursor past the end of the ring
        q.enqueue(5)
        results = _ticks(q, 5)
        assert results == [False, False, False, False, True]

    def test_independent_delays(self):
        q = DelayQueue()
        q.enqueue(3)
        _ticks(q, 1)
        q.enqueue(4)
        results = _ticks(q, 6)
        # first spike due 2 ticks after the second enqueue, second at 4
        assert results == [False, True, False, True, False, False]

    def test_same_slot_coalesces(self):
        q = DelayQueue()
        q.enqueue(4)
        _ticks(q, 2)
        q.enqueue(2)  # lands on the same slot as the first spike
        results = _ticks(q, DELAY_QUEUE_LENGTH)
        assert results.count(True) == 1
        assert results[1] is True

    def test_pending_count(self):
        q = DelayQueue()
        q.enqueue(2)
        q.enqueue(9)
        assert q.pending_count() == 2
        _ticks(q, 2)
        assert q.pending_count() == 1


class TestRange:
    """Delays outside 1..N-1 are rejected, never clamped."""

    @pytest.mark.parametrize("delay", [0, -1, DELAY_QUEUE_LENGTH, DELAY_QUEUE_LENGTH + 5])
    def test_rejects_out_of_range(self, delay):
        q = DelayQueue()
        with pytest.raises(ValueError):
            q.enqueue(delay)
        assert q.pending_count() == 0

    def test_max_delay(self):
        assert DelayQueue().max_delay == DELAY_QUEUE_LENGTH - 1
        assert DelayQueue(8).max_delay == 7

    def test_length_must_be_power_of_two(self):
        with pytest.raises(ValueError):
            DelayQueue(12)
        with pytest.raises(ValueError):
            DelayQueue(1)


class TestDelayToTicks:
    def test_default_delays(self):
        assert delay_to_ticks(1.5e-3, 1e-4) == 16
        assert delay_to_ticks(0.8e-3, 1e-4) == 9

    def test_zero_delay_is_one_tick(self):
        assert delay_to_ticks(0.0, 1e-4) == 1


class TestPersistence:
    def test_round_trip_mid_flight(self):
        q = DelayQueue()
        q.enqueue(6)
        _ticks(q, 2)
        q.enqueue(10)

        clone = DelayQueue.from_dict(q.to_dict())
        assert _ticks(clone, 40) == _ticks(q, 40)

    def test_to_dict_fields(self):
        q = DelayQueue(8)
        q.enqueue(3)
        data = q.to_dict()
        assert data == {"length": 8, "cursor": 0, "pending": 1 << 3}

    def test_from_dict_rejects_bad_cursor(self):
        with pytest.raises(ValueError):
            DelayQueue.from_dict({"length": 8, "cursor": 8, "pending": 0})

    def test_from_dict_rejects_wide_mask(self):
        with pytest.raises(ValueError):
            DelayQueue.from_dict({"length": 8, "cursor": 0, "pending": 1 << 8})
