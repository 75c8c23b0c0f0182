"""
Tests for the Lamport logical clock.
"""

import threading

import pytest

from distcoord.clock.lamport import LAMPORT_FIELD, LogicalClock


class TestLogicalClock:
    """Test LogicalClock."""

    def test_starts_at_zero(self):
        """Test a fresh clock reads zero."""
        clock = LogicalClock()

        assert clock.current() == 0

    def test_tick_strictly_increases(self):
        """Test successive ticks strictly increase."""
        clock = LogicalClock()

        values = [clock.tick() for _ in range(5)]

        assert values == [1, 2, 3, 4, 5]
        assert clock.current() == 5

    def test_observe_larger_remote_time(self):
        """Test observe jumps past a larger remote time."""
        clock = LogicalClock()
        clock.tick()

        assert clock.observe(10) == 11

    def test_observe_smaller_remote_time(self):
        """Test observe still advances past the local time."""
        clock = LogicalClock(initial=20)

        assert clock.observe(3) == 21

    @pytest.mark.parametrize("local,remote", [(0, 0), (5, 2), (2, 5), (7, 7), (0, 1000)])
    def test_observe_exceeds_both(self, local, remote):
        """Test observe returns a value greater than both clocks."""
        clock = LogicalClock(initial=local)

        result = clock.observe(remote)

        assert result > local
        assert result > remote
        assert result == max(local, remote) + 1

    @pytest.mark.parametrize("bad", [-1, "3", 2.5, None, True])
    def test_observe_rejects_invalid(self, bad):
        """Test observe rejects negative and non-integer times."""
        clock = LogicalClock()

        with pytest.raises(ValueError):
            clock.observe(bad)

        assert clock.current() == 0

    def test_negative_initial_rejected(self):
        """Test the clock cannot start negative."""
        with pytest.raises(ValueError):
            LogicalClock(initial=-1)

    def test_stamp_copies_payload(self):
        """Test stamp ticks and returns a stamped copy."""
        clock = LogicalClock()
        payload = {"student": "s1"}

        stamped = clock.stamp(payload)

        assert stamped[LAMPORT_FIELD] == 1
        assert stamped["student"] == "s1"
        assert LAMPORT_FIELD not in payload

    def test_observe_payload(self):
        """Test observe_payload reads the carried time."""
        clock = LogicalClock()

        assert clock.observe_payload({LAMPORT_FIELD: 8}) == 9
        assert clock.observe_payload({}) == 10

    def test_concurrent_ticks_are_unique(self):
        """Test ticks from many threads never repeat."""
        clock = LogicalClock()
        seen = []
        lock = threading.Lock()

        def worker():
            for _ in range(200):
                value = clock.tick()
                with lock:
                    seen.append(value)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(seen) == 800
        assert len(set(seen)) == 800
        assert clock.current() == 800
