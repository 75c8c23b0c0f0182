"""
Tests for the operation log.
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from distcoord.clock.lamport import LogicalClock
from distcoord.durability.oplog import (
    OperationLog,
    OperationLogEntry,
    format_wall_clock,
    replay_order,
)


class SteppingClock:
    """Wall clock advancing one second per reading."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        current = self.now
        self.now += timedelta(seconds=1)
        return current


def make_entry(entry_id, logical_time, wall):
    return OperationLogEntry(
        id=entry_id,
        wall_clock_time=format_wall_clock(wall),
        origin_node_id=1,
        logical_time=logical_time,
        operation_type="attendance-mark",
        payload={},
    )


class TestOperationLogEntry:
    """Test OperationLogEntry."""

    def test_roundtrip_dict(self):
        """Test to_dict/from_dict."""
        entry = make_entry("op1", 3, datetime(2024, 5, 1, tzinfo=timezone.utc))

        assert OperationLogEntry.from_dict(entry.to_dict()) == entry

    def test_entries_are_immutable(self):
        """Test entries cannot be modified after creation."""
        entry = make_entry("op1", 3, datetime(2024, 5, 1, tzinfo=timezone.utc))

        with pytest.raises(Exception):
            entry.logical_time = 4

    def test_replay_order(self):
        """Test ordering by logical time, then wall clock, then id."""
        base = datetime(2024, 5, 1, tzinfo=timezone.utc)
        entries = [
            make_entry("c", 2, base),
            make_entry("b", 1, base + timedelta(seconds=5)),
            make_entry("a", 1, base + timedelta(seconds=5)),
            make_entry("d", 1, base),
        ]

        assert [e.id for e in replay_order(entries)] == ["d", "a", "b", "c"]


class TestOperationLog:
    """Test OperationLog."""

    def test_append_stamps_entry(self):
        """Test append stamps logical time, wall time and origin."""
        with tempfile.TemporaryDirectory() as tmpdir:
            clock = LogicalClock()
            oplog = OperationLog(Path(tmpdir), node_id=3, clock=clock)

            entry = oplog.append_operation("attendance-mark", {"student": "s1"})

            assert entry.logical_time == 1
            assert entry.origin_node_id == 3
            assert entry.operation_type == "attendance-mark"
            assert entry.payload == {"student": "s1"}
            assert oplog.operation_count == 1
            assert len(oplog) == 1

    def test_append_observes_carried_time(self):
        """Test a carried lamport_time is observed before stamping."""
        with tempfile.TemporaryDirectory() as tmpdir:
            clock = LogicalClock()
            oplog = OperationLog(Path(tmpdir), node_id=1, clock=clock)

            entry = oplog.append_operation("grievance-create", {"lamport_time": 50})

            # observe -> 51, tick -> 52
            assert entry.logical_time == 52

    def test_logical_times_strictly_increase(self):
        """Test successive appends get increasing logical times."""
        with tempfile.TemporaryDirectory() as tmpdir:
            oplog = OperationLog(Path(tmpdir), node_id=1, clock=LogicalClock())

            times = [oplog.append_operation("op", {}).logical_time for _ in range(10)]

            assert times == sorted(set(times))

    def test_buffer_evicts_oldest(self):
        """Test the in-memory buffer keeps only the newest entries."""
        with tempfile.TemporaryDirectory() as tmpdir:
            oplog = OperationLog(Path(tmpdir), node_id=1, clock=LogicalClock(), max_buffer_size=3)

            entries = [oplog.append_operation("op", {"n": n}) for n in range(5)]

            assert len(oplog) == 3
            assert [e.id for e in oplog.recent()] == [e.id for e in entries[2:]]
            assert oplog.operation_count == 5

            # evicted entries are still durable
            assert len(oplog.read_since(None)) == 5

    def test_recent_limit(self):
        """Test recent(limit) returns the newest entries."""
        with tempfile.TemporaryDirectory() as tmpdir:
            oplog = OperationLog(Path(tmpdir), node_id=1, clock=LogicalClock())

            entries = [oplog.append_operation("op", {}) for _ in range(4)]

            assert [e.id for e in oplog.recent(2)] == [e.id for e in entries[2:]]

    def test_partition_per_day(self):
        """Test entries land in the partition of their UTC day."""
        with tempfile.TemporaryDirectory() as tmpdir:
            clock = SteppingClock(datetime(2024, 5, 1, 23, 59, 59, tzinfo=timezone.utc))
            oplog = OperationLog(Path(tmpdir), node_id=1, clock=LogicalClock(), now_fn=clock)

            oplog.append_operation("op", {})
            oplog.append_operation("op", {})

            assert (Path(tmpdir) / "operations_2024-05-01.log").exists()
            assert (Path(tmpdir) / "operations_2024-05-02.log").exists()

    def test_durable_write_failure_is_not_fatal(self):
        """Test an unwritable directory does not fail the append."""
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "not-a-dir"
            blocker.write_text("occupied")

            oplog = OperationLog(blocker, node_id=1, clock=LogicalClock())

            entry = oplog.append_operation("attendance-mark", {"student": "s1"})

            assert entry.logical_time == 1
            assert len(oplog) == 1
            assert oplog.write_failures == 1

    def test_read_since_is_strict(self):
        """Test read_since returns entries strictly after the bound."""
        with tempfile.TemporaryDirectory() as tmpdir:
            start = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
            oplog = OperationLog(
                Path(tmpdir), node_id=1, clock=LogicalClock(), now_fn=SteppingClock(start)
            )

            entries = [oplog.append_operation("op", {"n": n}) for n in range(4)]

            since = oplog.read_since(entries[1].wall_clock_time)

            assert [e.id for e in since] == [e.id for e in entries[2:]]

    def test_read_since_skips_older_partitions(self):
        """Test partitions before the bound's day are not read."""
        with tempfile.TemporaryDirectory() as tmpdir:
            clock = SteppingClock(datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc))
            oplog = OperationLog(Path(tmpdir), node_id=1, clock=LogicalClock(), now_fn=clock)

            oplog.append_operation("op", {})
            clock.now = datetime(2024, 5, 3, 10, 0, 0, tzinfo=timezone.utc)
            later = oplog.append_operation("op", {})

            since = oplog.read_since(datetime(2024, 5, 2, tzinfo=timezone.utc))

            assert [e.id for e in since] == [later.id]

    def test_read_since_skips_unparsable_lines(self):
        """Test corrupted lines are skipped."""
        with tempfile.TemporaryDirectory() as tmpdir:
            clock = SteppingClock(datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc))
            oplog = OperationLog(Path(tmpdir), node_id=1, clock=LogicalClock(), now_fn=clock)

            first = oplog.append_operation("op", {})
            with open(oplog.partition_path(datetime(2024, 5, 1).date()), "a") as f:
                f.write("{not json\n")
                f.write(json.dumps({"id": "missing-fields"}) + "\n")
            second = oplog.append_operation("op", {})

            assert [e.id for e in oplog.read_since(None)] == [first.id, second.id]

    def test_listeners_receive_appends(self):
        """Test on_append listeners get each entry and failures are contained."""
        with tempfile.TemporaryDirectory() as tmpdir:
            oplog = OperationLog(Path(tmpdir), node_id=1, clock=LogicalClock())
            seen = []

            def broken(entry):
                raise RuntimeError("listener bug")

            oplog.on_append(broken)
            oplog.on_append(seen.append)

            entry = oplog.append_operation("op", {})

            assert seen == [entry]

    def test_append_replica_dedupes(self):
        """Test replicated entries keep their origin and are stored once."""
        with tempfile.TemporaryDirectory() as tmpdir:
            clock = LogicalClock()
            oplog = OperationLog(Path(tmpdir), node_id=2, clock=clock)
            entry = make_entry("op_remote", 30, datetime(2024, 5, 1, tzinfo=timezone.utc))

            assert oplog.append_replica(entry)
            assert not oplog.append_replica(entry)

            assert len(oplog) == 1
            assert oplog.recent()[0].origin_node_id == 1
            assert clock.current() > 30
            assert oplog.operation_count == 0

    def test_invalid_buffer_size(self):
        """Test the buffer must hold at least one entry."""
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ValueError):
                OperationLog(Path(tmpdir), node_id=1, clock=LogicalClock(), max_buffer_size=0)
