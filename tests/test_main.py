"""
Tests for the node command line.
"""

import pytest

from distcoord.durability.oplog import OperationLogEntry
from distcoord.errors import DuplicateOperationError
from distcoord.handlers import RestoredRecord
from distcoord.main import InMemoryRecords, build_config, parse_args


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("NODE_ID", "WORKER_ID", "PEER_COUNT", "PEER_BASE_PORT", "DATA_DIR"):
        monkeypatch.delenv(name, raising=False)


def make_entry(entry_id, operation_type, payload):
    return OperationLogEntry(
        id=entry_id,
        wall_clock_time="2024-05-01T08:00:00.000000+00:00",
        origin_node_id=1,
        logical_time=1,
        operation_type=operation_type,
        payload=payload,
    )


class TestCommandLine:
    """Test argument parsing and config overrides."""

    def test_overrides_applied(self):
        args = parse_args(["--node-id", "3", "--peers", "5", "--base-port", "6000", "--data-dir", "/tmp/n3"])

        config = build_config(args)

        assert config.get("node.id") == 3
        assert config.get("peers.count") == 5
        assert config.get("peers.base_port") == 6000
        assert config.get("node.data_dir") == "/tmp/n3"

    def test_unset_flags_keep_config(self):
        config = build_config(parse_args([]))

        assert config.get("peers.count") == 4
        assert config.get("logging.format") == "json"

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD"])


class TestInMemoryRecords:
    """Test the standalone record store."""

    def test_restore_and_snapshot(self):
        records = InMemoryRecords()

        records.apply_restored_record(RestoredRecord("students", {"id": 1, "name": "Ada"}))
        records.apply_restored_record(RestoredRecord("students", {"id": 1, "name": "Ada L."}))

        assert records.snapshot(7) == {"students": [{"id": 1, "name": "Ada L."}]}

    def test_replay_updates_restored_record(self):
        """Test a replayed operation changes the record restored from the checkpoint."""
        records = InMemoryRecords()
        records.apply_restored_record(RestoredRecord("attendance", {"id": 1, "present": False}))

        records.apply_replayed_operation(make_entry("op_1", "attendance-mark", {"id": 1, "present": True}))

        assert records.snapshot(7) == {"attendance": [{"id": 1, "present": True}]}

    def test_replay_creates_and_deletes(self):
        records = InMemoryRecords()

        records.apply_replayed_operation(make_entry("op_1", "student.create", {"id": 5, "name": "Grace"}))
        records.apply_replayed_operation(make_entry("op_2", "student.create", {"id": 6, "name": "Alan"}))
        records.apply_replayed_operation(make_entry("op_3", "student.delete", {"id": 5}))

        assert records.snapshot(7) == {"student": [{"id": 6, "name": "Alan"}]}

    def test_replay_collection_override(self):
        """Test the payload's collection field wins over the operation prefix."""
        records = InMemoryRecords()

        records.apply_replayed_operation(
            make_entry("op_1", "mark", {"collection": "attendance", "id": 2, "present": True, "lamport_time": 4})
        )

        assert records.snapshot(7) == {"attendance": [{"id": 2, "present": True}]}

    def test_replay_duplicate(self):
        records = InMemoryRecords()
        entry = make_entry("op_1", "student.create", {"id": 1})

        records.apply_replayed_operation(entry)

        with pytest.raises(DuplicateOperationError):
            records.apply_replayed_operation(entry)

    def test_replay_without_record_id(self):
        records = InMemoryRecords()

        with pytest.raises(ValueError):
            records.apply_replayed_operation(make_entry("op_1", "student.create", {"name": "Ada"}))

        assert records.applied_operations == set()
