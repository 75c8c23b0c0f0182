"""
Tests for the checkpoint store and scheduler.
"""

import asyncio
import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from distcoord.durability.checkpoint import (
    FULL_SYSTEM,
    LATEST_POINTER,
    Checkpoint,
    CheckpointScheduler,
    CheckpointStore,
    compute_digest,
    verify_integrity,
)
from distcoord.errors import CheckpointIntegrityError


class SteppingClock:
    """Wall clock advancing one second per reading."""

    def __init__(self, start=datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        current = self.now
        self.now += timedelta(seconds=1)
        return current


class TestDigest:
    """Test digest helpers."""

    def test_digest_ignores_key_order(self):
        """Test canonical encoding is key-order independent."""
        assert compute_digest({"a": 1, "b": [1, 2]}) == compute_digest({"b": [1, 2], "a": 1})

    def test_digest_detects_changes(self):
        """Test any payload change changes the digest."""
        assert compute_digest({"a": 1}) != compute_digest({"a": 2})

    def test_verify_integrity_mismatch(self):
        """Test a tampered payload fails verification."""
        checkpoint = Checkpoint(
            id="full-system_1",
            type=FULL_SYSTEM,
            wall_clock_time="2024-05-01T08:00:00.000000+00:00",
            origin_node_id=1,
            snapshot_payload={"attendance": [{"id": 1}]},
            operation_count_at_snapshot=0,
            integrity_digest=compute_digest({"attendance": []}),
        )

        with pytest.raises(CheckpointIntegrityError) as exc_info:
            verify_integrity(checkpoint)

        assert exc_info.value.checkpoint_id == "full-system_1"


@pytest.mark.asyncio
class TestCheckpointStore:
    """Test CheckpointStore."""

    async def test_create_checkpoint(self):
        """Test a checkpoint is persisted with a valid digest."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(
                Path(tmpdir),
                node_id=4,
                operation_count=lambda: 17,
                now_fn=SteppingClock(),
            )

            checkpoint = await store.create_checkpoint(FULL_SYSTEM, {"attendance": [{"id": 1}]})

            assert checkpoint.id.startswith("full-system_")
            assert checkpoint.origin_node_id == 4
            assert checkpoint.operation_count_at_snapshot == 17
            assert checkpoint.integrity_digest == compute_digest({"attendance": [{"id": 1}]})
            assert (Path(tmpdir) / f"{checkpoint.id}.json").exists()
            assert (Path(tmpdir) / LATEST_POINTER).read_text() == checkpoint.id
            assert store.latest == checkpoint
            verify_integrity(checkpoint)

    async def test_ids_are_unique(self):
        """Test back-to-back checkpoints get distinct ids."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=1, now_fn=SteppingClock())

            ids = {(await store.create_checkpoint("emergency", {})).id for _ in range(5)}

            assert len(ids) == 5

    async def test_find_latest_checkpoint(self):
        """Test the newest record by creation time is returned."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=1, now_fn=SteppingClock())

            await store.create_checkpoint(FULL_SYSTEM, {"n": 1})
            await store.create_checkpoint("emergency", {"n": 2})
            newest = await store.create_checkpoint(FULL_SYSTEM, {"n": 3})

            reopened = CheckpointStore(Path(tmpdir), node_id=1)

            assert reopened.find_latest_checkpoint() == newest
            assert reopened.latest == newest

    async def test_find_latest_empty(self):
        """Test an empty store has no latest checkpoint."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=1)

            assert store.find_latest_checkpoint() is None

    async def test_unreadable_records_are_skipped(self):
        """Test corrupted files do not hide valid checkpoints."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=1, now_fn=SteppingClock())
            valid = await store.create_checkpoint(FULL_SYSTEM, {"n": 1})

            (Path(tmpdir) / "broken.json").write_text("{truncated")
            (Path(tmpdir) / "partial.json").write_text(json.dumps({"id": "x"}))

            assert store.list_checkpoints() == [valid]
            assert store.find_latest_checkpoint() == valid

    async def test_fan_out_only_when_leader(self):
        """Test followers never fan checkpoints out."""
        with tempfile.TemporaryDirectory() as tmpdir:
            leader = [False]
            sent = []

            async def replicator(checkpoint):
                sent.append(checkpoint.id)

            store = CheckpointStore(
                Path(tmpdir),
                node_id=1,
                is_leader=lambda: leader[0],
                replicator=replicator,
                now_fn=SteppingClock(),
            )

            follower_cp = await store.create_checkpoint(FULL_SYSTEM, {})
            leader[0] = True
            leader_cp = await store.create_checkpoint(FULL_SYSTEM, {})

            assert sent == [leader_cp.id]
            assert follower_cp.id not in sent

    async def test_replication_failure_is_contained(self):
        """Test a failing fan-out still persists the checkpoint."""
        with tempfile.TemporaryDirectory() as tmpdir:
            async def replicator(checkpoint):
                raise ConnectionError("peers down")

            store = CheckpointStore(
                Path(tmpdir),
                node_id=1,
                is_leader=lambda: True,
                replicator=replicator,
            )

            checkpoint = await store.create_checkpoint(FULL_SYSTEM, {"n": 1})

            assert store.load(checkpoint.id) == checkpoint

    async def test_store_replica(self):
        """Test replicated checkpoints are verified and persisted."""
        with tempfile.TemporaryDirectory() as src_dir, tempfile.TemporaryDirectory() as dst_dir:
            source = CheckpointStore(Path(src_dir), node_id=4)
            target = CheckpointStore(Path(dst_dir), node_id=2)

            checkpoint = await source.create_checkpoint(FULL_SYSTEM, {"attendance": [{"id": 9}]})

            stored = target.store_replica(checkpoint.to_dict())

            assert stored == checkpoint
            assert target.find_latest_checkpoint() == checkpoint

    async def test_store_replica_rejects_corruption(self):
        """Test a tampered replica is not persisted."""
        with tempfile.TemporaryDirectory() as src_dir, tempfile.TemporaryDirectory() as dst_dir:
            source = CheckpointStore(Path(src_dir), node_id=4)
            target = CheckpointStore(Path(dst_dir), node_id=2)

            record = (await source.create_checkpoint(FULL_SYSTEM, {"n": 1})).to_dict()
            record["snapshot_payload"] = {"n": 2}

            with pytest.raises(CheckpointIntegrityError):
                target.store_replica(record)

            assert target.find_latest_checkpoint() is None

    async def test_store_replica_rejects_path_ids(self):
        """Test a replica id naming another directory is refused before any write."""
        with tempfile.TemporaryDirectory() as src_dir, tempfile.TemporaryDirectory() as root_dir:
            source = CheckpointStore(Path(src_dir), node_id=4)
            target = CheckpointStore(Path(root_dir) / "checkpoints", node_id=2)

            record = (await source.create_checkpoint(FULL_SYSTEM, {"n": 1})).to_dict()

            for bad_id in ("../escaped_1", "full-system_1.tmp", "/tmp/full-system_1", "full-system"):
                record["id"] = bad_id
                with pytest.raises(ValueError):
                    target.store_replica(record)

            assert sorted(p.name for p in Path(root_dir).rglob("*")) == ["checkpoints"]
            assert target.find_latest_checkpoint() is None


@pytest.mark.asyncio
class TestCheckpointScheduler:
    """Test CheckpointScheduler."""

    async def test_follower_skips(self):
        """Test followers do not checkpoint."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=1)
            scheduler = CheckpointScheduler(store, snapshot=lambda days: {}, is_leader=lambda: False)

            assert await scheduler.run() is None
            assert store.find_latest_checkpoint() is None

    async def test_leader_checkpoints_with_window(self):
        """Test the leader requests the configured window and stores a full-system checkpoint."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=1)
            windows = []

            async def snapshot(days):
                windows.append(days)
                return {"attendance": [{"id": 1}]}

            scheduler = CheckpointScheduler(
                store, snapshot=snapshot, is_leader=lambda: True, window_days=7
            )

            checkpoint = await scheduler.run()

            assert windows == [7]
            assert checkpoint.type == FULL_SYSTEM
            assert store.find_latest_checkpoint() == checkpoint

    async def test_recurring_task(self):
        """Test the scheduler's task runs on its interval."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=1)
            ticks = []

            async def fake_sleep(delay):
                ticks.append(delay)
                await asyncio.sleep(0)

            scheduler = CheckpointScheduler(
                store,
                snapshot=lambda days: {"n": len(ticks)},
                is_leader=lambda: True,
                interval=300,
                sleep=fake_sleep,
            )

            scheduler.task.start()
            for _ in range(10):
                await asyncio.sleep(0)
            await scheduler.task.stop()

            assert scheduler.task.runs >= 1
            assert set(ticks) == {300}
            assert len(store.list_checkpoints()) == scheduler.task.runs
