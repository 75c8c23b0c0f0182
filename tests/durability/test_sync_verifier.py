"""
Tests for leader sync verification.
"""

import tempfile
from pathlib import Path

import pytest

from distcoord.durability.checkpoint import FULL_SYSTEM, CheckpointStore
from distcoord.durability.sync import SyncVerifier
from distcoord.election.rpc import HealthResponse
from distcoord.election.state import PeerSet


class FakePeers:
    """Peer digests and resend log."""

    def __init__(self, digests):
        self.digests = digests
        self.resent = []

    async def probe(self, peer):
        if peer.numeric_id not in self.digests:
            raise ConnectionError("down")
        return HealthResponse(
            healthy=True,
            node_id=peer.numeric_id,
            latest_checkpoint_digest=self.digests[peer.numeric_id],
        )

    async def send_checkpoint(self, peer, checkpoint):
        self.resent.append((peer.numeric_id, checkpoint.id))
        self.digests[peer.numeric_id] = checkpoint.integrity_digest


def make_verifier(store, fake, leader=True):
    return SyncVerifier(
        store=store,
        peers=PeerSet(count=4),
        node_id=4,
        is_leader=lambda: leader,
        probe=fake.probe,
        send_checkpoint=fake.send_checkpoint,
    )


@pytest.mark.asyncio
class TestSyncVerifier:
    """Test SyncVerifier."""

    async def test_follower_does_nothing(self):
        """Test verification is leader-only."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=4)
            await store.create_checkpoint(FULL_SYSTEM, {"n": 1})
            fake = FakePeers({1: None, 2: None, 3: None})

            assert await make_verifier(store, fake, leader=False).run() is None
            assert fake.resent == []

    async def test_no_checkpoint(self):
        """Test nothing is verified before the first checkpoint."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=4)
            fake = FakePeers({1: None})

            assert await make_verifier(store, fake).run() is None

    async def test_resends_to_out_of_sync_peers(self):
        """Test peers with a different digest get the checkpoint again."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=4)
            checkpoint = await store.create_checkpoint(FULL_SYSTEM, {"n": 1})
            fake = FakePeers({1: checkpoint.integrity_digest, 2: "stale-digest"})

            report = await make_verifier(store, fake).run()

            assert report.checkpoint_id == checkpoint.id
            assert report.in_sync == [1]
            assert report.resynced == [2]
            assert report.unreachable == [3]
            assert fake.resent == [(2, checkpoint.id)]

    async def test_second_round_is_clean(self):
        """Test a resynced peer is in sync on the next round."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = CheckpointStore(Path(tmpdir), node_id=4)
            await store.create_checkpoint(FULL_SYSTEM, {"n": 1})
            fake = FakePeers({1: None, 2: None, 3: None})
            verifier = make_verifier(store, fake)

            await verifier.run()
            report = await verifier.run()

            assert report.in_sync == [1, 2, 3]
            assert report.resynced == []
            assert verifier.last_report is report
