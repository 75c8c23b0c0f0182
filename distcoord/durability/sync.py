"""
Checkpoint sync verification.

The leader periodically compares every peer's latest checkpoint digest
with its own and re-sends the latest checkpoint to peers that disagree.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from distcoord.durability.checkpoint import Checkpoint, CheckpointStore
from distcoord.election.rpc import HealthResponse
from distcoord.election.state import PeerNode, PeerSet
from distcoord.utils.logging import get_logger
from distcoord.utils.scheduler import RecurringTask, SleepFn

logger = get_logger(__name__)

ProbeFn = Callable[[PeerNode], Awaitable[Optional[HealthResponse]]]
SendCheckpointFn = Callable[[PeerNode, Checkpoint], Awaitable[Any]]


@dataclass
class SyncReport:
    """
    Outcome of one verification round.

    Attributes:
        checkpoint_id: Leader's latest checkpoint
        in_sync: Peers reporting the same digest
        resynced: Peers that were sent the checkpoint again
        unreachable: Peers that did not answer or failed the resend
    """
    checkpoint_id: Optional[str] = None
    in_sync: List[int] = field(default_factory=list)
    resynced: List[int] = field(default_factory=list)
    unreachable: List[int] = field(default_factory=list)


class SyncVerifier:
    """Leader-only periodic digest comparison against every peer."""

    def __init__(
        self,
        store: CheckpointStore,
        peers: PeerSet,
        node_id: int,
        is_leader: Callable[[], bool],
        probe: ProbeFn,
        send_checkpoint: SendCheckpointFn,
        interval: float = 600.0,
        sleep: Optional[SleepFn] = None,
    ):
        """
        Initialize sync verifier.

        Args:
            store: Local checkpoint store
            peers: Static peer set
            node_id: This node's id
            is_leader: Reads current leadership
            probe: Returns a peer's health (None when down)
            send_checkpoint: Pushes a checkpoint to one peer
            interval: Seconds between rounds
            sleep: Sleep function (injectable for tests)
        """
        self.store = store
        self.peers = peers
        self.node_id = node_id
        self.is_leader = is_leader
        self.probe = probe
        self.send_checkpoint = send_checkpoint
        self.task = RecurringTask("sync-verify", interval, self.run, sleep=sleep)
        self.last_report: Optional[SyncReport] = None

    async def run(self) -> Optional[SyncReport]:
        """Verify every peer once; no-op unless leader."""
        if not self.is_leader():
            return None

        latest = self.store.latest or self.store.find_latest_checkpoint()
        if latest is None:
            logger.debug("No checkpoint to verify", node_id=self.node_id)
            return None

        report = SyncReport(checkpoint_id=latest.id)
        others = self.peers.others(self.node_id)

        await asyncio.gather(*(self._verify(peer, latest, report) for peer in others))

        for ids in (report.in_sync, report.resynced, report.unreachable):
            ids.sort()

        logger.info(
            "Sync verification complete",
            checkpoint_id=latest.id,
            in_sync=report.in_sync,
            resynced=report.resynced,
            unreachable=report.unreachable,
        )

        self.last_report = report
        return report

    async def _verify(self, peer: PeerNode, latest: Checkpoint, report: SyncReport) -> None:
        try:
            health = await self.probe(peer)
        except Exception as e:
            logger.debug("Sync probe failed", peer_id=peer.numeric_id, error=str(e))
            health = None

        if health is None or not health.healthy:
            report.unreachable.append(peer.numeric_id)
            return

        if health.latest_checkpoint_digest == latest.integrity_digest:
            report.in_sync.append(peer.numeric_id)
            return

        logger.warning(
            "Peer out of sync, re-sending checkpoint",
            peer_id=peer.numeric_id,
            checkpoint_id=latest.id,
            peer_digest=health.latest_checkpoint_digest,
        )

        try:
            await self.send_checkpoint(peer, latest)
            report.resynced.append(peer.numeric_id)
        except Exception as e:
            logger.error(
                "Checkpoint resend failed",
                peer_id=peer.numeric_id,
                error=str(e),
            )
            report.unreachable.append(peer.numeric_id)
