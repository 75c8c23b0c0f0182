"""
Bully leader election over a static peer set.

States: ELECTING -> {LEADER, FOLLOWER}. The highest reachable id always
wins. A probe timeout and an explicit error both mean "peer down"; no
distinction is made between a crash and a partition.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from distcoord.election.rpc import HealthResponse, StepDownRequest, StepDownResponse
from distcoord.election.state import (
    ElectionConfig,
    ElectionState,
    LeaderState,
    PeerNode,
    PeerSet,
)
from distcoord.utils.logging import get_logger
from distcoord.utils.scheduler import RecurringTask, SleepFn, TaskGroup

logger = get_logger(__name__)

ProbeFn = Callable[[PeerNode], Awaitable[HealthResponse]]
StepDownFn = Callable[[PeerNode, StepDownRequest], Awaitable[StepDownResponse]]


class LeaderElector:
    """
    Bully election for one node.

    Transport callables (send_probe, send_step_down) are set by the
    external transport layer, as is health_provider for the extra fields
    reported on the liveness endpoint.
    """

    def __init__(
        self,
        node_id: int,
        peers: PeerSet,
        config: Optional[ElectionConfig] = None,
        sleep: Optional[SleepFn] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        """
        Initialize elector.

        Args:
            node_id: This node's id; must belong to the peer set
            peers: Static peer set
            config: Election timing
            sleep: Sleep function (injectable for tests)
            time_fn: Wall clock in epoch seconds
        """
        if node_id not in peers:
            raise ValueError(f"Node id {node_id} is not in the peer set 1..{peers.count}")

        self.node_id = node_id
        self.peers = peers
        self.config = config or ElectionConfig()
        self._sleep = sleep or asyncio.sleep
        self._time = time_fn

        self.state = ElectionState.ELECTING
        self.leader = LeaderState()

        # RPC handlers (set by external transport layer)
        self.send_probe: Optional[ProbeFn] = None
        self.send_step_down: Optional[StepDownFn] = None
        self.health_provider: Optional[Callable[[], Dict[str, Any]]] = None

        self._listeners: List[Callable[[LeaderState], Any]] = []
        self._election_lock = asyncio.Lock()
        # higher claimant accepted while the current round is in flight
        self._yielded_to: Optional[int] = None
        self.elections_run = 0
        self.last_heartbeat_at: Optional[float] = None

        self._tasks = TaskGroup()
        self._tasks.add(RecurringTask(
            "leader-heartbeat",
            self.config.heartbeat_interval_s,
            self.heartbeat,
            sleep=sleep,
        ))
        self._tasks.add(RecurringTask(
            "follower-liveness",
            self.config.liveness_interval_s,
            self.check_liveness,
            sleep=sleep,
        ))

        logger.info(
            "LeaderElector initialized",
            node_id=node_id,
            peers=peers.ids,
        )

    # Lifecycle

    async def start(self) -> None:
        """Wait for the settle delay, run the first election, start periodic checks."""
        if self.config.settle_delay_s > 0:
            await self._sleep(self.config.settle_delay_s)

        await self.run_election()

        self._tasks.start_all()

        logger.info("LeaderElector started", node_id=self.node_id, state=self.state.value)

    async def stop(self) -> None:
        await self._tasks.stop_all()
        logger.info("LeaderElector stopped", node_id=self.node_id)

    def on_change(self, callback: Callable[[LeaderState], Any]) -> None:
        """Register a listener for leadership changes."""
        self._listeners.append(callback)

    def _set_leader(self, leader: LeaderState) -> None:
        changed = leader != self.leader
        self.leader = leader

        if not changed:
            return

        for callback in self._listeners:
            try:
                callback(leader)
            except Exception as e:
                logger.error("Leadership listener failed", node_id=self.node_id, error=str(e))

    def is_leader(self) -> bool:
        return self.state == ElectionState.LEADER

    # Election

    async def run_election(self, reelection: bool = False) -> ElectionState:
        """
        Run one Bully election round.

        Probes every strictly-greater peer concurrently. Any healthy answer
        makes this node a follower; otherwise it becomes leader. A step-down
        accepted from a higher claimant during the round always wins.

        Returns:
            Resulting state
        """
        async with self._election_lock:
            self.elections_run += 1
            self.state = ElectionState.ELECTING
            self._yielded_to = None

            higher = self.peers.higher_than(self.node_id)

            logger.info(
                "Re-election" if reelection else "Starting leader election",
                node_id=self.node_id,
                higher_peers=[p.numeric_id for p in higher],
            )

            if not higher:
                logger.info("Highest id in the peer set, becoming leader", node_id=self.node_id)
                await self._become_leader()
                return self.state

            responses = await self._probe_all(higher)
            alive = [r for r in responses if r is not None and r.healthy]

            if self._yielded_to is not None:
                self._become_follower(self._yielded_to)
            elif not alive:
                logger.info("All higher peers are down, becoming leader", node_id=self.node_id)
                await self._become_leader()
            else:
                self._become_follower(self._leader_from(alive))

            return self.state

    def _leader_from(self, alive: List[HealthResponse]) -> Optional[int]:
        claims = [r.node_id for r in alive if r.is_leader]
        if claims:
            return max(claims)

        known = [r.leader_id for r in alive if r.leader_id is not None]
        if known:
            return max(known)

        # still electing: the highest responder is the presumptive winner
        return max(r.node_id for r in alive)

    async def _probe_all(self, peers: List[PeerNode]) -> List[Optional[HealthResponse]]:
        return list(await asyncio.gather(*(self.probe(peer) for peer in peers)))

    async def probe(self, peer: PeerNode) -> Optional[HealthResponse]:
        """
        Probe one peer's liveness endpoint.

        Returns:
            Health response, or None if the peer timed out or errored
        """
        if self.send_probe is None:
            return None

        try:
            response = await asyncio.wait_for(
                self.send_probe(peer),
                timeout=self.config.probe_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.debug("Probe timed out", peer_id=peer.numeric_id)
            return None
        except Exception as e:
            logger.debug("Probe failed", peer_id=peer.numeric_id, error=str(e))
            return None

        if response is not None and response.healthy:
            peer.last_known_alive = self._time()

        return response

    async def _become_leader(self) -> None:
        self.state = ElectionState.LEADER
        self._set_leader(LeaderState(current_leader_id=self.node_id, is_self_leader=True))

        logger.info("Became leader", node_id=self.node_id)

        await self.announce()

    def _become_follower(self, leader_id: Optional[int]) -> None:
        self.state = ElectionState.FOLLOWER
        self._set_leader(LeaderState(current_leader_id=leader_id, is_self_leader=False))

        logger.info("Became follower", node_id=self.node_id, leader_id=leader_id)

    async def announce(self) -> int:
        """
        Send a step-down directive to every lower-id peer.

        Returns:
            Number of peers that acknowledged the directive
        """
        lower = self.peers.lower_than(self.node_id)
        if not lower or self.send_step_down is None:
            return 0

        logger.info(
            "Broadcasting leadership",
            node_id=self.node_id,
            lower_peers=[p.numeric_id for p in lower],
        )

        results = await asyncio.gather(*(self._notify(peer) for peer in lower))
        return sum(1 for accepted in results if accepted)

    async def _notify(self, peer: PeerNode) -> bool:
        request = StepDownRequest(claimant_id=self.node_id)
        try:
            response = await asyncio.wait_for(
                self.send_step_down(peer, request),
                timeout=self.config.step_down_timeout_s,
            )
            return bool(response and response.accepted)
        except asyncio.TimeoutError:
            logger.debug("Step-down notification timed out", peer_id=peer.numeric_id)
        except Exception as e:
            logger.debug(
                "Could not notify peer to step down",
                peer_id=peer.numeric_id,
                error=str(e),
            )
        return False

    # Handlers

    def handle_step_down(self, claimant_id: int) -> bool:
        """
        Handle a step-down directive.

        Only a claimant with a strictly greater id is honored; lesser or
        equal claims are stale or duplicate and ignored.

        Returns:
            True if this node yielded to the claimant
        """
        if claimant_id <= self.node_id:
            logger.debug(
                "Ignoring step-down from lower or equal id",
                node_id=self.node_id,
                claimant_id=claimant_id,
            )
            return False

        if self.state == ElectionState.LEADER:
            logger.info("Stepping down", node_id=self.node_id, new_leader_id=claimant_id)

        if self._election_lock.locked():
            self._yielded_to = max(claimant_id, self._yielded_to or 0)

        self._become_follower(claimant_id)
        return True

    def health(self) -> HealthResponse:
        """Payload served on this node's liveness endpoint."""
        extra = self.health_provider() if self.health_provider else {}

        return HealthResponse(
            healthy=True,
            node_id=self.node_id,
            is_leader=self.is_leader(),
            leader_id=self.leader.current_leader_id,
            state=self.state.value,
            **extra,
        )

    # Periodic checks

    async def heartbeat(self) -> None:
        """
        Leader heartbeat.

        Re-sends the step-down directive so that lower peers which elected
        themselves while this node was unreachable yield again.
        """
        if not self.is_leader():
            return

        self.last_heartbeat_at = self._time()
        logger.info("Leader heartbeat", node_id=self.node_id)

        await self.announce()

    async def check_liveness(self) -> None:
        """
        Follower liveness check.

        Re-runs the election when no strictly-greater peer answers, or when
        this node holds the highest id but is not leader. Leaders skip it.
        """
        if self.state != ElectionState.FOLLOWER:
            return

        higher = self.peers.higher_than(self.node_id)

        if not higher:
            logger.warning("Highest id but not leader, starting election", node_id=self.node_id)
            await self.run_election(reelection=True)
            return

        responses = await self._probe_all(higher)
        alive = [r for r in responses if r is not None and r.healthy]

        if not alive:
            logger.warning("Leader failure detected, starting new election", node_id=self.node_id)
            await self.run_election(reelection=True)
            return

        leader_id = self._leader_from(alive)
        if leader_id is not None and leader_id != self.leader.current_leader_id:
            self._set_leader(LeaderState(current_leader_id=leader_id, is_self_leader=False))
