"""
Coordination node.

Wires the clock, delivery queue, operation log, checkpoint store,
recovery, leader election, batch executor and peer transport of one
process together, and exposes the coordination API used by the business
layer.

Startup order:
1. connect the business store (exponential backoff)
2. recover checkpoint + log state
3. serve the peer endpoint
4. elect a leader
5. start recurring tasks (checkpoint, sync verification, delivery cleanup)
"""

import asyncio
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Set

from distcoord.batch.executor import (
    BatchConfig,
    BatchResult,
    ParallelBatchExecutor,
    Reducer,
    WorkerFn,
)
from distcoord.clock.lamport import LogicalClock
from distcoord.delivery.emitter import ReliableEmitter, Selector
from distcoord.delivery.queue import DeliveryConfig, ReliableDeliveryQueue
from distcoord.durability.checkpoint import (
    FULL_SYSTEM,
    Checkpoint,
    CheckpointConfig,
    CheckpointScheduler,
    CheckpointStore,
)
from distcoord.durability.oplog import OperationLog, OperationLogEntry
from distcoord.durability.recovery import RecoveryCoordinator, RecoveryResult
from distcoord.durability.sync import SyncVerifier
from distcoord.election.elector import LeaderElector
from distcoord.election.rpc import (
    HealthResponse,
    ReplicationRequest,
    ReplicationResponse,
    StepDownRequest,
    StepDownResponse,
)
from distcoord.election.state import ElectionConfig, PeerNode, PeerSet
from distcoord.errors import (
    CheckpointIntegrityError,
    CoordinationError,
    RecoveryError,
    StartupError,
)
from distcoord.handlers import BusinessHandlers, call_handler
from distcoord.transport.client import PeerClient
from distcoord.transport.server import PeerServer
from distcoord.utils.config import Config
from distcoord.utils.logging import get_logger
from distcoord.utils.scheduler import RecurringTask, SleepFn, TaskGroup

logger = get_logger(__name__)


class CoordinationNode:
    """
    One member of the coordination peer set.

    The peer client may be replaced (e.g. by an in-memory transport in
    tests); it must provide probe, step_down, replicate_checkpoint and
    replicate_operation coroutines.
    """

    def __init__(
        self,
        node_id: int,
        peers: PeerSet,
        data_dir: Path,
        election: Optional[ElectionConfig] = None,
        delivery: Optional[DeliveryConfig] = None,
        checkpoint: Optional[CheckpointConfig] = None,
        batch: Optional[BatchConfig] = None,
        oplog_buffer_size: int = 1000,
        connect_attempts: int = 5,
        client: Optional[Any] = None,
        serve: bool = True,
        bind_host: str = "0.0.0.0",
        sleep: Optional[SleepFn] = None,
    ):
        """
        Initialize coordination node.

        Args:
            node_id: This node's id in the peer set
            peers: Static peer set
            data_dir: Root of the checkpoint and operation log directories
            election: Election timing
            delivery: Reliable delivery configuration
            checkpoint: Checkpoint scheduling configuration
            batch: Batch executor configuration
            oplog_buffer_size: In-memory operation buffer size
            connect_attempts: Business store connect attempts at startup
            client: Peer client (gRPC PeerClient when None)
            serve: Start the gRPC peer endpoint
            bind_host: Host the peer endpoint binds to
            sleep: Sleep function (injectable for tests)
        """
        self.node_id = node_id
        self.peers = peers
        self.data_dir = Path(data_dir)
        self.delivery_config = delivery or DeliveryConfig()
        self.checkpoint_config = checkpoint or CheckpointConfig()
        self.batch_config = batch or BatchConfig()
        self.connect_attempts = connect_attempts
        self._sleep = sleep or asyncio.sleep

        self.handlers: Optional[BusinessHandlers] = None

        self.clock = LogicalClock()

        self.oplog = OperationLog(
            directory=self.data_dir / "oplog",
            node_id=node_id,
            clock=self.clock,
            max_buffer_size=oplog_buffer_size,
        )
        self.oplog.on_append(self._on_operation_appended)

        self.elector = LeaderElector(node_id, peers, election, sleep=sleep)

        self.checkpoints = CheckpointStore(
            directory=self.data_dir / "checkpoints",
            node_id=node_id,
            is_leader=self.is_leader,
            operation_count=lambda: self.oplog.operation_count,
            replicator=self._replicate_checkpoint,
        )

        self.queue = ReliableDeliveryQueue(self._deliver, self.delivery_config, sleep=sleep)
        self.emitter = ReliableEmitter(self.queue, self.clock, node_id, resolver=self._resolve)

        self.executor = ParallelBatchExecutor(
            mode=self.batch_config.mode,
            max_workers=self.batch_config.max_workers,
        )

        self.client = client or PeerClient()
        self.server = PeerServer(self, bind_host, peers.port_for(node_id)) if serve else None

        self.elector.send_probe = self._send_probe
        self.elector.send_step_down = self._send_step_down
        self.elector.health_provider = self._health_extra

        self.checkpoint_scheduler = CheckpointScheduler(
            store=self.checkpoints,
            snapshot=self._snapshot,
            is_leader=self.is_leader,
            interval=self.checkpoint_config.interval_s,
            window_days=self.checkpoint_config.snapshot_window_days,
            sleep=sleep,
        )
        self.sync_verifier = SyncVerifier(
            store=self.checkpoints,
            peers=peers,
            node_id=node_id,
            is_leader=self.is_leader,
            probe=self.elector.probe,
            send_checkpoint=self._send_checkpoint,
            interval=self.checkpoint_config.sync_interval_s,
            sleep=sleep,
        )

        self._tasks = TaskGroup()
        self._tasks.add(self.checkpoint_scheduler.task)
        self._tasks.add(self.sync_verifier.task)
        self._tasks.add(RecurringTask(
            "delivery-cleanup",
            self.delivery_config.cleanup_interval_s,
            self.queue.purge_expired,
            sleep=sleep,
        ))

        self.recovery_result: Optional[RecoveryResult] = None
        self._replication: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._running = False

        logger.info(
            "CoordinationNode initialized",
            node_id=node_id,
            peers=len(peers),
            data_dir=str(self.data_dir),
        )

    @classmethod
    def from_config(cls, config: Config, **kwargs: Any) -> "CoordinationNode":
        """Build a node from a loaded Config."""
        peers = PeerSet(
            count=int(config.get("peers.count")),
            host=config.get("peers.host"),
            base_port=int(config.get("peers.base_port")),
        )

        return cls(
            node_id=int(config.get("node.id")),
            peers=peers,
            data_dir=Path(config.get("node.data_dir")),
            election=ElectionConfig(**config.section("election")),
            delivery=DeliveryConfig(**config.section("delivery")),
            checkpoint=CheckpointConfig(**config.section("checkpoint")),
            batch=BatchConfig(**config.section("batch")),
            oplog_buffer_size=int(config.get("oplog.max_buffer_size")),
            connect_attempts=int(config.get("startup.connect_attempts")),
            **kwargs,
        )

    def register_business_handlers(self, handlers: BusinessHandlers) -> None:
        """Install the business-layer callbacks. Must happen before start()."""
        self.handlers = handlers
        self.executor.connection_factory = handlers.connection_factory

        logger.info("Business handlers registered", node_id=self.node_id)

    # Lifecycle

    async def start(self) -> RecoveryResult:
        """
        Run the startup sequence.

        Returns:
            Recovery result

        Raises:
            StartupError: If the business store stays unreachable or the
                latest checkpoint fails its integrity check
        """
        if self.handlers is None:
            raise StartupError("Business handlers must be registered before start")

        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()

        await self._connect_with_retry()

        recovery = RecoveryCoordinator(self.checkpoints, self.oplog, self.handlers)
        try:
            self.recovery_result = await recovery.recover()
        except (CheckpointIntegrityError, RecoveryError) as e:
            raise StartupError(f"Recovery failed: {e}") from e

        if self.server:
            await self.server.start()

        await self.elector.start()

        self._tasks.start_all()
        self._running = True

        logger.info(
            "Node started",
            node_id=self.node_id,
            state=self.elector.state.value,
            leader_id=self.elector.leader.current_leader_id,
        )

        return self.recovery_result

    async def _connect_with_retry(self) -> None:
        if self.handlers.connect is None:
            return

        for attempt in range(self.connect_attempts):
            try:
                await call_handler(self.handlers.connect)

                if attempt > 0:
                    logger.info("Business store connected after retry", attempt=attempt)
                return

            except Exception as e:
                if attempt + 1 >= self.connect_attempts:
                    logger.error(
                        "Business store unreachable after all attempts",
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise StartupError(
                        f"Business store unreachable after {attempt + 1} attempts"
                    ) from e

                backoff = 2 ** attempt
                logger.warning(
                    "Business store connect failed, retrying",
                    attempt=attempt,
                    backoff_s=backoff,
                    error=str(e),
                )
                await self._sleep(backoff)

    async def stop(self, final_checkpoint: bool = True) -> Optional[Checkpoint]:
        """
        Graceful shutdown.

        Args:
            final_checkpoint: Write one last checkpoint when leader

        Returns:
            The final checkpoint, if one was written
        """
        logger.info("Stopping node", node_id=self.node_id)

        await self._tasks.stop_all()
        await self.elector.stop()

        checkpoint = None
        if final_checkpoint and self.is_leader() and self.handlers and self.handlers.snapshot:
            try:
                checkpoint = await self.checkpoint_scheduler.run()
            except Exception as e:
                logger.error("Final checkpoint failed", node_id=self.node_id, error=str(e))

        if self._replication:
            await asyncio.gather(*list(self._replication), return_exceptions=True)

        if self.server:
            await self.server.stop()

        close = getattr(self.client, "close", None)
        if close is not None:
            await close()

        self.executor.shutdown(wait=False)
        self._running = False

        logger.info("Node stopped", node_id=self.node_id)

        return checkpoint

    # Business-layer API

    def current_logical_time(self) -> int:
        return self.clock.current()

    def tick(self) -> int:
        return self.clock.tick()

    def observe(self, received_time: int) -> int:
        return self.clock.observe(received_time)

    def is_leader(self) -> bool:
        return self.elector.is_leader()

    async def emit_reliable(
        self,
        destination_selector: Selector,
        event: str,
        payload: Dict[str, Any],
    ) -> list:
        """Push an event with causal stamping and retry; never raises delivery errors."""
        return await self.emitter.emit_reliable(destination_selector, event, payload)

    def receive_event(self, payload: Dict[str, Any]) -> int:
        """Observe the logical time of an incoming real-time event."""
        return self.emitter.receive(payload)

    def acknowledge(self, message_id: str) -> bool:
        return self.queue.acknowledge(message_id)

    def run_parallel(
        self,
        items: Sequence[Any],
        chunk_size: Optional[int],
        worker_fn: WorkerFn,
        reducer: Optional[Reducer] = None,
    ) -> "asyncio.Task[BatchResult]":
        """
        Start a batch on the executor pool.

        Returns:
            Task resolving to the batch result

        Raises:
            ValueError: If chunk_size < 1
        """
        size = self.batch_config.default_chunk_size if chunk_size is None else chunk_size
        if size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {size}")

        return asyncio.create_task(self.executor.submit(items, size, worker_fn, reducer))

    def append_operation(
        self,
        operation_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> OperationLogEntry:
        """Record a committed business mutation."""
        return self.oplog.append_operation(operation_type, payload)

    async def create_checkpoint(self, checkpoint_type: str = FULL_SYSTEM) -> Checkpoint:
        """Create a checkpoint now from the business snapshot provider."""
        payload = await self._snapshot(self.checkpoint_config.snapshot_window_days)
        return await self.checkpoints.create_checkpoint(checkpoint_type, payload)

    def status(self) -> Dict[str, Any]:
        """Coordination status of this node."""
        latest = self.checkpoints.latest

        return {
            "node_id": self.node_id,
            "running": self._running,
            "state": self.elector.state.value,
            "is_leader": self.is_leader(),
            "leader_id": self.elector.leader.current_leader_id,
            "lamport_time": self.clock.current(),
            "operation_count": self.oplog.operation_count,
            "buffered_operations": len(self.oplog),
            "latest_checkpoint": latest.id if latest else None,
            "pending_messages": self.queue.pending_count(),
            "delivered_messages": self.queue.delivered_count,
            "dropped_messages": self.queue.dropped_count,
            "recovery": {
                "restored": self.recovery_result.restored,
                "checkpoint_id": self.recovery_result.checkpoint_id,
                "replayed": self.recovery_result.replayed,
                "failed": self.recovery_result.failed,
            } if self.recovery_result else None,
            "peers": {
                peer.numeric_id: peer.last_known_alive
                for peer in self.peers.others(self.node_id)
            },
        }

    # Business callbacks

    async def _snapshot(self, window_days: int) -> Any:
        if self.handlers is None or self.handlers.snapshot is None:
            raise CoordinationError("No snapshot provider registered")
        return await call_handler(self.handlers.snapshot, window_days)

    async def _deliver(self, destination: str, event: str, payload: Dict[str, Any]) -> None:
        if self.handlers is None or self.handlers.deliver is None:
            raise CoordinationError("No delivery transport registered")
        await self.handlers.deliver(destination, event, payload)

    def _resolve(self, selector: str) -> Any:
        if self.handlers is None or self.handlers.resolve_destinations is None:
            return [selector]
        return self.handlers.resolve_destinations(selector)

    def _health_extra(self) -> Dict[str, Any]:
        latest = self.checkpoints.latest
        return {
            "lamport_time": self.clock.current(),
            "latest_checkpoint_digest": latest.integrity_digest if latest else None,
            "operation_count": self.oplog.operation_count,
        }

    # Outgoing peer traffic

    async def _send_probe(self, peer: PeerNode) -> HealthResponse:
        response = await self.client.probe(peer)
        self.clock.observe(response.lamport_time)
        return response

    async def _send_step_down(self, peer: PeerNode, request: StepDownRequest) -> StepDownResponse:
        request.lamport_time = self.clock.tick()
        response = await self.client.step_down(peer, request)
        self.clock.observe(response.lamport_time)
        return response

    async def _send_checkpoint(self, peer: PeerNode, checkpoint: Checkpoint) -> ReplicationResponse:
        request = ReplicationRequest(
            leader_id=self.node_id,
            record=checkpoint.to_dict(),
            lamport_time=self.clock.tick(),
        )
        response = await self.client.replicate_checkpoint(peer, request)
        self.clock.observe(response.lamport_time)

        if not response.stored:
            logger.warning(
                "Peer rejected checkpoint",
                peer_id=peer.numeric_id,
                checkpoint_id=checkpoint.id,
                error=response.error,
            )

        return response

    async def _replicate_checkpoint(self, checkpoint: Checkpoint) -> None:
        others = self.peers.others(self.node_id)
        results = await asyncio.gather(
            *(self._send_checkpoint(peer, checkpoint) for peer in others),
            return_exceptions=True,
        )

        for peer, result in zip(others, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Checkpoint replication to peer failed",
                    peer_id=peer.numeric_id,
                    checkpoint_id=checkpoint.id,
                    error=str(result),
                )

    async def _replicate_operation(self, entry: OperationLogEntry) -> None:
        others = self.peers.others(self.node_id)

        async def send(peer: PeerNode) -> None:
            request = ReplicationRequest(
                leader_id=self.node_id,
                record=entry.to_dict(),
                lamport_time=self.clock.tick(),
            )
            try:
                response = await self.client.replicate_operation(peer, request)
                self.clock.observe(response.lamport_time)
            except Exception as e:
                logger.debug(
                    "Operation replication to peer failed",
                    peer_id=peer.numeric_id,
                    operation_id=entry.id,
                    error=str(e),
                )

        await asyncio.gather(*(send(peer) for peer in others))

    def _on_operation_appended(self, entry: OperationLogEntry) -> None:
        if not self.is_leader() or self._loop is None or self._loop.is_closed():
            return

        # appends may come from batch worker threads
        if threading.get_ident() == self._loop_thread:
            self._schedule_replication(entry)
        else:
            self._loop.call_soon_threadsafe(self._schedule_replication, entry)

    def _schedule_replication(self, entry: OperationLogEntry) -> None:
        task = asyncio.ensure_future(self._replicate_operation(entry), loop=self._loop)
        self._replication.add(task)
        task.add_done_callback(self._replication.discard)

    # Incoming peer traffic (served by PeerServer)

    async def handle_health(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return self.elector.health().to_dict()

    async def handle_step_down(self, request: Dict[str, Any]) -> Dict[str, Any]:
        step_down = StepDownRequest.from_dict(request)
        self.clock.observe(step_down.lamport_time)

        accepted = self.elector.handle_step_down(step_down.claimant_id)
        return StepDownResponse(
            accepted=accepted,
            node_id=self.node_id,
            lamport_time=self.clock.current(),
        ).to_dict()

    async def handle_replicate_checkpoint(self, request: Dict[str, Any]) -> Dict[str, Any]:
        replication = ReplicationRequest.from_dict(request)
        self.clock.observe(replication.lamport_time)

        try:
            self.checkpoints.store_replica(replication.record)
        except CheckpointIntegrityError as e:
            logger.error(
                "Rejected corrupted checkpoint replica",
                leader_id=replication.leader_id,
                checkpoint_id=e.checkpoint_id,
            )
            return ReplicationResponse(
                stored=False,
                node_id=self.node_id,
                error=str(e),
                lamport_time=self.clock.current(),
            ).to_dict()
        except ValueError as e:
            logger.error(
                "Rejected malformed checkpoint replica",
                leader_id=replication.leader_id,
                error=str(e),
            )
            return ReplicationResponse(
                stored=False,
                node_id=self.node_id,
                error=str(e),
                lamport_time=self.clock.current(),
            ).to_dict()

        return ReplicationResponse(
            stored=True,
            node_id=self.node_id,
            lamport_time=self.clock.current(),
        ).to_dict()

    async def handle_replicate_operation(self, request: Dict[str, Any]) -> Dict[str, Any]:
        replication = ReplicationRequest.from_dict(request)
        self.clock.observe(replication.lamport_time)

        entry = OperationLogEntry.from_dict(replication.record)
        stored = self.oplog.append_replica(entry)

        return ReplicationResponse(
            stored=stored,
            node_id=self.node_id,
            lamport_time=self.clock.current(),
        ).to_dict()
