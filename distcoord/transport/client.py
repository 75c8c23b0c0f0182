"""
Peer gRPC client.

Pooled channels to every peer plus typed wrappers for the calls the
elector and the replication paths make. Any RPC failure surfaces as
PeerUnavailableError.
"""

import asyncio
from typing import Any, Dict, Optional

import grpc

from distcoord.election.rpc import (
    HealthResponse,
    ReplicationRequest,
    ReplicationResponse,
    StepDownRequest,
    StepDownResponse,
)
from distcoord.election.state import PeerNode
from distcoord.errors import PeerUnavailableError
from distcoord.transport import codec
from distcoord.utils.logging import get_logger

logger = get_logger(__name__)


class PeerConnectionPool:
    """
    gRPC channels to peers, one per peer id.

    Channels found in a failed state are closed and recreated on the next
    request.
    """

    def __init__(self, request_timeout_s: float = 2.0):
        """
        Initialize connection pool.

        Args:
            request_timeout_s: Default request timeout
        """
        self._channels: Dict[int, grpc.aio.Channel] = {}
        self._timeout = request_timeout_s
        self._lock = asyncio.Lock()

    async def get_channel(self, peer: PeerNode) -> grpc.aio.Channel:
        """Get or create the channel to a peer."""
        async with self._lock:
            channel = self._channels.get(peer.numeric_id)
            if channel is not None:
                state = channel.get_state(try_to_connect=False)
                if state != grpc.ChannelConnectivity.SHUTDOWN:
                    return channel

                logger.info("Channel shut down, recreating", peer_id=peer.numeric_id)
                await channel.close()
                del self._channels[peer.numeric_id]

            channel = grpc.aio.insecure_channel(
                peer.health_endpoint,
                options=codec.CHANNEL_OPTIONS + [
                    ("grpc.initial_reconnect_backoff_ms", 1000),
                    ("grpc.max_reconnect_backoff_ms", 10000),
                ],
            )
            self._channels[peer.numeric_id] = channel

            logger.debug(
                "Created channel to peer",
                peer_id=peer.numeric_id,
                endpoint=peer.health_endpoint,
            )

            return channel

    async def close_channel(self, peer_id: int) -> None:
        async with self._lock:
            channel = self._channels.pop(peer_id, None)
            if channel is not None:
                await channel.close()

    async def close_all(self) -> None:
        """Close all channels."""
        async with self._lock:
            for channel in self._channels.values():
                await channel.close()
            self._channels.clear()

            logger.info("Closed all peer channels")

    def get_timeout(self) -> float:
        return self._timeout


class PeerClient:
    """
    Client side of the distcoord.Peer service.

    Bound methods plug straight into LeaderElector.send_probe and
    LeaderElector.send_step_down.
    """

    def __init__(self, pool: Optional[PeerConnectionPool] = None):
        self._pool = pool or PeerConnectionPool()

    async def _call(
        self,
        peer: PeerNode,
        method: str,
        request: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        channel = await self._pool.get_channel(peer)
        call = channel.unary_unary(
            codec.method_path(method),
            request_serializer=codec.encode,
            response_deserializer=codec.decode,
        )

        try:
            return await call(request, timeout=timeout or self._pool.get_timeout())
        except grpc.RpcError as e:
            logger.debug(
                "Peer call failed",
                peer_id=peer.numeric_id,
                method=method,
                error=str(e),
            )
            raise PeerUnavailableError(
                f"Peer {peer.numeric_id} unavailable for {method}"
            ) from e

    async def probe(self, peer: PeerNode) -> HealthResponse:
        """Query a peer's liveness endpoint."""
        response = await self._call(peer, codec.HEALTH, {})
        return HealthResponse.from_dict(response)

    async def step_down(self, peer: PeerNode, request: StepDownRequest) -> StepDownResponse:
        """Send a step-down directive."""
        response = await self._call(peer, codec.STEP_DOWN, request.to_dict())
        return StepDownResponse.from_dict(response)

    async def replicate_checkpoint(
        self, peer: PeerNode, request: ReplicationRequest
    ) -> ReplicationResponse:
        response = await self._call(peer, codec.REPLICATE_CHECKPOINT, request.to_dict())
        return ReplicationResponse.from_dict(response)

    async def replicate_operation(
        self, peer: PeerNode, request: ReplicationRequest
    ) -> ReplicationResponse:
        response = await self._call(peer, codec.REPLICATE_OPERATION, request.to_dict())
        return ReplicationResponse.from_dict(response)

    async def close(self) -> None:
        """Close all connections."""
        await self._pool.close_all()
