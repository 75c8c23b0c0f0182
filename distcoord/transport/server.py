"""
Peer gRPC server.

Serves the distcoord.Peer service (liveness probe, step-down directive,
checkpoint and operation replication) by delegating each call to a
node-level service object.
"""

from concurrent import futures
from typing import Any, Awaitable, Callable, Dict, Optional

import grpc

from distcoord.transport import codec
from distcoord.utils.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class PeerServer:
    """
    gRPC server for peer-to-peer coordination traffic.

    The service object must provide async methods mapping one request dict
    to one response dict: handle_health, handle_step_down,
    handle_replicate_checkpoint, handle_replicate_operation.
    """

    def __init__(self, service: Any, host: str, port: int, max_workers: int = 10):
        """
        Initialize peer server.

        Args:
            service: Node-level request handlers
            host: Bind host
            port: Bind port
            max_workers: gRPC executor size
        """
        self.service = service
        self.host = host
        self.port = port
        self.max_workers = max_workers

        self._server: Optional[grpc.aio.Server] = None
        self._running = False

        logger.info("PeerServer initialized", host=host, port=port)

    def _handlers(self) -> Dict[str, Handler]:
        return {
            codec.HEALTH: self.service.handle_health,
            codec.STEP_DOWN: self.service.handle_step_down,
            codec.REPLICATE_CHECKPOINT: self.service.handle_replicate_checkpoint,
            codec.REPLICATE_OPERATION: self.service.handle_replicate_operation,
        }

    def _wrap(self, method: str, handler: Handler):
        async def behavior(request: Dict[str, Any], context: grpc.aio.ServicerContext):
            try:
                return await handler(request)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Invalid peer request", method=method, error=str(e))
                await context.abort(grpc.StatusCode.INVALID_ARGUMENT, str(e))
            except Exception as e:
                logger.error("Peer request failed", method=method, error=str(e))
                await context.abort(grpc.StatusCode.INTERNAL, str(e))

        return grpc.unary_unary_rpc_method_handler(
            behavior,
            request_deserializer=codec.decode,
            response_serializer=codec.encode,
        )

    async def start(self) -> None:
        """Bind and start serving."""
        if self._running:
            logger.warning("Peer server already running")
            return

        self._server = grpc.aio.server(
            futures.ThreadPoolExecutor(max_workers=self.max_workers),
            options=codec.CHANNEL_OPTIONS,
        )

        generic_handler = grpc.method_handlers_generic_handler(
            codec.SERVICE_NAME,
            {name: self._wrap(name, h) for name, h in self._handlers().items()},
        )
        self._server.add_generic_rpc_handlers((generic_handler,))

        # port 0 binds an ephemeral port
        self.port = self._server.add_insecure_port(f"{self.host}:{self.port}")
        await self._server.start()

        self._running = True

        logger.info("Peer server started", endpoint=f"{self.host}:{self.port}")

    async def stop(self, grace_period: float = 5.0) -> None:
        """
        Stop the peer server.

        Args:
            grace_period: Grace period for shutdown in seconds
        """
        if not self._running:
            return

        self._running = False

        if self._server:
            await self._server.stop(grace_period)
            self._server = None

        logger.info("Peer server stopped", port=self.port)

    def is_running(self) -> bool:
        return self._running
