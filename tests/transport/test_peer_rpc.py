"""
Tests for the peer gRPC server and client.
"""

import pytest
import pytest_asyncio

from distcoord.election.rpc import ReplicationRequest, StepDownRequest
from distcoord.election.state import PeerSet
from distcoord.errors import PeerUnavailableError
from distcoord.transport.client import PeerClient, PeerConnectionPool
from distcoord.transport.server import PeerServer


class FakeService:
    """Service object recording requests."""

    def __init__(self):
        self.requests = []

    async def handle_health(self, request):
        self.requests.append(("health", request))
        return {"healthy": True, "node_id": 1, "is_leader": True, "leader_id": 1, "state": "leader"}

    async def handle_step_down(self, request):
        self.requests.append(("step_down", request))
        if "claimantId" not in request:
            raise ValueError("step-down request without claimantId")
        return {"accepted": request["claimantId"] > 1, "node_id": 1}

    async def handle_replicate_checkpoint(self, request):
        self.requests.append(("checkpoint", request))
        return {"stored": True, "node_id": 1}

    async def handle_replicate_operation(self, request):
        self.requests.append(("operation", request))
        raise RuntimeError("log unavailable")


@pytest_asyncio.fixture
async def served():
    service = FakeService()
    server = PeerServer(service, "127.0.0.1", 0)
    await server.start()

    peers = PeerSet(count=1, host="127.0.0.1", base_port=server.port)
    client = PeerClient(PeerConnectionPool(request_timeout_s=5.0))

    yield service, client, peers.get(1)

    await client.close()
    await server.stop(grace_period=0)


@pytest.mark.asyncio
class TestPeerRpc:
    """Test client/server round trips over a real channel."""

    async def test_probe(self, served):
        service, client, peer = served

        response = await client.probe(peer)

        assert response.healthy
        assert response.is_leader
        assert response.leader_id == 1
        assert service.requests == [("health", {})]

    async def test_step_down(self, served):
        service, client, peer = served

        response = await client.step_down(peer, StepDownRequest(claimant_id=3, lamport_time=9))

        assert response.accepted
        assert service.requests[0] == ("step_down", {"claimantId": 3, "lamport_time": 9})

    async def test_replicate_checkpoint(self, served):
        service, client, peer = served

        response = await client.replicate_checkpoint(
            peer, ReplicationRequest(leader_id=4, record={"id": "full-system_1"})
        )

        assert response.stored
        assert service.requests[0][1]["record"] == {"id": "full-system_1"}

    async def test_handler_error_surfaces_as_unavailable(self, served):
        """Test a failing handler reaches the caller as PeerUnavailableError."""
        _, client, peer = served

        with pytest.raises(PeerUnavailableError):
            await client.replicate_operation(peer, ReplicationRequest(leader_id=4))

    async def test_unreachable_peer(self):
        """Test calling a peer with nothing listening raises PeerUnavailableError."""
        server = PeerServer(FakeService(), "127.0.0.1", 0)
        await server.start()
        port = server.port
        await server.stop(grace_period=0)

        peer = PeerSet(count=1, host="127.0.0.1", base_port=port).get(1)
        client = PeerClient(PeerConnectionPool(request_timeout_s=1.0))
        try:
            with pytest.raises(PeerUnavailableError):
                await client.probe(peer)
        finally:
            await client.close()

    async def test_server_running_flag(self):
        server = PeerServer(FakeService(), "127.0.0.1", 0)
        assert not server.is_running()

        await server.start()
        assert server.is_running()
        assert server.port > 0

        await server.stop(grace_period=0)
        assert not server.is_running()
