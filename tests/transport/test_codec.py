"""
Tests for the peer wire format.
"""

import pytest

from distcoord.transport import codec


class TestCodec:
    """Test JSON message codec."""

    def test_method_path(self):
        assert codec.method_path(codec.HEALTH) == "/distcoord.Peer/Health"

    def test_encode_decode(self):
        message = {"claimantId": 4, "lamport_time": 17}

        assert codec.decode(codec.encode(message)) == message

    def test_empty_payload(self):
        """Test an empty body decodes to an empty request."""
        assert codec.decode(b"") == {}

    def test_non_object_rejected(self):
        """Test top-level JSON values other than objects are rejected."""
        with pytest.raises(ValueError):
            codec.decode(b"[1, 2]")

    def test_invalid_json_rejected(self):
        with pytest.raises(ValueError):
            codec.decode(b"{not json")

    def test_every_method_registered(self):
        assert set(codec.METHODS) == {
            "Health",
            "StepDown",
            "ReplicateCheckpoint",
            "ReplicateOperation",
        }
