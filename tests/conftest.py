"""
Pytest fixtures for cl-route-confidence tests.

Provides mock plugin and RPC fixtures plus sample node ids, hops and
reputation responses.
"""

import pytest
import os
import sys
from unittest.mock import MagicMock

# Add package root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


@pytest.fixture
def make_key():
    """Build a 33-byte hex node id filled with byte n."""
    def _make_key(n: int = 0) -> str:
        return bytes([n]).hex() * 33
    return _make_key


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def mock_rpc():
    """Create a mock RPC interface."""
    rpc = MagicMock()

    # Default return values
    rpc.getinfo.return_value = {
        "id": "02" + "a" * 64,
        "alias": "test-node",
        "network": "regtest"
    }
    rpc.call.return_value = {"nodes": []}

    return rpc


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "02" + "c" * 64,
        "03" + "d" * 64,
        "03" + "e" * 64,
    ]


@pytest.fixture
def two_hop_route(sample_peer_ids):
    """getroute-style two hop route from peer 0 via peer 1 to peer 2."""
    return [
        {"channel": "100x1x0", "id": sample_peer_ids[1], "amount_msat": 1_001_000},
        {"channel": "200x2x0", "id": sample_peer_ids[2], "amount_msat": 1_000_000},
    ]


@pytest.fixture
def sample_reputation_response(sample_peer_ids):
    """Reputation query response covering the two hop route."""
    return {
        "nodes": [
            {
                "node_id": sample_peer_ids[0],
                "confidence": 500_000,
                "channels": [],
                "peers": []
            },
            {
                "node_id": sample_peer_ids[1],
                "confidence": 800_000,
                "channels": [
                    {"short_channel_id": "200x2x0", "confidence": 600_000, "min_relevant_msat": 2_000_000}
                ],
                "peers": [
                    {"node_id": sample_peer_ids[2], "confidence": 700_000, "min_relevant_msat": 0}
                ]
            }
        ]
    }
