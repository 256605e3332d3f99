"""
Shared pytest fixtures for ONIONSIM unit tests.
"""

import os
import sys

import pytest

# Ensure project root is on sys.path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)


# ---------------------------------------------------------------------------
# Key fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def keypair():
    from network.onion import generate_keypair
    return generate_keypair()


@pytest.fixture
def other_keypair():
    from network.onion import generate_keypair
    return generate_keypair()


# ---------------------------------------------------------------------------
# Registry fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def registry():
    from network.registry_server import Registry
    return Registry()


@pytest.fixture
def public_key_b64(keypair):
    from network.onion import public_key_to_b64
    return public_key_to_b64(keypair[1])


# ---------------------------------------------------------------------------
# Network fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def make_network():
    """Factory for in-process networks: make_network(num_nodes, path=None)."""
    from network.discovery import FixedPathSelector
    from node.launcher import LocalNetwork

    def _make(num_nodes=5, user_ids=(0, 1), path=None, timeout=2.0):
        selector = FixedPathSelector(path) if path else None
        return LocalNetwork(num_nodes=num_nodes, user_ids=user_ids,
                            timeout=timeout, selector=selector)

    return _make


@pytest.fixture
def network(make_network):
    """Five relays (0-4), users 0 and 1, fixed circuit [2, 0, 4]."""
    return make_network(num_nodes=5, path=[2, 0, 4])


def relay_diagnostics(net) -> dict:
    """Snapshot every relay's diagnostic fields."""
    return {
        node_id: (relay.last_received_encrypted,
                  relay.last_received_decrypted,
                  relay.last_message_destination)
        for node_id, relay in net.relays.items()
    }
