"""
ONIONSIM - Configuration

Port layout, circuit length, and timeouts for the simulated onion network.
Every service address is derived from a base port plus its id, so a whole
network can run on one machine.
"""

import os

# Circuit shape
CIRCUIT_LENGTH = 3  # relays per circuit: entry, middle, exit

# Host every local service binds to / is reached at
HOST = os.environ.get("ONIONSIM_HOST", "localhost")

# Ports
REGISTRY_PORT = int(os.environ.get("ONIONSIM_REGISTRY_PORT", "8080"))
BASE_ONION_ROUTER_PORT = int(os.environ.get("ONIONSIM_BASE_ONION_ROUTER_PORT", "4000"))
BASE_USER_PORT = int(os.environ.get("ONIONSIM_BASE_USER_PORT", "3000"))

# Registry (directory service)
REGISTRY_URL = os.environ.get("ONIONSIM_REGISTRY_URL", f"http://{HOST}:{REGISTRY_PORT}")
REGISTRY_TIMEOUT_SECONDS = 5.0

# Per-hop bound on how long a caller waits for the next hop to answer
FORWARD_TIMEOUT_SECONDS = float(os.environ.get("ONIONSIM_FORWARD_TIMEOUT", "10"))

# HKDF domain separation for sealed session keys
SEAL_INFO = b"onionsim-session-key"


def registry_url() -> str:
    """Return the base URL of the registry service."""
    return REGISTRY_URL


def onion_router_url(node_id: int) -> str:
    """Return the base URL a relay with ``node_id`` listens on."""
    return f"http://{HOST}:{BASE_ONION_ROUTER_PORT + node_id}"


def user_url(user_id: int) -> str:
    """Return the base URL of a user's inbox / send service."""
    return f"http://{HOST}:{BASE_USER_PORT + user_id}"
