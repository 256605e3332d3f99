"""
Discovery Client — queries the registry and picks circuit paths.

Used by:
  - Relays: register their public key and address on startup
  - Senders: fetch the directory snapshot and choose a circuit from it
  - HttpTransport: resolve a next-hop node id to its address
"""

import logging
import random

import requests

import config
from network.errors import InsufficientNodes, UnknownNextHop
from network.registry_server import NodeRecord

logger = logging.getLogger("onionsim.discovery")


class RegistryClient:
    """HTTP client for the registry service."""

    def __init__(self, registry_url: str = None, timeout: float = None,
                 session: requests.Session = None):
        self.registry_url = (registry_url or config.registry_url()).rstrip("/")
        self.timeout = timeout or config.REGISTRY_TIMEOUT_SECONDS
        self._session = session or requests.Session()

    def register(self, node_id: int, public_key: str, address: str) -> bool:
        """Register a relay with the registry."""
        try:
            resp = self._session.post(
                f"{self.registry_url}/registerNode",
                json={"nodeId": node_id, "publicKey": public_key, "address": address},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("Failed to register node %d with registry: %s", node_id, e)
            return False
        if not resp.ok:
            logger.error("Registry rejected node %d: HTTP %d %s",
                         node_id, resp.status_code, resp.text)
            return False
        return True

    def list_nodes(self) -> tuple[NodeRecord, ...]:
        """Fetch the directory snapshot. Raises UnknownNextHop if unreachable."""
        try:
            resp = self._session.get(f"{self.registry_url}/getNodeRegistry",
                                     timeout=self.timeout)
            resp.raise_for_status()
            return tuple(NodeRecord.from_dict(n) for n in resp.json()["nodes"])
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            raise UnknownNextHop(f"Registry unavailable at {self.registry_url}: {e}") from e

    def get(self, node_id: int) -> NodeRecord | None:
        for node in self.list_nodes():
            if node.node_id == node_id:
                return node
        return None


# ---------------------------------------------------------------------------
# Path selection
# ---------------------------------------------------------------------------

class PathSelector:
    """Strategy for choosing the relays of a circuit."""

    def choose(self, nodes: list[NodeRecord], count: int) -> list[NodeRecord]:
        """Return ``count`` distinct nodes ordered [entry, ..., exit]."""
        raise NotImplementedError


class RandomPathSelector(PathSelector):
    """Uniform choice without replacement."""

    def __init__(self, rng: random.Random = None):
        self._rng = rng or random.SystemRandom()

    def choose(self, nodes: list[NodeRecord], count: int) -> list[NodeRecord]:
        if count > len(nodes):
            raise InsufficientNodes(
                f"Need {count} relays, registry has {len(nodes)}")
        return self._rng.sample(list(nodes), count)


class FixedPathSelector(PathSelector):
    """Always picks the given node ids, in order. For tests and demos."""

    def __init__(self, node_ids: list[int]):
        self.node_ids = list(node_ids)

    def choose(self, nodes: list[NodeRecord], count: int) -> list[NodeRecord]:
        by_id = {n.node_id: n for n in nodes}
        missing = [i for i in self.node_ids if i not in by_id]
        if missing:
            raise InsufficientNodes(f"Fixed path nodes not registered: {missing}")
        return [by_id[i] for i in self.node_ids[:count]]
