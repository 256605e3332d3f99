"""
Registry Server — directory of relay nodes for circuit building.

Relays register their id, public key and address on startup. Senders fetch a
snapshot of the directory and pick their circuit from it.

Writes are serialized behind a lock; every write publishes a fresh immutable
snapshot, so readers never lock and never see a half-applied registration.
State lives in memory only and is rebuilt as relays re-register.

Usage:
    python -m network.registry_server
    python -m network.registry_server --port 8080
"""

import argparse
import logging
import threading
from dataclasses import dataclass

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

import config
from network.onion import public_key_from_b64

logger = logging.getLogger("onionsim.registry")


@dataclass(frozen=True)
class NodeRecord:
    """Directory entry for one relay."""
    node_id: int
    public_key: str     # base64 raw X25519 public key
    address: str        # base URL, e.g. "http://localhost:4002"

    def to_dict(self) -> dict:
        return {
            "nodeId": self.node_id,
            "publicKey": self.public_key,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NodeRecord":
        return cls(
            node_id=int(data["nodeId"]),
            public_key=str(data["publicKey"]),
            address=str(data["address"]),
        )


class Registry:
    """In-memory node directory with copy-on-write snapshots."""

    def __init__(self):
        self._nodes: dict[int, NodeRecord] = {}
        self._snapshot: tuple[NodeRecord, ...] = ()
        self._lock = threading.Lock()

    def register(self, node_id: int, public_key: str, address: str) -> dict:
        """
        Add or replace a node. Re-registering an existing id replaces the
        previous entry (last write wins), so a restarted relay can announce
        itself again.
        """
        if not isinstance(node_id, int) or isinstance(node_id, bool) or node_id < 0:
            raise ValueError(f"nodeId must be a non-negative integer, got {node_id!r}")
        if not isinstance(address, str) or not address:
            raise ValueError("address must be a non-empty string")
        public_key_from_b64(public_key)  # raises ValueError if unusable

        record = NodeRecord(node_id=node_id, public_key=public_key, address=address)
        with self._lock:
            replaced = node_id in self._nodes
            nodes = dict(self._nodes)
            nodes[node_id] = record
            snapshot = tuple(nodes[k] for k in sorted(nodes))
            self._nodes = nodes
            self._snapshot = snapshot

        if replaced:
            logger.info("Node %d re-registered at %s (previous entry replaced)",
                        node_id, address)
        else:
            logger.info("Node %d registered at %s", node_id, address)
        return {"status": "success"}

    def list_nodes(self) -> tuple[NodeRecord, ...]:
        """Snapshot of every completed registration, ordered by node id."""
        return self._snapshot

    def get(self, node_id: int) -> NodeRecord | None:
        return self._nodes.get(node_id)

    def __len__(self) -> int:
        return len(self._snapshot)


# ---------------------------------------------------------------------------
# HTTP service
# ---------------------------------------------------------------------------

class RegisterNodeRequest(BaseModel):
    nodeId: int
    publicKey: str
    address: str


def create_app(registry: Registry = None) -> FastAPI:
    """Build the registry's FastAPI app around ``registry``."""
    registry = registry if registry is not None else Registry()
    app = FastAPI(title="ONIONSIM Registry", version="1.0")
    app.state.registry = registry

    @app.get("/status", response_class=PlainTextResponse)
    def status():
        return "live"

    @app.post("/registerNode")
    def register_node(body: RegisterNodeRequest):
        try:
            return registry.register(body.nodeId, body.publicKey, body.address)
        except ValueError as e:
            logger.warning("Rejected registration for node %s: %s", body.nodeId, e)
            return JSONResponse(status_code=400, content={
                "status": "error", "message": str(e),
            })

    @app.get("/getNodeRegistry")
    def get_node_registry():
        return {"nodes": [n.to_dict() for n in registry.list_nodes()]}

    return app


def serve(port: int = None, host: str = "0.0.0.0"):
    """Start the registry server."""
    import uvicorn

    port = port or config.REGISTRY_PORT
    print(f"[Registry] Listening on {host}:{port}")
    uvicorn.run(create_app(), host=host, port=port, log_level="warning")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="ONIONSIM Node Registry")
    parser.add_argument("--port", type=int, default=config.REGISTRY_PORT,
                        help=f"HTTP port (default: {config.REGISTRY_PORT})")
    parser.add_argument("--host", type=str, default="0.0.0.0",
                        help="Bind address")
    args = parser.parse_args()
    serve(args.port, args.host)
