"""
ONIONSIM User — builds circuits, sends onion messages, and receives them.

A user plays both ends of a conversation:
  - Sender: picks a circuit from the registry snapshot, wraps the message in
    one layer per relay, and hands the outermost layer to the entry relay
  - Destination: an inbox that accepts plaintext from an exit relay and keeps
    the last message received

The exit relay performs the final decryption, so the inbox never sees any
circuit metadata or ciphertext.

Usage:
    python -m client.client --user-id 0
    python -m client.client --user-id 0 --port 3000 --registry http://localhost:8080
"""

import argparse
import logging
import threading

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

import config
from network.discovery import PathSelector, RandomPathSelector
from network.errors import InsufficientNodes, MalformedLayer, OnionError
from network.onion import OnionLayer, build_onion, public_key_from_b64
from network.registry_server import NodeRecord
from network.transport import Transport

logger = logging.getLogger("onionsim.client")


class CircuitBuilder:
    """
    Chooses a circuit and builds the onion for it.

    Everything here happens before any request leaves the sender: a failure
    (too few relays, bad selection) has no side effects on the network.
    """

    def __init__(self, directory, selector: PathSelector = None,
                 exclude_node_ids=()):
        self.directory = directory
        self.selector = selector or RandomPathSelector()
        self.exclude_node_ids = frozenset(exclude_node_ids)

    def select_circuit(self) -> list[NodeRecord]:
        """Pick CIRCUIT_LENGTH distinct relays from one registry snapshot."""
        snapshot = [n for n in self.directory.list_nodes()
                    if n.node_id not in self.exclude_node_ids]
        count = config.CIRCUIT_LENGTH
        if len(snapshot) < count:
            raise InsufficientNodes(
                f"Not enough onion routers available "
                f"(minimum {count} required, {len(snapshot)} registered)")

        circuit = list(self.selector.choose(snapshot, count))

        ids = [n.node_id for n in circuit]
        known = {n.node_id for n in snapshot}
        if len(ids) != count or len(set(ids)) != count or not set(ids) <= known:
            raise ValueError(f"Path selector returned an invalid circuit: {ids}")
        return circuit

    def build(self, message: str,
              destination_user_id: int) -> tuple[list[NodeRecord], OnionLayer]:
        """Returns (circuit, outermost layer for the entry node)."""
        circuit = self.select_circuit()
        layer = build_onion(
            hop_ids=[n.node_id for n in circuit],
            hop_public_keys=[public_key_from_b64(n.public_key) for n in circuit],
            message=message,
            destination_user_id=destination_user_id,
        )
        return circuit, layer


class UserNode:
    """A user: sender front-end plus inbox."""

    def __init__(self, user_id: int, builder: CircuitBuilder, transport: Transport):
        self.user_id = user_id
        self.builder = builder
        self.transport = transport

        self.last_received_message: str | None = None
        self.last_sent_message: str | None = None
        self.last_circuit: list[int] | None = None
        self._lock = threading.Lock()

    def receive_message(self, message: str) -> dict:
        """Inbox: accept plaintext from an exit relay."""
        with self._lock:
            self.last_received_message = message
        logger.info("[User %d] Received message (%d chars)", self.user_id, len(message))
        return {"status": "success"}

    def send_message(self, message: str, destination_user_id: int) -> list[int]:
        """
        Send ``message`` to ``destination_user_id`` through a fresh circuit.

        Blocks until the whole circuit has answered. Returns the circuit as
        [entry, middle, exit] node ids; raises OnionError on any failure.
        """
        circuit, layer = self.builder.build(message, destination_user_id)
        circuit_ids = [n.node_id for n in circuit]

        with self._lock:
            self.last_sent_message = message
            self.last_circuit = list(circuit_ids)

        logger.info("[User %d] Sending to user %d via circuit %s",
                    self.user_id, destination_user_id, circuit_ids)
        self.transport.forward(circuit_ids[0], layer)
        return circuit_ids


# ---------------------------------------------------------------------------
# HTTP service
# ---------------------------------------------------------------------------

class InboxMessage(BaseModel):
    message: str


class SendMessageRequest(BaseModel):
    message: str
    destinationUserId: int


def create_app(user: UserNode, lifespan=None) -> FastAPI:
    """Build the user's FastAPI app around ``user``."""
    app = FastAPI(title=f"ONIONSIM User {user.user_id}", version="1.0",
                  lifespan=lifespan)
    app.state.user = user

    @app.exception_handler(OnionError)
    async def onion_error_handler(request: Request, exc: OnionError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        err = MalformedLayer(f"Invalid request body: {fields}")
        return JSONResponse(status_code=err.http_status, content=err.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        logger.error("[User %d] %s", user.user_id, exc)
        return JSONResponse(status_code=500, content={
            "status": "error", "kind": "ValueError", "message": str(exc),
        })

    @app.get("/status", response_class=PlainTextResponse)
    def status():
        return "live"

    @app.get("/getLastReceivedMessage")
    def last_received():
        return {"result": user.last_received_message}

    @app.get("/getLastSentMessage")
    def last_sent():
        return {"result": user.last_sent_message}

    @app.get("/getLastCircuit")
    def last_circuit():
        if user.last_circuit is None:
            return JSONResponse(status_code=404, content={"result": None})
        return {"result": user.last_circuit}

    @app.post("/message")
    def message(body: InboxMessage):
        return user.receive_message(body.message)

    @app.post("/sendMessage")
    async def send_message(body: SendMessageRequest):
        circuit = await run_in_threadpool(
            user.send_message, body.message, body.destinationUserId)
        return {"status": "success", "circuit": circuit}

    return app


def serve(user_id: int, port: int = None, host: str = "0.0.0.0",
          registry_url: str = None, forward_timeout: float = None,
          exclude_node_ids=()):
    """Start a user server."""
    import uvicorn
    from network.discovery import RegistryClient
    from network.transport import HttpTransport

    port = port or config.BASE_USER_PORT + user_id
    registry_client = RegistryClient(registry_url)
    transport = HttpTransport(registry_client, timeout=forward_timeout)
    builder = CircuitBuilder(registry_client, exclude_node_ids=exclude_node_ids)
    user = UserNode(user_id, builder, transport)

    print(f"[User {user_id}] Listening on {host}:{port}")
    uvicorn.run(create_app(user), host=host, port=port, log_level="warning")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="ONIONSIM User")
    parser.add_argument("--user-id", type=int, required=True,
                        help="User id (also picks the default port)")
    parser.add_argument("--port", type=int, default=None,
                        help="HTTP port (default: BASE_USER_PORT + user id)")
    parser.add_argument("--host", type=str, default="0.0.0.0",
                        help="Bind address")
    parser.add_argument("--registry", type=str, default=None,
                        help=f"Registry URL (default: {config.REGISTRY_URL})")
    args = parser.parse_args()
    serve(args.user_id, args.port, args.host, args.registry)
