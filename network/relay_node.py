"""
Onion Relay Node — peels one layer per message and passes the rest on.

Each relay:
  1. Receives an onion layer from the sender or the previous hop
  2. Opens the layer's session key with its own private key
  3. Decrypts the payload, learning only what comes next:
       - a relay layer: the next hop id and that hop's (still encrypted) layer
       - a final layer: the destination user and the sealed message
  4. Forwards the inner layer to the next hop, or (as exit) decrypts the
     message and delivers it to the destination's inbox
  5. Waits for the downstream answer and returns it to its caller

State machine, one cycle per inbound message:
    IDLE -> RECEIVING -> DECRYPTING -> FORWARDING | DELIVERING -> IDLE

A relay never retries. Any failure is raised to the immediate caller, and no
later hop is contacted once an earlier one fails.

Usage:
    python -m network.relay_node --node-id 2
    python -m network.relay_node --node-id 2 --port 4002 --registry http://localhost:8080
"""

import argparse
import json
import logging
import threading
from contextlib import asynccontextmanager
from enum import Enum

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

import config
from network.errors import MalformedLayer, OnionError
from network.onion import (
    RelayLayer,
    generate_keypair, open_delivery, parse_layer, peel_onion,
    private_key_to_b64, public_key_to_b64,
)
from network.transport import Transport

logger = logging.getLogger("onionsim.relay")


class RelayState(Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    DECRYPTING = "decrypting"
    FORWARDING = "forwarding"
    DELIVERING = "delivering"


class RelayNode:
    """
    One onion relay. Holds a fixed keypair plus diagnostic echo fields
    (last ciphertext, last plaintext, last target) that the protocol itself
    never reads.

    ``state`` is the most recent transition of any message in flight. It
    only returns to IDLE once every concurrent message has finished.
    """

    def __init__(self, node_id: int, transport: Transport, private_key=None):
        self.node_id = node_id
        self.transport = transport
        if private_key is None:
            private_key, _ = generate_keypair()
        self._private_key = private_key
        self.public_key = private_key.public_key()

        self.state = RelayState.IDLE
        self.last_received_encrypted: str | None = None
        self.last_received_decrypted: str | None = None
        self.last_message_destination: int | None = None
        self._in_flight = 0
        self._diag_lock = threading.Lock()

    @property
    def public_key_b64(self) -> str:
        return public_key_to_b64(self.public_key)

    def export_private_key(self) -> str:
        """Test-only: base64 raw private key."""
        return private_key_to_b64(self._private_key)

    def _enter(self, state: RelayState):
        with self._diag_lock:
            self.state = state
        logger.debug("[Relay %d] -> %s", self.node_id, state.value)

    def _record(self, **fields):
        with self._diag_lock:
            for name, value in fields.items():
                setattr(self, name, value)

    def _begin(self):
        with self._diag_lock:
            self._in_flight += 1

    def _finish(self):
        with self._diag_lock:
            self._in_flight -= 1
            if self._in_flight == 0:
                self.state = RelayState.IDLE

    def receive(self, data: dict) -> dict:
        """Process one inbound layer. Returns the downstream acknowledgment."""
        self._begin()
        try:
            self._enter(RelayState.RECEIVING)
            layer = parse_layer(data)
            self._record(last_received_encrypted=layer.payload_ciphertext)

            self._enter(RelayState.DECRYPTING)
            peeled = peel_onion(self._private_key, layer)

            if isinstance(layer, RelayLayer):
                self._record(last_received_decrypted=peeled.plaintext,
                             last_message_destination=layer.next_hop)
                self._enter(RelayState.FORWARDING)
                logger.info("[Relay %d] Forwarding to node %d",
                            self.node_id, layer.next_hop)
                return self.transport.forward(layer.next_hop, peeled.inner)

            delivery = peeled.inner
            message = open_delivery(self._private_key, delivery)
            self._record(last_received_decrypted=message,
                         last_message_destination=delivery.destination_user_id)
            self._enter(RelayState.DELIVERING)
            logger.info("[Relay %d - EXIT] Delivering to user %d",
                        self.node_id, delivery.destination_user_id)
            return self.transport.deliver(delivery.destination_user_id, message)

        except OnionError as e:
            logger.warning("[Relay %d] %s: %s", self.node_id, e.kind, e.message)
            raise
        finally:
            self._finish()


# ---------------------------------------------------------------------------
# HTTP service
# ---------------------------------------------------------------------------

def create_app(node: RelayNode, expose_private_key: bool = False,
               lifespan=None) -> FastAPI:
    """Build the relay's FastAPI app around ``node``."""
    app = FastAPI(title=f"ONIONSIM Relay {node.node_id}", version="1.0",
                  lifespan=lifespan)
    app.state.node = node

    @app.exception_handler(OnionError)
    async def onion_error_handler(request: Request, exc: OnionError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.get("/status", response_class=PlainTextResponse)
    def status():
        return "live"

    @app.post("/forwardMessage")
    async def forward_message(request: Request):
        try:
            body = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedLayer(f"Request body is not JSON: {e}") from e
        # The hop blocks on the rest of the circuit; keep it off the event loop.
        return await run_in_threadpool(node.receive, body)

    @app.get("/getLastReceivedEncryptedMessage")
    def last_encrypted():
        return {"result": node.last_received_encrypted}

    @app.get("/getLastReceivedDecryptedMessage")
    def last_decrypted():
        return {"result": node.last_received_decrypted}

    @app.get("/getLastMessageDestination")
    def last_destination():
        return {"result": node.last_message_destination}

    @app.get("/getPrivateKey")
    def private_key():
        if not expose_private_key:
            return JSONResponse(status_code=404, content={"result": None})
        return {"result": node.export_private_key()}

    return app


class RelayRegistration:
    """Announces a relay's public key and address to the registry."""

    def __init__(self, node: RelayNode, address: str, registry_client):
        self.node = node
        self.address = address
        self.registry = registry_client

    def start(self) -> bool:
        ok = self.registry.register(self.node.node_id, self.node.public_key_b64,
                                    self.address)
        if ok:
            print(f"[Relay {self.node.node_id}] Registered with registry "
                  f"as {self.address}")
        return ok


def serve(node_id: int, port: int = None, host: str = "0.0.0.0",
          advertise: str = None, registry_url: str = None,
          forward_timeout: float = None, expose_private_key: bool = False):
    """Start a relay server and register it."""
    import uvicorn
    from network.discovery import RegistryClient
    from network.transport import HttpTransport

    port = port or config.BASE_ONION_ROUTER_PORT + node_id
    address = advertise or f"http://{config.HOST}:{port}"

    registry_client = RegistryClient(registry_url)
    transport = HttpTransport(registry_client, timeout=forward_timeout)
    node = RelayNode(node_id, transport)
    registration = RelayRegistration(node, address, registry_client)

    @asynccontextmanager
    async def lifespan(app):
        await run_in_threadpool(registration.start)
        yield

    app = create_app(node, expose_private_key=expose_private_key, lifespan=lifespan)

    print(f"[Relay {node_id}] Listening on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="warning")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="ONIONSIM Onion Relay")
    parser.add_argument("--node-id", type=int, required=True,
                        help="Relay id (also picks the default port)")
    parser.add_argument("--port", type=int, default=None,
                        help="HTTP port (default: BASE_ONION_ROUTER_PORT + node id)")
    parser.add_argument("--host", type=str, default="0.0.0.0",
                        help="Bind address")
    parser.add_argument("--advertise", type=str, default=None,
                        help="Address to advertise to registry")
    parser.add_argument("--registry", type=str, default=None,
                        help=f"Registry URL (default: {config.REGISTRY_URL})")
    args = parser.parse_args()
    serve(args.node_id, args.port, args.host, args.advertise, args.registry)
