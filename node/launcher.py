"""
Network Launcher — bring up a whole onion network in one process.

Two flavours:
  - LocalNetwork: registry, relays and users as plain objects wired through
    LocalTransport. No sockets; used by the simulator and the test suite.
  - HttpNetwork: the same services as real HTTP servers (uvicorn), each on
    its own thread and on the standard port layout from config.py.

Usage:
    net = LocalNetwork(num_nodes=5, user_ids=[0, 1])
    net.send(0, 1, "hello")

    with HttpNetwork(num_nodes=5, user_ids=[0, 1]) as net:
        ...  # talk to http://localhost:3000/sendMessage etc.
"""

import logging
import threading
import time

import config
from client.client import CircuitBuilder, UserNode
from client.client import create_app as create_user_app
from network.discovery import PathSelector, RegistryClient
from network.registry_server import Registry
from network.registry_server import create_app as create_registry_app
from network.relay_node import RelayNode, RelayRegistration
from network.relay_node import create_app as create_relay_app
from network.transport import HttpTransport, LocalTransport

logger = logging.getLogger("onionsim.launcher")


class LocalNetwork:
    """Registry + relays + users in one process, no HTTP."""

    def __init__(self, num_nodes: int = 5, user_ids=(0, 1),
                 timeout: float = None, selector: PathSelector = None):
        self.registry = Registry()
        self.transport = LocalTransport(timeout=timeout)
        self.relays: dict[int, RelayNode] = {}
        self.users: dict[int, UserNode] = {}

        for node_id in range(num_nodes):
            self.add_relay(node_id)
        for user_id in user_ids:
            self.add_user(user_id, selector=selector)

    def add_relay(self, node_id: int, relay: RelayNode = None) -> RelayNode:
        relay = relay or RelayNode(node_id, self.transport)
        self.registry.register(node_id, relay.public_key_b64,
                               config.onion_router_url(node_id))
        self.transport.add_relay(relay)
        self.relays[node_id] = relay
        return relay

    def add_user(self, user_id: int, selector: PathSelector = None,
                 exclude_node_ids=()) -> UserNode:
        builder = CircuitBuilder(self.registry, selector=selector,
                                 exclude_node_ids=exclude_node_ids)
        user = UserNode(user_id, builder, self.transport)
        self.transport.add_user(user)
        self.users[user_id] = user
        return user

    def send(self, sender_id: int, destination_user_id: int, message: str) -> list[int]:
        return self.users[sender_id].send_message(message, destination_user_id)


class _ServerThread:
    """One uvicorn server running on a daemon thread."""

    def __init__(self, app, host: str, port: int):
        import uvicorn

        self.port = port
        self.server = uvicorn.Server(uvicorn.Config(
            app, host=host, port=port, log_level="warning"))
        self.thread = threading.Thread(target=self.server.run, daemon=True)

    def start(self, timeout: float = 10.0):
        self.thread.start()
        deadline = time.time() + timeout
        while not self.server.started:
            if time.time() > deadline or not self.thread.is_alive():
                raise RuntimeError(f"Server on port {self.port} failed to start")
            time.sleep(0.05)

    def stop(self, timeout: float = 5.0):
        self.server.should_exit = True
        self.thread.join(timeout)


class HttpNetwork:
    """Registry + relays + users as HTTP services inside this process."""

    def __init__(self, num_nodes: int = 5, user_ids=(0, 1), host: str = None,
                 timeout: float = None, expose_private_keys: bool = False):
        self.num_nodes = num_nodes
        self.user_ids = list(user_ids)
        self.host = host or config.HOST
        self.timeout = timeout
        self.expose_private_keys = expose_private_keys
        self.relays: dict[int, RelayNode] = {}
        self.users: dict[int, UserNode] = {}
        self._servers: list[_ServerThread] = []

    def start(self):
        registry_url = f"http://{self.host}:{config.REGISTRY_PORT}"
        self._spawn(create_registry_app(Registry()), config.REGISTRY_PORT)
        print(f"[Network] Registry at {registry_url}")

        # Each service gets its own clients: a requests.Session is not
        # shared across server threads.
        for node_id in range(self.num_nodes):
            port = config.BASE_ONION_ROUTER_PORT + node_id
            registry_client = RegistryClient(registry_url)
            relay = RelayNode(node_id, self._transport(registry_url))
            self._spawn(create_relay_app(relay, self.expose_private_keys), port)
            address = f"http://{self.host}:{port}"
            if not RelayRegistration(relay, address, registry_client).start():
                raise RuntimeError(f"Relay {node_id} could not register")
            self.relays[node_id] = relay

        for user_id in self.user_ids:
            builder = CircuitBuilder(RegistryClient(registry_url))
            user = UserNode(user_id, builder, self._transport(registry_url))
            self._spawn(create_user_app(user), config.BASE_USER_PORT + user_id)
            self.users[user_id] = user

        print(f"[Network] {self.num_nodes} relays, users {self.user_ids} up")
        return self

    def _transport(self, registry_url: str) -> HttpTransport:
        return HttpTransport(RegistryClient(registry_url), timeout=self.timeout)

    def _spawn(self, app, port: int):
        server = _ServerThread(app, self.host, port)
        server.start()
        self._servers.append(server)

    def stop(self):
        for server in reversed(self._servers):
            server.stop()
        self._servers.clear()
        logger.info("Network stopped")

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.stop()
