"""
Transport — how one hop reaches the next.

Two operations, both synchronous and both bounded by a per-hop timeout:
  - forward(node_id, layer):  hand an onion layer to a relay
  - deliver(user_id, message): drop plaintext into a user's inbox

Nothing here retries. A timeout surfaces as ForwardingTimeout, an unknown or
unreachable target as UnknownNextHop, and an error answered by the next hop
is rebuilt with its original kind so it travels back to the sender intact.

Implementations:
  - HttpTransport:  JSON over HTTP (requests), addresses from the registry
  - LocalTransport: in-process dispatch for simulations and tests
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable

import requests

import config
from network.errors import ForwardingTimeout, UnknownNextHop, error_from_dict
from network.onion import OnionLayer

logger = logging.getLogger("onionsim.transport")


class Transport:
    """Forwarding and inbox-delivery interface."""

    def forward(self, node_id: int, layer: OnionLayer) -> dict:
        raise NotImplementedError

    def deliver(self, user_id: int, message: str) -> dict:
        raise NotImplementedError


class HttpTransport(Transport):
    """Reaches relays and users over HTTP."""

    def __init__(self, directory, timeout: float = None,
                 user_url: Callable[[int], str] = None,
                 session: requests.Session = None):
        self.directory = directory
        self.timeout = timeout or config.FORWARD_TIMEOUT_SECONDS
        self._user_url = user_url or config.user_url
        self._session = session or requests.Session()

    def _resolve(self, node_id: int) -> str:
        node = self.directory.get(node_id)
        if node is None:
            raise UnknownNextHop(f"Node {node_id} is not in the registry")
        return node.address.rstrip("/")

    def forward(self, node_id: int, layer: OnionLayer) -> dict:
        url = f"{self._resolve(node_id)}/forwardMessage"
        return self._post(url, layer.to_dict(), f"node {node_id}")

    def deliver(self, user_id: int, message: str) -> dict:
        url = f"{self._user_url(user_id).rstrip('/')}/message"
        return self._post(url, {"message": message}, f"user {user_id}")

    def _post(self, url: str, body: dict, target: str) -> dict:
        try:
            resp = self._session.post(url, json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise ForwardingTimeout(
                f"No response from {target} within {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise UnknownNextHop(f"Cannot reach {target} at {url}") from e
        except requests.RequestException as e:
            # Bad scheme, unusable URL or port: the address does not lead anywhere
            raise UnknownNextHop(f"Cannot reach {target} at {url}: {e}") from e

        if resp.ok:
            try:
                return resp.json()
            except ValueError:
                return {"status": "success"}

        try:
            data = resp.json()
        except ValueError:
            data = resp.text
        err = error_from_dict(data)
        logger.warning("%s answered HTTP %d: %s", target, resp.status_code, err.message)
        raise err


class LocalTransport(Transport):
    """
    In-process transport: relays and users are Python objects in one process.

    Layers are handed over in their wire (dict) form. Each call runs on its
    own worker thread so the caller can stop waiting after ``timeout``.
    """

    def __init__(self, timeout: float = None):
        self.timeout = timeout or config.FORWARD_TIMEOUT_SECONDS
        self.relays: dict = {}
        self.users: dict = {}

    def add_relay(self, relay):
        self.relays[relay.node_id] = relay

    def add_user(self, user):
        self.users[user.user_id] = user

    def forward(self, node_id: int, layer: OnionLayer) -> dict:
        relay = self.relays.get(node_id)
        if relay is None:
            raise UnknownNextHop(f"Node {node_id} is not part of this network")
        return self._call(relay.receive, layer.to_dict(), f"node {node_id}")

    def deliver(self, user_id: int, message: str) -> dict:
        user = self.users.get(user_id)
        if user is None:
            raise UnknownNextHop(f"User {user_id} is not part of this network")
        return self._call(user.receive_message, message, f"user {user_id}")

    def _call(self, fn, arg, target: str) -> dict:
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            return pool.submit(fn, arg).result(timeout=self.timeout)
        except FutureTimeout as e:
            raise ForwardingTimeout(
                f"No response from {target} within {self.timeout}s") from e
        finally:
            pool.shutdown(wait=False)
