"""
Shared fixtures for e2e tests.

Starts a full network (registry + relays + users) as subprocesses on high
ports, waits until every relay has registered, and tears down with SIGTERM.
"""

import os
import signal
import socket
import subprocess
import sys
import time

import pytest
import requests

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, PROJECT_ROOT)

PYTHON = os.environ.get("ONIONSIM_E2E_PYTHON", sys.executable)
REGISTRY_PORT = int(os.environ.get("ONIONSIM_E2E_REGISTRY_PORT", "51080"))
BASE_RELAY_PORT = int(os.environ.get("ONIONSIM_E2E_BASE_RELAY_PORT", "51400"))
BASE_USER_PORT = int(os.environ.get("ONIONSIM_E2E_BASE_USER_PORT", "51300"))
NUM_RELAYS = int(os.environ.get("ONIONSIM_E2E_NUM_RELAYS", "5"))
USER_IDS = (0, 1)
STARTUP_TIMEOUT = int(os.environ.get("ONIONSIM_E2E_STARTUP_TIMEOUT", "30"))


def _port_open(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        return s.connect_ex(("127.0.0.1", port)) == 0


def _wait_for_port(port: int, timeout: float = 30) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if _port_open(port):
            return True
        time.sleep(0.5)
    return False


def relay_url(node_id: int) -> str:
    return f"http://localhost:{BASE_RELAY_PORT + node_id}"


def user_url(user_id: int) -> str:
    return f"http://localhost:{BASE_USER_PORT + user_id}"


class Network:
    """Manages a local ONIONSIM network for testing."""

    def __init__(self):
        self.procs: list[subprocess.Popen] = []
        self.registry_url = f"http://localhost:{REGISTRY_PORT}"
        self.env = {
            **os.environ,
            "PYTHONUNBUFFERED": "1",
            "ONIONSIM_HOST": "localhost",
            "ONIONSIM_REGISTRY_PORT": str(REGISTRY_PORT),
            "ONIONSIM_BASE_ONION_ROUTER_PORT": str(BASE_RELAY_PORT),
            "ONIONSIM_BASE_USER_PORT": str(BASE_USER_PORT),
            "ONIONSIM_FORWARD_TIMEOUT": "5",
        }

    def _spawn(self, *args: str):
        self.procs.append(subprocess.Popen(
            [PYTHON, "-m", "node.run", "--log-level", "WARNING", *args],
            cwd=PROJECT_ROOT, env=self.env,
            stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
        ))

    def start(self):
        self._spawn("--role", "registry")
        if not _wait_for_port(REGISTRY_PORT, timeout=15):
            raise RuntimeError("Registry did not start in time")

        for i in range(NUM_RELAYS):
            self._spawn("--role", "relay", "--node-id", str(i), "--expose-private-key")
        for user_id in USER_IDS:
            self._spawn("--role", "user", "--user-id", str(user_id))

        for i in range(NUM_RELAYS):
            if not _wait_for_port(BASE_RELAY_PORT + i, timeout=STARTUP_TIMEOUT):
                raise RuntimeError(f"Relay {i} did not start")
        for user_id in USER_IDS:
            if not _wait_for_port(BASE_USER_PORT + user_id, timeout=STARTUP_TIMEOUT):
                raise RuntimeError(f"User {user_id} did not start")

        # Relays register from their startup hook
        deadline = time.time() + STARTUP_TIMEOUT
        while len(self.nodes()) < NUM_RELAYS:
            if time.time() > deadline:
                raise RuntimeError("Relays did not register in time")
            time.sleep(0.5)

    def nodes(self) -> list[dict]:
        resp = requests.get(f"{self.registry_url}/getNodeRegistry", timeout=5)
        return resp.json()["nodes"]

    def stop(self):
        for proc in self.procs:
            if proc.poll() is None:
                proc.send_signal(signal.SIGTERM)
        for proc in self.procs:
            try:
                proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        self.procs.clear()


@pytest.fixture(scope="module")
def network():
    """Start a full network, yield it, then tear down."""
    n = Network()
    n.start()
    yield n
    n.stop()
