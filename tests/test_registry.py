"""
Tests for the node registry — in-memory directory and its HTTP service.
"""

import os
import sys
import threading

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from network.onion import generate_keypair, public_key_to_b64
from network.registry_server import NodeRecord, Registry, create_app


def _pk() -> str:
    return public_key_to_b64(generate_keypair()[1])


class TestRegistry:

    def test_empty(self, registry):
        assert registry.list_nodes() == ()
        assert len(registry) == 0
        assert registry.get(0) is None

    def test_register_and_list(self, registry, public_key_b64):
        assert registry.register(0, public_key_b64, "http://localhost:4000") == {
            "status": "success"}
        nodes = registry.list_nodes()
        assert nodes == (NodeRecord(0, public_key_b64, "http://localhost:4000"),)
        assert registry.get(0).address == "http://localhost:4000"

    def test_sorted_by_id(self, registry):
        for node_id in (4, 1, 3, 0, 2):
            registry.register(node_id, _pk(), f"http://localhost:{4000 + node_id}")
        assert [n.node_id for n in registry.list_nodes()] == [0, 1, 2, 3, 4]

    def test_reregister_replaces(self, registry):
        """A restarted relay announces a new key; last write wins."""
        old_pk, new_pk = _pk(), _pk()
        registry.register(3, old_pk, "http://localhost:4003")
        registry.register(3, new_pk, "http://otherhost:4003")
        nodes = registry.list_nodes()
        assert len(nodes) == 1
        assert nodes[0].public_key == new_pk
        assert nodes[0].address == "http://otherhost:4003"

    def test_snapshot_is_stable(self, registry):
        registry.register(0, _pk(), "http://localhost:4000")
        before = registry.list_nodes()
        registry.register(1, _pk(), "http://localhost:4001")
        assert len(before) == 1
        assert len(registry.list_nodes()) == 2

    @pytest.mark.parametrize("node_id", [-1, "1", 1.5, True, None])
    def test_rejects_bad_node_id(self, registry, public_key_b64, node_id):
        with pytest.raises(ValueError):
            registry.register(node_id, public_key_b64, "http://localhost:4000")
        assert len(registry) == 0

    def test_rejects_bad_public_key(self, registry):
        with pytest.raises(ValueError):
            registry.register(0, "definitely-not-a-key", "http://localhost:4000")
        assert len(registry) == 0

    def test_rejects_empty_address(self, registry, public_key_b64):
        with pytest.raises(ValueError):
            registry.register(0, public_key_b64, "")

    def test_concurrent_registrations(self):
        """Every concurrent registration lands exactly once."""
        registry = Registry()
        keys = {i: _pk() for i in range(64)}
        barrier = threading.Barrier(8)

        def worker(ids):
            barrier.wait()
            for i in ids:
                registry.register(i, keys[i], f"http://localhost:{4000 + i}")

        threads = [threading.Thread(target=worker, args=(range(k, 64, 8),))
                   for k in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        nodes = registry.list_nodes()
        assert [n.node_id for n in nodes] == list(range(64))
        assert all(n.public_key == keys[n.node_id] for n in nodes)

    def test_record_wire_format(self):
        record = NodeRecord(2, "cGs=", "http://localhost:4002")
        assert record.to_dict() == {
            "nodeId": 2, "publicKey": "cGs=", "address": "http://localhost:4002"}
        assert NodeRecord.from_dict(record.to_dict()) == record


class TestRegistryHttp:

    @pytest.fixture
    def client(self, registry):
        return TestClient(create_app(registry))

    def test_status(self, client):
        resp = client.get("/status")
        assert resp.status_code == 200
        assert resp.text == "live"

    def test_register_and_fetch(self, client, public_key_b64):
        resp = client.post("/registerNode", json={
            "nodeId": 1, "publicKey": public_key_b64, "address": "http://localhost:4001"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "success"}

        resp = client.get("/getNodeRegistry")
        assert resp.json() == {"nodes": [{
            "nodeId": 1, "publicKey": public_key_b64, "address": "http://localhost:4001"}]}

    def test_empty_registry(self, client):
        assert client.get("/getNodeRegistry").json() == {"nodes": []}

    def test_invalid_key_rejected(self, client):
        resp = client.post("/registerNode", json={
            "nodeId": 1, "publicKey": "nope", "address": "http://localhost:4001"})
        assert resp.status_code == 400
        assert resp.json()["status"] == "error"
        assert client.get("/getNodeRegistry").json() == {"nodes": []}

    def test_missing_field_rejected(self, client, public_key_b64):
        resp = client.post("/registerNode", json={"nodeId": 1, "publicKey": public_key_b64})
        assert resp.status_code == 422
