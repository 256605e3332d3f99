"""
Tests for the network launchers.
"""

import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from node.launcher import HttpNetwork, LocalNetwork


class TestLocalNetwork:

    def test_layout(self):
        net = LocalNetwork(num_nodes=4, user_ids=[0, 1, 2])
        assert [n.node_id for n in net.registry.list_nodes()] == [0, 1, 2, 3]
        assert sorted(net.users) == [0, 1, 2]
        assert net.transport.relays.keys() == net.relays.keys()


class TestHttpNetwork:

    def _start_without_servers(self, monkeypatch, **kw):
        monkeypatch.setattr(HttpNetwork, "_spawn", lambda self, app, port: None)
        monkeypatch.setattr("node.launcher.RelayRegistration.start", lambda self: True)
        return HttpNetwork(**kw).start()

    def test_services_do_not_share_http_sessions(self, monkeypatch):
        net = self._start_without_servers(monkeypatch, num_nodes=3, user_ids=[0, 1])

        transports = ([r.transport for r in net.relays.values()]
                      + [u.transport for u in net.users.values()])
        assert len({id(t) for t in transports}) == 5
        assert len({id(t._session) for t in transports}) == 5

        builders = [u.builder.directory for u in net.users.values()]
        assert len({id(b._session) for b in builders}) == 2

    def test_timeout_reaches_every_transport(self, monkeypatch):
        net = self._start_without_servers(monkeypatch, num_nodes=3, user_ids=[0],
                                          timeout=2.5)
        assert all(r.transport.timeout == 2.5 for r in net.relays.values())
        assert net.users[0].transport.timeout == 2.5
