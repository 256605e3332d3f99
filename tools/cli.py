"""
ONIONSIM CLI — poke at a running network or simulate one.

Usage:
    python -m tools.cli nodes --registry http://localhost:8080
    python -m tools.cli send --from 0 --to 1 --message "hello"
    python -m tools.cli simulate --nodes 5 --message "hello"
    python -m tools.cli simulate --nodes 5 --path 2 0 4
    python -m tools.cli launch --nodes 5 --users 0 1
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

import requests

import config


def run_nodes(args) -> int:
    from network.discovery import RegistryClient
    from network.errors import OnionError

    try:
        nodes = RegistryClient(args.registry).list_nodes()
    except OnionError as e:
        print(f"[Error] {e.message}")
        return 1
    print(f"{len(nodes)} relay(s) registered:")
    for n in nodes:
        print(f"  node {n.node_id:<4} {n.address:<28} {n.public_key}")
    return 0


def run_send(args) -> int:
    url = f"{config.user_url(args.sender).rstrip('/')}/sendMessage"
    try:
        resp = requests.post(url, json={
            "message": args.message,
            "destinationUserId": args.to,
        }, timeout=args.timeout)
    except requests.RequestException as e:
        print(f"[Error] Cannot reach user {args.sender} at {url}: {e}")
        return 1
    try:
        body = resp.json()
    except ValueError:
        print(f"[Error] HTTP {resp.status_code}: {resp.text}")
        return 1
    if body.get("status") == "success":
        print(f"Sent via circuit {body['circuit']}")
        return 0
    print(f"[Error] {body.get('kind', 'error')}: {body.get('message', body)}")
    return 1


def run_simulate(args) -> int:
    from network.discovery import FixedPathSelector
    from network.errors import OnionError
    from node.launcher import LocalNetwork

    selector = FixedPathSelector(args.path) if args.path else None
    net = LocalNetwork(num_nodes=args.nodes, user_ids=[args.sender, args.to],
                       selector=selector)
    try:
        circuit = net.send(args.sender, args.to, args.message)
    except OnionError as e:
        print(f"[Error] {e.kind}: {e.message}")
        return 1

    print(f"User {args.sender} -> user {args.to} via circuit {circuit}")
    for node_id in circuit:
        relay = net.relays[node_id]
        print(f"  relay {node_id}: next target {relay.last_message_destination}")
    print(f"User {args.to} received: {net.users[args.to].last_received_message!r}")
    return 0


def run_launch(args) -> int:
    from node.launcher import HttpNetwork

    net = HttpNetwork(num_nodes=args.nodes, user_ids=args.users,
                      expose_private_keys=args.expose_private_keys)
    net.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\n[Network] Shutting down...")
    finally:
        net.stop()
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="onionsim",
        description="ONIONSIM — onion routing simulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
commands:
  nodes     List relays registered with a registry
  send      Ask a running user service to send a message
  simulate  Run a whole network in-process and send one message
  launch    Start registry, relays and users as HTTP services in one process
""",
    )
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    p_nodes = subparsers.add_parser("nodes", help="List registered relays")
    p_nodes.add_argument("--registry", default=None,
                         help=f"Registry URL (default: {config.REGISTRY_URL})")

    p_send = subparsers.add_parser("send", help="Send a message through a user service")
    p_send.add_argument("--from", dest="sender", type=int, required=True,
                        help="Sending user id")
    p_send.add_argument("--to", type=int, required=True,
                        help="Destination user id")
    p_send.add_argument("--message", required=True)
    p_send.add_argument("--timeout", type=float, default=30.0,
                        help="Seconds to wait for the whole circuit (default: 30)")

    p_sim = subparsers.add_parser("simulate", help="In-process simulation")
    p_sim.add_argument("--nodes", type=int, default=5,
                       help="Number of relays (default: 5)")
    p_sim.add_argument("--from", dest="sender", type=int, default=0)
    p_sim.add_argument("--to", type=int, default=1)
    p_sim.add_argument("--message", default="hello")
    p_sim.add_argument("--path", type=int, nargs=config.CIRCUIT_LENGTH, default=None,
                       help="Force the circuit, e.g. --path 2 0 4")

    p_launch = subparsers.add_parser("launch", help="Start an HTTP network")
    p_launch.add_argument("--nodes", type=int, default=5)
    p_launch.add_argument("--users", type=int, nargs="+", default=[0, 1])
    p_launch.add_argument("--expose-private-keys", action="store_true",
                          help="Serve /getPrivateKey on relays (testing only)")

    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    handlers = {
        "nodes": run_nodes,
        "send": run_send,
        "simulate": run_simulate,
        "launch": run_launch,
    }
    sys.exit(handlers[args.command](args))


if __name__ == "__main__":
    main()
