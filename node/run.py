"""
Unified Service Entry Point — start any ONIONSIM service from a single command.

Each role has its own config class (RegistryConfig, RelayConfig, UserConfig)
with only the fields that role needs. The 'role' field in the JSON or CLI
determines which config type is created.

Usage:
    # From config file (role is read from the JSON)
    python -m node.run --config relay_config.json

    # CLI overrides
    python -m node.run --config relay_config.json --port 4010

    # Pure CLI (no config file)
    python -m node.run --role registry
    python -m node.run --role relay --node-id 2
    python -m node.run --role user --user-id 0
"""

import argparse
import logging
import sys

from node.node_config import (
    RegistryConfig, RelayConfig, UserConfig,
    load_config, print_config_summary,
)


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with all config fields."""
    parser = argparse.ArgumentParser(
        description="ONIONSIM — unified entry point for registry, relay, and user services",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m node.run --config relay_config.json
  python -m node.run --role relay --node-id 2
  python -m node.run --role user --user-id 0 --exclude-node 3
        """,
    )

    parser.add_argument("--config", type=str, default=None,
                        help="Path to a service config JSON")

    # --- Core ---
    parser.add_argument("--role", type=str, default=None,
                        choices=["registry", "relay", "user"],
                        help="Service role: registry, relay, or user")
    parser.add_argument("--port", type=int, default=None,
                        help="HTTP listen port")
    parser.add_argument("--host", type=str, default=None,
                        help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--registry", type=str, default=None,
                        help="Registry base URL")
    parser.add_argument("--forward-timeout", type=float, default=None,
                        help="Per-hop timeout in seconds")
    parser.add_argument("--log-level", type=str, default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")

    # --- Relay-only ---
    parser.add_argument("--node-id", type=int, default=None,
                        help="Relay id (relay only)")
    parser.add_argument("--advertise", type=str, default=None,
                        help="Address to advertise to the registry (relay only)")
    parser.add_argument("--expose-private-key", action="store_true", default=None,
                        help="Serve /getPrivateKey (relay only, testing)")

    # --- User-only ---
    parser.add_argument("--user-id", type=int, default=None,
                        help="User id (user only)")
    parser.add_argument("--exclude-node", type=int, action="append", default=None,
                        dest="exclude_node_ids",
                        help="Relay id never to use in circuits (repeatable, user only)")

    return parser


def cli_to_overrides(args: argparse.Namespace) -> dict:
    """
    Convert parsed CLI args to a dict of overrides.

    Only includes values that were explicitly provided (not None).
    """
    keys = (
        "role", "port", "host", "registry", "forward_timeout", "log_level",
        "node_id", "advertise", "expose_private_key",
        "user_id", "exclude_node_ids",
    )
    args_dict = vars(args)
    return {k: args_dict[k] for k in keys if args_dict.get(k) is not None}


def main():
    parser = build_parser()
    args = parser.parse_args()

    try:
        cfg = load_config(args.config, cli_to_overrides(args))
    except ValueError as e:
        print(f"[Config Error] {e}")
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    print()
    print_config_summary(cfg, args.config)
    print()

    if isinstance(cfg, RegistryConfig):
        from network.registry_server import serve as serve_registry
        serve_registry(port=cfg.port, host=cfg.host)

    elif isinstance(cfg, RelayConfig):
        from network.relay_node import serve as serve_relay
        serve_relay(
            node_id=cfg.node_id,
            port=cfg.port,
            host=cfg.host,
            advertise=cfg.advertise,
            registry_url=cfg.registry,
            forward_timeout=cfg.forward_timeout,
            expose_private_key=cfg.expose_private_key,
        )

    elif isinstance(cfg, UserConfig):
        from client.client import serve as serve_user
        serve_user(
            user_id=cfg.user_id,
            port=cfg.port,
            host=cfg.host,
            registry_url=cfg.registry,
            forward_timeout=cfg.forward_timeout,
            exclude_node_ids=cfg.exclude_node_ids,
        )

    else:
        print(f"[Error] Unknown config type: {type(cfg).__name__}")
        sys.exit(1)


if __name__ == "__main__":
    main()
