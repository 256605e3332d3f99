"""
Node Configuration — per-role config classes with JSON + CLI override system.

Each service role has its own config class with only the fields it needs:

  BaseNodeConfig     — shared by all roles (port, host, registry, timeouts)
  ├── RegistryConfig — the node directory
  ├── RelayConfig    — an onion relay (node id, diagnostics)
  └── UserConfig     — a user's send / inbox service

Priority: CLI > config file > defaults

Usage:
    from node.node_config import load_config, print_config_summary

    cfg = load_config("relay_config.json", cli_overrides={"node_id": 2})
    print_config_summary(cfg, "relay_config.json")
"""

import json
import os
from dataclasses import dataclass, field, fields
from typing import Optional, Union

import config as global_config

VALID_ROLES = ("registry", "relay", "user")


# ---------------------------------------------------------------------------
# Base config, shared by all roles
# ---------------------------------------------------------------------------

@dataclass
class BaseNodeConfig:
    """Settings shared by every ONIONSIM service."""

    role: str = "relay"
    port: int = 0                                # 0 = derive from role / id
    host: str = "0.0.0.0"
    registry: Optional[str] = None               # default: config.REGISTRY_URL
    forward_timeout: float = global_config.FORWARD_TIMEOUT_SECONDS
    log_level: str = "INFO"

    def default_port(self) -> int:
        return global_config.REGISTRY_PORT

    def resolve_defaults(self):
        """Fill in role-dependent defaults for fields left at sentinel values."""
        if self.port == 0:
            self.port = self.default_port()
        if self.registry is None:
            self.registry = global_config.REGISTRY_URL


@dataclass
class RegistryConfig(BaseNodeConfig):
    """Configuration for the node registry."""

    role: str = "registry"


@dataclass
class RelayConfig(BaseNodeConfig):
    """Configuration for an onion relay."""

    role: str = "relay"

    node_id: Optional[int] = None
    advertise: Optional[str] = None              # default: onion_router_url(node_id)
    expose_private_key: bool = False             # test-only /getPrivateKey

    def default_port(self) -> int:
        return global_config.BASE_ONION_ROUTER_PORT + self.node_id

    def resolve_defaults(self):
        super().resolve_defaults()
        if self.advertise is None:
            self.advertise = f"http://{global_config.HOST}:{self.port}"


@dataclass
class UserConfig(BaseNodeConfig):
    """Configuration for a user's send / inbox service."""

    role: str = "user"

    user_id: Optional[int] = None
    exclude_node_ids: list[int] = field(default_factory=list)

    def default_port(self) -> int:
        return global_config.BASE_USER_PORT + self.user_id


NodeConfig = Union[RegistryConfig, RelayConfig, UserConfig]

_ROLE_CONFIG_MAP = {
    "registry": RegistryConfig,
    "relay": RelayConfig,
    "user": UserConfig,
}


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(config_path: Optional[str],
                cli_overrides: dict) -> NodeConfig:
    """
    Load a typed config from a JSON file + CLI overrides.

    Reads the 'role' field first (from CLI or file), then creates the
    correct config class with only the fields that role needs.

    Priority: CLI > config file > dataclass defaults.
    """
    merged = {}

    if config_path and os.path.exists(config_path):
        with open(config_path, "r") as f:
            merged.update(json.load(f))

    # None means "not provided"
    for k, v in cli_overrides.items():
        if v is not None:
            merged[k] = v

    role = merged.get("role", "relay")
    if role not in VALID_ROLES:
        raise ValueError(
            f"Invalid role '{role}'. Must be one of: {', '.join(VALID_ROLES)}")

    config_cls = _ROLE_CONFIG_MAP[role]
    valid_keys = {fld.name for fld in fields(config_cls)}

    if config_path:
        for k in merged:
            if k not in valid_keys and not k.startswith("_"):
                print(f"[Config] Warning: '{k}' is not a valid "
                      f"{config_cls.__name__} field (ignored)")

    cfg = config_cls(**{k: v for k, v in merged.items() if k in valid_keys})
    _validate(cfg)
    cfg.resolve_defaults()
    return cfg


def _validate(cfg: NodeConfig):
    """Validate a config and raise clear errors."""
    if cfg.port < 0:
        raise ValueError(f"Port must be positive, got {cfg.port}")
    if cfg.forward_timeout <= 0:
        raise ValueError(
            f"forward_timeout must be > 0, got {cfg.forward_timeout}")

    if isinstance(cfg, RelayConfig):
        if cfg.node_id is None:
            raise ValueError(
                "RelayConfig requires 'node_id' to be set "
                "(in config file or via --node-id)")
        if cfg.node_id < 0:
            raise ValueError(f"node_id must be >= 0, got {cfg.node_id}")

    if isinstance(cfg, UserConfig):
        if cfg.user_id is None:
            raise ValueError(
                "UserConfig requires 'user_id' to be set "
                "(in config file or via --user-id)")
        if cfg.user_id < 0:
            raise ValueError(f"user_id must be >= 0, got {cfg.user_id}")


# ---------------------------------------------------------------------------
# Pretty-print
# ---------------------------------------------------------------------------

def print_config_summary(cfg: NodeConfig, config_path: Optional[str]):
    """Print a clear startup summary of the resolved configuration."""
    src = config_path or "(none — CLI/defaults only)"
    sep = "=" * 60
    div = "-" * 60

    print(sep)
    print(f"  ONIONSIM — {cfg.role.title()}")
    print(sep)
    print(f"  Port:            {cfg.port}")
    print(f"  Host:            {cfg.host}")
    print(f"  Registry:        {cfg.registry}")

    if isinstance(cfg, RelayConfig):
        print(div)
        print(f"  Node id:         {cfg.node_id}")
        print(f"  Advertise:       {cfg.advertise}")
        print(f"  Private key API: {'EXPOSED (test only)' if cfg.expose_private_key else 'disabled'}")

    if isinstance(cfg, UserConfig):
        print(div)
        print(f"  User id:         {cfg.user_id}")
        excluded = ", ".join(str(i) for i in cfg.exclude_node_ids) or "none"
        print(f"  Excluded relays: {excluded}")

    print(div)
    print(f"  Circuit length:  {global_config.CIRCUIT_LENGTH}")
    print(f"  Forward timeout: {cfg.forward_timeout}s")
    print(f"  Log level:       {cfg.log_level}")
    print(div)
    print(f"  Config file:     {src}")
    print(sep)
