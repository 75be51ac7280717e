"""
Agent configuration.

One ``AgentConfig`` per running agent, resolved once at start-up and
passed into the orchestrator. Nothing here is global: peers, trusted
caller ids and processor routing all live on the config object.

Resolution order (later wins):
    1. built-in defaults for the role
    2. the role's section of a JSON file (``--config`` or ``TANDEM_CONFIG``)
    3. ``TANDEM_*`` environment variables

The JSON file is keyed by role name::

    {
      "merchant": {
        "allowed_shopping_agents": ["trusted_shopping_agent"],
        "peers": {"payment-processor": {"url": "http://localhost:8003"}},
        "payment_processors": {"CARD": "payment-processor"}
      }
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigError


AP2_EXTENSION_URI = "https://github.com/google-agentic-commerce/ap2/v1"
DEFAULT_SHOPPING_AGENT_ID = "trusted_shopping_agent"
DEFAULT_MERCHANT_NAME = "Generic Merchant"
DEFAULT_TIMEOUT_SECONDS = 30.0

CONFIG_PATH_ENV = "TANDEM_CONFIG"


class AgentRole(str, Enum):
    SHOPPER = "shopper"
    MERCHANT = "merchant"
    CREDENTIALS_PROVIDER = "credentials-provider"
    PAYMENT_PROCESSOR = "payment-processor"

    @property
    def env_prefix(self) -> str:
        return "TANDEM_" + self.value.upper().replace("-", "_")


DEFAULT_PORTS = {
    AgentRole.SHOPPER: 8000,
    AgentRole.MERCHANT: 8001,
    AgentRole.CREDENTIALS_PROVIDER: 8002,
    AgentRole.PAYMENT_PROCESSOR: 8003,
}


@dataclass(frozen=True)
class PeerConfig:
    role: str
    url: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "url": self.url, "timeout_seconds": self.timeout_seconds}


@dataclass(frozen=True)
class AgentConfig:
    role: AgentRole
    name: str
    public_url: str
    host: str = "127.0.0.1"
    port: int = 8000
    supported_extensions: frozenset[str] = frozenset({AP2_EXTENSION_URI})
    allowed_shopping_agents: frozenset[str] = frozenset()
    peers: Mapping[str, PeerConfig] = field(default_factory=dict)
    payment_processors: Mapping[str, str] = field(default_factory=dict)
    request_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    shopping_agent_id: str = DEFAULT_SHOPPING_AGENT_ID
    audit_path: Optional[Path] = None
    merchant_key_path: Optional[Path] = None

    def peer(self, role_name: str) -> PeerConfig:
        peer = self.peers.get(role_name)
        if peer is None:
            raise ConfigError(f"{self.name}: no peer configured for role '{role_name}'")
        return peer

    def peer_by_url(self, url: str) -> Optional[PeerConfig]:
        wanted = url.rstrip("/")
        for peer in self.peers.values():
            if peer.url.rstrip("/") == wanted:
                return peer
        return None

    def processor_role_for(self, method_name: str) -> Optional[str]:
        return self.payment_processors.get(method_name.strip().upper())

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "name": self.name,
            "public_url": self.public_url,
            "host": self.host,
            "port": self.port,
            "supported_extensions": sorted(self.supported_extensions),
            "allowed_shopping_agents": sorted(self.allowed_shopping_agents),
            "peers": {k: v.to_dict() for k, v in self.peers.items()},
            "payment_processors": dict(self.payment_processors),
            "request_timeout_seconds": self.request_timeout_seconds,
            "shopping_agent_id": self.shopping_agent_id,
            "audit_path": str(self.audit_path) if self.audit_path else None,
            "merchant_key_path": str(self.merchant_key_path) if self.merchant_key_path else None,
        }


def _local_url(role: AgentRole) -> str:
    return f"http://127.0.0.1:{DEFAULT_PORTS[role]}"


def default_config(role: AgentRole | str) -> AgentConfig:
    """Built-in configuration for a local four-agent deployment."""
    role = _parse_role(role)
    common = {
        "role": role,
        "public_url": _local_url(role),
        "port": DEFAULT_PORTS[role],
    }
    if role is AgentRole.MERCHANT:
        return AgentConfig(
            name=DEFAULT_MERCHANT_NAME,
            allowed_shopping_agents=frozenset({DEFAULT_SHOPPING_AGENT_ID}),
            peers={
                AgentRole.PAYMENT_PROCESSOR.value: PeerConfig(
                    AgentRole.PAYMENT_PROCESSOR.value, _local_url(AgentRole.PAYMENT_PROCESSOR)
                ),
            },
            payment_processors={"CARD": AgentRole.PAYMENT_PROCESSOR.value},
            **common,
        )
    if role is AgentRole.PAYMENT_PROCESSOR:
        return AgentConfig(
            name="merchant_payment_processor_agent",
            peers={
                AgentRole.CREDENTIALS_PROVIDER.value: PeerConfig(
                    AgentRole.CREDENTIALS_PROVIDER.value, _local_url(AgentRole.CREDENTIALS_PROVIDER)
                ),
            },
            **common,
        )
    if role is AgentRole.CREDENTIALS_PROVIDER:
        return AgentConfig(name="credentials_provider_agent", **common)
    return AgentConfig(
        name="shopping_agent",
        peers={
            r.value: PeerConfig(r.value, _local_url(r))
            for r in (AgentRole.MERCHANT, AgentRole.CREDENTIALS_PROVIDER)
        },
        **common,
    )


def load_config(
    role: AgentRole | str,
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> AgentConfig:
    """Resolve the configuration for ``role`` from defaults, file and environment."""
    role = _parse_role(role)
    env = os.environ if env is None else env
    config = default_config(role)

    file_path = path or (Path(env[CONFIG_PATH_ENV]) if env.get(CONFIG_PATH_ENV) else None)
    if file_path is not None:
        config = _apply_overrides(config, _read_role_section(file_path, role))

    return _apply_env(config, env)


def _parse_role(role: AgentRole | str) -> AgentRole:
    if isinstance(role, AgentRole):
        return role
    try:
        return AgentRole(role)
    except ValueError as e:
        valid = ", ".join(r.value for r in AgentRole)
        raise ConfigError(f"Unknown role '{role}' (expected one of: {valid})") from e


def _read_role_section(path: Path, role: AgentRole) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain an object keyed by role")
    section = raw.get(role.value, {})
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{role.value}' must be an object")
    return section


def _apply_overrides(config: AgentConfig, section: Mapping[str, Any]) -> AgentConfig:
    changes: dict[str, Any] = {}
    for key in ("name", "public_url", "host", "shopping_agent_id"):
        if key in section:
            changes[key] = str(section[key])
    if "port" in section:
        changes["port"] = _as_int(section["port"], "port")
    if "request_timeout_seconds" in section:
        changes["request_timeout_seconds"] = _as_timeout(section["request_timeout_seconds"])
    if "supported_extensions" in section:
        changes["supported_extensions"] = frozenset(_as_list(section["supported_extensions"], "supported_extensions"))
    if "allowed_shopping_agents" in section:
        changes["allowed_shopping_agents"] = frozenset(
            _as_list(section["allowed_shopping_agents"], "allowed_shopping_agents")
        )
    if "peers" in section:
        changes["peers"] = _parse_peers(
            section["peers"], changes.get("request_timeout_seconds", config.request_timeout_seconds)
        )
    if "payment_processors" in section:
        routes = section["payment_processors"]
        if not isinstance(routes, dict):
            raise ConfigError("payment_processors must map payment method names to peer roles")
        changes["payment_processors"] = {str(k).upper(): str(v) for k, v in routes.items()}
    if "audit_path" in section:
        changes["audit_path"] = Path(section["audit_path"]).expanduser()
    if "merchant_key_path" in section:
        changes["merchant_key_path"] = Path(section["merchant_key_path"]).expanduser()
    return replace(config, **changes)


def _apply_env(config: AgentConfig, env: Mapping[str, str]) -> AgentConfig:
    changes: dict[str, Any] = {}
    prefix = config.role.env_prefix
    if env.get(f"{prefix}_PUBLIC_URL"):
        changes["public_url"] = env[f"{prefix}_PUBLIC_URL"]
    if env.get(f"{prefix}_PORT"):
        changes["port"] = _as_int(env[f"{prefix}_PORT"], f"{prefix}_PORT")
    if env.get("TANDEM_REQUEST_TIMEOUT"):
        changes["request_timeout_seconds"] = _as_timeout(env["TANDEM_REQUEST_TIMEOUT"])
    if env.get("TANDEM_ALLOWED_SHOPPING_AGENTS") is not None and config.role is AgentRole.MERCHANT:
        changes["allowed_shopping_agents"] = frozenset(
            a.strip() for a in env["TANDEM_ALLOWED_SHOPPING_AGENTS"].split(",") if a.strip()
        )
    if env.get("TANDEM_AUDIT_PATH"):
        changes["audit_path"] = Path(env["TANDEM_AUDIT_PATH"]).expanduser()

    peers = dict(config.peers)
    for role in AgentRole:
        url = env.get(f"{role.env_prefix}_URL")
        if url and role.value in peers:
            peers[role.value] = replace(peers[role.value], url=url)
    if peers != dict(config.peers):
        changes["peers"] = peers
    return replace(config, **changes) if changes else config


def _parse_peers(raw: Any, default_timeout: float) -> dict[str, PeerConfig]:
    if not isinstance(raw, dict):
        raise ConfigError("peers must be an object keyed by role name")
    peers: dict[str, PeerConfig] = {}
    for name, entry in raw.items():
        if isinstance(entry, str):
            entry = {"url": entry}
        if not isinstance(entry, dict) or not entry.get("url"):
            raise ConfigError(f"peer '{name}' needs a url")
        peers[str(name)] = PeerConfig(
            role=str(name),
            url=str(entry["url"]),
            timeout_seconds=_as_timeout(entry.get("timeout_seconds", default_timeout)),
        )
    return peers


def _as_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, list):
        raise ConfigError(f"{name} must be a list")
    return [str(v) for v in value]


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def _as_timeout(value: Any) -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"timeout must be a number, got {value!r}") from e
    if timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {timeout}")
    return timeout
