"""Configuration loader for the build orchestrator."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .retry import RetryPolicy

DEFAULT_CONFIG_PATH = "~/.ham.json"
DEFAULT_AGENT_URL = "https://github.com/antony-jr/ham/releases/latest/download/ham"


def _policy(data: Dict[str, Any], attempts: int, interval: float) -> RetryPolicy:
    return RetryPolicy(
        attempts=int(data.get("attempts", attempts)),
        interval=float(data.get("interval", interval)),
    )


@dataclass(frozen=True)
class Settings:
    image: str = "ubuntu-24.04"
    location: str = "nbg1"
    volume_size_gb: int = 400
    ssh_key_name: str = "ham-ssh-key"
    default_key_name: str = "default"
    agent_url: str = DEFAULT_AGENT_URL
    price_ceiling: Optional[float] = None
    reap_dead_servers: bool = True
    action_poll_interval: float = 2.0
    probe_poll_interval: float = 5.0
    build_settle_seconds: float = 10.0
    remote: RetryPolicy = field(default_factory=lambda: RetryPolicy(20, 3.0))
    connect_failure: RetryPolicy = field(default_factory=lambda: RetryPolicy(3, 5.0))
    malformed_status: RetryPolicy = field(default_factory=lambda: RetryPolicy(10, 600.0))
    unknown_failure: RetryPolicy = field(default_factory=lambda: RetryPolicy(3, 5.0))
    label_poll: RetryPolicy = field(default_factory=lambda: RetryPolicy(20, 10.0))
    destroy: RetryPolicy = field(default_factory=lambda: RetryPolicy(20, 5.0))
    exit_destroy: RetryPolicy = field(default_factory=lambda: RetryPolicy(5, 5.0))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        server = data.get("server", {})
        retries = data.get("retries", {})
        ceiling = server.get("price_ceiling")
        return cls(
            image=server.get("image", "ubuntu-24.04"),
            location=server.get("location", "nbg1"),
            volume_size_gb=int(server.get("volume_size_gb", 400)),
            ssh_key_name=server.get("ssh_key_name", "ham-ssh-key"),
            default_key_name=server.get("default_key_name", "default"),
            agent_url=data.get("agent_url", DEFAULT_AGENT_URL),
            price_ceiling=float(ceiling) if ceiling is not None else None,
            reap_dead_servers=bool(data.get("reap_dead_servers", True)),
            action_poll_interval=float(data.get("action_poll_interval", 2.0)),
            probe_poll_interval=float(data.get("probe_poll_interval", 5.0)),
            build_settle_seconds=float(data.get("build_settle_seconds", 10.0)),
            remote=_policy(retries.get("remote", {}), 20, 3.0),
            connect_failure=_policy(retries.get("connect_failure", {}), 3, 5.0),
            malformed_status=_policy(retries.get("malformed_status", {}), 10, 600.0),
            unknown_failure=_policy(retries.get("unknown_failure", {}), 3, 5.0),
            label_poll=_policy(retries.get("label_poll", {}), 20, 10.0),
            destroy=_policy(retries.get("destroy", {}), 20, 5.0),
            exit_destroy=_policy(retries.get("exit_destroy", {}), 5, 5.0),
        )


@dataclass(frozen=True)
class HamConfig:
    api_key: str
    ssh_public_key: str
    ssh_private_key: str
    path: Path
    settings: Settings

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Path) -> "HamConfig":
        missing = [k for k in ("api_key", "ssh_public_key", "ssh_private_key") if not data.get(k)]
        if missing:
            raise ConfigError(f"Config {path} is missing {', '.join(missing)}; run init again.")
        return cls(
            api_key=data["api_key"],
            ssh_public_key=data["ssh_public_key"],
            ssh_private_key=data["ssh_private_key"],
            path=path,
            settings=Settings.from_dict(data.get("settings", {})),
        )


ENV_MAP = {
    "api_key": "HAM_API_KEY",
    "ssh_public_key": "HAM_SSH_PUBLIC_KEY",
    "ssh_private_key": "HAM_SSH_PRIVATE_KEY",
    "settings.agent_url": "HAM_AGENT_URL",
    "settings.reap_dead_servers": "HAM_REAP_DEAD_SERVERS",
    "settings.server.location": "HAM_LOCATION",
    "settings.server.price_ceiling": "HAM_PRICE_CEILING",
    "settings.retries.remote.attempts": "HAM_REMOTE_ATTEMPTS",
    "settings.retries.remote.interval": "HAM_REMOTE_INTERVAL",
    "settings.retries.label_poll.attempts": "HAM_LABEL_POLL_ATTEMPTS",
    "settings.retries.label_poll.interval": "HAM_LABEL_POLL_INTERVAL",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    # JSON is a subset of YAML, so ~/.ham.json loads here too.
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        last = parts[-1]
        if last == "attempts":
            value = int(value)
        elif last in {"interval", "price_ceiling"}:
            value = float(value)
        elif last == "reap_dead_servers":
            value = value.strip().lower() in {"1", "true", "yes", "on"}
        target[last] = value

    return merged


def load_config(config_path: str | Path = DEFAULT_CONFIG_PATH) -> HamConfig:
    path = Path(config_path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = load_yaml(path)
    data = merge_env_overrides(data)
    return HamConfig.from_dict(data, path)
