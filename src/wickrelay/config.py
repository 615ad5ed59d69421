# src/wickrelay/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from wickrelay.core.errors import ConfigError

# env var -> field
ENV_KEYS = {
    "RELAY_ID": "id",
    "RELAY_HOST": "host",
    "RELAY_PORT": "port",
    "RELAY_RETRY": "retry",
    "RELAY_BROADCAST_INTERVAL": "broadcast_interval",
    "RELAY_NAMESPACE": "namespace",
}


@dataclass(frozen=True)
class RelayConfig:
    id: str = "wick"
    host: str = "localhost"
    port: int = 27020
    retry: float = 5.0               # client reconnect delay (s)
    broadcast_interval: float = 30.0
    namespace: str = "app"

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def override(self, **changes: Any) -> "RelayConfig":
        """Apply non-None changes, coercing and validating them."""
        clean = {k: v for k, v in changes.items() if v is not None}
        return _validated(replace(self, **_coerce(clean)))


def _coerce(values: Mapping[str, Any]) -> Dict[str, Any]:
    types = {f.name: f.type for f in fields(RelayConfig)}
    out: Dict[str, Any] = {}
    for k, v in values.items():
        if k not in types:
            raise ConfigError(f"unknown relay setting: {k}")
        t = types[k]
        try:
            if t == "int":
                out[k] = int(v)
            elif t == "float":
                out[k] = float(v)
            else:
                out[k] = str(v)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"bad value for {k}: {v!r}") from e
    return out


def _validated(cfg: RelayConfig) -> RelayConfig:
    if not 0 <= cfg.port <= 65535:
        raise ConfigError(f"port out of range: {cfg.port}")
    if cfg.retry <= 0:
        raise ConfigError("retry must be > 0")
    if cfg.broadcast_interval <= 0:
        raise ConfigError("broadcast_interval must be > 0")
    return cfg


def from_yaml(path: str | Path, base: Optional[RelayConfig] = None) -> RelayConfig:
    """Read a YAML file; settings live under ``relay:`` or at the top level."""
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except OSError as e:
        raise ConfigError(f"cannot read config {p}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {p} must be a mapping")
    section = data.get("relay", data)
    if not isinstance(section, dict):
        raise ConfigError(f"'relay' in {p} must be a mapping")
    return (base or RelayConfig()).override(**section)


def from_env(base: Optional[RelayConfig] = None, environ: Optional[Mapping[str, str]] = None) -> RelayConfig:
    env = os.environ if environ is None else environ
    values = {field: env[key] for key, field in ENV_KEYS.items() if env.get(key)}
    return (base or RelayConfig()).override(**values)


def load_config(path: str | Path | None = None, **overrides: Any) -> RelayConfig:
    """defaults < YAML file < environment (.env included) < explicit overrides."""
    load_dotenv()
    cfg = RelayConfig()
    if path:
        cfg = from_yaml(path, cfg)
    cfg = from_env(cfg)
    return cfg.override(**overrides)
