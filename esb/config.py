"""
Connection profile.

Settings come from a YAML file (``path``, ``$ESB_CONFIG`` or
``~/.config/esb/config.yaml``) and are then overridden by ``ESB_*``
environment variables. Every field has a default, so no file is needed.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

import yaml

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join("~", ".config", "esb", "config.yaml")

_ENV_OVERRIDES = {
    "ESB_PORT": ("port", str),
    "ESB_BAUD": ("baud", int),
    "ESB_USERNAME": ("username", str),
    "ESB_PASSWORD": ("password", str),
    "ESB_SHELL": ("shell", str),
}


@dataclass
class BridgeConfig:
    port: Optional[str] = None
    baud: int = 115200
    username: str = "root"
    password: str = ""
    shell: str = "bash"
    capacity: int = 2000
    disable_echo: bool = False
    lock: bool = True
    base_dir: str = "/tmp/esb-session"
    events: bool = False
    mirror: bool = False
    run_timeout_ms: int = 15_000
    probe_timeouts: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], source: str = "<config>") -> "BridgeConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            log.warning("Ignoring unknown keys in %s: %s", source, ", ".join(unknown))
        values = {k: v for k, v in data.items() if k in known}
        timeouts = values.get("probe_timeouts") or {}
        if not isinstance(timeouts, Mapping):
            raise ValueError(f"{source}: probe_timeouts must be a mapping of probe name to ms")
        values["probe_timeouts"] = {str(k): int(v) for k, v in timeouts.items()}
        for key in ("baud", "capacity", "run_timeout_ms"):
            if key in values:
                values[key] = int(values[key])
        if values.get("run_timeout_ms", 1) <= 0:
            raise ValueError(f"{source}: run_timeout_ms must be > 0")
        return cls(**values)

    def timeout_for(self, probe: str) -> Optional[int]:
        return self.probe_timeouts.get(probe)


def _resolve_path(path: Optional[str], env: Mapping[str, str]) -> str:
    if path:
        return os.path.expanduser(path)
    return os.path.expanduser(env.get("ESB_CONFIG") or DEFAULT_CONFIG_PATH)


def load_config(path: Optional[str] = None, env: Mapping[str, str] = os.environ) -> BridgeConfig:
    """Load the profile, then apply environment overrides."""
    config_path = _resolve_path(path, env)
    data: Dict[str, Any] = {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
    except FileNotFoundError:
        log.debug("No config file at %s, using defaults", config_path)
        loaded = None
    if loaded is not None:
        if not isinstance(loaded, dict):
            raise ValueError(f"{config_path}: expected a mapping at the top level")
        data = loaded

    config = BridgeConfig.from_mapping(data, source=config_path)
    for var, (attr, convert) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        try:
            setattr(config, attr, convert(value))
        except ValueError:
            raise ValueError(f"{var}={value!r} is not a valid {attr}") from None
    return config
