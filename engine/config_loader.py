"""
Remote Watch — Configuration Loader

Three layers, later wins:

  watch_config.yaml        base settings
  config/{env}.yaml        per-environment overlay (RW_ENV, default "dev")
  RW_* variables           single-value overrides from the environment

The merged tree is checked against the sections the engine understands
before anything is built from it. An unknown section or key is logged;
a section that is not a mapping is rejected.

Usage:
    from engine.config_loader import load_config

    settings = load_config(env="prod", project_root=".")
    options = settings.channel_options()
    monitor = settings.monitor_config()
    level = settings.get("logging.level", "INFO")
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from channel.connection import ChannelOptions
from engine.types import MonitorConfig

logger = logging.getLogger("remote_watch.config")

DEFAULT_BASE_FILE = "watch_config.yaml"
DEFAULT_ENV = "dev"

SECTIONS = ("channel", "monitor", "noise", "probes", "logging")

# RW_* variable -> dotted config path
_ENV_MAPPINGS: dict[str, str] = {
    "RW_HOST": "channel.host",
    "RW_CALL_TIMEOUT": "channel.call_timeout",
    "RW_MAX_RECONNECT_ATTEMPTS": "channel.max_reconnect_attempts",
    "RW_RECONNECT_DELAY": "channel.reconnect_delay",
    "RW_POLL_INTERVAL": "monitor.poll_interval",
    "RW_MAX_DURATION": "monitor.max_duration",
    "RW_NO_SIGNAL_TIMEOUT": "monitor.no_signal_timeout",
    "RW_LOG_LEVEL": "logging.level",
}
_ENV_PATH_PREFIX = "RW_CONFIG__"


class ConfigError(ValueError):
    """A config file or value the engine cannot use."""


@dataclass
class WatchSettings:
    """The merged configuration tree for one environment."""
    env: str
    data: dict[str, Any] = field(default_factory=dict)
    sources: tuple[str, ...] = ()

    def section(self, name: str) -> dict[str, Any]:
        return self.data.get(name) or {}

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """settings.get("channel.reconnect_delay", 2.0)"""
        node: Any = self.data
        for part in dotted_key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def channel_options(self) -> ChannelOptions:
        try:
            return ChannelOptions.from_config(self.section("channel"))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"channel: {e}") from e

    def monitor_config(self) -> MonitorConfig:
        try:
            return MonitorConfig.from_config(self.section("monitor"))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"monitor: {e}") from e


def load_config(
    env: str | None = None,
    project_root: str = ".",
    base_file: str = DEFAULT_BASE_FILE,
) -> WatchSettings:
    """
    Read and merge every layer for `env` (RW_ENV when omitted).

    Missing files are skipped; the engine runs on built-in defaults.

    Raises:
        ConfigError: a file that is not a YAML mapping, or a section
            that is not a mapping
    """
    env = env or os.environ.get("RW_ENV") or DEFAULT_ENV
    root = Path(project_root)
    data: dict[str, Any] = {}
    sources: list[str] = []

    for rel in (base_file, f"config/{env}.yaml"):
        layer = _read_yaml(root / rel)
        if layer is not None:
            data = _deep_merge(data, layer)
            sources.append(rel)

    overrides = _env_overrides()
    if overrides:
        data = _deep_merge(data, overrides)
        sources.append("environment")

    _check_sections(data)
    logger.info("Config loaded: env=%s sources=%s", env, sources)
    return WatchSettings(env=env, data=data, sources=tuple(sources))


def _read_yaml(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        with open(path) as f:
            loaded = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: {e}") from e
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path}: top level must be a mapping, got {type(loaded).__name__}")
    return loaded


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """New dict: nested mappings merge key by key, anything else is replaced."""
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _field_names(cls) -> set[str]:
    return {f.name for f in dataclasses.fields(cls)}


_KNOWN_KEYS: dict[str, set[str]] = {
    "channel": (_field_names(ChannelOptions) - {"rules", "priority"}) | {"targets", "contexts"},
    "monitor": _field_names(MonitorConfig),
}


def _check_sections(data: dict[str, Any]) -> None:
    for name, body in data.items():
        if name not in SECTIONS:
            logger.warning("Unknown config section %r ignored", name)
            continue
        if body is None:
            continue
        if not isinstance(body, dict):
            raise ConfigError(f"section {name!r} must be a mapping, got {type(body).__name__}")
        known = _KNOWN_KEYS.get(name)
        if known is None:
            continue
        for key in sorted(set(body) - known):
            logger.warning("Unknown key %s.%s ignored", name, key)


# ─── Environment overrides ─────────────────────────────────────────

def _env_overrides() -> dict[str, Any]:
    """
    RW_* variables as a nested dict. Besides the fixed table,
    RW_CONFIG__section__key=value reaches any path.
    """
    result: dict[str, Any] = {}
    for var, path in _ENV_MAPPINGS.items():
        raw = os.environ.get(var)
        if raw is not None:
            _set_path(result, path, _auto_convert(raw))
    for var, raw in os.environ.items():
        if var.startswith(_ENV_PATH_PREFIX):
            path = var[len(_ENV_PATH_PREFIX):].lower().replace("__", ".")
            _set_path(result, path, _auto_convert(raw))
    return result


def _set_path(target: dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    for part in parents:
        target = target.setdefault(part, {})
    target[leaf] = value


def _auto_convert(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False
    for convert in (int, float):
        try:
            return convert(raw)
        except ValueError:
            pass
    return raw
