"""Config file loading and auto-discovery for provctl.

Searches for ``provctl.yaml`` in the current directory and parent
directories, parses it, and resolves all relative paths against the
config file's location.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from provctl.errors import ConfigError
from provctl.models import RetentionPolicy

CONFIG_FILENAME = "provctl.yaml"

PROVIDER_TYPES = ("local", "aws")


@dataclass(frozen=True)
class ProviderConfig:
    """One entry of the ``providers`` mapping."""

    name: str
    type: str
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProvctlConfig:
    """Parsed provctl project configuration."""

    config_path: Path | None = None
    state_db: str = "provctl.db"
    event_log: str = "events.jsonl"
    snapshot_dir: str = "snapshots"
    desired: str | None = None
    actor: str = "provctl"
    providers: tuple[ProviderConfig, ...] = ()
    reconcile_interval: float = 60.0
    drift_auto_remediate: bool = False
    drift_interval: float = 300.0
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    snapshot_before_apply: bool = True
    log_level: str = "WARNING"

    def provider_configs(self) -> tuple[ProviderConfig, ...]:
        """Configured providers, or one ``local`` provider next to the state db."""
        if self.providers:
            return self.providers
        cloud = Path(self.state_db).with_name("local-cloud.json")
        return (ProviderConfig(name="local", type="local", options={"path": str(cloud)}),)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``provctl.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> ProvctlConfig:
    """Load a provctl config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return a default ``ProvctlConfig``.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return ProvctlConfig()

    return _parse_config(config_path)


def _parse_config(config_path: Path) -> ProvctlConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}", cause=e) from e

    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        )

    base = config_path.parent

    def _resolve(key: str, default: str | None = None) -> str | None:
        val = data.get(key, default)
        if val is None:
            return None
        return str((base / val).resolve())

    drift = _section(data, "drift", config_path)
    retention = _section(data, "retention", config_path)

    try:
        return ProvctlConfig(
            config_path=config_path,
            state_db=_resolve("state_db", "provctl.db") or "provctl.db",
            event_log=_resolve("event_log", "events.jsonl") or "events.jsonl",
            snapshot_dir=_resolve("snapshot_dir", "snapshots") or "snapshots",
            desired=_resolve("desired"),
            actor=str(data.get("actor", "provctl")),
            providers=_parse_providers(data.get("providers") or {}, base, config_path),
            reconcile_interval=float(data.get("reconcile_interval", 60)),
            drift_auto_remediate=bool(drift.get("auto_remediate", False)),
            drift_interval=float(drift.get("interval", 300)),
            retention=RetentionPolicy(
                max_age=(
                    timedelta(seconds=float(retention["max_age"]))
                    if retention.get("max_age") is not None else None
                ),
                max_count=retention.get("max_count"),
            ),
            snapshot_before_apply=bool(data.get("snapshot_before_apply", True)),
            log_level=str(data.get("log_level", "WARNING")).upper(),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in {config_path}", cause=e) from e


def _section(data: dict[str, Any], key: str, config_path: Path) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping in {config_path}")
    return value


def _parse_providers(
    raw: Any,
    base: Path,
    config_path: Path,
) -> tuple[ProviderConfig, ...]:
    if not isinstance(raw, dict):
        raise ConfigError(f"'providers' must be a mapping in {config_path}")

    providers: list[ProviderConfig] = []
    for name, entry in sorted(raw.items()):
        entry = dict(entry or {})
        ptype = entry.pop("type", "local")
        if ptype not in PROVIDER_TYPES:
            raise ConfigError(
                f"Unknown provider type {ptype!r} for provider {name!r} in {config_path}"
            )
        if ptype == "local" and entry.get("path"):
            entry["path"] = str((base / entry["path"]).resolve())
        providers.append(ProviderConfig(name=str(name), type=ptype, options=entry))
    return tuple(providers)
