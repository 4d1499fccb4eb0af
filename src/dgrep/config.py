"""Configuration loader for the dgrep coordinator."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from dgrep.models import ConfigError, Target

DEFAULT_TARGETS_FILE = Path("sources.json")


@dataclass
class Defaults:
    """Dispatch settings that the command line can override."""

    dial_timeout: float = 3.0
    call_timeout: float = 5.0
    path: str = ""
    max_concurrency: int | None = None


@dataclass
class Config:
    """Main configuration for the coordinator."""

    targets: list[Target]
    defaults: Defaults = field(default_factory=Defaults)
    source_path: Path | None = None  # Path to the YAML file, if any


def load_targets(targets_path: str | Path) -> list[Target]:
    """Load the target list: a JSON array of ``host:port`` strings."""
    targets_path = Path(targets_path).expanduser()

    try:
        raw = json.loads(targets_path.read_text())
    except FileNotFoundError:
        raise ConfigError(f"Target list not found: {targets_path}") from None
    except OSError as e:
        raise ConfigError(f"Error reading target list {targets_path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing target list {targets_path}: {e}") from e

    return _parse_targets(raw, str(targets_path))


def load_config(
    config_path: str | Path | None = None,
    targets_path: str | Path | None = None,
) -> Config:
    """Build the coordinator configuration.

    Reads the optional YAML file at ``config_path``. Targets come from an
    inline ``targets`` list in that file, else from ``targets_path``, else
    from the file's ``targets_file`` entry, else from ``sources.json``.
    """
    raw: dict[str, Any] = {}
    base_dir = Path.cwd()
    resolved: Path | None = None

    if config_path is not None:
        resolved = Path(config_path).expanduser().resolve()
        if not resolved.exists():
            raise ConfigError(f"Config file not found: {resolved}")
        try:
            with open(resolved) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing config file {resolved}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {resolved} must contain a mapping")
        base_dir = resolved.parent

    defaults = _parse_defaults(raw)

    if "targets" in raw and targets_path is None:
        targets = _parse_targets(raw["targets"], "config 'targets'")
    else:
        if targets_path is None:
            targets_path = base_dir / raw.get("targets_file", DEFAULT_TARGETS_FILE)
        targets = load_targets(targets_path)

    return Config(targets=targets, defaults=defaults, source_path=resolved)


def _parse_targets(raw: Any, source: str) -> list[Target]:
    if not isinstance(raw, list):
        raise ConfigError(f"Target list in {source} must be a JSON array of strings")
    if not raw:
        raise ConfigError(f"No target addresses found in {source}")
    return [Target.parse(entry) for entry in raw]


def _parse_defaults(raw: dict[str, Any]) -> Defaults:
    """Parse the defaults section."""
    defaults_raw = raw.get("defaults") or {}
    if not isinstance(defaults_raw, dict):
        raise ConfigError("'defaults' must be a mapping")

    defaults = Defaults(
        dial_timeout=_positive(defaults_raw, "dial_timeout", Defaults.dial_timeout),
        call_timeout=_positive(defaults_raw, "call_timeout", Defaults.call_timeout),
        path=str(defaults_raw.get("path") or ""),
    )

    max_concurrency = defaults_raw.get("max_concurrency")
    if max_concurrency is not None:
        if not isinstance(max_concurrency, int) or max_concurrency < 1:
            raise ConfigError("'max_concurrency' must be a positive integer")
        defaults.max_concurrency = max_concurrency

    return defaults


def _positive(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive number of seconds")
    return float(value)
