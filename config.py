from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values.
"""


DEFAULTS: dict[str, Any] = {
    "tick_limit": 100000,
    "pause_tick": None,
    "delay_tick_ms": 16,
    "rng_seed": None,
    "lenient_log": False,
    "dump_file": None,
}


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _optional_int(v: Any) -> int | None:
    if v is None:
        return None
    return int(v)


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        tl = cfg.get("tick_limit", DEFAULTS["tick_limit"])
        cfg["tick_limit"] = int(DEFAULTS["tick_limit"] if tl is None else tl)

        cfg["pause_tick"] = _optional_int(cfg.get("pause_tick"))

        dt = cfg.get("delay_tick_ms", DEFAULTS["delay_tick_ms"])
        cfg["delay_tick_ms"] = int(DEFAULTS["delay_tick_ms"] if dt is None else dt)

        cfg["rng_seed"] = _optional_int(cfg.get("rng_seed"))

        # lenient_log (bool coercion)
        cfg["lenient_log"] = bool(cfg.get("lenient_log", DEFAULTS["lenient_log"]))

        v = cfg.get("dump_file")
        cfg["dump_file"] = None if v is None else str(v)
    except (TypeError, ValueError) as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    if cfg["tick_limit"] <= 0:
        msg = "tick_limit must be positive"
        raise ConfigError(msg)

    if cfg["pause_tick"] is not None and cfg["pause_tick"] < 0:
        msg = "pause_tick must be non-negative or null"
        raise ConfigError(msg)

    if cfg["delay_tick_ms"] <= 0:
        msg = "delay_tick_ms must be positive"
        raise ConfigError(msg)

    unknown = sorted(set(cfg) - set(DEFAULTS))
    if unknown:
        msg = f"Unknown config keys: {', '.join(unknown)}"
        raise ConfigError(msg)


def load_config(path_or_dict: str | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str (path) -> load YAML and overlay DEFAULTS

    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, str):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg
