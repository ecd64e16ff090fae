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
    "pc_start": 0x3000,
    "kbsr": 0xFE00,
    "kbdr": 0xFE02,
    "tick_limit": 0,
    "halt_message": "HALT",
    "in_prompt": "Enter a character: ",
    "lenient_log": False,
}

_ADDRESS_KEYS = ("pc_start", "kbsr", "kbdr")


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        # addresses may be written as ints or as "0x3000"/"x3000" strings
        for key in _ADDRESS_KEYS:
            v = cfg.get(key, DEFAULTS[key])
            if isinstance(v, str):
                text = v.strip()
                if text[:1] in ("x", "X"):
                    text = "0" + text
                cfg[key] = int(text, 0)
            else:
                cfg[key] = int(v)

        # tick_limit: None means unlimited, same as 0
        tl = cfg.get("tick_limit")
        cfg["tick_limit"] = 0 if tl is None else int(tl)

        # text messages
        for key in ("halt_message", "in_prompt"):
            v = cfg.get(key)
            cfg[key] = "" if v is None else str(v)
    except Exception as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    for key in _ADDRESS_KEYS:
        if not (0 <= cfg[key] <= 0xFFFF):
            msg = f"{key} ({cfg[key]}) out of address range (0..0xFFFF)"
            raise ConfigError(msg)

    if cfg["kbsr"] == cfg["kbdr"]:
        msg = "kbsr and kbdr must be different addresses"
        raise ConfigError(msg)

    if cfg["tick_limit"] < 0:
        msg = "tick_limit must be non-negative (0 means unlimited)"
        raise ConfigError(msg)

    if not isinstance(cfg["lenient_log"], bool):
        msg = "lenient_log must be boolean"
        raise ConfigError(msg)

    unknown = sorted(set(cfg) - set(DEFAULTS))
    if unknown:
        msg = f"Unknown config keys: {', '.join(unknown)}"
        raise ConfigError(msg)


def _read_overrides(path: str | Path) -> dict[str, Any]:
    """Parse a YAML config file into a mapping of overrides."""
    p = Path(path)
    if not p.is_file():
        msg = f"Config file not found: {p}"
        raise ConfigError(msg)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        msg = f"Failed to load config file {p}: {e}"
        raise ConfigError(msg) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Config file {p} does not contain a mapping"
        raise ConfigError(msg)
    return data


def load_config(source: str | Path | dict[str, Any] | None = None) -> dict[str, Any]:
    """Return DEFAULTS overlaid with `source`, normalized and validated.

    `source` is None (defaults only), a dict of overrides, or the path of
    a YAML file holding one. Raises ConfigError.
    """
    if source is None:
        overrides: dict[str, Any] = {}
    elif isinstance(source, dict):
        overrides = source
    elif isinstance(source, (str, Path)):
        overrides = _read_overrides(source)
    else:
        msg = f"Unsupported config input: {type(source).__name__}"
        raise ConfigError(msg)

    cfg = {**DEFAULTS, **overrides}
    _convert_types(cfg)
    _validate_cfg(cfg)
    return cfg
