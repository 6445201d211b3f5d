"""
Pipeline configuration: a TOML file merged over defaults.

Lookup order: explicit path, $METAL_CONFIG, ~/.metal/config.toml.

Example config.toml:
    version = 2
    max_retries = 32
    v1_additive = "0000"
    v2_additive = 0
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from metal import DEFAULT_MAX_RETRIES, V1_DEFAULT_ADDITIVE, V2_DEFAULT_ADDITIVE
from metal.chunk import normalize_additive

log = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "version": 2,
    "max_retries": DEFAULT_MAX_RETRIES,
    "v1_additive": V1_DEFAULT_ADDITIVE.decode("ascii"),
    "v2_additive": V2_DEFAULT_ADDITIVE,
}

_DEFAULT_CONFIG_PATH = Path.home() / ".metal" / "config.toml"


def _validate(config: dict[str, Any]) -> None:
    if config["version"] not in (1, 2):
        raise ValueError(f"Unsupported chunk version in config: {config['version']!r}")
    retries = config["max_retries"]
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        raise ValueError(f"max_retries must be a non-negative integer, got {retries!r}")
    normalize_additive(1, config["v1_additive"])
    normalize_additive(2, config["v2_additive"])


def load_config(config_path: Path | str | None = None) -> dict[str, Any]:
    """Load pipeline config from TOML, falling back to defaults.

    Unknown keys are ignored. An unreadable file or invalid values log a
    warning and yield the defaults.
    """
    config = dict(DEFAULT_CONFIG)

    env_path = os.environ.get("METAL_CONFIG", "")
    path = Path(config_path) if config_path else Path(env_path) if env_path else _DEFAULT_CONFIG_PATH
    if not path.is_file():
        return config

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib

    try:
        with open(path, "rb") as f:
            file_config = tomllib.load(f)
        merged = dict(config)
        merged.update({k: v for k, v in file_config.items() if k in DEFAULT_CONFIG})
        _validate(merged)
    except (OSError, ValueError, KeyError, TypeError, tomllib.TOMLDecodeError) as e:
        log.warning("Failed to load config from %s: %s", path, e)
        return config

    return merged
