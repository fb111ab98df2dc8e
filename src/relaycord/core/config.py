from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .exceptions import PermanentError

CONFIG_FILENAMES = ("relaycord.yml", "relaycord.yaml", ".relaycord.yml")


class ConfigError(PermanentError):
    """Raised when a config file cannot be read or parsed."""


def load_config_data(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def find_config_path(start: Path) -> Optional[Path]:
    """Return the first known config filename in `start` or its parents."""
    start = start.resolve()
    for directory in (start, *start.parents):
        for name in CONFIG_FILENAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None
