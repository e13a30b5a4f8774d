"""Key-value configuration store for speedcheck"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

ENV_PREFIX = "CF_SPEEDCHECK_"
CONFIG_PATH_ENV = ENV_PREFIX + "CONFIG"
DEFAULT_CONFIG_PATH = "speedcheck.json"

DEFAULTS: Dict[str, Any] = {
    "interface": None,
    "host": "speed.cloudflare.com",
    "timeout": 15,
    "latency_probes": 20,
    "percentile": 90,
}


def get_config_path() -> Path:
    """Config file location, overridable through CF_SPEEDCHECK_CONFIG."""
    return Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))


def _env_overrides() -> Dict[str, str]:
    overrides = {}
    for key in DEFAULTS:
        value = os.environ.get(ENV_PREFIX + key.upper())
        if value is not None:
            overrides[key] = value
    return overrides


class ConfigStore:
    """
    Flat key-value settings.

    ``load`` reads the JSON file and lays ``CF_SPEEDCHECK_<KEY>`` environment
    variables over it. Values set at runtime win over both; keys never set
    fall back to DEFAULTS.
    """

    def __init__(self, values: Optional[Dict[str, Any]] = None, path: Optional[Path] = None):
        self._values: Dict[str, Any] = dict(values or {})
        self.path = path

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "ConfigStore":
        path = Path(path) if path is not None else get_config_path()
        values: Dict[str, Any] = {}
        if path.exists():
            with path.open("r", encoding="utf-8") as fh:
                values = json.load(fh)
            if not isinstance(values, dict):
                raise ValueError(f"Config file {path} must contain a JSON object")
        else:
            logger.debug("No config file at %s, using defaults", path)
        values.update(_env_overrides())
        return cls(values, path=path)

    def get_value(self, key: str, default: Any = None) -> Any:
        if self._values.get(key) is not None:
            return self._values[key]
        if default is not None:
            return default
        return DEFAULTS.get(key)

    def set_value(self, key: str, value: Any) -> None:
        self._values[key] = value

    def save(self) -> None:
        if self.path is None:
            self.path = get_config_path()
        with self.path.open("w", encoding="utf-8") as fh:
            json.dump(self._values, fh, indent=2, sort_keys=True)
