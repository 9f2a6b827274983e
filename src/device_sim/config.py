import logging
import os
from pathlib import Path
from typing import Callable, TypeVar

import yaml

logger = logging.getLogger("device_sim.config")

CONFIG_PATH_ENV = "SIM_CONFIG_PATH"
DEFAULT_CONFIG_FILE = "simenv.yaml"

T = TypeVar("T")


def _config_file() -> Path:
    custom_path = os.getenv(CONFIG_PATH_ENV)
    if custom_path:
        if Path(custom_path).exists():
            logger.info(f"Using config from {CONFIG_PATH_ENV}: {custom_path}")
            return Path(custom_path)
        logger.warning(f"{CONFIG_PATH_ENV} set but file not found: {custom_path}")
    return Path(__file__).parent / DEFAULT_CONFIG_FILE


class SimulatorConfig:
    """Simulator settings, read from the environment on first use.

    Settings missing from the environment are looked up in a YAML file
    (``simenv.yaml`` next to this module, or the file named by SIM_CONFIG_PATH)::

        env:
          - name: CELL_ID
            value: 16964098

    The value of each setting is logged once, when it is first read.
    """

    _yaml_config: dict[str, str] | None = None

    def __init__(self) -> None:
        self._values: dict[str, str | None] = {}

    @classmethod
    def _load_yaml_config(cls) -> dict[str, str]:
        """Read the YAML fallback once per process; empty if there is no file."""
        if cls._yaml_config is not None:
            return cls._yaml_config

        cls._yaml_config = {}
        config_path = _config_file()
        if not config_path.exists():
            return cls._yaml_config

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        for item in data.get("env") or []:
            if "name" in item and "value" in item:
                cls._yaml_config[item["name"]] = str(item["value"])
        return cls._yaml_config

    def _read(self, name: str) -> str | None:
        if name not in self._values:
            value = os.getenv(name)
            if value is None:
                value = self._load_yaml_config().get(name)
            self._values[name] = value
            logger.info(f"Config {name}: {value if value is not None else 'unset'}")
        return self._values[name]

    def _convert(self, name: str, default: T | None, convert: Callable[[str], T]) -> T:
        value = self._read(name)
        if value is None:
            if default is None:
                raise ValueError(f"Required environment variable {name} is not set")
            return default
        return convert(value)

    def get_optional(self, name: str, default: str | None = None) -> str | None:
        """Get a setting, returning ``default`` when it is not set."""
        value = self._read(name)
        return value if value is not None else default

    def get_int(self, name: str, default: int | None = None) -> int:
        """Get an integer setting.

        Raises:
            ValueError: If the setting is not an integer, or is unset without a default.
        """
        return self._convert(name, default, int)

    def get_float(self, name: str, default: float | None = None) -> float:
        return self._convert(name, default, float)


config = SimulatorConfig()
