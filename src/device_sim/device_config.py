import logging
from typing import Any, Optional

logger = logging.getLogger("device_sim.device_config")

DEFAULT_CONFIG: dict[str, Any] = {
    "act": False,  # Active mode enabled
    "actwt": 60,  # Active mode: seconds to wait between updates (plus time for a GPS fix)
    "mvres": 300,  # Passive mode: seconds to wait after movement before the next update
    "mvt": 3600,  # Passive mode: send an update at least this often (seconds)
    "gpst": 60,  # GPS fix timeout (seconds)
    "accath": 10.5,  # Accelerometer activity threshold (m/s²)
    "accith": 5.2,  # Accelerometer inactivity threshold (m/s²), lower than accath
    "accito": 1.7,  # Accelerometer inactivity timeout (seconds)
}


class DeviceConfig:
    """Tunable device settings, changed only by merging desired-state deltas."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._values: dict[str, Any] = dict(DEFAULT_CONFIG)
        if initial:
            self._values.update(initial)

    def merge(self, delta: Any) -> dict[str, Any]:
        """Shallow-merge a delta into the config.

        Args:
            delta: Keys to overwrite; None, empty or a non-object leaves the config untouched

        Returns:
            A copy of the merged config.
        """
        if delta is not None and not isinstance(delta, dict):
            logger.warning(f"Config: ignoring delta that is not an object: {delta!r}")
        elif delta:
            self._values.update(delta)
            logger.info(f"Config: {self._values}")
        return self.as_dict()

    def as_dict(self) -> dict[str, Any]:
        return dict(self._values)
