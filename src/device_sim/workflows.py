"""Simulated firmware (FOTA) and Device Update agent (ADU) workflows.

Both workflows are driven by desired properties and report their progress through
the ``report`` callable, which publishes a reported properties patch.
"""

import logging
from enum import Enum, IntEnum
from typing import Any, Callable, Optional

import gevent
import orjson

from device_sim.errors import ManifestError

logger = logging.getLogger("device_sim.workflows")

Report = Callable[[dict[str, Any]], None]

DEFAULT_FOTA_DELAY_SECONDS = 10.0


class FirmwareStatus(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    CURRENT = "current"


class AduAction(IntEnum):
    """Update actions sent by the Device Update service."""

    DOWNLOAD = 0
    INSTALL = 1
    APPLY = 2
    CANCEL = 255


class AduState(IntEnum):
    """Agent states, see https://learn.microsoft.com/azure/iot-hub-device-update/device-update-plug-and-play"""

    IDLE = 0
    DOWNLOAD_STARTED = 1
    DOWNLOAD_SUCCEEDED = 2
    INSTALL_STARTED = 3
    INSTALL_SUCCEEDED = 4
    APPLY_STARTED = 5
    FAILED = 255


class FotaWorkflow:
    """Simulates a firmware update: report downloading, then current after a fixed delay.

    A new request while a download is pending restarts the timer for the new version.
    """

    def __init__(
        self,
        report: Report,
        current_version: str,
        delay: float = DEFAULT_FOTA_DELAY_SECONDS,
        spawn_later: Callable[..., Any] = gevent.spawn_later,
    ):
        self._report = report
        self._spawn_later = spawn_later
        self._pending: Any = None
        self.delay = delay
        self.current_version = current_version
        self.pending_version = ""
        self.status = FirmwareStatus.CURRENT

    def start(self, firmware: Any) -> None:
        """Start a firmware update for ``firmware["fwVersion"]``."""
        fw_version = firmware.get("fwVersion") if isinstance(firmware, dict) else None
        if not isinstance(fw_version, str) or not fw_version:
            logger.warning(f"FOTA: no fwVersion in {firmware}")
            return

        if self._pending is not None:
            logger.info(f"FOTA: restarting download, {self.pending_version} replaced by {fw_version}")
            self._pending.kill(block=False)
            self._pending = None

        logger.info(f"FOTA: downloading {fw_version}")
        self.status = FirmwareStatus.DOWNLOADING
        self.pending_version = fw_version
        self._report(
            {
                "firmware": {
                    "currentFwVersion": self.current_version,
                    "pendingFwVersion": fw_version,
                    "status": FirmwareStatus.DOWNLOADING.value,
                }
            }
        )
        self._pending = self._spawn_later(self.delay, self._complete, fw_version)

    def _complete(self, fw_version: str) -> None:
        self._pending = None
        logger.info(f"FOTA: {fw_version} is current")
        self.status = FirmwareStatus.CURRENT
        self.current_version = fw_version
        self._report(
            {
                "firmware": {
                    "currentFwVersion": fw_version,
                    "pendingFwVersion": fw_version,
                    "status": FirmwareStatus.CURRENT.value,
                }
            }
        )

    def cancel(self) -> None:
        """Stop a pending download timer without reporting."""
        if self._pending is not None:
            self._pending.kill(block=False)
            self._pending = None


def _parse_manifest(service: dict[str, Any]) -> dict[str, Any]:
    try:
        manifest = orjson.loads(service["updateManifest"])
    except (KeyError, TypeError, orjson.JSONDecodeError) as e:
        raise ManifestError(f"Invalid update manifest: {e}") from e
    if not isinstance(manifest, dict):
        raise ManifestError(f"Invalid update manifest: expected an object, got {manifest!r}")
    return manifest


class AduWorkflow:
    """Simulates the Device Update agent.

    Stateless: every dispatch looks only at the service action in the desired
    properties and reports the state the agent would end up in.
    """

    def __init__(self, report: Report):
        self._report = report

    def dispatch(self, desired: dict[str, Any]) -> Optional[AduState]:
        """Handle the update action found in the desired properties.

        Args:
            desired: Desired properties (full document or patch)

        Returns:
            The reported agent state, or None if there was nothing to do.

        Raises:
            ManifestError: If the update manifest for an install or apply is malformed.
        """
        agent = desired.get("azureDeviceUpdateAgent")
        service = agent.get("service") if isinstance(agent, dict) else None
        if not isinstance(service, dict):
            return None

        action = service.get("action")
        # bool is an int subclass; True must not be taken for INSTALL
        if not isinstance(action, int) or isinstance(action, bool):
            return None

        if action == AduAction.DOWNLOAD:
            logger.info("ADU: Downloading Update")
            file_urls = service.get("fileUrls")
            if isinstance(file_urls, dict):
                file_urls = list(file_urls.values())
            if isinstance(file_urls, list):
                for url in file_urls:
                    logger.info(f"- {url}")
            self._report({"azureDeviceUpdateAgent": {"client": {"state": AduState.DOWNLOAD_SUCCEEDED.value}}})
            return AduState.DOWNLOAD_SUCCEEDED

        if action == AduAction.INSTALL:
            logger.info("ADU: Installing Update")
            manifest = _parse_manifest(service)
            client: dict[str, Any] = {"state": AduState.INSTALL_SUCCEEDED.value}
            if manifest.get("updateId") is not None:
                client["installedUpdateId"] = orjson.dumps(manifest["updateId"]).decode("utf-8")
            self._report({"azureDeviceUpdateAgent": {"client": client}})
            return AduState.INSTALL_SUCCEEDED

        if action == AduAction.APPLY:
            logger.info("ADU: Apply Update")
            manifest = _parse_manifest(service)
            self._report(
                {
                    "deviceInformation": {"swVersion": manifest.get("installedCriteria")},
                    "azureDeviceUpdateAgent": {"client": {"state": AduState.IDLE.value}},
                }
            )
            return AduState.IDLE

        if action == AduAction.CANCEL:
            logger.info("ADU: Aborting Update")
            self._report(
                {"azureDeviceUpdateAgent": {"client": {"state": AduState.IDLE.value, "installedUpdateId": None}}}
            )
            return AduState.IDLE

        logger.debug(f"ADU: ignoring action {action}")
        return None
