"""Device twin synchronization with the assigned IoT Hub.

See https://learn.microsoft.com/azure/iot/iot-mqtt-connect-to-iot-hub for the
twin topics. Incoming messages are routed through a fixed priority table:

1. the response to our initial "get twin" request
2. acknowledgements of reported property updates (ignored)
3. desired property update notifications
4. anything else is forwarded to the presentation channel
"""

import logging
import os
import platform
import time
from typing import Any, Callable, Optional

import gevent
import orjson
from gevent.event import AsyncResult, Event as GeventEvent

from device_sim import topics
from device_sim.device_config import DeviceConfig
from device_sim.errors import TransportError
from device_sim.identity import DeviceIdentity, RegistrationState
from device_sim.property_bag import PropertyBag
from device_sim.transport import Connection, Connector, MqttEndpoint, TransportHandlers, connect_mqtt
from device_sim.workflows import DEFAULT_FOTA_DELAY_SECONDS, AduState, AduWorkflow, FotaWorkflow

logger = logging.getLogger("device_sim.twin")

DEFAULT_MODEL_ID = "dtmi:AzureDeviceUpdate;1"
DEFAULT_CELL_ID = 16964098
FIRMWARE_VERSION = "1.0.0"
MANUFACTURER = "Nordic-Semiconductor-ASA"
MODEL = "Device-Simulator"

# Presentation channel (e.g. a UI) receiving informational events
Presentation = Callable[[dict[str, Any]], None]

# Control UI request paths and the property bag of the telemetry message they produce
UI_MESSAGE_PROPERTIES: dict[str, PropertyBag] = {
    "/pgps/get": {"pgps": "get"},
    "/agps/get": {"agps": "get"},
    "/ncellmeas": {"ncellmeas": None},
}


def _total_memory_kb() -> float:
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES") / 1024
    except (ValueError, OSError, AttributeError):
        return 0


def device_and_roaming(cell_id: int, version: str, now_ms: int) -> dict[str, Any]:
    """Static device, roaming and firmware information reported with the config."""
    return {
        "dev": {
            "v": {
                "modV": "device-simulator",
                "brdV": "device-simulator",
                "iccid": "12345678901234567890",
                "imei": "352656106111232",
            },
            "ts": now_ms,
        },
        "roam": {
            "v": {
                "band": 666,
                "nw": "LAN",
                "rsrp": -70,
                "area": 30401,
                "mccmnc": 24201,
                "cell": cell_id,
                "ip": "0.0.0.0",
            },
            "ts": now_ms,
        },
        "firmware": {
            "status": "current",
            "currentFwVersion": version,
            "pendingFwVersion": "",
        },
    }


def model_data(version: str) -> dict[str, Any]:
    """Plug and Play components: device information and the Device Update agent."""
    return {
        # dtmi:azure:DeviceManagement:DeviceInformation;1
        "deviceInformation": {
            "__t": "c",
            "manufacturer": MANUFACTURER,
            "model": MODEL,
            "swVersion": version,
            "osName": platform.system(),
            "processorManufacturer": platform.machine(),
            "totalStorage": 0,
            "totalMemory": _total_memory_kb(),
        },
        "azureDeviceUpdateAgent": {
            "__t": "c",
            "client": {
                "resultCode": 200,
                "state": AduState.IDLE.value,
                "deviceProperties": {
                    "manufacturer": MANUFACTURER,
                    "model": MODEL,
                },
                "installedUpdateId": None,
            },
        },
    }


class TwinSync:
    """Keeps the device twin of one device in sync over a long-lived hub connection.

    Example usage:
        twin = TwinSync(identity, registration)
        twin.start()
        twin.run()  # blocks until the connection fails
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        registration: RegistrationState,
        connector: Connector = connect_mqtt,
        device_config: Optional[DeviceConfig] = None,
        presentation: Optional[Presentation] = None,
        fota_delay: float = DEFAULT_FOTA_DELAY_SECONDS,
        cell_id: int = DEFAULT_CELL_ID,
        model_id: str = DEFAULT_MODEL_ID,
        spawn_later: Callable[..., Any] = gevent.spawn_later,
    ):
        self.identity = identity
        self.registration = registration
        self.device_config = device_config if device_config is not None else DeviceConfig()
        self.presentation = presentation
        self.model_id = model_id
        self._connector = connector
        self._connection: Optional[Connection] = None
        self._get_twin_request_id: Optional[str] = None
        self._connected = GeventEvent()
        self._done: AsyncResult = AsyncResult()

        self.dev_roam = device_and_roaming(cell_id, FIRMWARE_VERSION, int(time.time() * 1000))
        self.model_data = model_data(FIRMWARE_VERSION)
        self.fota = FotaWorkflow(self.report, FIRMWARE_VERSION, delay=fota_delay, spawn_later=spawn_later)
        self.adu = AduWorkflow(self.report)

        self._routes: list[tuple[Callable[[str], bool], Callable[[str, bytes], None]]] = [
            (self._is_twin_snapshot, self._handle_twin_snapshot),
            (topics.is_reported_update_accepted, self._handle_reported_accepted),
            (topics.is_desired_update, self._handle_desired_update),
        ]

    @property
    def device_id(self) -> str:
        return self.identity.device_id

    def start(self) -> None:
        """Connect to the assigned hub. Subscriptions and the twin request follow on connect.

        Raises:
            TransportError: If the connection cannot be opened.
        """
        host = self.registration.assigned_hub
        logger.info(f"Connecting to {host}")
        endpoint = MqttEndpoint(
            host=host,
            client_id=self.device_id,
            username=f"{host}/{self.device_id}/?api-version={topics.HUB_API_VERSION}&model-id={self.model_id}",
            private_key=self.identity.private_key,
            client_cert=self.identity.client_cert,
            ca_cert=self.identity.ca_cert,
        )
        self._connection = self._connector(
            endpoint,
            TransportHandlers(
                on_connected=self._on_connected,
                on_message=self._on_message,
                on_error=self._on_error,
            ),
        )

    def wait_connected(self, timeout: Optional[float] = None) -> bool:
        return bool(self._connected.wait(timeout=timeout))

    def run(self) -> None:
        """Block until :meth:`stop` is called or the connection fails.

        Raises:
            TransportError: If the hub connection fails.
        """
        if self._connection is None:
            self.start()
        try:
            self._done.get()
        finally:
            self.stop()

    def stop(self) -> None:
        self.fota.cancel()
        if self._connection is not None:
            self._connection.close()
            self._connection = None
        if not self._done.ready():
            self._done.set(None)

    def attach_presentation(self, presentation: Presentation) -> None:
        """Attach a presentation channel and send it the current config."""
        self.presentation = presentation
        self._send_config_to_presentation()

    def _publish(self, topic: str, payload: bytes) -> None:
        if self._connection is None:
            raise TransportError(f"Cannot publish to {topic}: not connected")
        self._connection.publish(topic, payload)

    def report(self, update: dict[str, Any]) -> None:
        """Publish a reported properties patch."""
        topic = topics.update_twin_reported(topics.new_request_id())
        logger.info(f"< {topic} {update}")
        self._publish(topic, orjson.dumps(update))

    def report_config(self) -> None:
        """Report the config together with the static device and model information."""
        self.report({"cfg": self.device_config.as_dict(), **self.dev_roam, **self.model_data})
        self._send_config_to_presentation()

    def update_config(self, delta: Optional[dict[str, Any]]) -> None:
        self.device_config.merge(delta)
        self.report_config()

    def send_message(self, message: dict[str, Any], properties: Optional[PropertyBag] = None) -> None:
        """Send a device-to-cloud telemetry message."""
        topic = topics.messages(self.device_id, properties)
        logger.info(f"< {topic} {message}")
        self._publish(topic, orjson.dumps(message))

    def send_batch(self, update: dict[str, Any]) -> None:
        topic = topics.batch(self.device_id)
        logger.info(f"< {topic} {update}")
        self._publish(topic, orjson.dumps(update))

    def handle_ui_message(self, path: str, message: str) -> bool:
        """Publish a message sent from the control UI on the telemetry topic for its path.

        Returns:
            False if the path is unknown.
        """
        properties = UI_MESSAGE_PROPERTIES.get(path)
        if properties is None:
            logger.warning(f"No topic for UI message path {path}")
            return False
        topic = topics.messages(self.device_id, properties)
        logger.info(f"< {topic} {message}")
        self._publish(topic, message.encode("utf-8"))
        return True

    def _notify(self, event: dict[str, Any]) -> None:
        if self.presentation is None:
            logger.warning("Presentation channel not connected.")
            return
        self.presentation(event)

    def _send_config_to_presentation(self) -> None:
        if self.presentation is not None:
            self.presentation({"config": self.device_config.as_dict()})

    def _on_connected(self, connection: Connection) -> None:
        # May fire before the connector has returned
        self._connection = connection
        try:
            connection.subscribe(topics.TWIN_RESPONSES)
            connection.subscribe(topics.DESIRED_UPDATE)
            connection.subscribe(topics.pgps(self.device_id))
            connection.subscribe(topics.agps(self.device_id))

            self._get_twin_request_id = topics.new_request_id()
            topic = topics.get_twin_properties(self._get_twin_request_id)
            logger.info(f"< {topic}")
            connection.publish(topic, b"")
        except TransportError as e:
            self._on_error(e)
            return
        logger.info(f"Connected: {self.device_id}")
        self._connected.set()

    def _on_error(self, error: Exception) -> None:
        logger.error(f"Hub connection error: {error}")
        if not self._done.ready():
            self._done.set_exception(error)

    def _on_message(self, topic: str, payload: bytes) -> None:
        logger.info(f"> {topic}")
        if payload:
            logger.debug(f"> {payload!r}")

        for matches, handle in self._routes:
            if matches(topic):
                try:
                    handle(topic, payload)
                except TransportError as e:
                    self._on_error(e)
                except Exception as e:
                    logger.error(f"Failed to handle message on {topic}: {e}")
                return

        self._notify({"message": {"topic": topic, "payload": payload.decode("utf-8", errors="replace")}})

    def _is_twin_snapshot(self, topic: str) -> bool:
        return (
            self._get_twin_request_id is not None
            and topic.startswith(topics.twin_response(200))
            and topics.parse_request_id_from_topic(topic) == self._get_twin_request_id
        )

    def _handle_twin_snapshot(self, topic: str, payload: bytes) -> None:
        document = orjson.loads(payload)
        desired = document.get("desired") if isinstance(document, dict) else None
        if not isinstance(desired, dict):
            logger.error(f"Twin document on {topic} has no desired properties")
            return
        cfg = desired.get("cfg")
        self.update_config(cfg if isinstance(cfg, dict) else None)
        self.adu.dispatch(desired)

    def _handle_reported_accepted(self, topic: str, payload: bytes) -> None:
        pass

    def _handle_desired_update(self, topic: str, payload: bytes) -> None:
        desired = orjson.loads(payload)
        if not isinstance(desired, dict):
            logger.error(f"Desired properties update on {topic} is not an object")
            return
        cfg = desired.get("cfg")
        if isinstance(cfg, dict):
            self.update_config(cfg)
        elif cfg is not None:
            logger.warning(f"Ignoring cfg property that is not an object: {cfg!r}")
        firmware = desired.get("firmware")
        if isinstance(firmware, dict):
            self.fota.start(firmware)
        elif firmware is not None:
            logger.warning(f"Ignoring firmware property that is not an object: {firmware!r}")
        self.adu.dispatch(desired)
