"""Device registration with the Device Provisioning Service over MQTT.

The handshake (https://learn.microsoft.com/azure/iot-dps/iot-dps-mqtt-support):

1. Subscribe to ``$dps/registrations/res/#``.
2. Publish the register request with a fresh ``$rid``.
3. While the service answers ``202``, wait ``retry-after`` seconds and poll the
   operation status with a new ``$rid`` and the returned ``operationId``.
4. ``200`` carries the registration state with the assigned hub; ``401`` means the
   certificate was rejected.

Responses are classified by their topic prefix only. The ``$rid`` of a response is
compared with the last request for logging, but a mismatch is not an error since
a terminal response may overtake a pending poll.
"""

import logging
from enum import Enum
from typing import Any, Callable, Optional

import gevent
import orjson
from gevent.event import AsyncResult

from device_sim import topics
from device_sim.errors import (
    ProvisioningProtocolError,
    ProvisioningRejectedError,
    TransportError,
)
from device_sim.identity import DeviceIdentity, RegistrationState
from device_sim.transport import Connection, Connector, MqttEndpoint, TransportHandlers, connect_mqtt

logger = logging.getLogger("device_sim.provisioning")

DEFAULT_PROVISIONING_HOST = "global.azure-devices-provisioning.net"
DEFAULT_RETRY_AFTER_SECONDS = 1


class ProvisioningState(str, Enum):
    CONNECTING = "connecting"
    REGISTERING = "registering"
    POLLING = "polling"
    ASSIGNED = "assigned"
    REJECTED = "rejected"
    PROTOCOL_ERROR = "protocol_error"
    TRANSPORT_ERROR = "transport_error"


TERMINAL_STATES = {
    ProvisioningState.ASSIGNED,
    ProvisioningState.REJECTED,
    ProvisioningState.PROTOCOL_ERROR,
    ProvisioningState.TRANSPORT_ERROR,
}


class Provisioner:
    """Runs one registration against the Device Provisioning Service.

    The connection opened here is used for provisioning only and is closed once a
    terminal state is reached. A Provisioner instance is single use.

    Example usage:
        registration = Provisioner(identity).provision()
        print(registration.assigned_hub)
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        connector: Connector = connect_mqtt,
        host: str = DEFAULT_PROVISIONING_HOST,
        spawn_later: Callable[..., Any] = gevent.spawn_later,
    ):
        """Initialize the provisioner.

        Args:
            identity: Credentials and ID scope of the device
            connector: Opens the MQTT connection
            host: Global provisioning endpoint
            spawn_later: Schedules the status poll after the retry-after delay
        """
        self.identity = identity
        self.host = host
        self.state = ProvisioningState.CONNECTING
        self._connector = connector
        self._spawn_later = spawn_later
        self._connection: Optional[Connection] = None
        self._result: AsyncResult = AsyncResult()
        self._last_request_id: Optional[str] = None
        self._pending_poll: Any = None
        self._started = False

    def provision(self) -> RegistrationState:
        """Register the device and wait for the assigned hub.

        Returns:
            The registration state issued by the service.

        Raises:
            ProvisioningRejectedError: The service rejected the device credentials.
            ProvisioningProtocolError: An unexpected response arrived.
            TransportError: The connection failed.
        """
        if self._started:
            raise RuntimeError("Provisioner instances can only be used once")
        self._started = True

        device_id = self.identity.device_id
        logger.info(f"[DPS] Connecting to {self.host}")
        logger.info(f"[DPS] ID scope {self.identity.id_scope}")
        endpoint = MqttEndpoint(
            host=self.host,
            client_id=device_id,
            username=f"{self.identity.id_scope}/registrations/{device_id}/api-version={topics.DPS_API_VERSION}",
            private_key=self.identity.private_key,
            client_cert=self.identity.client_cert,
            ca_cert=self.identity.ca_cert,
        )
        handlers = TransportHandlers(
            on_connected=self._on_connected,
            on_message=self._on_message,
            on_error=self._on_error,
        )

        try:
            self._connection = self._connector(endpoint, handlers)
        except TransportError:
            self.state = ProvisioningState.TRANSPORT_ERROR
            raise

        try:
            registration: RegistrationState = self._result.get()
        finally:
            self._close()

        logger.info(f"[DPS] Device registration succeeded with IoT Hub {registration.assigned_hub}")
        return registration

    def _publish(self, topic: str, payload: bytes) -> None:
        if self._connection is None:
            raise TransportError(f"Cannot publish to {topic}: not connected")
        logger.debug(f"[DPS] > {topic}")
        self._connection.publish(topic, payload)

    def _on_connected(self, connection: Connection) -> None:
        if self._result.ready():
            return
        # May fire before the connector has returned
        self._connection = connection
        logger.info(f"[DPS] Connected {self.identity.device_id}")
        try:
            # The subscription must be in place before the register request goes out
            connection.subscribe(topics.REGISTRATION_RESPONSES)
            self._last_request_id = topics.new_request_id()
            self._publish(
                topics.register(self._last_request_id),
                orjson.dumps({"registrationId": self.identity.device_id}),
            )
        except TransportError as e:
            self._fail(ProvisioningState.TRANSPORT_ERROR, e)
            return
        self.state = ProvisioningState.REGISTERING

    def _on_error(self, error: Exception) -> None:
        logger.error(f"[DPS] Error {error}")
        self._fail(ProvisioningState.TRANSPORT_ERROR, error)

    def _on_message(self, topic: str, payload: bytes) -> None:
        if self._result.ready():
            logger.debug(f"[DPS] Ignoring message on {topic} after provisioning completed")
            return
        try:
            self._handle_response(topic, payload)
        except Exception as e:
            logger.error(f"[DPS] Failed to handle response on {topic}: {e}")
            self._fail(ProvisioningState.PROTOCOL_ERROR, ProvisioningProtocolError(topic))

    def _handle_response(self, topic: str, payload: bytes) -> None:
        request_id = topics.parse_request_id_from_topic(topic)
        if request_id is not None and request_id != self._last_request_id:
            logger.debug(f"[DPS] Response {request_id} does not match last request {self._last_request_id}")

        try:
            message = orjson.loads(payload) if payload else {}
        except orjson.JSONDecodeError as e:
            logger.error(f"[DPS] Failed to parse response on {topic}: {e}")
            self._fail(ProvisioningState.PROTOCOL_ERROR, ProvisioningProtocolError(topic))
            return
        if not isinstance(message, dict):
            logger.error(f"[DPS] Response on {topic} is not an object")
            self._fail(ProvisioningState.PROTOCOL_ERROR, ProvisioningProtocolError(topic))
            return

        if topic.startswith(topics.registration_result(202)):
            self._on_assigning(topic, message)
        elif topic.startswith(topics.registration_result(200)):
            self._on_assigned(topic, message)
        elif topic.startswith(topics.registration_result(401)):
            logger.error(f"[DPS] Forbidden {message}")
            self._fail(
                ProvisioningState.REJECTED,
                ProvisioningRejectedError(f"Connection forbidden: {message.get('message')}"),
            )
        else:
            logger.error(f"[DPS] Unexpected message on {topic}: {message}")
            self._fail(ProvisioningState.PROTOCOL_ERROR, ProvisioningProtocolError(topic))

    def _on_assigning(self, topic: str, message: dict[str, Any]) -> None:
        operation_id = message.get("operationId")
        if not isinstance(operation_id, str) or not operation_id:
            logger.error(f"[DPS] No operationId in response on {topic}")
            self._fail(ProvisioningState.PROTOCOL_ERROR, ProvisioningProtocolError(topic))
            return

        retry_after = topics.topic_properties(topic).get("retry-after")
        try:
            delay = int(retry_after) if retry_after else DEFAULT_RETRY_AFTER_SECONDS
        except ValueError:
            logger.warning(f"[DPS] Invalid retry-after {retry_after!r}, using {DEFAULT_RETRY_AFTER_SECONDS}s")
            delay = DEFAULT_RETRY_AFTER_SECONDS

        logger.info(f"[DPS] Status {message.get('status')}")
        logger.info(f"[DPS] Retry after {delay}s")
        self.state = ProvisioningState.POLLING
        self._pending_poll = self._spawn_later(delay, self._poll_status, operation_id)

    def _poll_status(self, operation_id: str) -> None:
        self._pending_poll = None
        if self._result.ready():
            return
        self._last_request_id = topics.new_request_id()
        try:
            self._publish(topics.registration_status(self._last_request_id, operation_id), b"")
        except TransportError as e:
            self._fail(ProvisioningState.TRANSPORT_ERROR, e)

    def _on_assigned(self, topic: str, message: dict[str, Any]) -> None:
        try:
            registration = RegistrationState.from_dict(message.get("registrationState"))
        except ValueError as e:
            logger.error(f"[DPS] {e}")
            self._fail(ProvisioningState.PROTOCOL_ERROR, ProvisioningProtocolError(topic))
            return
        logger.info(f"[DPS] Status {message.get('status')}")
        logger.info(f"[DPS] IoT Hub {registration.assigned_hub}")
        self.state = ProvisioningState.ASSIGNED
        self._result.set(registration)

    def _fail(self, state: ProvisioningState, error: Exception) -> None:
        if self._result.ready():
            return
        self.state = state
        if self._pending_poll is not None:
            self._pending_poll.kill(block=False)
            self._pending_poll = None
        self._result.set_exception(error)

    def _close(self) -> None:
        if self._pending_poll is not None:
            self._pending_poll.kill(block=False)
            self._pending_poll = None
        if self._connection is not None:
            self._connection.close()
            self._connection = None
