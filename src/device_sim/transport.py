"""MQTT transport used for both the provisioning and the hub connection.

Callers describe where to connect with an :class:`MqttEndpoint` and receive
events through :class:`TransportHandlers`. Any callable matching
:data:`Connector` can stand in for :func:`connect_mqtt`, which is how the
provisioning and twin code is exercised without a broker.
"""

import logging
import os
import ssl
import tempfile
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import paho.mqtt.client as mqtt

from device_sim.errors import TransportError
from device_sim.topics import MQTT_PORT

logger = logging.getLogger("device_sim.transport")


@dataclass(frozen=True)
class MqttEndpoint:
    """Broker address and X.509 credentials (PEM strings) for one connection."""

    host: str
    client_id: str
    username: str
    private_key: str
    client_cert: str
    ca_cert: str
    port: int = MQTT_PORT


@dataclass(frozen=True)
class TransportHandlers:
    on_connected: Callable[["Connection"], None]
    on_message: Callable[[str, bytes], None]
    on_error: Callable[[Exception], None]


class Connection(Protocol):
    def subscribe(self, topic_filter: str) -> None: ...

    def publish(self, topic: str, payload: bytes) -> None: ...

    def close(self) -> None: ...


Connector = Callable[[MqttEndpoint, TransportHandlers], Connection]


class MqttConnection:
    """A Paho MQTT client connected over TLS with a client certificate.

    Example usage:
        connection = connect_mqtt(endpoint, handlers)
        # handlers.on_connected(connection) fires once the broker accepted the connection
        connection.subscribe("$iothub/twin/res/#")
        connection.publish("$iothub/twin/GET/?$rid=1", b"")
        connection.close()
    """

    def __init__(self, endpoint: MqttEndpoint, handlers: TransportHandlers):
        self.endpoint = endpoint
        self._handlers: Optional[TransportHandlers] = handlers
        self._closing = False
        self.client: Optional[mqtt.Client] = None
        self.cert_file: Optional[str] = None
        self.key_file: Optional[str] = None

    def open(self) -> None:
        """Start connecting; completion is reported through ``on_connected`` or ``on_error``.

        Raises:
            TransportError: If the TLS setup or the initial socket connection fails.
        """
        endpoint = self.endpoint
        try:
            # ssl.load_cert_chain only accepts file paths
            cert_fd, self.cert_file = tempfile.mkstemp(suffix=".pem", text=True)
            key_fd, self.key_file = tempfile.mkstemp(suffix=".pem", text=True)
            with os.fdopen(cert_fd, "w") as f:
                f.write(endpoint.client_cert)
            with os.fdopen(key_fd, "w") as f:
                f.write(endpoint.private_key)

            ssl_context = ssl.create_default_context(cadata=endpoint.ca_cert)
            ssl_context.load_cert_chain(certfile=self.cert_file, keyfile=self.key_file)

            self.client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=endpoint.client_id,
                protocol=mqtt.MQTTv311,
            )
            self.client.username_pw_set(username=endpoint.username)
            self.client.tls_set_context(ssl_context)
            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            self.client.on_message = self._on_message

            logger.info(f"Connecting to {endpoint.host}:{endpoint.port} as {endpoint.client_id}")
            self.client.connect(endpoint.host, endpoint.port, keepalive=60)
            self.client.loop_start()
        except (OSError, ssl.SSLError, ValueError) as e:
            self._cleanup()
            raise TransportError(f"Failed to connect to {endpoint.host}: {e}") from e

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        if self._handlers is None:
            return
        if reason_code.is_failure:
            logger.error(f"MQTT connection to {self.endpoint.host} failed: {reason_code}")
            self._handlers.on_error(TransportError(f"Connection failed with result code: {reason_code}"))
            return
        logger.info(f"Connected to {self.endpoint.host} as {self.endpoint.client_id}")
        self._handlers.on_connected(self)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        if self._closing or self._handlers is None:
            logger.debug(f"MQTT disconnected from {self.endpoint.host} (expected)")
            return
        logger.warning(f"Unexpected MQTT disconnect from {self.endpoint.host}: {reason_code}")
        self._handlers.on_error(TransportError(f"Unexpected disconnect: {reason_code}"))

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        if self._handlers is None:
            return
        self._handlers.on_message(msg.topic, msg.payload or b"")

    def subscribe(self, topic_filter: str) -> None:
        if self.client is None:
            raise TransportError("Cannot subscribe: connection is closed")
        result, _ = self.client.subscribe(topic_filter, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Failed to subscribe to {topic_filter}: {result}")
        logger.debug(f"Subscribed to {topic_filter}")

    def publish(self, topic: str, payload: bytes) -> None:
        if self.client is None:
            raise TransportError("Cannot publish: connection is closed")
        result = self.client.publish(topic, payload=payload, qos=1)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Failed to publish to {topic}: {result.rc}")

    def close(self) -> None:
        """Disconnect and release the event handlers and temporary credential files."""
        self._closing = True
        self._handlers = None
        if self.client is not None:
            try:
                self.client.disconnect()
                self.client.loop_stop()
            except Exception as e:
                logger.debug(f"Error disconnecting MQTT client: {e}")
            self.client = None
        self._cleanup()

    def _cleanup(self) -> None:
        for path in (self.cert_file, self.key_file):
            if path and os.path.exists(path):
                try:
                    os.unlink(path)
                except OSError as e:
                    logger.debug(f"Error removing {path}: {e}")
        self.cert_file = None
        self.key_file = None


def connect_mqtt(endpoint: MqttEndpoint, handlers: TransportHandlers) -> MqttConnection:
    """Open an MQTT connection; satisfies :data:`Connector`."""
    connection = MqttConnection(endpoint, handlers)
    connection.open()
    return connection
