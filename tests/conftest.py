"""Shared fixtures: an in-memory MQTT connection and device credentials."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import orjson
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from device_sim.errors import TransportError
from device_sim.identity import DeviceIdentity, RegistrationState
from device_sim.transport import MqttEndpoint, TransportHandlers

DEVICE_ID = "sim-device-001"
ID_SCOPE = "0ne00C7FA7D"
ASSIGNED_HUB = "sim-hub.azure-devices.net"


class FakeConnection:
    """Records subscriptions and publishes; tests push events through the handlers."""

    def __init__(self, endpoint: MqttEndpoint, handlers: TransportHandlers):
        self.endpoint = endpoint
        self.handlers = handlers
        self.subscriptions: list[str] = []
        self.published: list[tuple[str, bytes]] = []
        self.closed = False

    def subscribe(self, topic_filter: str) -> None:
        if self.closed:
            raise TransportError("closed")
        self.subscriptions.append(topic_filter)

    def publish(self, topic: str, payload: bytes) -> None:
        if self.closed:
            raise TransportError("closed")
        self.published.append((topic, payload))

    def close(self) -> None:
        self.closed = True

    def fire_connected(self) -> None:
        self.handlers.on_connected(self)

    def fire_error(self, error: Exception) -> None:
        self.handlers.on_error(error)

    def deliver(self, topic: str, payload: Any = b"") -> None:
        if not isinstance(payload, bytes):
            payload = orjson.dumps(payload)
        self.handlers.on_message(topic, payload)

    def published_topics(self) -> list[str]:
        return [topic for topic, _ in self.published]

    def published_json(self, prefix: str) -> list[Any]:
        return [orjson.loads(payload) for topic, payload in self.published if topic.startswith(prefix)]


class FakeConnector:
    """Stands in for connect_mqtt.

    With connect_immediately the broker accepts the connection before the
    connector returns, as a real network thread may.
    """

    def __init__(self, connect_immediately: bool = False) -> None:
        self.connections: list[FakeConnection] = []
        self.connect_immediately = connect_immediately

    def __call__(self, endpoint: MqttEndpoint, handlers: TransportHandlers) -> FakeConnection:
        connection = FakeConnection(endpoint, handlers)
        self.connections.append(connection)
        if self.connect_immediately:
            connection.fire_connected()
        return connection

    @property
    def connection(self) -> FakeConnection:
        return self.connections[-1]


class FakeTimer:
    def __init__(self, delay: float, func: Callable[..., Any], args: tuple[Any, ...]):
        self.delay = delay
        self.func = func
        self.args = args
        self.killed = False
        self.fired = False

    def kill(self, block: bool = True) -> None:
        self.killed = True

    def fire(self) -> None:
        self.fired = True
        self.func(*self.args)


class ManualScheduler:
    """Replacement for gevent.spawn_later; timers only fire when the test says so."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, func: Callable[..., Any], *args: Any) -> FakeTimer:
        timer = FakeTimer(delay, func, args)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.killed and not t.fired]

    def run_pending(self) -> None:
        for timer in self.pending:
            timer.fire()


def _generate_credentials() -> tuple[str, str]:
    private_key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, DEVICE_ID)])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=1))
        .sign(private_key, hashes.SHA256())
    )
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM).decode("utf-8")
    return key_pem, cert_pem


@pytest.fixture(scope="session")
def credentials() -> tuple[str, str]:
    """A private key and matching self-signed certificate (PEM)."""
    return _generate_credentials()


@pytest.fixture
def identity_document(credentials: tuple[str, str]) -> dict[str, Any]:
    key_pem, cert_pem = credentials
    return {
        "clientId": DEVICE_ID,
        "idScope": ID_SCOPE,
        "privateKey": key_pem,
        "clientCert": cert_pem,
        "caCert": cert_pem,
    }


@pytest.fixture
def identity(credentials: tuple[str, str]) -> DeviceIdentity:
    key_pem, cert_pem = credentials
    return DeviceIdentity(
        device_id=DEVICE_ID,
        id_scope=ID_SCOPE,
        private_key=key_pem,
        client_cert=cert_pem,
        ca_cert=cert_pem,
    )


@pytest.fixture
def registration() -> RegistrationState:
    return RegistrationState.from_dict(
        {
            "registrationId": DEVICE_ID,
            "assignedHub": ASSIGNED_HUB,
            "deviceId": DEVICE_ID,
            "status": "assigned",
            "substatus": "initialAssignment",
        }
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()
