"""Exceptions raised by the device simulator."""


class SimulatorError(Exception):
    """Base class for all simulator errors."""


class TransportError(SimulatorError):
    """The MQTT connection failed or was lost."""


class ProvisioningError(SimulatorError):
    """Provisioning with the Device Provisioning Service failed."""


class ProvisioningRejectedError(ProvisioningError):
    """The provisioning service rejected the device credentials (status 401)."""


class ProvisioningProtocolError(ProvisioningError):
    """A message arrived on the registration responses subscription that could not be classified."""

    def __init__(self, topic: str):
        super().__init__(f"Unexpected message on topic {topic}!")
        self.topic = topic


class ManifestError(SimulatorError, ValueError):
    """An update manifest in the desired properties could not be parsed."""


class IdentityFileError(SimulatorError):
    """The device identity file is missing or invalid."""
