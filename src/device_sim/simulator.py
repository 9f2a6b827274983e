"""Wires identity loading, provisioning and twin synchronization together."""

import logging
from pathlib import Path
from typing import Optional

from device_sim.config import SimulatorConfig, config
from device_sim.identity import DeviceIdentity, RegistrationState, load_identity, save_registration
from device_sim.provisioning import DEFAULT_PROVISIONING_HOST, Provisioner
from device_sim.transport import Connector, connect_mqtt
from device_sim.twin import DEFAULT_CELL_ID, DEFAULT_MODEL_ID, Presentation, TwinSync
from device_sim.workflows import DEFAULT_FOTA_DELAY_SECONDS

logger = logging.getLogger("device_sim.simulator")


def resolve_registration(
    identity: DeviceIdentity,
    identity_path: Path,
    connector: Connector = connect_mqtt,
    provisioning_host: str = DEFAULT_PROVISIONING_HOST,
) -> RegistrationState:
    """Return the stored registration, or provision the device and store the result.

    The identity file is only rewritten when the registration changed.
    """
    registration = identity.registration
    if registration is None:
        registration = Provisioner(identity, connector=connector, host=provisioning_host).provision()

    if identity.registration is None or registration.to_dict() != identity.registration.to_dict():
        save_registration(identity_path, registration)
        logger.info(f"Registration information: {registration.to_dict()}")
    return registration


def run_simulator(
    identity_path: Path,
    connector: Connector = connect_mqtt,
    presentation: Optional[Presentation] = None,
    settings: SimulatorConfig = config,
) -> None:
    """Run the simulated device until the hub connection fails.

    Raises:
        IdentityFileError: If the identity file is missing or invalid.
        ProvisioningError: If provisioning fails.
        TransportError: If a connection fails.
    """
    # Fail on a bad identity file before any network activity
    identity = load_identity(identity_path)

    registration = resolve_registration(
        identity,
        identity_path,
        connector=connector,
        provisioning_host=settings.get_optional("PROVISIONING_HOST") or DEFAULT_PROVISIONING_HOST,
    )

    twin = TwinSync(
        identity,
        registration,
        connector=connector,
        presentation=presentation,
        fota_delay=settings.get_float("FOTA_DELAY_SECONDS", DEFAULT_FOTA_DELAY_SECONDS),
        cell_id=settings.get_int("CELL_ID", DEFAULT_CELL_ID),
        model_id=settings.get_optional("MODEL_ID") or DEFAULT_MODEL_ID,
    )
    twin.start()
    twin.run()
