"""Command line entry point: ``device-sim path/to/identity.json``."""

from gevent import monkey

# Paho runs its network loop in a thread; patch before anything imports threading
monkey.patch_all()

import argparse  # noqa: E402
import logging  # noqa: E402
import signal  # noqa: E402
import sys  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import Optional  # noqa: E402

from device_sim.errors import SimulatorError  # noqa: E402
from device_sim.simulator import run_simulator  # noqa: E402

logger = logging.getLogger("device_sim.cli")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    format_str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s" if verbose else "%(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not verbose:
        logging.getLogger("paho").setLevel(logging.WARNING)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Simulated IoT device: provisions with DPS and synchronizes its twin with IoT Hub.",
        epilog="Environment: CELL_ID, PROVISIONING_HOST, FOTA_DELAY_SECONDS, MODEL_ID, SIM_CONFIG_PATH",
    )
    parser.add_argument("identity", type=Path, help="Path to the device identity JSON file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def _signal_handler(signum: int, frame: object) -> None:
    logger.info("Shutdown requested")
    sys.exit(0)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.verbose)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        run_simulator(args.identity)
    except SimulatorError as e:
        logger.error("An unhandled exception occurred!")
        logger.error(str(e))
        if args.verbose:
            logger.exception(e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
