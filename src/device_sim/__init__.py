"""Simulated IoT device: DPS provisioning, twin synchronization and update workflows."""

__version__ = "1.0.0"
