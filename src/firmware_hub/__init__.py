"""Firmware hub: firmware release store and fleet telemetry ledger."""

__version__ = "1.0.0"
