"""Plejd BLE mesh to MQTT bridge."""

__version__ = "0.4.0"
