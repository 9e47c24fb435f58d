"""MQTT adapter for Home Assistant."""

from plejd_controller.mqtt.client import MQTTClient

__all__ = ["MQTTClient"]
