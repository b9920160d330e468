"""Home dashboard backend: Shelly telemetry over MQTT, switch control and live updates."""

__version__ = "0.1.0"
