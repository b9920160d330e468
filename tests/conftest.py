"""
Shared fixtures for unit tests.
"""

from unittest.mock import MagicMock

import pytest

from home_dashboard.device_gateway import DeviceUnreachable, ShellyGateway
from home_dashboard.mqtt_client import BrokerConnection
from home_dashboard.registry import DeviceRecord, DeviceRegistry
from home_dashboard.settings import load_settings


class FakeTransport:
    """Records RPC calls; returns ``reply`` or raises ``error``."""

    def __init__(self, reply=None, error=None):
        self.reply = reply if reply is not None else {}
        self.error = error
        self.calls = []

    def __call__(self, method, url, timeout_s):
        self.calls.append((method, url, timeout_s))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def registry():
    return DeviceRegistry(
        [
            DeviceRecord(device_id="front-light", name="Front Porch Lights", address="192.168.1.23"),
            DeviceRecord(device_id="garage-plug", name="Garage Plug", address="192.168.1.24"),
            DeviceRecord(
                device_id="garage-temp",
                name="Garage Temperature",
                address="",
                device_class="sensor",
                topic="shellies/shellyht-7917A0/info",
            ),
        ]
    )


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def unreachable_transport():
    return FakeTransport(error=DeviceUnreachable("connection refused"))


@pytest.fixture
def gateway_factory(registry):
    def _make(transport):
        return ShellyGateway(registry, timeout_s=0.5, transport=transport)

    return _make


@pytest.fixture
def paho_client():
    """
    Mock paho client.

    The connection assigns its callbacks as attributes, so tests can fire
    ``paho_client.on_connect(...)`` the way paho's network thread would.
    """
    return MagicMock(name="paho.Client")


@pytest.fixture
def broker(paho_client):
    return BrokerConnection(
        host="mqtt.lan",
        port=1883,
        client_id="home-dashboard-test",
        namespace="shellies",
        connect_timeout_s=5.0,
        client_factory=lambda client_id: paho_client,
    )


@pytest.fixture
def demo_settings():
    return load_settings(
        {
            "devices": {"front-light": "192.168.1.23"},
            "demo_interval_s": 0.1,
            "presence": {"known_devices": {"AA:BB:CC:DD:EE:01": "Jay"}},
        },
        environ={},
    )
