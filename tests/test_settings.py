"""
Unit tests for settings and the device registry.
"""

import json

import pytest

from home_dashboard.registry import DeviceRecord, DeviceRegistry, load_devices
from home_dashboard.settings import load_settings, read_options


class TestLoadSettings:
    def test_defaults(self):
        s = load_settings({}, environ={})

        assert s.mqtt.host == ""
        assert s.mqtt.enabled is False
        assert s.mqtt.port == 1883
        assert s.mqtt.namespace == "shellies"
        assert s.mqtt.client_id.startswith("home-dashboard-")
        assert s.devices == ()
        assert s.rpc_timeout_s == 5.0
        assert s.demo_interval_s == 5.0
        assert s.presence.enabled is False

    def test_options_file_values(self):
        s = load_settings(
            {
                "mqtt": {"host": "broker.lan", "port": "8883", "namespace": "/shellies/", "client_id": "dash"},
                "rpc_timeout_s": "2.5",
                "stream_queue_size": 10,
                "debug": True,
            },
            environ={},
        )
        assert (s.mqtt.host, s.mqtt.port, s.mqtt.namespace, s.mqtt.client_id) == ("broker.lan", 8883, "shellies", "dash")
        assert s.rpc_timeout_s == 2.5
        assert s.stream_queue_size == 10
        assert s.debug is True

    def test_environment_overrides(self):
        s = load_settings(
            {"mqtt": {"host": "broker.lan", "username": "opt"}},
            environ={
                "MQTT_BROKER": "mqtt://mqtt.lan:1884",
                "MQTT_USERNAME": "dash",
                "MQTT_PASSWORD": "pw",
                "MIKROTIK_HOST": "192.168.1.1",
                "MIKROTIK_PASS": "secret",
            },
        )
        assert (s.mqtt.host, s.mqtt.port) == ("mqtt.lan", 1884)
        assert (s.mqtt.username, s.mqtt.password) == ("dash", "pw")
        assert s.presence.host == "192.168.1.1"
        assert s.presence.username == "admin"
        assert s.presence.password == "secret"

    def test_broker_url_without_scheme_or_port(self):
        s = load_settings({}, environ={"MQTT_BROKER": "mqtt.lan"})
        assert (s.mqtt.host, s.mqtt.port) == ("mqtt.lan", 1883)

    def test_bad_numbers_fall_back_and_clamp(self):
        s = load_settings({"rpc_timeout_s": "soon", "demo_interval_s": -1}, environ={})
        assert s.rpc_timeout_s == 5.0
        assert s.demo_interval_s == 0.1

    def test_known_macs_are_lowercased(self):
        s = load_settings({"presence": {"known_devices": {"AA:BB:CC:DD:EE:01": "Jay"}}}, environ={})
        assert s.presence.known_devices == {"aa:bb:cc:dd:ee:01": "Jay"}

    def test_read_options(self, tmp_path, monkeypatch):
        path = tmp_path / "options.json"
        path.write_text(json.dumps({"debug": True}), encoding="utf-8")
        monkeypatch.setenv("HOME_DASHBOARD_OPTIONS", str(path))
        assert read_options() == {"debug": True}

        monkeypatch.setenv("HOME_DASHBOARD_OPTIONS", str(tmp_path / "missing.json"))
        assert read_options() == {}


class TestDeviceRegistry:
    def test_mapping_form(self):
        devices = load_devices({"front-light": "192.168.1.23", "garage-plug": "192.168.1.24"})
        assert devices[0] == DeviceRecord(device_id="front-light", name="front-light", address="192.168.1.23")
        assert all(d.controllable for d in devices)

    def test_list_form(self):
        devices = load_devices(
            [
                {"id": "front-light", "name": "Front Porch Lights", "ip": "192.168.1.23", "switch_id": 1},
                {"id": "garage-temp", "name": "Garage Temperature", "topic": "shellies/shellyht-7917A0/info"},
            ]
        )
        light, sensor = devices
        assert light.switch_id == 1
        assert light.controllable
        assert sensor.device_class == "sensor"
        assert not sensor.controllable

    @pytest.mark.parametrize("raw", ["front-light", [{"name": "no id"}], ["front-light"]])
    def test_invalid_devices_option(self, raw):
        with pytest.raises(ValueError):
            load_devices(raw)

    def test_duplicate_ids_rejected(self):
        dev = DeviceRecord(device_id="a", name="a", address="1.2.3.4")
        with pytest.raises(ValueError):
            DeviceRegistry([dev, dev])

    def test_lookup(self, registry):
        assert registry.get("front-light").address == "192.168.1.23"
        assert registry.get("nope") is None
        assert "garage-plug" in registry
        assert len(registry) == 3
        assert [d.device_id for d in registry.switches()] == ["front-light", "garage-plug"]
