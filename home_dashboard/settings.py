from __future__ import annotations

import json
import os
import urllib.parse
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from .registry import DeviceRecord, load_devices

DEFAULT_NAMESPACE = "shellies"
DEFAULT_MQTT_PORT = 1883


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    username: str
    password: str
    namespace: str
    client_id: str
    connect_timeout_s: float = 10.0
    keepalive_s: int = 30

    @property
    def enabled(self) -> bool:
        return bool(self.host)


@dataclass(frozen=True)
class PresenceConfig:
    host: str
    username: str
    password: str
    verify_tls: bool
    timeout_s: float
    known_devices: dict[str, str] = field(default_factory=dict)  # mac -> occupant name

    @property
    def enabled(self) -> bool:
        return bool(self.host)


@dataclass(frozen=True)
class Settings:
    mqtt: MqttConfig
    presence: PresenceConfig
    devices: tuple[DeviceRecord, ...]
    rpc_timeout_s: float
    demo_interval_s: float
    stream_queue_size: int
    broker_retry_s: float
    debug: bool


def read_options() -> dict[str, Any]:
    path = os.environ.get("HOME_DASHBOARD_OPTIONS", "/data/options.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


def _parse_broker_url(url: str) -> tuple[str, int | None]:
    # MQTT_BROKER=mqtt://mqtt.lan:1883 (scheme optional)
    url = (url or "").strip()
    if not url:
        return "", None
    if "://" not in url:
        url = "mqtt://" + url
    parts = urllib.parse.urlsplit(url)
    try:
        port = parts.port
    except ValueError:
        port = None
    return parts.hostname or "", port


def load_settings(options: dict[str, Any], environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ

    def _read_float(raw: Mapping[str, Any], key: str, default: float) -> float:
        try:
            v = raw.get(key)
            if v is None:
                return float(default)
            return float(v)
        except (TypeError, ValueError):
            return float(default)

    mqtt_raw = options.get("mqtt") or {}
    host = str(mqtt_raw.get("host") or "").strip()
    try:
        port = int(mqtt_raw.get("port") or DEFAULT_MQTT_PORT)
    except (TypeError, ValueError):
        port = DEFAULT_MQTT_PORT

    env_host, env_port = _parse_broker_url(str(env.get("MQTT_BROKER") or ""))
    if env_host:
        host = env_host
        port = env_port or port

    mqtt = MqttConfig(
        host=host,
        port=port,
        username=str(env.get("MQTT_USERNAME") or mqtt_raw.get("username") or ""),
        password=str(env.get("MQTT_PASSWORD") or mqtt_raw.get("password") or ""),
        namespace=str(mqtt_raw.get("namespace") or DEFAULT_NAMESPACE).strip("/"),
        client_id=str(mqtt_raw.get("client_id") or f"home-dashboard-{uuid.uuid4().hex[:6]}"),
        connect_timeout_s=max(1.0, _read_float(mqtt_raw, "connect_timeout_s", 10.0)),
        keepalive_s=max(5, int(_read_float(mqtt_raw, "keepalive_s", 30))),
    )

    presence_raw = options.get("presence") or {}
    known_raw = presence_raw.get("known_devices") or {}
    if not isinstance(known_raw, dict):
        known_raw = {}
    presence = PresenceConfig(
        host=str(env.get("MIKROTIK_HOST") or presence_raw.get("host") or "").strip(),
        username=str(env.get("MIKROTIK_USER") or presence_raw.get("username") or "admin"),
        password=str(env.get("MIKROTIK_PASS") or presence_raw.get("password") or ""),
        verify_tls=bool(presence_raw.get("verify_tls", False)),
        timeout_s=max(0.5, _read_float(presence_raw, "timeout_s", 5.0)),
        known_devices={str(k).strip().lower(): str(v) for k, v in known_raw.items()},
    )

    return Settings(
        mqtt=mqtt,
        presence=presence,
        devices=load_devices(options.get("devices")),
        rpc_timeout_s=max(0.5, _read_float(options, "rpc_timeout_s", 5.0)),
        demo_interval_s=max(0.1, _read_float(options, "demo_interval_s", 5.0)),
        stream_queue_size=max(1, int(_read_float(options, "stream_queue_size", 100))),
        broker_retry_s=max(1.0, _read_float(options, "broker_retry_s", 30.0)),
        debug=bool(options.get("debug") or False),
    )
