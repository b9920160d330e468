from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

_LOGGER = logging.getLogger("telemetry")

ReadingKind = Literal["temperature", "humidity", "power", "button"]

UNIT_CELSIUS = "°C"
UNIT_PERCENT = "%"


class MalformedTelemetry(ValueError):
    pass


@dataclass(frozen=True)
class SensorReading:
    topic: str
    device: str
    kind: ReadingKind
    value: float
    unit: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_event(self) -> dict[str, Any]:
        return {
            "type": "sensor",
            "device": self.device,
            "sensor": self.kind,
            "value": self.value,
            "unit": self.unit,
            "timestamp": self.timestamp.isoformat(),
        }


def info_topic_pattern(namespace: str) -> re.Pattern[str]:
    return re.compile(r"^" + re.escape(namespace.strip("/")) + r"/([^/]+)/info$")


def _decode_payload(payload: bytes | str) -> dict[str, Any]:
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedTelemetry(f"payload is not utf-8: {e}") from e
    try:
        obj = json.loads(payload)
    except ValueError as e:
        raise MalformedTelemetry(f"payload is not JSON: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedTelemetry("payload is not a JSON object")
    return obj


def _number(v: Any) -> float:
    # bool is an int subclass; "true" is not a temperature.
    if isinstance(v, bool) or v is None:
        raise MalformedTelemetry(f"not a number: {v!r}")
    try:
        f = float(v)
    except (TypeError, ValueError) as e:
        raise MalformedTelemetry(f"not a number: {v!r}") from e
    if math.isnan(f) or math.isinf(f):
        raise MalformedTelemetry(f"not a finite number: {v!r}")
    return f


def parse_telemetry(topic: str, payload: bytes | str, namespace: str = "shellies") -> SensorReading | None:
    """Turn a ``<namespace>/<device>/info`` message into a reading.

    ``temp`` takes priority over ``humidity`` when a payload carries both.
    Anything that does not parse is dropped and only logged at debug level.
    """
    m = info_topic_pattern(namespace).match(topic)
    if not m:
        return None
    device = m.group(1)

    try:
        data = _decode_payload(payload)
        if "temp" in data:
            return SensorReading(topic=topic, device=device, kind="temperature", value=_number(data["temp"]), unit=UNIT_CELSIUS)
        if "humidity" in data:
            return SensorReading(topic=topic, device=device, kind="humidity", value=_number(data["humidity"]), unit=UNIT_PERCENT)
    except MalformedTelemetry as e:
        _LOGGER.debug("Dropping telemetry on %s: %s", topic, e)
    return None
