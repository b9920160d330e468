from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Literal

DeviceClass = Literal["switch", "sensor"]

CLASS_SWITCH = "switch"
CLASS_SENSOR = "sensor"


@dataclass(frozen=True)
class DeviceRecord:
    device_id: str
    name: str
    address: str  # host[:port] of the device RPC endpoint, empty for telemetry-only devices
    device_class: DeviceClass = CLASS_SWITCH
    topic: str = ""
    switch_id: int = 0

    @property
    def controllable(self) -> bool:
        return self.device_class == CLASS_SWITCH and bool(self.address)


def _record_from_dict(raw: dict[str, Any]) -> DeviceRecord:
    device_id = str(raw.get("id") or raw.get("device_id") or "").strip()
    if not device_id:
        raise ValueError("device entry without id")

    address = str(raw.get("address") or raw.get("ip") or "").strip()
    topic = str(raw.get("topic") or "").strip()

    cls = str(raw.get("class") or raw.get("device_class") or "").strip().lower()
    if cls not in (CLASS_SWITCH, CLASS_SENSOR):
        cls = CLASS_SWITCH if address else CLASS_SENSOR

    try:
        switch_id = int(raw.get("switch_id") or 0)
    except (TypeError, ValueError):
        switch_id = 0

    return DeviceRecord(
        device_id=device_id,
        name=str(raw.get("name") or device_id),
        address=address,
        device_class=cls,  # type: ignore[arg-type]
        topic=topic,
        switch_id=max(0, switch_id),
    )


def load_devices(raw: Any) -> tuple[DeviceRecord, ...]:
    """Build device records from the ``devices`` option.

    Accepts either a list of objects (``id``, ``name``, ``address``, ``class``,
    ``topic``, ``switch_id``) or a plain ``{id: address}`` mapping.
    """
    if not raw:
        return ()

    if isinstance(raw, dict):
        return tuple(
            DeviceRecord(device_id=str(k), name=str(k), address=str(v or "").strip())
            for k, v in raw.items()
            if str(k).strip()
        )

    if not isinstance(raw, list):
        raise ValueError("devices must be a list or an object")

    out: list[DeviceRecord] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError("device entries must be objects")
        out.append(_record_from_dict(item))
    return tuple(out)


class DeviceRegistry:
    def __init__(self, devices: Iterable[DeviceRecord] = ()) -> None:
        self._devices: dict[str, DeviceRecord] = {}
        for dev in devices:
            if dev.device_id in self._devices:
                raise ValueError(f"duplicate device id: {dev.device_id}")
            self._devices[dev.device_id] = dev

    def get(self, device_id: str) -> DeviceRecord | None:
        return self._devices.get(device_id)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def all(self) -> list[DeviceRecord]:
        return list(self._devices.values())

    def switches(self) -> list[DeviceRecord]:
        return [d for d in self._devices.values() if d.controllable]
