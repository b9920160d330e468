from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable

from .registry import DeviceRecord, DeviceRegistry

_LOGGER = logging.getLogger("device_gateway")

RpcTransport = Callable[[str, str, float], Any]


class UnknownDevice(LookupError):
    def __init__(self, device_id: str):
        super().__init__(f"Unknown device: {device_id}")
        self.device_id = device_id


class InvalidArgument(ValueError):
    pass


class DeviceUnreachable(ConnectionError):
    pass


@dataclass(frozen=True)
class SwitchResult:
    success: bool
    device_id: str
    new_state: bool
    simulated: bool = False
    result: Any = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "deviceId": self.device_id, "newState": self.new_state}
        if self.simulated:
            out["simulated"] = True
        if self.result is not None:
            out["result"] = self.result
        return out


@dataclass(frozen=True)
class SwitchStatus:
    device_id: str
    state: bool
    power: float
    energy: float
    simulated: bool = False

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "deviceId": self.device_id,
            "state": self.state,
            "power": self.power,
            "energy": self.energy,
        }
        if self.simulated:
            out["simulated"] = True
        return out


def _urllib_transport(method: str, url: str, timeout_s: float) -> Any:
    req = urllib.request.Request(url=url, method=method.upper())
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            raw = resp.read()
    except urllib.error.HTTPError as e:
        raise DeviceUnreachable(f"{url} returned {e.code}") from e
    except (urllib.error.URLError, OSError) as e:
        raise DeviceUnreachable(f"{url}: {e}") from e
    try:
        return json.loads(raw.decode("utf-8", errors="replace"))
    except ValueError as e:
        raise DeviceUnreachable(f"{url} returned non-JSON body") from e


def _as_float(v: Any) -> float:
    if isinstance(v, bool):
        return 0.0
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


class ShellyGateway:
    """Switch control over the Shelly Gen2 RPC API.

    Unreachable devices never fail a request: the caller gets a result flagged
    ``simulated`` and the next status poll tells the truth.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        *,
        timeout_s: float = 5.0,
        transport: RpcTransport | None = None,
    ):
        self._registry = registry
        self._timeout_s = timeout_s
        self._transport = transport or _urllib_transport

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    def _lookup(self, device_id: str) -> DeviceRecord:
        dev = self._registry.get(device_id)
        if dev is None or not dev.controllable:
            raise UnknownDevice(device_id)
        return dev

    @staticmethod
    def _rpc_url(dev: DeviceRecord, method: str, **params: Any) -> str:
        query = urllib.parse.urlencode({"id": dev.switch_id, **params})
        return f"http://{dev.address}/rpc/{method}?{query}"

    async def _call(self, http_method: str, url: str) -> Any:
        try:
            return await asyncio.to_thread(self._transport, http_method, url, self._timeout_s)
        except DeviceUnreachable:
            raise
        except Exception as e:
            # timeouts surface as socket.timeout / TimeoutError from urlopen
            raise DeviceUnreachable(f"{url}: {type(e).__name__}: {e}") from e

    async def set_state(self, device_id: str, state: Any) -> SwitchResult:
        if not isinstance(state, bool):
            raise InvalidArgument('Missing or invalid "state" (must be boolean)')
        dev = self._lookup(device_id)

        url = self._rpc_url(dev, "Switch.Set", on="true" if state else "false")
        try:
            reply = await self._call("POST", url)
        except DeviceUnreachable as e:
            _LOGGER.warning("Failed to control device %s: %s", device_id, e)
            return SwitchResult(success=True, device_id=device_id, new_state=state, simulated=True)

        _LOGGER.debug("Device %s switched %s", device_id, "on" if state else "off")
        return SwitchResult(success=True, device_id=device_id, new_state=state, result=reply)

    async def get_status(self, device_id: str) -> SwitchStatus:
        dev = self._lookup(device_id)

        url = self._rpc_url(dev, "Switch.GetStatus")
        try:
            data = await self._call("GET", url)
        except DeviceUnreachable as e:
            _LOGGER.warning("Failed to get device %s status: %s", device_id, e)
            return SwitchStatus(device_id=device_id, state=False, power=0.0, energy=0.0, simulated=True)

        if not isinstance(data, dict):
            data = {}
        energy = data.get("aenergy")
        return SwitchStatus(
            device_id=device_id,
            state=bool(data.get("output") or False),
            power=_as_float(data.get("apower")),
            energy=_as_float(energy.get("total") if isinstance(energy, dict) else None),
        )
