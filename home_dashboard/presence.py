from __future__ import annotations

import asyncio
import base64
import json
import logging
import ssl
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable

from .settings import PresenceConfig

_LOGGER = logging.getLogger("presence")

REGISTRATION_TABLE_PATH = "/rest/interface/wireless/registration-table"

Fetcher = Callable[[PresenceConfig], Any]


@dataclass(frozen=True)
class Occupant:
    name: str
    is_home: bool

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "isHome": self.is_home}


def _fetch_registration_table(cfg: PresenceConfig) -> Any:
    url = f"https://{cfg.host}{REGISTRATION_TABLE_PATH}"
    token = base64.b64encode(f"{cfg.username}:{cfg.password}".encode("utf-8")).decode("ascii")
    req = urllib.request.Request(url=url, method="GET")
    req.add_header("Authorization", f"Basic {token}")
    req.add_header("Accept", "application/json")

    ctx = ssl.create_default_context()
    if not cfg.verify_tls:
        # RouterOS ships a self-signed certificate.
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

    with urllib.request.urlopen(req, timeout=cfg.timeout_s, context=ctx) as resp:
        return json.loads(resp.read().decode("utf-8", errors="replace"))


def _summary(occupants: list[Occupant], *, simulated: bool) -> dict[str, Any]:
    out: dict[str, Any] = {
        "presence": [o.as_dict() for o in occupants],
        "count": sum(1 for o in occupants if o.is_home),
    }
    if simulated:
        out["simulated"] = True
    return out


class PresenceMonitor:
    """Who is home, from the router's wireless registration table."""

    def __init__(self, config: PresenceConfig, *, fetcher: Fetcher | None = None) -> None:
        self._cfg = config
        self._known = {str(mac).strip().lower(): name for mac, name in config.known_devices.items()}
        self._fetcher = fetcher or _fetch_registration_table

    def _mock(self) -> list[Occupant]:
        return [Occupant(name=name, is_home=True) for name in self._known.values()]

    async def lookup(self) -> dict[str, Any]:
        if not self._cfg.enabled:
            return _summary(self._mock(), simulated=True)

        try:
            table = await asyncio.to_thread(self._fetcher, self._cfg)
            if not isinstance(table, list):
                raise ValueError("registration table is not a list")
        except Exception as e:
            _LOGGER.warning("Failed to fetch presence from %s: %s", self._cfg.host, e)
            return _summary(self._mock(), simulated=True)

        registered = {
            str(entry.get("mac-address") or "").strip().lower()
            for entry in table
            if isinstance(entry, dict)
        }
        occupants = [
            Occupant(name=name, is_home=mac in registered)
            for mac, name in self._known.items()
        ]
        return _summary(occupants, simulated=False)
