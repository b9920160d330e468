from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Union

_LOGGER = logging.getLogger("optimistic")

ToggleSender = Callable[[str, bool], Awaitable[Mapping[str, Any]]]
ChangeListener = Callable[[str, bool], None]


@dataclass(frozen=True)
class Committed:
    state: bool


@dataclass(frozen=True)
class Pending:
    desired: bool
    prior: bool
    generation: int


Phase = Union[Committed, Pending]


class ToggleReconciler:
    """Client-side switch state with optimistic toggles.

    A toggle flips the displayed state at once. Only an explicit
    ``success: false`` reply puts the previous state back; a reply that never
    arrives (exception, timeout) leaves the optimistic state in place.
    Overlapping toggles are not coordinated: whichever toggle started last owns
    the display, and replies to older ones are ignored.
    """

    def __init__(
        self,
        send: ToggleSender,
        initial: Mapping[str, bool] | None = None,
        *,
        on_change: ChangeListener | None = None,
    ) -> None:
        self._send = send
        self._phases: dict[str, Phase] = {k: Committed(bool(v)) for k, v in (initial or {}).items()}
        self._generation = 0
        self._on_change = on_change

    def phase(self, device_id: str) -> Phase:
        return self._phases.get(device_id, Committed(False))

    def displayed(self, device_id: str) -> bool:
        ph = self.phase(device_id)
        return ph.desired if isinstance(ph, Pending) else ph.state

    def set_committed(self, device_id: str, state: bool) -> None:
        """Adopt a state observed elsewhere (status poll, telemetry)."""
        if isinstance(self.phase(device_id), Pending):
            return
        self._set(device_id, Committed(bool(state)))

    def begin(self, device_id: str) -> Pending:
        prior = self.displayed(device_id)
        self._generation += 1
        pending = Pending(desired=not prior, prior=prior, generation=self._generation)
        self._set(device_id, pending)
        return pending

    def resolve(self, device_id: str, pending: Pending, response: Mapping[str, Any] | None) -> None:
        current = self._phases.get(device_id)
        if current != pending:
            _LOGGER.debug("Ignoring superseded toggle reply for %s", device_id)
            return
        if response is not None and response.get("success") is False:
            _LOGGER.info("Toggle of %s rejected: %s", device_id, response.get("error") or "no reason given")
            self._set(device_id, Committed(pending.prior))
            return
        self._set(device_id, Committed(pending.desired))

    async def toggle(self, device_id: str) -> bool:
        pending = self.begin(device_id)
        try:
            response = await self._send(device_id, pending.desired)
        except Exception as e:
            _LOGGER.warning("Toggle of %s did not complete (%s); keeping optimistic state", device_id, e)
            response = None
        self.resolve(device_id, pending, response)
        return self.displayed(device_id)

    def _set(self, device_id: str, phase: Phase) -> None:
        before = self.displayed(device_id)
        self._phases[device_id] = phase
        after = self.displayed(device_id)
        if self._on_change is not None and before != after:
            try:
                self._on_change(device_id, after)
            except Exception:
                _LOGGER.exception("Toggle change listener failed for %s", device_id)


def http_toggle_sender(base_url: str, *, timeout_s: float = 10.0) -> ToggleSender:
    """Sender posting ``{"state": ...}`` to ``<base_url>/api/devices/<id>``.

    4xx replies become ``{"success": False, "error": ...}``; anything else that
    goes wrong is raised.
    """
    base = base_url.rstrip("/")

    def _post(device_id: str, state: bool) -> Mapping[str, Any]:
        url = f"{base}/api/devices/{urllib.parse.quote(device_id, safe='')}"
        body = json.dumps({"state": state}).encode("utf-8")
        req = urllib.request.Request(url=url, method="POST", data=body)
        req.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=timeout_s) as resp:
                return json.loads(resp.read().decode("utf-8", errors="replace"))
        except urllib.error.HTTPError as e:
            if 400 <= e.code < 500:
                try:
                    detail = json.loads(e.read().decode("utf-8", errors="replace")).get("detail")
                except (ValueError, AttributeError):
                    detail = None
                return {"success": False, "error": detail or f"HTTP {e.code}"}
            raise

    async def send(device_id: str, state: bool) -> Mapping[str, Any]:
        return await asyncio.to_thread(_post, device_id, state)

    return send
