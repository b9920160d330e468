from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, AsyncIterator, Callable, Literal

from .mqtt_client import BrokerConnection
from .telemetry import SensorReading

_LOGGER = logging.getLogger("realtime")

DEMO_DEVICE = "shellyht-7917A0"

StreamMode = Literal["live", "demo"]


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


class StreamClient:
    """One browser's event channel.

    Delivery is best-effort: when the bounded queue is full the event is
    dropped. Release callbacks run exactly once, on the first :meth:`close`.
    """

    def __init__(self, *, maxsize: int = 100) -> None:
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._releasers: list[Callable[[], Any]] = []
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def on_close(self, fn: Callable[[], Any]) -> None:
        if self._closed:
            fn()
            return
        self._releasers.append(fn)

    def push(self, event: dict[str, Any]) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def push_reading(self, reading: SensorReading) -> bool:
        return self.push(reading.to_event())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        releasers, self._releasers = self._releasers, []
        for fn in releasers:
            try:
                fn()
            except Exception:
                _LOGGER.exception("Stream release callback failed")
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # A full queue means the reader is not parked in get(); it sees _closed next.
            pass
        if self.dropped:
            _LOGGER.debug("Stream closed after dropping %d events", self.dropped)

    async def events(self) -> AsyncIterator[str]:
        while not self._closed:
            event = await self._queue.get()
            if event is None or self._closed:
                break
            yield format_sse(event)


class SensorStream:
    """Hands out stream channels fed by the broker, or by a demo ticker when
    no broker is configured."""

    def __init__(
        self,
        broker: BrokerConnection | None,
        *,
        demo_interval_s: float = 5.0,
        queue_size: int = 100,
        rng: random.Random | None = None,
    ) -> None:
        self._broker = broker
        self._demo_interval_s = demo_interval_s
        self._queue_size = queue_size
        self._rng = rng or random.Random()
        self._clients: set[StreamClient] = set()

    @property
    def mode(self) -> StreamMode:
        return "live" if self._broker is not None else "demo"

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def open(self) -> StreamClient:
        client = StreamClient(maxsize=self._queue_size)
        client.push({"type": "connected"})
        self._clients.add(client)
        client.on_close(lambda: self._clients.discard(client))

        if self._broker is not None:
            for reading in self._broker.latest():
                client.push_reading(reading)
            client.on_close(self._broker.subscribe_to_sensors(client.push_reading))
        else:
            task = asyncio.get_running_loop().create_task(self._demo_ticker(client))
            client.on_close(task.cancel)

        _LOGGER.debug("Stream client opened (%s mode, %d open)", self.mode, len(self._clients))
        return client

    def demo_reading(self) -> SensorReading:
        return SensorReading(
            topic=f"demo/{DEMO_DEVICE}",
            device=DEMO_DEVICE,
            kind="temperature",
            value=52 + self._rng.random() * 5,
            unit="°F",
        )

    async def _demo_ticker(self, client: StreamClient) -> None:
        while not client.closed:
            await asyncio.sleep(self._demo_interval_s)
            client.push_reading(self.demo_reading())

    async def close_all(self) -> None:
        clients = list(self._clients)
        for client in clients:
            client.close()
