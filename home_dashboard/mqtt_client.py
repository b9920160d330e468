from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Literal

import paho.mqtt.client as mqtt

from .telemetry import SensorReading, parse_telemetry

_LOGGER = logging.getLogger("mqtt_client")

BrokerState = Literal["disconnected", "connecting", "connected"]

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"

SensorCallback = Callable[[SensorReading], None]


class BrokerTransportError(ConnectionError):
    pass


@dataclass(frozen=True)
class MqttStatus:
    state: BrokerState
    last_error: str | None

    @property
    def connected(self) -> bool:
        return self.state == CONNECTED


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)


def _consume_result(fut: asyncio.Future[None]) -> None:
    if not fut.cancelled():
        fut.exception()


def _is_failure(reason_code: Any) -> bool:
    flag = getattr(reason_code, "is_failure", None)
    if isinstance(flag, bool):
        return flag
    return getattr(reason_code, "value", reason_code) != 0


class BrokerConnection:
    """Owns the one MQTT connection of the process and fans telemetry out.

    paho runs its network loop in its own thread; every callback is handed to
    the asyncio loop that called :meth:`connect`, so connection state and
    subscriber delivery only ever change on that loop.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        client_id: str,
        username: str = "",
        password: str = "",
        namespace: str = "shellies",
        connect_timeout_s: float = 10.0,
        keepalive_s: int = 30,
        client_factory: Callable[[str], mqtt.Client] | None = None,
    ):
        self._host = host
        self._port = port
        self._client_id = client_id
        self._username = username
        self._password = password
        self._namespace = namespace.strip("/")
        self._connect_timeout_s = connect_timeout_s
        self._keepalive_s = keepalive_s
        self._client_factory = client_factory or _default_client_factory

        self._lock = threading.Lock()
        self._state: BrokerState = DISCONNECTED
        self._last_error: str | None = None
        self._client: mqtt.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connect_future: asyncio.Future[None] | None = None
        self._connect_timer: asyncio.TimerHandle | None = None

        self._subscribers: dict[int, SensorCallback] = {}
        self._handles = itertools.count(1)
        self._latest: dict[tuple[str, str], SensorReading] = {}
        self._stopping: set[asyncio.Future[None]] = set()

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def topics(self) -> tuple[str, ...]:
        return (f"{self._namespace}/+/info", f"{self._namespace}/+/relay/+")

    def status(self) -> MqttStatus:
        with self._lock:
            return MqttStatus(state=self._state, last_error=self._last_error)

    # -- lifecycle ---------------------------------------------------------

    async def connect(self) -> None:
        loop = asyncio.get_running_loop()
        start = False
        with self._lock:
            if self._state == CONNECTED and self._client is not None:
                return
            fut = self._connect_future
            if fut is None:
                fut = loop.create_future()
                # Waiters see the failure; an attempt nobody waits on any more must not log it.
                fut.add_done_callback(_consume_result)
                self._connect_future = fut
                self._loop = loop
                self._connect_timer = loop.call_later(self._connect_timeout_s, self._on_connect_timeout, fut)
                # A transport that is already reconnecting is awaited, never duplicated.
                if self._state == DISCONNECTED:
                    self._state = CONNECTING
                    start = True

        if start:
            self._start_transport()
        await asyncio.shield(fut)

    def disconnect(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
            fut = self._connect_future
            self._connect_future = None
            self._state = DISCONNECTED
        self._cancel_timer()

        if client is not None:
            self._release_client(client)
            _LOGGER.info("Disconnected from MQTT broker %s:%s", self._host, self._port)
        if fut is not None and not fut.done():
            fut.set_exception(BrokerTransportError("disconnected while connecting"))

    def _start_transport(self) -> None:
        try:
            client = self._client_factory(self._client_id)
            if self._username:
                client.username_pw_set(self._username, self._password)
            client.on_connect = self._on_connect
            client.on_connect_fail = self._on_connect_fail
            client.on_disconnect = self._on_disconnect
            client.on_message = self._on_message
            # Reconnect backoff belongs to paho; we only observe it.
            client.reconnect_delay_set(min_delay=1, max_delay=30)
            with self._lock:
                self._client = client
            _LOGGER.info("Connecting to MQTT broker %s:%s", self._host, self._port)
            client.connect_async(self._host, self._port, keepalive=self._keepalive_s)
            client.loop_start()
        except Exception as e:
            self._fail_connect(f"{type(e).__name__}: {e}")

    def _release_client(self, client: mqtt.Client) -> None:
        # loop_stop() joins the paho thread; keep that off the event loop.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._stop_client(client)
            return
        stop = loop.run_in_executor(None, self._stop_client, client)
        self._stopping.add(stop)
        stop.add_done_callback(self._stopping.discard)

    async def wait_stopped(self) -> None:
        """Wait until transports torn down so far have stopped their threads."""
        while self._stopping:
            await asyncio.gather(*list(self._stopping))

    def _stop_client(self, client: mqtt.Client) -> None:
        try:
            client.loop_stop()
        except Exception:
            _LOGGER.debug("MQTT loop_stop failed", exc_info=True)
        try:
            client.disconnect()
        except Exception:
            _LOGGER.debug("MQTT disconnect failed", exc_info=True)

    def _cancel_timer(self) -> None:
        timer = self._connect_timer
        self._connect_timer = None
        if timer is not None:
            timer.cancel()

    def _fail_connect(self, message: str) -> None:
        with self._lock:
            client = self._client
            self._client = None
            fut = self._connect_future
            self._connect_future = None
            self._state = DISCONNECTED
            self._last_error = message
        self._cancel_timer()

        if client is not None:
            self._release_client(client)
        _LOGGER.warning("MQTT connection to %s:%s failed: %s", self._host, self._port, message)
        if fut is not None and not fut.done():
            fut.set_exception(BrokerTransportError(message))

    def _on_connect_timeout(self, fut: asyncio.Future[None]) -> None:
        if fut is self._connect_future and not fut.done():
            self._fail_connect(f"no CONNACK within {self._connect_timeout_s:g}s")

    # -- paho thread -> event loop -----------------------------------------

    def _post(self, fn: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Loop closed between the check and the call (shutdown).
            _LOGGER.debug("Dropping MQTT callback %s: event loop closed", getattr(fn, "__name__", fn))

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._post(self._handle_connack, client, reason_code)

    def _on_connect_fail(self, client, userdata):
        self._post(self._handle_connect_fail, client)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._post(self._handle_disconnect, client, reason_code)

    def _on_message(self, client, userdata, msg):
        self._post(self._handle_message, client, str(msg.topic), msg.payload)

    # -- event loop handlers -----------------------------------------------

    def _handle_connack(self, client: mqtt.Client, reason_code: Any) -> None:
        if client is not self._client:
            return
        if _is_failure(reason_code):
            self._fail_connect(f"connection refused: {reason_code}")
            return

        with self._lock:
            self._state = CONNECTED
            self._last_error = None
            fut = self._connect_future
            self._connect_future = None
        self._cancel_timer()

        for topic in self.topics:
            try:
                client.subscribe(topic)
            except Exception:
                _LOGGER.exception("Failed to subscribe to %s", topic)
        _LOGGER.info("Connected to MQTT broker %s:%s", self._host, self._port)
        if fut is not None and not fut.done():
            fut.set_result(None)

    def _handle_connect_fail(self, client: mqtt.Client) -> None:
        if client is not self._client:
            return
        if self._connect_future is not None:
            self._fail_connect("unable to reach broker")
            return
        _LOGGER.debug("MQTT reconnect attempt failed, paho will retry")

    def _handle_disconnect(self, client: mqtt.Client, reason_code: Any) -> None:
        if client is not self._client:
            return
        with self._lock:
            was_connected = self._state == CONNECTED
            if was_connected:
                self._state = CONNECTING
            if _is_failure(reason_code):
                self._last_error = f"disconnect reason_code={reason_code}"
        if was_connected:
            _LOGGER.warning("MQTT connection lost (%s), reconnecting", reason_code)

    def _handle_message(self, client: mqtt.Client, topic: str, payload: bytes) -> None:
        if client is not self._client:
            return
        self.dispatch(topic, payload)

    # -- fan-out -----------------------------------------------------------

    def dispatch(self, topic: str, payload: bytes | str) -> SensorReading | None:
        """Parse one inbound message and deliver it to every subscriber."""
        reading = parse_telemetry(topic, payload, self._namespace)
        if reading is None:
            return None

        with self._lock:
            self._latest[(reading.device, reading.kind)] = reading
            subscribers = list(self._subscribers.values())

        for callback in subscribers:
            try:
                callback(reading)
            except Exception:
                _LOGGER.exception("Sensor subscriber %r failed for %s", callback, topic)
        return reading

    def subscribe_to_sensors(self, callback: SensorCallback) -> Callable[[], None]:
        with self._lock:
            handle = next(self._handles)
            self._subscribers[handle] = callback

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(handle, None)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def latest(self) -> list[SensorReading]:
        with self._lock:
            return list(self._latest.values())
