from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .device_gateway import InvalidArgument, ShellyGateway, UnknownDevice
from .mqtt_client import DISCONNECTED, BrokerConnection, BrokerTransportError
from .presence import PresenceMonitor
from .realtime import SensorStream
from .registry import DeviceRegistry
from .settings import Settings, load_settings, read_options

_LOGGER = logging.getLogger("home_dashboard")
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

HTTP_PORT = 8124


def _configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for name in (
        "home_dashboard",
        "mqtt_client",
        "device_gateway",
        "realtime",
        "presence",
        "telemetry",
        "optimistic",
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ):
        logging.getLogger(name).setLevel(level)

    # paho logs every packet at DEBUG.
    logging.getLogger("paho").setLevel(logging.INFO if debug else logging.WARNING)


def create_app(
    settings: Settings | None = None,
    *,
    broker: BrokerConnection | None = None,
    gateway: ShellyGateway | None = None,
    presence: PresenceMonitor | None = None,
) -> FastAPI:
    if settings is None:
        settings = load_settings(read_options())
    _configure_logging(settings.debug)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        task: asyncio.Task | None = None
        if broker is None:
            _LOGGER.info("No MQTT broker configured, streaming demo readings")
        else:
            task = asyncio.create_task(_keep_broker_connected(broker))
        app.state.broker_task = task
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            try:
                await stream.close_all()
            finally:
                if broker is not None:
                    broker.disconnect()
                    await broker.wait_stopped()

    api = FastAPI(lifespan=_lifespan)
    api.state.settings = settings

    if gateway is None:
        gateway = ShellyGateway(DeviceRegistry(settings.devices), timeout_s=settings.rpc_timeout_s)
    api.state.gateway = gateway

    if broker is None and settings.mqtt.enabled:
        broker = BrokerConnection(
            host=settings.mqtt.host,
            port=settings.mqtt.port,
            username=settings.mqtt.username,
            password=settings.mqtt.password,
            client_id=settings.mqtt.client_id,
            namespace=settings.mqtt.namespace,
            connect_timeout_s=settings.mqtt.connect_timeout_s,
            keepalive_s=settings.mqtt.keepalive_s,
        )
    api.state.broker = broker

    stream = SensorStream(broker, demo_interval_s=settings.demo_interval_s, queue_size=settings.stream_queue_size)
    api.state.stream = stream

    if presence is None:
        presence = PresenceMonitor(settings.presence)
    api.state.presence = presence

    async def _keep_broker_connected(conn: BrokerConnection) -> None:
        # The connection never retries a failed connect on its own.
        while True:
            if conn.status().state == DISCONNECTED:
                try:
                    await conn.connect()
                except BrokerTransportError as e:
                    _LOGGER.warning("MQTT broker unavailable (%s), retrying in %ss", e, settings.broker_retry_s)
            await asyncio.sleep(settings.broker_retry_s)

    @api.get("/health")
    async def health():
        return {"status": "ok"}

    @api.get("/api/status")
    async def status():
        out: dict[str, Any] = {"stream": {"mode": stream.mode, "clients": stream.client_count}}
        if broker is None:
            out["mqtt"] = {"state": DISCONNECTED, "configured": False, "lastError": None}
        else:
            st = broker.status()
            out["mqtt"] = {"state": st.state, "configured": True, "lastError": st.last_error}
        return out

    @api.get("/api/devices")
    async def list_devices():
        return {
            "devices": [
                {"id": d.device_id, "name": d.name, "class": d.device_class, "controllable": d.controllable}
                for d in gateway.registry.all()
            ]
        }

    @api.post("/api/devices/{device_id}")
    async def set_device_state(device_id: str, request: Request):
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        state = body.get("state") if isinstance(body, dict) else None

        try:
            result = await gateway.set_state(device_id, state)
        except InvalidArgument as e:
            raise HTTPException(status_code=400, detail=str(e))
        except UnknownDevice as e:
            raise HTTPException(status_code=404, detail=str(e))
        return result.as_dict()

    @api.get("/api/devices/{device_id}")
    async def get_device_status(device_id: str):
        try:
            st = await gateway.get_status(device_id)
        except UnknownDevice as e:
            raise HTTPException(status_code=404, detail=str(e))
        return st.as_dict()

    @api.get("/api/sensors")
    async def sensors_stream():
        async def gen():
            # Opened on first iteration so a response that is never sent holds no channel.
            client = None
            try:
                client = stream.open()
                async for chunk in client.events():
                    yield chunk
            finally:
                if client is not None:
                    client.close()

        headers = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
        return StreamingResponse(gen(), media_type="text/event-stream", headers=headers)

    @api.get("/api/presence")
    async def get_presence():
        return await presence.lookup()

    return api


def main() -> None:
    import uvicorn

    app = create_app()
    port = int(os.environ.get("HOME_DASHBOARD_PORT") or HTTP_PORT)
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")


if __name__ == "__main__":
    main()
