from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect

from thingshub.config import ManagerSettings
from thingshub.manager import ScanLifecycleManager
from thingshub.models import DeviceFilter, RadioPowerState
from thingshub.radio import BleakRadioAdapter
from thingshub.sinks import BroadcastSink

logger = logging.getLogger("thingshub.api")

_adapter: Optional[Any] = None
_manager: Optional[ScanLifecycleManager] = None
_broadcast: Optional[BroadcastSink] = None
_settings: Optional[ManagerSettings] = None


def _build_adapter(settings: ManagerSettings) -> Any:
    return BleakRadioAdapter(
        adapter=settings.adapter,
        scanning_mode=settings.scanning_mode,
        max_filters=settings.max_filters,
    )


async def _get_manager() -> ScanLifecycleManager:
    global _adapter, _manager, _broadcast, _settings
    if _manager is None:
        settings = _settings = ManagerSettings.from_env()
        _adapter = _build_adapter(settings)
        _broadcast = BroadcastSink()
        _manager = ScanLifecycleManager(
            _adapter,
            _broadcast,
            restart_interval=settings.restart_interval,
            log=settings.metrics_path,
        )
    await _manager.start()
    return _manager


async def _shutdown() -> None:
    global _adapter, _manager, _broadcast, _settings
    manager, _manager = _manager, None
    if manager is not None:
        try:
            await manager.close()
        except Exception:
            logger.exception("scan manager shutdown encountered error")
    _adapter = None
    _broadcast = None
    _settings = None


@contextlib.asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await _shutdown()


app = FastAPI(title="ThingsHub API", version="0.1.0", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.post("/scan/start")
async def scan_start(
    address: Optional[List[str]] = Query(None, description="Device address filter"),
    service_uuid: Optional[List[str]] = Query(None, description="Service UUID filter"),
    name: Optional[List[str]] = Query(None, description="Advertised name filter"),
):
    try:
        filters = [DeviceFilter.by_address(value) for value in address or ()]
        filters += [DeviceFilter.by_service_uuid(value) for value in service_uuid or ()]
        filters += [DeviceFilter.by_name(value) for value in name or ()]
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid filter: {exc}")
    manager = await _get_manager()
    if not filters and _settings is not None:
        filters = _settings.device_filters()
    manager.request_scan(filters)
    await manager.drain()
    return manager.snapshot()


@app.post("/scan/stop")
async def scan_stop():
    if _manager is None:
        return {"state": "stopped", "scan_requested": False}
    _manager.stop_scan()
    await _manager.drain()
    return _manager.snapshot()


@app.get("/scan/status")
async def scan_status():
    if _manager is None:
        return {"state": "stopped", "scan_requested": False}
    return _manager.snapshot()


@app.post("/radio/state")
async def radio_state(state: str = Query(..., description="on, off, turning_on or turning_off")):
    try:
        power = RadioPowerState.parse(state)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    manager = await _get_manager()
    set_power_state = getattr(_adapter, "set_power_state", None)
    if callable(set_power_state):
        set_power_state(power)
    else:
        manager.on_radio_state_changed(power)
    await manager.drain()
    return {"radio": power.value, **manager.snapshot()}


@app.websocket("/events")
async def events(ws: WebSocket):
    await ws.accept()
    await _get_manager()
    broadcast = _broadcast
    if broadcast is None:  # pragma: no cover - torn down concurrently
        await ws.close()
        return
    queue = broadcast.subscribe()
    try:
        while True:
            event = await queue.get()
            await ws.send_text(json.dumps(event.to_dict()))
    except WebSocketDisconnect:
        return
    except asyncio.CancelledError:
        raise
    finally:
        broadcast.unsubscribe(queue)
