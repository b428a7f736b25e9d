"""HTTP and WebSocket transport for installer frontends.

Routes:
    POST /install       Start an install (202, 409 when busy, 400 when invalid)
    POST /cancel        Request cancellation (always 200)
    GET  /progress      Latest progress snapshot
    GET  /ws/progress   Current snapshot on connect, then every published one
    GET  /disks         Install target candidates
    POST /validate      Check a plan against a target (200 or 422)
    GET  /health        Liveness

Frontends are untrusted: every body is parsed into the domain model before it
reaches the installer, and errors go back as ``{"error": <kind>, ...}``.
"""

from __future__ import annotations

import asyncio
import json
import threading
import weakref
from typing import Any, Optional, cast

from aiohttp import WSCloseCode, web

from deploykit.__version__ import __version__
from deploykit.config import settings
from deploykit.domain.models import FirmwareMode, InstallConfig, PartitionPlan, ProgressState
from deploykit.install.exceptions import BusyError
from deploykit.install.pipeline import Installer
from deploykit.logging import LoggerFactory
from deploykit.storage import device_lock
from deploykit.storage.exceptions import DeviceProbeError, LoopAttachError, PlanError


WEBSOCKETS_KEY: web.AppKey[weakref.WeakSet[web.WebSocketResponse]] = web.AppKey(
    "websockets", cast(Any, weakref.WeakSet)
)


class ProgressNotifier:
    """Fans published progress states out to websocket clients, in order.

    Registered as a ProgressPublisher listener; may be called from any thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._lock = threading.Lock()
        self._queues: set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._queues.discard(queue)

    def __call__(self, state: ProgressState) -> None:
        with self._lock:
            queues = list(self._queues)
        for queue in queues:
            self._loop.call_soon_threadsafe(queue.put_nowait, state)


INSTALLER_KEY: web.AppKey[Installer] = web.AppKey("installer", Installer)
PROGRESS_NOTIFIER_KEY: web.AppKey[ProgressNotifier] = web.AppKey(
    "progress_notifier", ProgressNotifier
)


def _error_response(error: Exception, status: int) -> web.Response:
    payload = error.to_dict() if hasattr(error, "to_dict") else {
        "error": type(error).__name__,
        "message": str(error),
    }
    return web.json_response(payload, status=status)


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"error": "InvalidRequest", "message": message}, status=400)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as error:
        raise ValueError(f"Body is not valid JSON: {error}") from error
    if not isinstance(data, dict):
        raise ValueError("Body must be a JSON object")
    return data


async def _on_startup(app: web.Application) -> None:
    installer = app[INSTALLER_KEY]
    notifier = ProgressNotifier(asyncio.get_running_loop())
    app[PROGRESS_NOTIFIER_KEY] = notifier
    installer.publisher.add_listener(notifier)


async def _on_shutdown(app: web.Application) -> None:
    """Cancel a running install and close websocket clients."""
    log = LoggerFactory.for_web()
    installer = app[INSTALLER_KEY]
    if installer.cancel():
        log.warning("Server shutting down; cancelling running install")
    notifier = app.get(PROGRESS_NOTIFIER_KEY)
    if notifier is not None:
        installer.publisher.remove_listener(notifier)

    websockets = app.get(WEBSOCKETS_KEY)
    active_ws = set(websockets) if websockets else set()
    if active_ws:
        log.info(f"Closing {len(active_ws)} WebSocket connection(s)")
    for ws in active_ws:
        if not ws.closed:
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")


async def handle_install(request: web.Request) -> web.Response:
    installer = request.app[INSTALLER_KEY]
    log = LoggerFactory.for_web()
    try:
        data = await _read_json(request)
        config = InstallConfig.from_dict(
            data, default_source=str(settings.get_setting("rootfs_source", ""))
        )
    except (ValueError, TypeError, KeyError) as error:
        log.warning(f"Rejected install request: {error}")
        return _invalid_request(str(error))
    try:
        handle = installer.start(config)
    except BusyError as error:
        return _error_response(error, status=409)
    return web.json_response({"install_id": handle.install_id}, status=202)


async def handle_cancel(request: web.Request) -> web.Response:
    request.app[INSTALLER_KEY].cancel()
    return web.json_response({"status": "ok"})


async def handle_progress(request: web.Request) -> web.Response:
    state = request.app[INSTALLER_KEY].publisher.current()
    return web.json_response(state.to_dict())


async def handle_disks(request: web.Request) -> web.Response:
    installer = request.app[INSTALLER_KEY]
    try:
        disks = await asyncio.to_thread(installer.engine.enumerate_disks)
    except (DeviceProbeError, LoopAttachError) as error:
        LoggerFactory.for_web().error(f"Disk enumeration failed: {error}")
        return _error_response(error, status=500)
    return web.json_response({"disks": [disk.to_dict() for disk in disks]})


async def handle_validate(request: web.Request) -> web.Response:
    engine = request.app[INSTALLER_KEY].engine
    try:
        data = await _read_json(request)
        target = data["target"]
        if not isinstance(target, str) or not target:
            raise ValueError("target must be a device or image path")
        plan = PartitionPlan.from_dict(data["plan"])
        firmware_mode = FirmwareMode(data.get("firmware_mode", "efi"))
    except KeyError as error:
        return _invalid_request(f"Missing required field: {error.args[0]}")
    except (ValueError, TypeError) as error:
        return _invalid_request(str(error))

    try:
        disk = await asyncio.to_thread(engine.probe_target, target)
        engine.validate_plan(disk, plan, firmware_mode)
    except PlanError as error:
        return _error_response(error, status=422)
    except (DeviceProbeError, LoopAttachError) as error:
        return _error_response(error, status=400)
    return web.json_response({"ok": True, "disk": disk.to_dict()})


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "status": "ok",
            "version": __version__,
            "install_active": device_lock.is_operation_active(),
        }
    )


async def handle_progress_ws(request: web.Request) -> web.WebSocketResponse:
    """Stream progress: the current snapshot first, then every published state."""
    notifier = request.app[PROGRESS_NOTIFIER_KEY]
    publisher = request.app[INSTALLER_KEY].publisher
    ws = web.WebSocketResponse(autoping=True)
    await ws.prepare(request)
    request.app[WEBSOCKETS_KEY].add(ws)
    log = LoggerFactory.for_web(str(id(ws)))
    log.debug(f"Progress WebSocket connected from {request.remote}")

    queue = notifier.subscribe()
    reader = asyncio.ensure_future(_drain_incoming(ws))
    try:
        last: Optional[ProgressState] = publisher.current()
        await ws.send_json(last.to_dict())
        while not ws.closed:
            getter = asyncio.ensure_future(queue.get())
            done, _pending = await asyncio.wait(
                {getter, reader}, return_when=asyncio.FIRST_COMPLETED
            )
            if getter not in done:
                getter.cancel()
                break
            state = getter.result()
            if state == last:
                continue
            await ws.send_json(state.to_dict())
            last = state
    except (ConnectionResetError, RuntimeError) as error:
        log.debug(f"Progress WebSocket send failed: {error}")
    finally:
        notifier.unsubscribe(queue)
        reader.cancel()
        request.app[WEBSOCKETS_KEY].discard(ws)
        if not ws.closed:
            await ws.close()
        log.debug(f"Progress WebSocket disconnected from {request.remote}")
    return ws


async def _drain_incoming(ws: web.WebSocketResponse) -> None:
    """Consume client frames until the socket closes."""
    async for _msg in ws:
        pass


def create_app(installer: Optional[Installer] = None) -> web.Application:
    app = web.Application()
    app[INSTALLER_KEY] = installer or Installer()
    app[WEBSOCKETS_KEY] = weakref.WeakSet()
    app.on_startup.append(_on_startup)
    app.on_shutdown.append(_on_shutdown)
    app.router.add_post("/install", handle_install)
    app.router.add_post("/cancel", handle_cancel)
    app.router.add_get("/progress", handle_progress)
    app.router.add_get("/ws/progress", handle_progress_ws)
    app.router.add_get("/disks", handle_disks)
    app.router.add_post("/validate", handle_validate)
    app.router.add_get("/health", handle_health)
    return app
