"""Local HTTP API used by the weighing station UI and the calling backend."""

from __future__ import annotations

import contextlib
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

from .capture import CaptureAction
from .devices.emulator import ScaleEmulator
from .errors import CameraError, ConfigError, InvalidRequestError
from .utils import detect_local_ip
from .version import __version__

if TYPE_CHECKING:
    from .app import ScaleBridgeApp

LOGGER = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, X-API-Key",
}

EMULATOR_SCENARIOS = ("load", "unload", "empty")


def error_response(message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=CORS_HEADERS)
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        exc.headers.update(CORS_HEADERS)
        raise
    response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    started = time.monotonic()
    try:
        response = await handler(request)
    except InvalidRequestError as exc:
        LOGGER.warning("%s %s rejected: %s", request.method, request.path, exc)
        response = error_response(str(exc), 400)
    except web.HTTPException:
        raise
    except Exception as exc:
        LOGGER.exception("%s %s failed", request.method, request.path)
        response = error_response(str(exc) or exc.__class__.__name__, 500)

    LOGGER.info(
        "%s %s -> %d (%.0f ms)",
        request.method,
        request.path,
        response.status,
        (time.monotonic() - started) * 1000,
    )
    return response


async def read_json(request: web.Request) -> Dict[str, Any]:
    """Request body as a JSON object; an empty body reads as ``{}``."""

    if not request.body_exists:
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise InvalidRequestError("Request body must be valid JSON") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return payload


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise InvalidRequestError(f"{key} must be a string or number")
    return str(value)


class BridgeServer:
    """aiohttp application exposing the bridge under an API prefix."""

    def __init__(self, bridge: "ScaleBridgeApp") -> None:
        self._bridge = bridge
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        prefix = self._bridge.config.server.api_prefix.rstrip("/")
        app = web.Application(middlewares=[cors_middleware, error_middleware])
        app.router.add_get(f"{prefix}/weight", self._handle_weight)
        app.router.add_post(f"{prefix}/capture", self._handle_capture)
        app.router.add_post(f"{prefix}/command", self._handle_command)
        app.router.add_get(f"{prefix}/config", self._handle_get_config)
        app.router.add_post(f"{prefix}/config", self._handle_post_config)
        app.router.add_get(f"{prefix}/ports", self._handle_ports)
        app.router.add_post(f"{prefix}/reconnect", self._handle_reconnect)
        app.router.add_get(f"{prefix}/ip", self._handle_ip)
        app.router.add_get(f"{prefix}/health", self._handle_health)
        app.router.add_post(f"{prefix}/test-connection", self._handle_test_connection)
        app.router.add_post(f"{prefix}/test-camera", self._handle_test_camera)
        app.router.add_post(f"{prefix}/emulator", self._handle_emulator)
        app.router.add_get("/photos/{day}/{name}", self._handle_photo)
        return app

    async def start(self) -> None:
        server = self._bridge.config.server
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, server.host, server.port)
        try:
            await self._site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            raise
        LOGGER.info(
            "API listening on http://%s:%s%s", server.host, server.port, server.api_prefix
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_weight(self, request: web.Request) -> web.Response:
        return web.json_response(self._bridge.device.get_current_weight().as_dict())

    async def _handle_capture(self, request: web.Request) -> web.Response:
        payload = await read_json(request)
        filename = _optional_str(payload, "filename") or f"photo-{int(time.time() * 1000)}.jpg"
        try:
            captured = await self._bridge.coordinator.capture_photo(filename)
        except CameraError as exc:
            LOGGER.error("Photo capture failed: %s", exc)
            return error_response(str(exc), 500)
        return web.json_response(captured.as_dict())

    async def _handle_command(self, request: web.Request) -> web.Response:
        payload = await read_json(request)
        if "action" not in payload:
            raise InvalidRequestError("action is required")
        try:
            action = CaptureAction.parse(payload["action"])
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc
        order_id = _optional_str(payload, "orderId")

        result = await self._bridge.execute_command(action, order_id)
        return web.json_response(result.as_dict())

    async def _handle_get_config(self, request: web.Request) -> web.Response:
        payload = self._bridge.config.public_dict()
        payload["connected"] = self._bridge.device.is_connected
        return web.json_response(payload)

    async def _handle_post_config(self, request: web.Request) -> web.Response:
        payload = await read_json(request)
        try:
            config = await self._bridge.apply_config(payload)
        except ConfigError as exc:
            raise InvalidRequestError(str(exc)) from exc
        return web.json_response(
            {
                "success": True,
                "message": "Configuration saved",
                "config": config.public_dict(),
            }
        )

    async def _handle_ports(self, request: web.Request) -> web.Response:
        ports = await self._bridge.device.list_ports()
        return web.json_response({"ports": ports})

    async def _handle_reconnect(self, request: web.Request) -> web.Response:
        await self._bridge.device.reconnect()
        return web.json_response({"success": True, "message": "Reconnect initiated"})

    def _address(self) -> Dict[str, Any]:
        ip = detect_local_ip()
        port = self._bridge.config.server.port
        return {"ip": ip, "port": port, "url": f"http://{ip}:{port}"}

    async def _handle_ip(self, request: web.Request) -> web.Response:
        return web.json_response(self._address())

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._bridge.health.snapshot()
        device = self._bridge.device
        payload: Dict[str, Any] = {
            "status": snapshot["status"],
            "version": __version__,
            **self._address(),
            "scale": {
                "connected": device.is_connected,
                "currentWeight": device.get_current_weight().as_dict(),
            },
            "components": snapshot["components"],
            "lastCapture": snapshot.get("lastCapture"),
        }
        return web.json_response(payload)

    async def _handle_test_connection(self, request: web.Request) -> web.Response:
        payload = await read_json(request)
        url = _optional_str(payload, "url")
        if url is None:
            raise InvalidRequestError("url is required")
        result = await self._bridge.relay.test_connection(url, _optional_str(payload, "apiKey"))
        return web.json_response(result, status=200 if result["success"] else 502)

    async def _handle_test_camera(self, request: web.Request) -> web.Response:
        try:
            captured = await self._bridge.coordinator.capture_photo(
                f"test-{int(time.time() * 1000)}.jpg"
            )
        except CameraError as exc:
            LOGGER.error("Camera test failed: %s", exc)
            return error_response(str(exc), 500)
        return web.json_response(captured.as_dict())

    async def _handle_emulator(self, request: web.Request) -> web.Response:
        device = self._bridge.device
        if not isinstance(device, ScaleEmulator):
            return error_response("Emulator mode is not active", 409)

        payload = await read_json(request)
        if "weight" in payload:
            weight = payload["weight"]
            if isinstance(weight, bool) or not isinstance(weight, (int, float)):
                raise InvalidRequestError("weight must be a number")
            device.set_weight(float(weight))
        elif "scenario" in payload:
            scenario = payload["scenario"]
            if scenario == "load":
                device.simulate_load()
            elif scenario == "unload":
                device.simulate_unload()
            elif scenario == "empty":
                device.simulate_empty()
            else:
                raise InvalidRequestError(
                    f"scenario must be one of {', '.join(EMULATOR_SCENARIOS)}"
                )
        else:
            raise InvalidRequestError("weight or scenario is required")

        return web.json_response({"success": True, "target": device.target})

    async def _handle_photo(self, request: web.Request) -> web.StreamResponse:
        photos_dir = self._bridge.config.camera.photos_dir.resolve()
        day = request.match_info["day"]
        name = request.match_info["name"]
        path = (photos_dir / day / name).resolve()
        if photos_dir not in path.parents or not path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(path)