#!/usr/bin/env python3
"""
aiohttp server for xrrecorder's remote recording control.

Behavior:
- Clients connect to /ws and drive the single capture session with JSON
  commands; each command gets a response on its own connection.
- Every mutating command, and every asynchronous session change such as a
  capture process exiting, is followed by a status frame sent to all
  connections.
- Dead peers are reaped by a per-connection ping/pong heartbeat.

Endpoints:
  GET /ws                  -> Control WebSocket
  GET /recordings/<name>   -> Serve a stored recording (basename only)
  GET /healthz             -> "ok"
  GET /, /<asset>          -> Cached UI assets, 404 text when absent
"""

import argparse
import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import Any, Callable, Sequence
from urllib.parse import quote

from aiohttp import web
from aiohttp.web import AppKey

from .arecord_io import SAMPLE_FORMATS
from .audio_devices import CaptureDevice, discover_capture_devices
from .commands import MAX_MESSAGE_CHARS, CaptureLimits
from .config import get_cfg, reload_cfg
from .connections import ConnectionManager
from .dispatcher import CommandDispatcher
from .errors import InvalidName, NotFound
from .file_registry import FileRegistry
from .host_control import HostControl
from .recording_supervisor import RecordingSupervisor
from .web_server_helpers.status_broadcast import StatusBroadcaster
from .webui import StaticAssetCache

WS_PATH = "/ws"

SHUTDOWN_EVENT_KEY: AppKey[asyncio.Event] = web.AppKey("shutdown_event", asyncio.Event)
SUPERVISOR_KEY: AppKey[RecordingSupervisor] = web.AppKey("supervisor", RecordingSupervisor)
REGISTRY_KEY: AppKey[FileRegistry] = web.AppKey("file_registry", FileRegistry)
CONNECTIONS_KEY: AppKey[ConnectionManager] = web.AppKey("connections", ConnectionManager)
DISPATCHER_KEY: AppKey[CommandDispatcher] = web.AppKey("dispatcher", CommandDispatcher)
BROADCASTER_KEY: AppKey[StatusBroadcaster] = web.AppKey("status_broadcaster", StatusBroadcaster)
STATIC_CACHE_KEY: AppKey[StaticAssetCache] = web.AppKey("static_cache", StaticAssetCache)


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    logging.getLogger("asyncio").setLevel(level)


def content_disposition(disposition: str, name: str) -> str:
    """Header value for a name already accepted by validate_name()."""

    if name.isascii():
        return f'{disposition}; filename="{name}"'
    return f"{disposition}; filename*=UTF-8''{quote(name, safe='')}"


def build_app(
    cfg: dict[str, Any] | None = None,
    *,
    supervisor: RecordingSupervisor | None = None,
    registry: FileRegistry | None = None,
    host_control: HostControl | None = None,
    device_lister: Callable[[], Sequence[CaptureDevice]] | None = None,
) -> web.Application:
    log = logging.getLogger("web_server")
    cfg = cfg if cfg is not None else get_cfg()
    server_cfg = cfg.get("server", {})
    recording_cfg = cfg.get("recording", {})
    probe_cfg = cfg.get("probe", {})
    host_cfg = cfg.get("host", {})
    recordings_root = Path(cfg.get("paths", {}).get("recordings_dir", "recordings"))
    arecord_path = str(recording_cfg.get("arecord_path", "arecord"))
    ping_interval = float(server_cfg.get("ping_interval", 10.0))

    if supervisor is None:
        supervisor = RecordingSupervisor(
            recordings_root,
            arecord_path=arecord_path,
            status_markers=recording_cfg.get("status_markers") or ("Max peak",),
            stop_timeout=float(recording_cfg.get("stop_timeout", 5.0)),
            diagnostic_lines=int(recording_cfg.get("diagnostic_lines", 200)),
            diagnostic_line_length=int(recording_cfg.get("diagnostic_line_length", 512)),
            filename_pattern=str(recording_cfg.get("filename_pattern", "%Y-%m-%d_%H-%M-%S")),
        )
    if registry is None:
        registry = FileRegistry(
            recordings_root,
            ffprobe_path=str(probe_cfg.get("ffprobe_path", "ffprobe")),
            probe_timeout=float(probe_cfg.get("timeout", 10.0)),
        )
    if host_control is None:
        host_control = HostControl(
            shutdown_command=host_cfg.get("shutdown_command") or (),
            reboot_command=host_cfg.get("reboot_command") or (),
        )
    if device_lister is None:
        def device_lister() -> Sequence[CaptureDevice]:
            return discover_capture_devices(arecord_path)

    limits = CaptureLimits.from_config(cfg)
    manager = ConnectionManager(ping_interval=ping_interval)
    broadcaster = StatusBroadcaster(
        read_status=supervisor.get_status,
        send_all=manager.broadcast,
        logger=log,
    )
    dispatcher = CommandDispatcher(
        supervisor,
        registry,
        limits=limits,
        host_control=host_control,
        device_lister=device_lister,
        broadcast_status=broadcaster.request,
    )
    static_cache = StaticAssetCache(
        context={
            "server_name": server_cfg.get("name", "xrRecorder"),
            "ws_path": WS_PATH,
            "ping_interval": ping_interval,
            "defaults": limits.defaults,
            "bit_depths": sorted(SAMPLE_FORMATS),
            "sample_rates": sorted(limits.allowed_sample_rates),
        },
        extra_dir=server_cfg.get("static_dir") or None,
    )

    app = web.Application()
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()
    app[SUPERVISOR_KEY] = supervisor
    app[REGISTRY_KEY] = registry
    app[CONNECTIONS_KEY] = manager
    app[DISPATCHER_KEY] = dispatcher
    app[BROADCASTER_KEY] = broadcaster
    app[STATIC_CACHE_KEY] = static_cache

    def _on_session_change(_status: dict[str, Any]) -> None:
        broadcaster.request()

    async def _startup(_: web.Application) -> None:
        count = await asyncio.to_thread(static_cache.load)
        log.info("Loaded %d UI assets; recordings in %s", count, recordings_root)
        supervisor.add_listener(_on_session_change)

    async def _shutdown(_: web.Application) -> None:
        supervisor.remove_listener(_on_session_change)
        await manager.close_all("server shutdown")

    async def _cleanup(_: web.Application) -> None:
        await supervisor.shutdown()
        await broadcaster.stop()

    app.on_startup.append(_startup)
    app.on_shutdown.append(_shutdown)
    app.on_cleanup.append(_cleanup)

    async def control_socket(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(
            autoping=False,
            timeout=float(server_cfg.get("close_timeout", 2.0)),
            max_msg_size=MAX_MESSAGE_CHARS * 4,
        )
        await ws.prepare(request)
        await manager.serve(ws, dispatcher.dispatch)
        return ws

    async def recording_file(request: web.Request) -> web.StreamResponse:
        name = request.match_info.get("name", "")
        try:
            resolved = await asyncio.to_thread(registry.resolve, name)
        except (InvalidName, NotFound) as exc:
            log.info("Recording request for %r refused: %s", name, exc.message)
            raise web.HTTPNotFound() from None

        response = web.FileResponse(resolved)
        disposition = "attachment" if request.rel_url.query.get("download") == "1" else "inline"
        response.headers["Content-Disposition"] = content_disposition(disposition, resolved.name)
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    async def static_asset(request: web.Request) -> web.Response:
        asset = static_cache.get(request.path)
        if asset is None:
            log.info("Client requested a file not in the asset cache: %s", request.path)
            return web.Response(status=404, text="404 Not Found\n", content_type="text/plain")
        return web.Response(body=asset.body, content_type=asset.content_type, charset=asset.charset)

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok")

    app.router.add_get(WS_PATH, control_socket)
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/recordings/{name}", recording_file)
    app.router.add_get("/", static_asset)
    app.router.add_get("/{name}", static_asset)
    return app


async def serve(
    app: web.Application,
    host: str,
    port: int,
    *,
    access_log: bool = False,
) -> int:
    """Run ``app`` until SIGINT/SIGTERM; return the process exit status."""

    log = logging.getLogger("web_server")
    runner = web.AppRunner(
        app,
        access_log=logging.getLogger("aiohttp.access") if access_log else None,
    )
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    try:
        await site.start()
    except OSError as exc:
        log.error("Unable to listen on %s:%s: %s", host, port, exc)
        await runner.cleanup()
        return 1

    stop_event = app[SHUTDOWN_EVENT_KEY]
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop_event.set)

    log.info("Server listening on http://%s:%s (WebSocket %s)", host, port, WS_PATH)
    try:
        await stop_event.wait()
    finally:
        log.info("Stopping server ...")
        await runner.cleanup()
        log.info("Server stopped")
    return 0


def cli_main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Remote-controlled arecord supervisor.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    cfg = reload_cfg()
    level_name = "DEBUG" if cfg.get("logging", {}).get("dev_mode") else args.log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _quiet_noisy_dependencies()
    log = logging.getLogger("web_server")

    server_cfg = cfg.get("server", {})
    bind_host = args.host if args.host else str(server_cfg.get("listen_host", "0.0.0.0"))
    bind_port = args.port if args.port else int(server_cfg.get("listen_port", 8080))
    log.info(
        "Starting %s on %s:%s (access_log=%s)",
        server_cfg.get("name", "xrRecorder"),
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )

    app = build_app(cfg)
    try:
        return asyncio.run(serve(app, bind_host, bind_port, access_log=args.access_log))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
