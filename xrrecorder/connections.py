"""WebSocket connection registry with per-connection heartbeat.

Each accepted connection gets one heartbeat task. Every tick it either pings
the peer (clearing the liveness flag) or, if no pong arrived since the last
ping, terminates the connection. terminate() is the only release path and is
safe to call any number of times from the heartbeat, the receive loop, the
command worker or the server shutdown hook.

Application frames are queued to a per-connection worker so the receive loop
keeps reading pongs while a slow command runs. The worker handles one frame
at a time, which keeps replies in request order.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from typing import Any, Awaitable, Callable

from aiohttp import WSCloseCode, WSMsgType

from .errors import ProtocolError

log = logging.getLogger("connections")

MAX_PENDING_MESSAGES = 32

MessageHandler = Callable[[str, Any], Awaitable["dict[str, Any] | None"]]


class Connection:
    def __init__(
        self,
        ws: Any,
        conn_id: str,
        *,
        ping_interval: float,
        on_release: Callable[["Connection"], None] | None = None,
        max_pending: int = MAX_PENDING_MESSAGES,
    ) -> None:
        if ping_interval <= 0:
            raise ValueError("ping_interval must be positive")
        self.id = conn_id
        self.ws = ws
        self.is_alive = True
        self._ping_interval = float(ping_interval)
        self._on_release = on_release
        self._heartbeat: asyncio.Task | None = None
        self._worker: asyncio.Task | None = None
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._busy = False
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def heartbeat_task(self) -> asyncio.Task | None:
        return self._heartbeat

    @property
    def worker_task(self) -> asyncio.Task | None:
        return self._worker

    def start_heartbeat(self) -> None:
        if self._heartbeat is not None or self._released:
            return
        self._heartbeat = asyncio.get_running_loop().create_task(
            self._heartbeat_loop(), name=f"heartbeat-{self.id}"
        )

    def start_worker(self, on_message: MessageHandler) -> None:
        if self._worker is not None or self._released:
            return
        self._worker = asyncio.get_running_loop().create_task(
            self._work(on_message), name=f"commands-{self.id}"
        )

    def mark_alive(self) -> None:
        self.is_alive = True

    def enqueue(self, data: Any) -> bool:
        """Queue one application frame; False when the backlog is full."""

        try:
            self._inbox.put_nowait(data)
        except asyncio.QueueFull:
            return False
        return True

    async def _heartbeat_loop(self) -> None:
        while not self._released:
            await asyncio.sleep(self._ping_interval)
            if not self.is_alive:
                log.info("Connection %s missed a heartbeat; terminating", self.id)
                await self.terminate("heartbeat timeout")
                return
            self.is_alive = False
            try:
                await self.ws.ping()
            except (ConnectionError, RuntimeError) as exc:
                log.debug("Ping to %s failed: %s", self.id, exc)
                await self.terminate("ping failed")
                return

    async def _work(self, on_message: MessageHandler) -> None:
        while not self._released:
            data = await self._inbox.get()
            self._busy = True
            try:
                response = await on_message(self.id, data)
            finally:
                self._busy = False
            if response is not None:
                await self.send_json(response)

    async def terminate(self, reason: str = "") -> None:
        if self._released:
            return
        self._released = True
        current = asyncio.current_task()
        tasks = [self._heartbeat]
        # A command already in flight runs to completion; its reply is
        # dropped and the worker exits on its next loop check.
        if not self._busy:
            tasks.append(self._worker)
        for task in tasks:
            if task is not None and task is not current:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if self._on_release is not None:
            self._on_release(self)
        log.info("Connection %s closed (%s)", self.id, reason or "released")
        try:
            await self.ws.close(code=WSCloseCode.GOING_AWAY, message=reason.encode("utf-8"))
        except (ConnectionError, RuntimeError, asyncio.TimeoutError) as exc:
            log.debug("Closing %s raised %s", self.id, exc)

    async def send_json(self, payload: dict[str, Any]) -> bool:
        if self._released or getattr(self.ws, "closed", False):
            return False
        try:
            await self.ws.send_str(json.dumps(payload))
        except (ConnectionError, RuntimeError) as exc:
            log.debug("Send to %s failed: %s", self.id, exc)
            await self.terminate("send failed")
            return False
        return True


class ConnectionManager:
    def __init__(self, *, ping_interval: float = 10.0) -> None:
        if ping_interval <= 0:
            raise ValueError("ping_interval must be positive")
        self._ping_interval = float(ping_interval)
        self._connections: dict[str, Connection] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._connections)

    def get(self, conn_id: str) -> Connection | None:
        return self._connections.get(conn_id)

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def accept(self, ws: Any) -> Connection:
        conn = Connection(
            ws,
            f"ws-{next(self._ids)}",
            ping_interval=self._ping_interval,
            on_release=self._forget,
        )
        self._connections[conn.id] = conn
        conn.start_heartbeat()
        log.info("Connection %s accepted (%d active)", conn.id, len(self._connections))
        return conn

    def _forget(self, conn: Connection) -> None:
        self._connections.pop(conn.id, None)

    async def serve(self, ws: Any, on_message: MessageHandler) -> None:
        """Pump one prepared WebSocket until the peer goes away."""

        conn = self.accept(ws)
        conn.start_worker(on_message)
        reason = "peer disconnected"
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    if not conn.enqueue(msg.data):
                        log.warning("Connection %s has too many pending commands", conn.id)
                        await conn.send_json(ProtocolError("too many pending commands").to_payload())
                elif msg.type == WSMsgType.PONG:
                    conn.mark_alive()
                elif msg.type == WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    reason = f"transport error: {ws.exception()}"
                    break
        finally:
            await conn.terminate(reason)

    async def send(self, conn_id: str, payload: dict[str, Any]) -> bool:
        conn = self._connections.get(conn_id)
        if conn is None:
            return False
        return await conn.send_json(payload)

    async def broadcast(self, payload: dict[str, Any]) -> int:
        targets = [conn for conn in self._connections.values() if not conn.released]
        if not targets:
            return 0
        results = await asyncio.gather(*(conn.send_json(payload) for conn in targets))
        return sum(1 for delivered in results if delivered)

    async def close_all(self, reason: str = "server shutdown") -> None:
        conns = list(self._connections.values())
        if conns:
            await asyncio.gather(*(conn.terminate(reason) for conn in conns))


__all__ = ["Connection", "ConnectionManager", "MAX_PENDING_MESSAGES"]
