"""Coalesce status broadcast requests into single WebSocket frames."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable


class StatusBroadcaster:
    """Push the supervisor status to every connected client.

    request() may be called any number of times within one loop iteration;
    all of those requests are served by a single frame carrying the status
    as it is when the frame is built.
    """

    def __init__(
        self,
        *,
        read_status: Callable[[], dict[str, Any]],
        send_all: Callable[[dict[str, Any]], Awaitable[int]],
        logger: logging.Logger | None = None,
    ) -> None:
        self._read_status = read_status
        self._send_all = send_all
        self._logger = logger or logging.getLogger("web_server")
        self._pending: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._sent = 0

    @property
    def frames_sent(self) -> int:
        return self._sent

    def request(self) -> None:
        if self._pending is not None and not self._pending.done():
            return
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._flush())
        self._pending = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _flush(self) -> None:
        await asyncio.sleep(0)
        self._pending = None
        payload = {"type": "status", **self._read_status()}
        try:
            delivered = await self._send_all(payload)
        except Exception as exc:  # pragma: no cover - send errors are handled per connection
            self._logger.warning("status broadcast failed: %s", exc)
            return
        self._sent += 1
        self._logger.debug("status broadcast delivered to %s connection(s)", delivered)

    async def drain(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._inflight)
        self._pending = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = ["StatusBroadcaster"]
