import asyncio
import json
from types import SimpleNamespace

from aiohttp import WSCloseCode, WSMsgType

from xrrecorder.connections import Connection, ConnectionManager


class FakeWebSocket:
    def __init__(self, *, on_ping=None) -> None:
        self.on_ping = on_ping
        self.pings = 0
        self.closed = False
        self.close_calls: list[tuple[int, bytes]] = []
        self.sent: list[dict] = []
        self.fail_sends = False

    async def ping(self, data: bytes = b"") -> None:
        self.pings += 1
        if self.on_ping is not None:
            self.on_ping()

    async def close(self, *, code: int = WSCloseCode.OK, message: bytes = b"") -> bool:
        self.close_calls.append((code, message))
        self.closed = True
        return True

    async def send_str(self, data: str) -> None:
        if self.fail_sends:
            raise ConnectionResetError("socket closed")
        self.sent.append(json.loads(data))


def test_silent_peer_is_terminated_after_missed_pong():
    async def runner():
        manager = ConnectionManager(ping_interval=0.01)
        ws = FakeWebSocket()
        conn = manager.accept(ws)
        assert len(manager) == 1

        await asyncio.sleep(0.1)

        assert conn.released
        assert conn.heartbeat_task is not None
        assert conn.heartbeat_task.done()
        assert ws.pings == 1
        assert ws.close_calls == [(WSCloseCode.GOING_AWAY, b"heartbeat timeout")]
        assert len(manager) == 0

    asyncio.run(runner())


def test_pong_keeps_connection_alive():
    async def runner():
        ws = FakeWebSocket()
        conn = Connection(ws, "ws-1", ping_interval=0.01)
        ws.on_ping = conn.mark_alive
        conn.start_heartbeat()

        await asyncio.sleep(0.1)

        assert not conn.released
        assert ws.pings >= 3
        assert not conn.heartbeat_task.done()

        await conn.terminate("test over")
        assert conn.heartbeat_task.cancelled()

    asyncio.run(runner())


def test_terminate_runs_once():
    async def runner():
        released: list[str] = []
        ws = FakeWebSocket()
        conn = Connection(
            ws,
            "ws-7",
            ping_interval=60,
            on_release=lambda c: released.append(c.id),
        )
        conn.start_heartbeat()

        await asyncio.gather(conn.terminate("peer disconnected"), conn.terminate("heartbeat timeout"))
        await conn.terminate("again")

        assert released == ["ws-7"]
        assert len(ws.close_calls) == 1
        assert conn.heartbeat_task.done()
        assert await conn.send_json({"type": "status"}) is False

    asyncio.run(runner())


def test_broadcast_reaches_every_live_connection():
    async def runner():
        manager = ConnectionManager(ping_interval=60)
        first = FakeWebSocket()
        second = FakeWebSocket()
        gone = FakeWebSocket()
        manager.accept(first)
        manager.accept(second)
        stale = manager.accept(gone)
        await stale.terminate("peer disconnected")

        delivered = await manager.broadcast({"type": "status", "state": "idle"})

        assert delivered == 2
        assert first.sent == [{"type": "status", "state": "idle"}]
        assert second.sent == [{"type": "status", "state": "idle"}]
        assert gone.sent == []

        conns = manager.connections()
        await manager.close_all()
        assert len(manager) == 0
        assert all(conn.heartbeat_task.done() for conn in conns)

    asyncio.run(runner())


def test_send_failure_releases_connection():
    async def runner():
        manager = ConnectionManager(ping_interval=60)
        ws = FakeWebSocket()
        conn = manager.accept(ws)
        ws.fail_sends = True

        assert await manager.send(conn.id, {"type": "status"}) is False
        assert conn.released
        assert len(manager) == 0
        assert conn.heartbeat_task.done()
        assert await manager.send("ws-unknown", {"type": "status"}) is False

    asyncio.run(runner())


class ScriptedWebSocket(FakeWebSocket):
    """FakeWebSocket whose inbound frames are pushed by the test."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.inbound: asyncio.Queue = asyncio.Queue()

    def push(self, msg_type, data=None) -> None:
        self.inbound.put_nowait(SimpleNamespace(type=msg_type, data=data))

    def hang_up(self) -> None:
        self.inbound.put_nowait(None)

    def exception(self):
        return None

    async def pong(self, data: bytes = b"") -> None:
        pass

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self.inbound.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


def test_pongs_are_read_while_a_slow_command_runs():
    async def runner():
        manager = ConnectionManager(ping_interval=0.02)
        ws = ScriptedWebSocket()
        ws.on_ping = lambda: ws.push(WSMsgType.PONG)

        async def slow_handler(conn_id, data):
            await asyncio.sleep(0.2)
            return {"type": "reply", "echo": data}

        serving = asyncio.create_task(manager.serve(ws, slow_handler))
        await asyncio.sleep(0)
        ws.push(WSMsgType.TEXT, "first")
        ws.push(WSMsgType.TEXT, "second")
        await asyncio.sleep(0.6)

        (conn,) = manager.connections()
        assert not conn.released
        assert ws.pings >= 5
        assert ws.sent == [
            {"type": "reply", "echo": "first"},
            {"type": "reply", "echo": "second"},
        ]

        ws.hang_up()
        await serving
        assert conn.released
        assert conn.heartbeat_task.done()
        assert conn.worker_task.done()
        assert len(manager) == 0

    asyncio.run(runner())


def test_heartbeat_timeout_stops_idle_worker():
    async def runner():
        manager = ConnectionManager(ping_interval=0.02)
        ws = ScriptedWebSocket()
        handled: list[str] = []

        async def handler(conn_id, data):
            handled.append(data)
            return None

        serving = asyncio.create_task(manager.serve(ws, handler))
        await asyncio.sleep(0)
        (conn,) = manager.connections()
        ws.push(WSMsgType.TEXT, "only")
        await asyncio.sleep(0.15)

        assert conn.released
        assert conn.worker_task.cancelled()
        assert len(manager) == 0
        assert ws.close_calls == [(WSCloseCode.GOING_AWAY, b"heartbeat timeout")]
        assert handled == ["only"]

        ws.hang_up()
        await serving

    asyncio.run(runner())


def test_backlog_overflow_is_rejected():
    async def runner():
        ws = ScriptedWebSocket()
        conn = Connection(ws, "ws-3", ping_interval=60, max_pending=2)

        assert conn.enqueue("a") is True
        assert conn.enqueue("b") is True
        assert conn.enqueue("c") is False

        await conn.terminate("test over")

    asyncio.run(runner())
