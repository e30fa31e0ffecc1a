"""Route decoded commands to the supervisor, file registry and host control."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

from .audio_devices import CaptureDevice, discover_capture_devices
from .commands import (
    CaptureLimits,
    Command,
    DeleteFile,
    GetStatus,
    ListDevices,
    ListFiles,
    ProbeFile,
    RebootHost,
    ShutdownHost,
    StartRecording,
    StopRecording,
    build_command,
    parse_envelope,
)
from .errors import HostControlError, RecorderError, ValidationError
from .file_registry import FileRegistry
from .host_control import HostControl
from .recording_supervisor import ACTIVE_STATES, RecordingSupervisor, SessionState

log = logging.getLogger("dispatcher")

MUTATING_TYPES: frozenset[str] = frozenset(
    cls.type
    for cls in (
        StartRecording,
        StopRecording,
        GetStatus,
        ListFiles,
        DeleteFile,
        ProbeFile,
        ListDevices,
        ShutdownHost,
        RebootHost,
    )
    if cls.mutating
)


class CommandDispatcher:
    def __init__(
        self,
        supervisor: RecordingSupervisor,
        registry: FileRegistry,
        *,
        limits: CaptureLimits,
        host_control: HostControl | None = None,
        device_lister: Callable[[], Sequence[CaptureDevice]] = discover_capture_devices,
        broadcast_status: Callable[[], None] | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._registry = registry
        self._limits = limits
        self._host_control = host_control
        self._device_lister = device_lister
        self._broadcast_status = broadcast_status
        self._handlers: dict[str, Callable[[Any], Awaitable[dict[str, Any]]]] = {
            StartRecording.type: self._start_recording,
            StopRecording.type: self._stop_recording,
            GetStatus.type: self._get_status,
            ListFiles.type: self._list_files,
            DeleteFile.type: self._delete_file,
            ProbeFile.type: self._probe_file,
            ListDevices.type: self._list_devices,
            ShutdownHost.type: self._shutdown_host,
            RebootHost.type: self._reboot_host,
        }

    async def dispatch(self, conn_id: str, raw: str | bytes) -> dict[str, Any]:
        envelope: dict[str, Any] | None = None
        try:
            envelope = parse_envelope(raw)
            command = build_command(envelope, self._limits)
            log.debug("Connection %s -> %s", conn_id, command.type)
            response = await self.execute(command)
        except RecorderError as exc:
            log.warning(
                "Connection %s: %s rejected with %s: %s",
                conn_id,
                envelope.get("type") if envelope else "message",
                exc.code,
                exc.message,
            )
            response = exc.to_payload()
        except Exception:
            log.exception("Connection %s: unhandled error while dispatching", conn_id)
            response = {
                "type": "error",
                "error": "InternalError",
                "message": "internal server error",
            }

        if envelope is not None:
            response["command"] = envelope["type"]
            if "id" in envelope:
                response["id"] = envelope["id"]
            if envelope["type"] in MUTATING_TYPES and self._broadcast_status is not None:
                self._broadcast_status()
        return response

    async def execute(self, command: Command) -> dict[str, Any]:
        handler = self._handlers[command.type]
        return await handler(command)

    # --- Supervisor ---
    async def _start_recording(self, command: StartRecording) -> dict[str, Any]:
        status = await self._supervisor.start(command.capture)
        return {"type": "status", **status}

    async def _stop_recording(self, _: StopRecording) -> dict[str, Any]:
        status = await self._supervisor.stop()
        return {"type": "status", **status}

    async def _get_status(self, _: GetStatus) -> dict[str, Any]:
        return {"type": "status", **self._supervisor.get_status()}

    # --- File registry ---
    async def _list_files(self, _: ListFiles) -> dict[str, Any]:
        names = await asyncio.to_thread(self._registry.list)
        return {"type": "files", "files": names}

    async def _delete_file(self, command: DeleteFile) -> dict[str, Any]:
        session = self._supervisor.session
        if (
            session.state in ACTIVE_STATES
            and session.output_path is not None
            and session.output_path.name == command.name
        ):
            raise ValidationError(f"{command.name} is being recorded")
        await asyncio.to_thread(self._registry.delete, command.name)
        return {"type": "ack", "name": command.name}

    async def _probe_file(self, command: ProbeFile) -> dict[str, Any]:
        detail = await self._registry.probe(command.name)
        return {"type": "fileDetail", "fileDetail": detail.to_dict()}

    # --- Host ---
    async def _list_devices(self, _: ListDevices) -> dict[str, Any]:
        devices = await asyncio.to_thread(self._device_lister)
        return {"type": "devices", "devices": [device.to_dict() for device in devices]}

    async def _shutdown_host(self, _: ShutdownHost) -> dict[str, Any]:
        host = self._require_host_control()
        await self._finish_recording()
        await host.shutdown()
        return {"type": "ack"}

    async def _reboot_host(self, _: RebootHost) -> dict[str, Any]:
        host = self._require_host_control()
        await self._finish_recording()
        await host.reboot()
        return {"type": "ack"}

    def _require_host_control(self) -> HostControl:
        if self._host_control is None:
            raise HostControlError("host control is disabled")
        return self._host_control

    async def _finish_recording(self) -> None:
        # Let arecord finalize the WAV header before the host goes down.
        if self._supervisor.state is SessionState.RECORDING:
            await self._supervisor.shutdown()


__all__ = ["CommandDispatcher", "MUTATING_TYPES"]
