#!/usr/bin/env python3
"""
Recording supervisor (single capture session orchestration).

Owns the one RecordingSession and the arecord process behind it:

- start() launches arecord and moves idle/crashed -> starting -> recording.
- stop() sends SIGTERM and moves recording -> stopping; the session only
  returns to idle once the process exit has been observed.
- Process exit moves the session to idle (clean) or crashed (anything else).

Everything runs on one asyncio loop. Each start() bumps a generation counter
and every asynchronous completion (stderr line, exit, reader error) carries
the generation it was spawned under, so completions from a superseded
process never touch the current session.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Sequence

from .arecord_io import CaptureConfig, capture_args, is_status_line, split_stderr_lines
from .errors import AlreadyRecording, NotRecording, ProcessError

STDERR_READ_BYTES = 4096

log = logging.getLogger("supervisor")


class SessionState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"
    CRASHED = "crashed"


ACTIVE_STATES = frozenset({SessionState.STARTING, SessionState.RECORDING, SessionState.STOPPING})

ProcessFactory = Callable[[Sequence[str]], Awaitable[Any]]
StatusListener = Callable[[dict[str, Any]], None]


@dataclass
class RecordingSession:
    state: SessionState = SessionState.IDLE
    generation: int = 0
    process: Any = None
    output_path: Path | None = None
    config: CaptureConfig | None = None
    started_at: float | None = None
    exit_code: int | None = None
    status_line: str = ""
    diagnostics: Deque[str] = field(default_factory=deque)
    stop_requested: bool = False
    watch_task: asyncio.Task | None = None
    kill_handle: asyncio.TimerHandle | None = None


async def spawn_capture_process(args: Sequence[str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )


class RecordingSupervisor:
    def __init__(
        self,
        recordings_dir: str | Path,
        *,
        arecord_path: str = "arecord",
        status_markers: Sequence[str] = ("Max peak",),
        stop_timeout: float = 5.0,
        diagnostic_lines: int = 200,
        diagnostic_line_length: int = 512,
        filename_pattern: str = "%Y-%m-%d_%H-%M-%S",
        process_factory: ProcessFactory | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if diagnostic_lines <= 0:
            raise ValueError("diagnostic_lines must be positive")
        self._recordings_dir = Path(recordings_dir)
        self._arecord_path = arecord_path
        self._status_markers = tuple(status_markers)
        self._stop_timeout = max(0.0, float(stop_timeout))
        self._diagnostic_lines = int(diagnostic_lines)
        self._diagnostic_line_length = max(1, int(diagnostic_line_length))
        self._filename_pattern = filename_pattern
        self._process_factory = process_factory or spawn_capture_process
        self._clock = clock
        self._generation = 0
        self._session = RecordingSession(diagnostics=deque(maxlen=self._diagnostic_lines))
        self._listeners: list[StatusListener] = []

    # --- Read side ---
    @property
    def session(self) -> RecordingSession:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def generation(self) -> int:
        return self._generation

    def get_status(self) -> dict[str, Any]:
        session = self._session
        return {
            "isRecording": session.state in ACTIVE_STATES,
            "state": session.state.value,
            "statusLine": session.status_line,
            "diagnosticText": "\n".join(session.diagnostics),
            "exitCode": session.exit_code,
            "file": session.output_path.name if session.output_path else None,
            "startedAt": session.started_at,
            "config": session.config.to_dict() if session.config else None,
            "generation": session.generation,
        }

    # --- Listeners ---
    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def _notify(self) -> None:
        status = self.get_status()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:  # pragma: no cover - listener bugs must not break transitions
                log.exception("status listener failed")

    # --- Transitions ---
    async def start(self, config: CaptureConfig) -> dict[str, Any]:
        current = self._session
        if current.state in ACTIVE_STATES:
            raise AlreadyRecording(
                f"capture already {current.state.value} (file {current.output_path.name if current.output_path else '?'})"
            )

        self._generation += 1
        now = self._clock()
        session = RecordingSession(
            state=SessionState.STARTING,
            generation=self._generation,
            config=config,
            started_at=now,
            diagnostics=deque(maxlen=self._diagnostic_lines),
        )
        self._session = session
        self._notify()

        try:
            session.output_path = await asyncio.to_thread(self._allocate_output_path, now)
            args = capture_args(config, session.output_path, arecord_path=self._arecord_path)
            log.info("Launching capture: %s", " ".join(args))
            process = await self._process_factory(args)
        except asyncio.CancelledError:
            self._launch_failed(session, "launch cancelled")
            raise
        except Exception as exc:
            # Launch errors are not limited to OSError; a NUL in argv raises
            # ValueError.
            self._launch_failed(session, f"failed to launch capture: {exc}")
            log.error("Capture launch failed: %s", exc)
            raise ProcessError(f"unable to launch {self._arecord_path}: {exc}") from exc

        if not self._is_current(session.generation):
            # Reset by shutdown() while the process was spawning.
            log.warning("Capture generation %s superseded during launch; killing it", session.generation)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            raise ProcessError("capture session was reset during launch")

        session.process = process
        session.state = SessionState.RECORDING
        session.watch_task = asyncio.get_running_loop().create_task(
            self._watch(session.generation, process),
            name=f"capture-watch-{session.generation}",
        )
        log.info(
            "Recording to %s (generation %s, pid %s)",
            session.output_path,
            session.generation,
            getattr(process, "pid", "?"),
        )
        self._notify()
        return self.get_status()

    async def stop(self) -> dict[str, Any]:
        session = self._session
        if session.state is not SessionState.RECORDING:
            raise NotRecording(f"capture is {session.state.value}")

        session.state = SessionState.STOPPING
        session.stop_requested = True
        process = session.process
        log.info("Stopping capture generation %s", session.generation)
        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            log.debug("capture process already gone; waiting for exit event")
        else:
            session.kill_handle = asyncio.get_running_loop().call_later(
                self._stop_timeout, self._escalate, session.generation
            )
        self._notify()
        return self.get_status()

    async def shutdown(self) -> None:
        """Terminate a live capture and reset the session to idle."""

        session = self._session
        if session.state is SessionState.RECORDING:
            await self.stop()
        task = session.watch_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self._stop_timeout + 1.0)
            except asyncio.TimeoutError:
                log.error("capture did not exit during shutdown; killing it")
                if session.process is not None:
                    with contextlib.suppress(ProcessLookupError):
                        session.process.kill()
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._cancel_kill_timer(session)
        self._generation += 1
        self._session = RecordingSession(
            generation=self._generation,
            diagnostics=deque(maxlen=self._diagnostic_lines),
        )
        self._notify()

    # --- Completions ---
    async def _watch(self, generation: int, process: Any) -> None:
        buffer_state: dict[str, Any] = {}
        max_tail = self._diagnostic_line_length
        try:
            stream = process.stderr
            if stream is not None:
                while True:
                    chunk = await stream.read(STDERR_READ_BYTES)
                    if not chunk:
                        break
                    self._on_stderr(generation, split_stderr_lines(chunk, buffer_state, max_tail=max_tail))
                self._on_stderr(
                    generation, split_stderr_lines(b"", buffer_state, max_tail=max_tail, final=True)
                )
            returncode = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._on_error(generation, process, exc)
            return
        self._on_exit(generation, returncode)

    def _on_stderr(self, generation: int, lines: Sequence[str]) -> None:
        if not self._is_current(generation):
            return
        session = self._session
        for line in lines:
            if is_status_line(line, self._status_markers):
                session.status_line = line[: self._diagnostic_line_length]
            else:
                self._append_diagnostic(session, line)

    def _on_exit(self, generation: int, returncode: int | None) -> None:
        session = self._session
        if not self._is_current(generation) or session.state not in (
            SessionState.RECORDING,
            SessionState.STOPPING,
        ):
            log.debug("Ignoring exit of stale capture generation %s (rc=%s)", generation, returncode)
            return

        self._cancel_kill_timer(session)
        session.process = None
        session.exit_code = returncode
        clean = returncode == 0 or (
            session.stop_requested and returncode == -signal.SIGTERM
        )
        if clean:
            session.state = SessionState.IDLE
            log.info("Capture generation %s finished (rc=%s)", generation, returncode)
        else:
            session.state = SessionState.CRASHED
            self._append_diagnostic(session, f"capture exited with code {returncode}")
            log.warning("Capture generation %s crashed (rc=%s)", generation, returncode)
        self._notify()

    def _on_error(self, generation: int, process: Any, exc: BaseException) -> None:
        if not self._is_current(generation):
            log.debug("Ignoring error from stale capture generation %s: %s", generation, exc)
            return
        session = self._session
        log.error("Capture generation %s failed: %s", generation, exc)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        self._cancel_kill_timer(session)
        session.process = None
        session.state = SessionState.CRASHED
        self._append_diagnostic(session, f"capture error: {exc}")
        self._notify()

    def _escalate(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        session = self._session
        session.kill_handle = None
        if session.state is not SessionState.STOPPING or session.process is None:
            return
        log.warning(
            "Capture did not exit %.1fs after SIGTERM; sending SIGKILL", self._stop_timeout
        )
        with contextlib.suppress(ProcessLookupError):
            session.process.kill()

    # --- Helpers ---
    def _launch_failed(self, session: RecordingSession, reason: str) -> None:
        self._append_diagnostic(session, reason)
        if self._is_current(session.generation) and session.state is SessionState.STARTING:
            session.state = SessionState.CRASHED
            self._notify()

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and generation == self._session.generation

    def _append_diagnostic(self, session: RecordingSession, line: str) -> None:
        session.diagnostics.append(line[: self._diagnostic_line_length])

    @staticmethod
    def _cancel_kill_timer(session: RecordingSession) -> None:
        handle = session.kill_handle
        session.kill_handle = None
        if handle is not None:
            handle.cancel()

    def _allocate_output_path(self, now: float) -> Path:
        self._recordings_dir.mkdir(parents=True, exist_ok=True)
        stem = time.strftime(self._filename_pattern, time.localtime(now))
        candidate = self._recordings_dir / f"{stem}.wav"
        suffix = 1
        while candidate.exists():
            candidate = self._recordings_dir / f"{stem}-{suffix}.wav"
            suffix += 1
        return candidate


__all__ = [
    "ACTIVE_STATES",
    "RecordingSession",
    "RecordingSupervisor",
    "SessionState",
    "spawn_capture_process",
]
