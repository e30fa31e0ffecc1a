import asyncio
import signal

import pytest

from xrrecorder.arecord_io import CaptureConfig
from xrrecorder.errors import AlreadyRecording, NotRecording, ProcessError
from xrrecorder.recording_supervisor import RecordingSupervisor, SessionState


CAPTURE = CaptureConfig(
    channels=2,
    bit_depth=16,
    sample_rate=44100,
    buffer_size=262144,
    device="hw:0,0",
)


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process driven by the test."""

    def __init__(self, *, exit_on_sigterm: int | None = -signal.SIGTERM, pid: int = 4242) -> None:
        self.pid = pid
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.signals: list[int] = []
        self.exit_on_sigterm = exit_on_sigterm
        self._done = asyncio.get_running_loop().create_future()

    def send_signal(self, signum: int) -> None:
        self.signals.append(signum)
        if signum == signal.SIGTERM and self.exit_on_sigterm is not None:
            self.finish(self.exit_on_sigterm)

    def kill(self) -> None:
        self.signals.append(signal.SIGKILL)
        self.finish(-signal.SIGKILL)

    def finish(self, returncode: int) -> None:
        if self._done.done():
            return
        self.returncode = returncode
        self.stderr.feed_eof()
        self._done.set_result(returncode)

    async def wait(self) -> int:
        return await self._done


class ProcessQueue:
    def __init__(self) -> None:
        self.pending: list[FakeProcess] = []
        self.launched: list[list[str]] = []

    async def __call__(self, args):
        self.launched.append(list(args))
        return self.pending.pop(0)


def _supervisor(tmp_path, factory, **kwargs) -> RecordingSupervisor:
    return RecordingSupervisor(
        tmp_path / "recordings",
        process_factory=factory,
        clock=lambda: 1_700_000_000.0,
        **kwargs,
    )


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def test_start_stop_scenario(tmp_path):
    async def runner():
        factory = ProcessQueue()
        process = FakeProcess(exit_on_sigterm=None)
        factory.pending.append(process)
        supervisor = _supervisor(tmp_path, factory)

        seen_states: list[str] = []
        supervisor.add_listener(lambda status: seen_states.append(status["state"]))

        status = await supervisor.start(CAPTURE)
        assert status["isRecording"] is True
        assert status["state"] == "recording"
        assert seen_states == ["starting", "recording"]

        args = factory.launched[0]
        assert args[:3] == ["arecord", "-D", "hw:0,0"]
        assert args[args.index("-f") + 1] == "S16_LE"
        assert args[-1].endswith(".wav")

        assert supervisor.get_status()["isRecording"] is True

        status = await supervisor.stop()
        assert status["state"] == "stopping"
        assert status["isRecording"] is True
        assert process.signals == [signal.SIGTERM]

        process.finish(0)
        await supervisor.session.watch_task

        status = supervisor.get_status()
        assert status["isRecording"] is False
        assert status["state"] == "idle"
        assert status["exitCode"] == 0
        assert seen_states[-2:] == ["stopping", "idle"]

    asyncio.run(runner())


def test_start_while_recording_leaves_session_untouched(tmp_path):
    async def runner():
        factory = ProcessQueue()
        process = FakeProcess()
        factory.pending.extend([process, FakeProcess(pid=5555)])
        supervisor = _supervisor(tmp_path, factory)

        await supervisor.start(CAPTURE)
        session = supervisor.session
        started_at = session.started_at
        generation = supervisor.generation

        with pytest.raises(AlreadyRecording):
            await supervisor.start(CAPTURE)

        assert supervisor.session is session
        assert session.process is process
        assert session.started_at == started_at
        assert supervisor.generation == generation
        assert len(factory.launched) == 1

        await supervisor.shutdown()

    asyncio.run(runner())


def test_stop_requires_recording(tmp_path):
    async def runner():
        factory = ProcessQueue()
        process = FakeProcess()
        factory.pending.append(process)
        supervisor = _supervisor(tmp_path, factory)

        with pytest.raises(NotRecording):
            await supervisor.stop()

        await supervisor.start(CAPTURE)
        process.finish(1)
        await supervisor.session.watch_task
        assert supervisor.state is SessionState.CRASHED

        with pytest.raises(NotRecording):
            await supervisor.stop()

    asyncio.run(runner())


def test_exit_codes_map_to_idle_or_crashed(tmp_path):
    async def runner():
        factory = ProcessQueue()
        clean = FakeProcess()
        failed = FakeProcess()
        factory.pending.extend([clean, failed])
        supervisor = _supervisor(tmp_path, factory)

        await supervisor.start(CAPTURE)
        clean.finish(0)
        await supervisor.session.watch_task
        status = supervisor.get_status()
        assert status["isRecording"] is False
        assert status["exitCode"] == 0
        assert status["state"] == "idle"

        await supervisor.start(CAPTURE)
        failed.finish(1)
        await supervisor.session.watch_task
        status = supervisor.get_status()
        assert status["state"] == "crashed"
        assert status["exitCode"] == 1
        assert status["isRecording"] is False
        assert "capture exited with code 1" in status["diagnosticText"]

    asyncio.run(runner())


def test_crashed_session_allows_restart(tmp_path):
    async def runner():
        factory = ProcessQueue()
        crashed = FakeProcess()
        factory.pending.extend([crashed, FakeProcess()])
        supervisor = _supervisor(tmp_path, factory)

        await supervisor.start(CAPTURE)
        crashed.finish(3)
        await supervisor.session.watch_task
        assert supervisor.state is SessionState.CRASHED

        status = await supervisor.start(CAPTURE)
        assert status["state"] == "recording"
        assert status["exitCode"] is None
        assert status["diagnosticText"] == ""

        await supervisor.shutdown()

    asyncio.run(runner())


def test_sigterm_exit_after_stop_is_clean(tmp_path):
    async def runner():
        factory = ProcessQueue()
        factory.pending.append(FakeProcess())
        supervisor = _supervisor(tmp_path, factory)

        await supervisor.start(CAPTURE)
        task = supervisor.session.watch_task
        await supervisor.stop()
        await task

        status = supervisor.get_status()
        assert status["state"] == "idle"
        assert status["exitCode"] == -signal.SIGTERM

    asyncio.run(runner())


def test_stale_generation_completions_are_ignored(tmp_path):
    async def runner():
        factory = ProcessQueue()
        first = FakeProcess(exit_on_sigterm=None)
        second = FakeProcess(pid=5555)
        factory.pending.extend([first, second])
        supervisor = _supervisor(tmp_path, factory)

        await supervisor.start(CAPTURE)
        first_generation = supervisor.generation
        first_task = supervisor.session.watch_task
        await supervisor.stop()
        first.finish(0)
        await first_task

        await supervisor.start(CAPTURE)
        session = supervisor.session
        assert session.generation == first_generation + 1

        # Late completions still addressed to the first process.
        supervisor._on_exit(first_generation, 1)
        supervisor._on_stderr(first_generation, ["overrun!!! (at least 1.0 ms long)"])
        supervisor._on_error(first_generation, first, RuntimeError("pipe closed"))
        supervisor._escalate(first_generation)

        assert supervisor.session is session
        assert session.state is SessionState.RECORDING
        assert session.process is second
        assert session.exit_code is None
        assert list(session.diagnostics) == []
        assert second.signals == []

        await supervisor.shutdown()

    asyncio.run(runner())


def test_status_line_and_diagnostics_are_split(tmp_path):
    async def runner():
        factory = ProcessQueue()
        process = FakeProcess()
        factory.pending.append(process)
        supervisor = _supervisor(tmp_path, factory, diagnostic_lines=2)

        await supervisor.start(CAPTURE)
        process.stderr.feed_data(
            b"Recording WAVE 'take.wav' : Signed 16 bit Little Endian\n"
            b"Max peak (4410 samples): 0x00000123 #  1%\r"
            b"Max peak (4410 samples): 0x00004000 ### 50%\r"
            b"Plug PCM: Hardware PCM card 0\n"
            b"Its setup is:\n"
            b"Max peak (4410"
        )
        await _settle()

        status = supervisor.get_status()
        assert status["statusLine"] == "Max peak (4410 samples): 0x00004000 ### 50%"
        assert status["diagnosticText"].splitlines() == [
            "Plug PCM: Hardware PCM card 0",
            "Its setup is:",
        ]

        process.stderr.feed_data(b" samples): 0x00007fff ##### 99%\r")
        await _settle()
        assert supervisor.get_status()["statusLine"].endswith("99%")

        await supervisor.shutdown()

    asyncio.run(runner())


def test_launch_failure_marks_session_crashed(tmp_path):
    async def runner():
        async def missing_binary(args):
            raise FileNotFoundError(2, "No such file or directory", args[0])

        supervisor = _supervisor(tmp_path, missing_binary)

        with pytest.raises(ProcessError):
            await supervisor.start(CAPTURE)

        status = supervisor.get_status()
        assert status["state"] == "crashed"
        assert status["isRecording"] is False
        assert "failed to launch capture" in status["diagnosticText"]

    asyncio.run(runner())


def test_non_os_launch_error_leaves_session_restartable(tmp_path):
    async def runner():
        attempts: list[list[str]] = []

        async def factory(args):
            attempts.append(list(args))
            if len(attempts) == 1:
                raise ValueError("embedded null byte")
            return FakeProcess()

        supervisor = _supervisor(tmp_path, factory)
        bad = CaptureConfig(channels=2, bit_depth=16, sample_rate=44100, buffer_size=4096, device="hw:0\x00x")

        with pytest.raises(ProcessError):
            await supervisor.start(bad)
        assert supervisor.state is SessionState.CRASHED
        assert "embedded null byte" in supervisor.get_status()["diagnosticText"]

        with pytest.raises(NotRecording):
            await supervisor.stop()

        status = await supervisor.start(CAPTURE)
        assert status["state"] == "recording"

        await supervisor.shutdown()

    asyncio.run(runner())


def test_stop_escalates_to_sigkill(tmp_path):
    async def runner():
        factory = ProcessQueue()
        stubborn = FakeProcess(exit_on_sigterm=None)
        factory.pending.append(stubborn)
        supervisor = _supervisor(tmp_path, factory, stop_timeout=0.01)

        await supervisor.start(CAPTURE)
        task = supervisor.session.watch_task
        await supervisor.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert stubborn.signals == [signal.SIGTERM, signal.SIGKILL]
        status = supervisor.get_status()
        assert status["state"] == "crashed"
        assert status["exitCode"] == -signal.SIGKILL

    asyncio.run(runner())


def test_output_names_do_not_collide(tmp_path):
    async def runner():
        factory = ProcessQueue()
        first = FakeProcess()
        second = FakeProcess()
        factory.pending.extend([first, second])
        supervisor = _supervisor(tmp_path, factory)

        await supervisor.start(CAPTURE)
        first_path = supervisor.session.output_path
        first_path.write_bytes(b"RIFF")
        first.finish(0)
        await supervisor.session.watch_task

        await supervisor.start(CAPTURE)
        second_path = supervisor.session.output_path
        assert second_path != first_path
        assert second_path.name == first_path.stem + "-1.wav"

        await supervisor.shutdown()

    asyncio.run(runner())


def test_shutdown_resets_to_idle(tmp_path):
    async def runner():
        factory = ProcessQueue()
        process = FakeProcess()
        factory.pending.append(process)
        supervisor = _supervisor(tmp_path, factory)

        await supervisor.start(CAPTURE)
        generation = supervisor.generation
        await supervisor.shutdown()

        assert process.signals == [signal.SIGTERM]
        assert supervisor.state is SessionState.IDLE
        assert supervisor.generation == generation + 1
        assert supervisor.get_status()["file"] is None

    asyncio.run(runner())
