"""Privileged host power actions (shutdown / reboot)."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from .errors import HostControlError

log = logging.getLogger("host_control")


class HostControl:
    def __init__(
        self,
        *,
        shutdown_command: Sequence[str] = ("sudo", "shutdown", "-h", "now"),
        reboot_command: Sequence[str] = ("sudo", "reboot"),
    ) -> None:
        self._shutdown_command = [str(part) for part in shutdown_command]
        self._reboot_command = [str(part) for part in reboot_command]
        self._reapers: set[asyncio.Task] = set()

    async def shutdown(self) -> None:
        await self._launch("shutdown", self._shutdown_command)

    async def reboot(self) -> None:
        await self._launch("reboot", self._reboot_command)

    async def _launch(self, action: str, cmd: list[str]) -> None:
        if not cmd:
            raise HostControlError(f"no {action} command configured")
        log.warning("Host %s requested: %s", action, " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise HostControlError(f"{cmd[0]} not found") from exc
        except OSError as exc:
            raise HostControlError(f"unable to run {action}: {exc}") from exc

        # The host may go down before the command returns; collect the result
        # in the background so the caller is never blocked on it.
        task = asyncio.get_running_loop().create_task(self._reap(action, proc))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    @staticmethod
    async def _reap(action: str, proc: asyncio.subprocess.Process) -> None:
        _, stderr_raw = await proc.communicate()
        if proc.returncode != 0:
            log.error(
                "Host %s command failed (rc=%s): %s",
                action,
                proc.returncode,
                stderr_raw.decode("utf-8", errors="replace").strip(),
            )


__all__ = ["HostControl"]
