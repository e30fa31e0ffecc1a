"""List, probe and delete recordings stored in the recordings directory."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import InvalidName, NotFound, PermissionDenied, ProbeError, RegistryIOError

log = logging.getLogger("file_registry")


@dataclass(slots=True)
class RecordingFile:
    """Representation of a single recording on disk."""

    name: str
    size_bytes: int
    modified: float
    duration: float | None = None
    format: str | None = None
    format_long_name: str | None = None
    bit_rate: int | None = None
    codec: str | None = None
    sample_rate: int | None = None
    channels: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "size": self.size_bytes,
            "modified": self.modified,
            "modifiedIso": datetime.fromtimestamp(self.modified, tz=timezone.utc).isoformat(),
            "duration": self.duration,
            "format": self.format,
            "formatLongName": self.format_long_name,
            "bitRate": self.bit_rate,
            "codec": self.codec,
            "sampleRate": self.sample_rate,
            "channels": self.channels,
        }


def validate_name(name: object) -> str:
    """Return ``name`` if it is a plain file name inside the registry root."""

    if not isinstance(name, str) or not name.strip():
        raise InvalidName("file name must be a non-empty string")
    if not name.isprintable() or '"' in name:
        raise InvalidName(f"file name contains control characters or quotes: {name!r}")
    if "/" in name or "\\" in name or os.sep in name or (os.altsep and os.altsep in name):
        raise InvalidName(f"file name must not contain path separators: {name!r}")
    if name in {".", ".."}:
        raise InvalidName(f"file name must not reference a directory: {name!r}")
    return name


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _float_or_none(value: Any) -> float | None:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None


class FileRegistry:
    def __init__(
        self,
        root: str | Path,
        *,
        ffprobe_path: str = "ffprobe",
        probe_timeout: float = 10.0,
    ) -> None:
        self._root = Path(root)
        self._ffprobe_path = ffprobe_path
        self._probe_timeout = float(probe_timeout)

    @property
    def root(self) -> Path:
        return self._root

    def list(self) -> list[str]:
        try:
            entries = list(self._root.iterdir())
        except OSError as exc:
            raise RegistryIOError(f"unable to read recordings directory: {exc.strerror or exc}") from exc
        names: list[str] = []
        for entry in entries:
            if entry.name.startswith("."):
                continue
            try:
                if entry.is_file():
                    names.append(entry.name)
            except OSError:
                continue
        names.sort()
        return names

    def resolve(self, name: object) -> Path:
        """Return the path of an existing recording named ``name``."""

        path = self._root / validate_name(name)
        if not path.is_file():
            raise NotFound(f"no such recording: {name}")
        return path

    def stat(self, name: object) -> RecordingFile:
        path = self._root / validate_name(name)
        try:
            st = path.stat()
        except FileNotFoundError as exc:
            raise NotFound(f"no such recording: {name}") from exc
        except PermissionError as exc:
            raise PermissionDenied(f"cannot access {name}") from exc
        except OSError as exc:
            raise RegistryIOError(f"cannot access {name}: {exc.strerror or exc}") from exc
        return RecordingFile(name=path.name, size_bytes=int(st.st_size), modified=float(st.st_mtime))

    def delete(self, name: object) -> None:
        path = self._root / validate_name(name)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotFound(f"no such recording: {name}") from exc
        except PermissionError as exc:
            raise PermissionDenied(f"not allowed to delete {name}") from exc
        except IsADirectoryError as exc:
            raise InvalidName(f"{name} is not a recording file") from exc
        except OSError as exc:
            raise RegistryIOError(f"unable to delete {name}: {exc.strerror or exc}") from exc
        log.info("Deleted recording %s", path)

    async def probe(self, name: object) -> RecordingFile:
        detail = await asyncio.to_thread(self.stat, name)
        path = self._root / detail.name
        cmd = [
            self._ffprobe_path,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ProbeError(f"{self._ffprobe_path} not available") from exc
        except OSError as exc:
            raise ProbeError(f"unable to run {self._ffprobe_path}: {exc}") from exc

        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(
                proc.communicate(), timeout=self._probe_timeout
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ProbeError(f"probe of {detail.name} timed out") from exc

        if proc.returncode != 0:
            message = stderr_raw.decode("utf-8", errors="replace").strip()
            raise ProbeError(message or f"probe of {detail.name} failed (rc={proc.returncode})")

        try:
            payload = json.loads(stdout_raw.decode("utf-8", errors="replace") or "{}")
        except json.JSONDecodeError as exc:
            raise ProbeError(f"unparsable probe output for {detail.name}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("format"), dict):
            raise ProbeError(f"probe returned no format information for {detail.name}")

        fmt = payload["format"]
        detail.duration = _float_or_none(fmt.get("duration"))
        detail.format = fmt.get("format_name")
        detail.format_long_name = fmt.get("format_long_name")
        detail.bit_rate = _int_or_none(fmt.get("bit_rate"))

        streams = payload.get("streams")
        if isinstance(streams, list):
            audio = next(
                (
                    stream
                    for stream in streams
                    if isinstance(stream, dict) and stream.get("codec_type") == "audio"
                ),
                None,
            )
            if audio is not None:
                detail.codec = audio.get("codec_name")
                detail.sample_rate = _int_or_none(audio.get("sample_rate"))
                detail.channels = _int_or_none(audio.get("channels"))
        log.debug("Probed %s: %s", detail.name, detail)
        return detail


__all__ = ["FileRegistry", "RecordingFile", "validate_name"]
