"""Shared helpers for building arecord command lines and reading its stderr."""

from __future__ import annotations

import codecs
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Sequence

SAMPLE_FORMATS: dict[int, str] = {
    16: "S16_LE",
    24: "S24_3LE",
    32: "S32_LE",
}

MAX_STDERR_TAIL = 512


@dataclass(frozen=True)
class CaptureConfig:
    channels: int
    bit_depth: int
    sample_rate: int
    buffer_size: int
    device: str

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def capture_args(
    config: CaptureConfig,
    output_path: str | Path,
    *,
    arecord_path: str = "arecord",
) -> list[str]:
    """Return the argv used to record ``config`` into a WAV file.

    ``-vv`` makes arecord print a ``Max peak`` meter line per period on
    stderr; the supervisor exposes the latest one as the live status line.
    """

    return [
        arecord_path,
        "-D",
        config.device,
        "-c",
        str(config.channels),
        "-f",
        SAMPLE_FORMATS[config.bit_depth],
        "-r",
        str(config.sample_rate),
        "--buffer-size",
        str(config.buffer_size),
        "-t",
        "wav",
        "-vv",
        str(output_path),
    ]


def split_stderr_lines(
    chunk: bytes,
    state: dict[str, Any],
    *,
    max_tail: int = MAX_STDERR_TAIL,
    final: bool = False,
) -> list[str]:
    """Split a stderr chunk into complete lines.

    arecord terminates meter updates with ``\\r`` and everything else with
    ``\\n``; both end a line. An unterminated tail is kept in
    ``state["buffer"]`` until the next chunk arrives, and is emitted as a
    line of its own once it grows past ``max_tail`` characters. UTF-8
    sequences split across chunks are reassembled by the decoder kept in
    ``state["decoder"]``. Pass ``final=True`` at EOF to flush the tail.
    """

    decoder = state.get("decoder")
    if decoder is None:
        decoder = state["decoder"] = codecs.getincrementaldecoder("utf-8")(errors="replace")
    text = state.get("buffer", "") + decoder.decode(chunk, final=final)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    pieces = text.split("\n")
    tail = pieces.pop()
    if final or len(tail) > max_tail:
        pieces.append(tail[:max_tail])
        tail = ""
    state["buffer"] = tail
    return [piece.strip() for piece in pieces if piece.strip()]


def is_status_line(line: str, markers: Sequence[str]) -> bool:
    return any(line.startswith(marker) for marker in markers if marker)


__all__ = [
    "CaptureConfig",
    "MAX_STDERR_TAIL",
    "SAMPLE_FORMATS",
    "capture_args",
    "is_status_line",
    "split_stderr_lines",
]
