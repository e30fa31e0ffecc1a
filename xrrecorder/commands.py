"""Typed commands carried over the control WebSocket.

Every inbound frame must be a JSON object ``{"type": <command>, ...}``.
Anything else is a ProtocolError; a known command with bad fields is a
ValidationError.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Union

from .arecord_io import SAMPLE_FORMATS, CaptureConfig
from .config import DEFAULT_SAMPLE_RATES
from .errors import ProtocolError, ValidationError

MAX_MESSAGE_CHARS = 64 * 1024


@dataclass(frozen=True)
class StartRecording:
    type: ClassVar[str] = "startRecording"
    mutating: ClassVar[bool] = True
    capture: CaptureConfig


@dataclass(frozen=True)
class StopRecording:
    type: ClassVar[str] = "stopRecording"
    mutating: ClassVar[bool] = True


@dataclass(frozen=True)
class GetStatus:
    type: ClassVar[str] = "getStatus"
    mutating: ClassVar[bool] = False


@dataclass(frozen=True)
class ListFiles:
    type: ClassVar[str] = "listFiles"
    mutating: ClassVar[bool] = False


@dataclass(frozen=True)
class DeleteFile:
    type: ClassVar[str] = "deleteFile"
    mutating: ClassVar[bool] = True
    name: str


@dataclass(frozen=True)
class ProbeFile:
    type: ClassVar[str] = "probeFile"
    mutating: ClassVar[bool] = False
    name: str


@dataclass(frozen=True)
class ListDevices:
    type: ClassVar[str] = "listDevices"
    mutating: ClassVar[bool] = False


@dataclass(frozen=True)
class ShutdownHost:
    type: ClassVar[str] = "shutdownHost"
    mutating: ClassVar[bool] = True


@dataclass(frozen=True)
class RebootHost:
    type: ClassVar[str] = "rebootHost"
    mutating: ClassVar[bool] = True


Command = Union[
    StartRecording,
    StopRecording,
    GetStatus,
    ListFiles,
    DeleteFile,
    ProbeFile,
    ListDevices,
    ShutdownHost,
    RebootHost,
]

_SIMPLE_COMMANDS: dict[str, Any] = {
    cls.type: cls
    for cls in (StopRecording, GetStatus, ListFiles, ListDevices, ShutdownHost, RebootHost)
}
COMMAND_TYPES: frozenset[str] = frozenset(
    [*_SIMPLE_COMMANDS, StartRecording.type, DeleteFile.type, ProbeFile.type]
)


@dataclass(frozen=True)
class CaptureLimits:
    """Defaults and bounds applied to startRecording parameters."""

    defaults: CaptureConfig
    max_channels: int = 32
    allowed_sample_rates: frozenset[int] = field(
        default_factory=lambda: frozenset(DEFAULT_SAMPLE_RATES)
    )

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "CaptureLimits":
        section = cfg.get("recording", {}) if isinstance(cfg, Mapping) else {}
        rates = section.get("allowed_sample_rates") or DEFAULT_SAMPLE_RATES
        return cls(
            defaults=CaptureConfig(
                channels=int(section.get("channels", 2)),
                bit_depth=int(section.get("bit_depth", 16)),
                sample_rate=int(section.get("sample_rate", 44100)),
                buffer_size=int(section.get("buffer_size", 262144)),
                device=str(section.get("device", "hw:0,0")),
            ),
            max_channels=int(section.get("max_channels", 32)),
            allowed_sample_rates=frozenset(int(rate) for rate in rates),
        )


def parse_envelope(raw: str | bytes) -> dict[str, Any]:
    """Decode a raw frame into a ``{"type": ...}`` mapping."""

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("message is not valid UTF-8") from exc
    if not isinstance(raw, str):
        raise ProtocolError("message must be a JSON text frame")
    if len(raw) > MAX_MESSAGE_CHARS:
        raise ProtocolError("message too large")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("message must be a JSON object")
    msg_type = payload.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("message is missing a string 'type'")
    if msg_type not in COMMAND_TYPES:
        raise ProtocolError(f"unknown command type: {msg_type}")
    return payload


def _coerce_int(
    value: Any,
    field_name: str,
    errors: list[str],
    *,
    min_value: int | None = None,
    max_value: int | None = None,
    allowed: frozenset[int] | set[int] | None = None,
) -> int | None:
    if isinstance(value, bool):
        errors.append(f"{field_name} must be a number")
        return None
    candidate: int | None = None
    if isinstance(value, int):
        candidate = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            errors.append(f"{field_name} must be an integer")
            return None
        candidate = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            errors.append(f"{field_name} is required")
            return None
        try:
            candidate = int(text, 10)
        except ValueError:
            errors.append(f"{field_name} must be an integer")
            return None
    else:
        errors.append(f"{field_name} must be an integer")
        return None

    if allowed is not None and candidate not in allowed:
        allowed_values = ", ".join(str(item) for item in sorted(allowed))
        errors.append(f"{field_name} must be one of: {allowed_values}")
        return None

    if min_value is not None and candidate < min_value:
        errors.append(f"{field_name} must be at least {min_value}")
        return None

    if max_value is not None and candidate > max_value:
        errors.append(f"{field_name} must be at most {max_value}")
        return None

    return candidate


def _capture_from_payload(payload: Mapping[str, Any], limits: CaptureLimits) -> CaptureConfig:
    defaults = limits.defaults
    errors: list[str] = []

    def pick(key: str, default: Any) -> Any:
        value = payload.get(key)
        return default if value is None else value

    channels = _coerce_int(
        pick("channels", defaults.channels),
        "channels",
        errors,
        min_value=1,
        max_value=limits.max_channels,
    )
    bit_depth = _coerce_int(
        pick("bitrate", defaults.bit_depth),
        "bitrate",
        errors,
        allowed=frozenset(SAMPLE_FORMATS),
    )
    sample_rate = _coerce_int(
        pick("sampleRate", defaults.sample_rate),
        "sampleRate",
        errors,
        allowed=limits.allowed_sample_rates,
    )
    buffer_size = _coerce_int(
        pick("bufferSize", defaults.buffer_size),
        "bufferSize",
        errors,
        min_value=1,
    )
    device = pick("device", defaults.device)
    if not isinstance(device, str) or not device.strip():
        errors.append("device must be a non-empty string")
    elif any(ch.isspace() for ch in device.strip()):
        errors.append("device must not contain whitespace")
    elif not device.isprintable():
        errors.append("device must not contain control characters")

    if errors:
        raise ValidationError("; ".join(errors))
    assert channels is not None and bit_depth is not None
    assert sample_rate is not None and buffer_size is not None
    return CaptureConfig(
        channels=channels,
        bit_depth=bit_depth,
        sample_rate=sample_rate,
        buffer_size=buffer_size,
        device=device.strip(),
    )


def _file_name_from_payload(payload: Mapping[str, Any]) -> str:
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name must be a non-empty string")
    return name


def build_command(payload: Mapping[str, Any], limits: CaptureLimits) -> Command:
    msg_type = payload.get("type")
    if msg_type == StartRecording.type:
        return StartRecording(capture=_capture_from_payload(payload, limits))
    if msg_type == DeleteFile.type:
        return DeleteFile(name=_file_name_from_payload(payload))
    if msg_type == ProbeFile.type:
        return ProbeFile(name=_file_name_from_payload(payload))
    factory = _SIMPLE_COMMANDS.get(msg_type)  # type: ignore[arg-type]
    if factory is None:
        raise ProtocolError(f"unknown command type: {msg_type}")
    return factory()


def decode_command(raw: str | bytes, limits: CaptureLimits) -> Command:
    return build_command(parse_envelope(raw), limits)


__all__ = [
    "COMMAND_TYPES",
    "CaptureLimits",
    "Command",
    "DeleteFile",
    "GetStatus",
    "ListDevices",
    "ListFiles",
    "ProbeFile",
    "RebootHost",
    "ShutdownHost",
    "StartRecording",
    "StopRecording",
    "build_command",
    "decode_command",
    "parse_envelope",
]
