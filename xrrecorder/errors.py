"""Error taxonomy shared by the recorder components.

Every error carries a ``code`` that is sent to clients verbatim in the
``error`` field of an error response.
"""

from __future__ import annotations


class RecorderError(Exception):
    """Base class for recoverable errors reported back to a client."""

    code = "RecorderError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> dict[str, object]:
        return {"type": "error", "error": self.code, "message": self.message}


class ProtocolError(RecorderError):
    """Raised for malformed or unrecognized inbound messages."""

    code = "ProtocolError"


class ValidationError(RecorderError):
    """Raised when a command carries invalid parameters."""

    code = "ValidationError"


class StateError(RecorderError):
    code = "StateError"


class AlreadyRecording(StateError):
    code = "AlreadyRecording"


class NotRecording(StateError):
    code = "NotRecording"


class RegistryIOError(RecorderError):
    """Raised when the recordings directory cannot be read or modified."""

    code = "IOError"


class ProcessError(RecorderError):
    """Raised when the capture process cannot be launched."""

    code = "ProcessError"


class ProbeError(RecorderError):
    code = "ProbeError"


class InvalidName(RecorderError):
    """Raised for file names that could escape the recordings directory."""

    code = "InvalidName"


class NotFound(RecorderError):
    code = "NotFound"


class PermissionDenied(RecorderError):
    code = "PermissionDenied"


class HostControlError(RecorderError):
    code = "HostControlError"


__all__ = [
    "AlreadyRecording",
    "HostControlError",
    "InvalidName",
    "NotFound",
    "NotRecording",
    "PermissionDenied",
    "ProbeError",
    "ProcessError",
    "ProtocolError",
    "RecorderError",
    "RegistryIOError",
    "StateError",
    "ValidationError",
]
