"""Enumerate ALSA capture devices for the listDevices command."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Iterable, List


_DEVICE_LINE = re.compile(
    r"card\s+(?P<card_index>\d+):\s*"
    r"(?P<card_name>[^\[]+)\[(?P<card_id>[^\]]+)\],\s*"
    r"device\s+(?P<device_index>\d+):\s*"
    r"(?P<device_name>[^\[]+)\[(?P<device_id>[^\]]+)\]",
    re.IGNORECASE,
)

log = logging.getLogger("audio_devices")


@dataclass(frozen=True)
class CaptureDevice:
    card_index: int
    device_index: int
    card_id: str
    card_name: str
    device_name: str

    @property
    def hw_name(self) -> str:
        return f"hw:{self.card_index},{self.device_index}"

    @property
    def label(self) -> str:
        return f"{self.card_name} [{self.card_id}]: {self.device_name}"

    def to_dict(self) -> dict[str, object]:
        return {
            "cardNum": self.card_index,
            "deviceNum": self.device_index,
            "hwName": self.hw_name,
            "name": self.label,
        }


def _run_listing(command: Iterable[str]) -> str:
    try:
        result = subprocess.run(
            list(command),
            check=False,
            capture_output=True,
            text=True,
            timeout=2.0,
        )
    except FileNotFoundError:
        log.warning("%s not available; no capture devices listed", list(command)[0])
        return ""
    except subprocess.SubprocessError as exc:
        log.warning("device listing failed: %s", exc)
        return ""

    output = (result.stdout or "").strip()
    if not output:
        output = (result.stderr or "").strip()
    return output


def parse_listing(output: str) -> List[CaptureDevice]:
    devices: List[CaptureDevice] = []
    if not output:
        return devices

    for line in output.splitlines():
        match = _DEVICE_LINE.search(line)
        if not match:
            continue
        try:
            card_index = int(match.group("card_index"))
            device_index = int(match.group("device_index"))
        except (TypeError, ValueError):
            continue
        card_id = match.group("card_id").strip()
        card_name = match.group("card_name").strip() or card_id
        device_name = match.group("device_name").strip() or match.group("device_id").strip()
        devices.append(
            CaptureDevice(
                card_index=card_index,
                device_index=device_index,
                card_id=card_id,
                card_name=card_name,
                device_name=device_name,
            )
        )
    return devices


def discover_capture_devices(arecord_path: str = "arecord") -> List[CaptureDevice]:
    """Return ALSA capture devices parsed from `arecord -l`."""

    seen: set[str] = set()
    discovered: List[CaptureDevice] = []
    for device in parse_listing(_run_listing([arecord_path, "-l"])):
        if device.hw_name in seen:
            continue
        seen.add(device.hw_name)
        discovered.append(device)
    discovered.sort(key=lambda d: (d.card_index, d.device_index))
    return discovered


__all__ = ["CaptureDevice", "discover_capture_devices", "parse_listing"]
