import subprocess

from xrrecorder import audio_devices


ARECORD_LISTING = """\
**** List of CAPTURE Hardware Devices ****
card 0: PCH [HDA Intel PCH], device 0: ALC3246 Analog [ALC3246 Analog]
  Subdevices: 1/1
  Subdevice #0: subdevice #0
card 1: XR18 [X18/XR18], device 0: USB Audio [USB Audio]
  Subdevices: 0/1
  Subdevice #0: subdevice #0
"""


def test_parse_listing():
    devices = audio_devices.parse_listing(ARECORD_LISTING)
    assert [device.to_dict() for device in devices] == [
        {"cardNum": 0, "deviceNum": 0, "hwName": "hw:0,0", "name": "PCH [HDA Intel PCH]: ALC3246 Analog"},
        {"cardNum": 1, "deviceNum": 0, "hwName": "hw:1,0", "name": "XR18 [X18/XR18]: USB Audio"},
    ]


def test_parse_listing_empty():
    assert audio_devices.parse_listing("") == []
    assert audio_devices.parse_listing("arecord: device_list:274: no soundcards found...") == []


def test_discover_uses_arecord(monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout=ARECORD_LISTING + ARECORD_LISTING, stderr="")

    monkeypatch.setattr(audio_devices.subprocess, "run", fake_run)

    devices = audio_devices.discover_capture_devices("/opt/bin/arecord")

    assert calls == [["/opt/bin/arecord", "-l"]]
    assert [device.hw_name for device in devices] == ["hw:0,0", "hw:1,0"]


def test_discover_without_arecord(monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(audio_devices.subprocess, "run", missing)

    assert audio_devices.discover_capture_devices() == []
