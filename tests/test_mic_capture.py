import pytest

try:
    import mic_capture
except (ImportError, OSError):  # PortAudio missing on CI hosts
    pytest.skip("sounddevice/PortAudio not available", allow_module_level=True)


class DevicePair:
    """Mimics sounddevice's default.device: indexable, not a tuple."""

    def __init__(self, inp, out):
        self._pair = [inp, out]

    def __getitem__(self, idx):
        return self._pair[idx]


class FakeSoundDevice:
    def __init__(self, default_in, devices):
        self.default = type("Default", (), {"device": DevicePair(default_in, 1)})()
        self._devices = devices

    def query_devices(self):
        return self._devices


DEVICES = [
    {"name": "BlackHole 2ch", "max_input_channels": 2},
    {"name": "Speakers", "max_input_channels": 0},
    {"name": "USB Microphone", "max_input_channels": 1},
    {"name": "Line In", "max_input_channels": 2},
]


def test_system_default_input_is_chosen(monkeypatch):
    monkeypatch.setattr(mic_capture, "sd", FakeSoundDevice(3, DEVICES))
    assert mic_capture.pick_default_mic() == 3


def test_named_microphone_when_no_default(monkeypatch):
    monkeypatch.setattr(mic_capture, "sd", FakeSoundDevice(-1, DEVICES))
    assert mic_capture.pick_default_mic() == 2


def test_no_inputs(monkeypatch):
    monkeypatch.setattr(mic_capture, "sd", FakeSoundDevice(0, [{"name": "Speakers", "max_input_channels": 0}]))
    assert mic_capture.pick_default_mic() is None


def test_input_listing(monkeypatch):
    monkeypatch.setattr(mic_capture, "sd", FakeSoundDevice(-1, DEVICES))
    assert [d["index"] for d in mic_capture.list_input_devices()] == [0, 2, 3]
