from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

import numpy as np
import sounddevice as sd

from stt_core import SAMPLE_RATE

CAPTURE_LOG = logging.getLogger("invoice_agent.capture")

FRAME_MS = 100
FRAME_SAMPLES = SAMPLE_RATE * FRAME_MS // 1000


# ---------------------------------------------------------------------------
# Device helpers


def list_input_devices() -> List[Dict[str, object]]:
    devices: List[Dict[str, object]] = []
    for i, dev in enumerate(sd.query_devices()):
        if dev["max_input_channels"] > 0:
            devices.append({"index": i, "name": dev["name"], "channels": dev["max_input_channels"]})
    return devices


def pick_default_mic() -> Optional[int]:
    devs = list_input_devices()
    if not devs:
        return None
    try:
        default_in = sd.default.device[0]
    except (TypeError, IndexError):
        default_in = None
    if default_in is not None and int(default_in) >= 0:
        return int(default_in)
    for device in devs:
        name_low = str(device.get("name", "")).lower()
        if any(bad in name_low for bad in ("blackhole", "loopback", "soundflower")):
            continue
        if "microphone" in name_low:
            return int(device["index"])
    return int(devs[0]["index"])


class MicrophoneCapture:
    """Mono 16 kHz input stream that hands frames to the event loop.

    The PortAudio callback only copies the frame and schedules `on_frame`
    on `loop`; all buffering happens on the loop thread.
    """

    def __init__(
        self,
        on_frame: Callable[[np.ndarray], None],
        *,
        loop: asyncio.AbstractEventLoop,
        device_idx: Optional[int] = None,
        sample_rate: int = SAMPLE_RATE,
    ):
        self.on_frame = on_frame
        self.loop = loop
        self.device_idx = device_idx
        self.sample_rate = sample_rate
        self._stream: Optional[sd.InputStream] = None

    @property
    def active(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None:
            return
        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            blocksize=FRAME_SAMPLES,
            latency="low",
            device=self.device_idx,
            callback=self._callback,
        )
        self._stream.start()
        CAPTURE_LOG.info("microphone capture started (device=%s)", self.device_idx)

    def stop(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
        finally:
            self._stream.close()
            self._stream = None
        CAPTURE_LOG.info("microphone capture stopped")

    def _callback(self, indata, _frames, _time_info, status) -> None:
        if status:
            CAPTURE_LOG.debug("input status: %s", status)
        frame = indata[:, 0].astype(np.float32).copy()
        try:
            self.loop.call_soon_threadsafe(self.on_frame, frame)
        except RuntimeError:
            # loop already closed during shutdown
            raise sd.CallbackStop()


__all__ = ["FRAME_MS", "FRAME_SAMPLES", "MicrophoneCapture", "list_input_devices", "pick_default_mic"]
