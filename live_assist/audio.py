"""Dual-stream (microphone + system loopback) WAV recorder built on sounddevice."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np

from .config import RecordingSettings
from .errors import CaptureError
from .models import AudioCapture, AudioProbe

logger = logging.getLogger(__name__)

MIC_FILE = "mic.wav"
SYSTEM_FILE = "system.wav"
INT16_FULL_SCALE = 32768.0

Device = Union[int, str, None]


def _load_backend():
    try:
        import sounddevice as sd
        import soundfile as sf
    except (ImportError, OSError) as exc:
        raise CaptureError(f"Missing audio dependency: {exc}") from exc
    return sd, sf


def parse_device(value: Optional[str]) -> Device:
    if value is None or not str(value).strip():
        return None
    text = str(value).strip()
    return int(text) if text.isdigit() else text


class _Track:
    """One input stream written straight to a 16-bit WAV file."""

    def __init__(self, label: str, path: Optional[Path], sample_rate: int) -> None:
        self.label = label
        self.path = path
        self.sample_rate = sample_rate
        self.peak = 0.0
        self._lock = threading.Lock()
        self._file = None
        self._stream = None

    def open(self, sd, sf, device: Device, extra_settings: Any = None, channels: int = 1) -> None:
        if self.path is not None:
            self._file = sf.SoundFile(
                str(self.path), mode="w", samplerate=self.sample_rate, channels=channels, subtype="PCM_16"
            )
        kwargs: Dict[str, Any] = {
            "samplerate": self.sample_rate,
            "channels": channels,
            "dtype": "int16",
            "callback": self._callback,
        }
        if device is not None:
            kwargs["device"] = device
        if extra_settings is not None:
            kwargs["extra_settings"] = extra_settings
        try:
            self._stream = sd.InputStream(**kwargs)
            self._stream.start()
        except Exception:
            self.close()
            raise

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("%s stream status: %s", self.label, status)
        block_peak = float(np.abs(indata.astype(np.int32)).max(initial=0)) / INT16_FULL_SCALE
        with self._lock:
            self.peak = max(self.peak, block_peak)
            if self._file is not None:
                self._file.write(indata)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
        with self._lock:
            sound_file, self._file = self._file, None
        if sound_file is not None:
            sound_file.close()


class SoundDeviceRecorder:
    """Records the microphone and the system output side by side.

    System audio uses WASAPI loopback where the installed sounddevice build
    supports it, otherwise the configured ``system_device`` (for example a
    monitor source). When neither can be opened an empty system track is
    written so callers always get two artifacts.
    """

    def __init__(self, settings: Optional[RecordingSettings] = None) -> None:
        self.settings = settings or RecordingSettings()
        self._mic: Optional[_Track] = None
        self._system: Optional[_Track] = None
        self._folder: Optional[Path] = None

    @property
    def recording(self) -> bool:
        return self._mic is not None

    def start(self, session_folder: Path) -> None:
        if self._mic is not None:
            raise CaptureError("Recorder is already running.")
        sd, sf = _load_backend()
        folder = Path(session_folder)
        folder.mkdir(parents=True, exist_ok=True)
        rate = self.settings.sample_rate

        mic = _Track("mic", folder / MIC_FILE, rate)
        try:
            mic.open(sd, sf, parse_device(self.settings.input_device))
        except Exception as exc:
            raise CaptureError(f"Cannot open microphone: {exc}") from exc

        system = _Track("system", folder / SYSTEM_FILE, rate)
        try:
            self._open_system(sd, sf, system)
        except Exception as exc:
            logger.warning("System audio capture unavailable (%s); recording microphone only.", exc)
            system.close()
            try:
                self._write_empty(sf, folder / SYSTEM_FILE, rate)
            except Exception as write_exc:
                mic.close()
                raise CaptureError(f"Cannot create system audio file: {write_exc}") from write_exc

        self._mic, self._system, self._folder = mic, system, folder
        logger.info("Audio recording to %s", folder)

    def stop(self) -> AudioCapture:
        if self._mic is None or self._folder is None:
            raise CaptureError("Recorder is not running.")
        mic, system, folder = self._mic, self._system, self._folder
        self._mic = self._system = self._folder = None
        try:
            mic.close()
            if system is not None:
                system.close()
        except Exception as exc:
            raise CaptureError(f"Stopping audio capture failed: {exc}") from exc
        logger.info("Audio recording stopped (mic peak %.3f)", mic.peak)
        return AudioCapture(mic_path=folder / MIC_FILE, system_path=folder / SYSTEM_FILE)

    def probe(self, duration: float) -> AudioProbe:
        """Listen for ``duration`` seconds and report peak levels in ``[0, 1]``."""

        sd, sf = _load_backend()
        mic = _Track("mic", None, self.settings.sample_rate)
        system = _Track("system", None, self.settings.sample_rate)
        try:
            mic.open(sd, sf, parse_device(self.settings.input_device))
        except Exception as exc:
            raise CaptureError(f"Cannot open microphone: {exc}") from exc
        try:
            try:
                self._open_system(sd, sf, system)
            except Exception as exc:
                logger.info("System audio probe unavailable: %s", exc)
            time.sleep(max(0.1, duration))
        finally:
            mic.close()
            system.close()
        return AudioProbe(mic_peak=mic.peak, system_peak=system.peak)

    def _open_system(self, sd, sf, track: _Track) -> None:
        device = parse_device(self.settings.system_device)
        loopback = None
        if device is None:
            try:
                loopback = sd.WasapiSettings(loopback=True)
            except (AttributeError, TypeError) as exc:
                raise CaptureError(f"no loopback support and no system_device configured ({exc})") from exc
            device = sd.default.device[1]
        track.open(sd, sf, device, loopback, channels=2 if loopback is not None else 1)

    @staticmethod
    def _write_empty(sf, path: Path, rate: int) -> None:
        with sf.SoundFile(str(path), mode="w", samplerate=rate, channels=1, subtype="PCM_16"):
            pass
