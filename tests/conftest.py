"""Shared test fixtures and hardware fakes."""

import threading
import time

import numpy as np
import pytest
import soundfile as sf

from strumcoach.analysis.models import PitchEstimate
from strumcoach.config import Settings


def generate_click_track(
    bpm: float,
    beats_per_bar: int = 4,
    duration_seconds: float = 8.0,
    sr: int = 44100,
    accent_ratio: float = 2.0,
    offset_seconds: float = 0.0,
) -> np.ndarray:
    """Generate a synthetic click track with accented downbeats.

    Returns mono float audio peaking at 0.8.
    """
    n_samples = int(duration_seconds * sr)
    audio = np.zeros(n_samples, dtype=np.float32)

    beat_interval = 60.0 / bpm
    click_samples = int(0.02 * sr)

    t_click = np.arange(click_samples) / sr
    click = np.sin(2 * np.pi * 1000 * t_click) * np.exp(-t_click * 100)

    beat = 0
    t = offset_seconds
    while t < duration_seconds:
        sample_pos = int(t * sr)
        amplitude = accent_ratio if beat % beats_per_bar == 0 else 1.0
        end = min(sample_pos + click_samples, n_samples)
        if end > sample_pos:
            audio[sample_pos:end] += click[:end - sample_pos] * amplitude
        t += beat_interval
        beat += 1

    peak = np.max(np.abs(audio))
    if peak > 0:
        audio = audio / peak * 0.8
    return audio


def sine(frequency: float, n_samples: int = 4096, sr: int = 44100, amplitude: float = 0.5) -> np.ndarray:
    t = np.arange(n_samples) / sr
    return (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)


def write_wav(path, audio: np.ndarray, sr: int = 44100):
    sf.write(str(path), audio, sr, subtype="PCM_16")
    return path


class FakeInputStream:
    """Stands in for a sounddevice.InputStream; loops *signal* (int16).

    With *fail_after* set, reads after that many succeed raise OSError.
    """

    def __init__(self, signal: np.ndarray | None = None, delay: float = 0.002, fail_after: int | None = None):
        self.signal = signal
        self.delay = delay
        self.fail_after = fail_after
        self.pos = 0
        self.reads = 0
        self.stopped = False
        self.closed = False

    def read(self, n):
        time.sleep(self.delay)
        if self.fail_after is not None and self.reads >= self.fail_after:
            raise OSError("device unplugged")
        self.reads += 1
        if self.signal is None or len(self.signal) == 0:
            data = np.zeros(n, dtype=np.int16)
        else:
            idx = (self.pos + np.arange(n)) % len(self.signal)
            data = self.signal[idx]
            self.pos = (self.pos + n) % len(self.signal)
        return data.reshape(-1, 1), False

    def stop(self):
        self.stopped = True

    def close(self):
        self.closed = True


class FakeOutputStream:
    """Stands in for a sounddevice.OutputStream; writes block for their duration."""

    def __init__(self, sr: int = 44100):
        self.sr = sr
        self.samples_written = 0
        self.aborted = False
        self.closed = False
        self._abort = threading.Event()

    def write(self, samples):
        if self._abort.is_set():
            raise RuntimeError("stream aborted")
        self.samples_written += len(samples)
        self._abort.wait(len(samples) / self.sr)

    def abort(self):
        self.aborted = True
        self._abort.set()

    def close(self):
        self.closed = True


class FakeEstimator:
    """Pitch estimator returning a fixed estimate and counting calls."""

    def __init__(self, frequency_hz: float = 110.0, probability: float = 0.95):
        self.estimate = PitchEstimate(frequency_hz, probability)
        self.calls = 0

    def __call__(self, frame, sr):
        self.calls += 1
        return self.estimate


class StreamFactory:
    """Records requested devices; raises for those listed in *fail*."""

    def __init__(self, make_stream, fail=()):
        self.make_stream = make_stream
        self.fail = set(fail)
        self.devices = []
        self.streams = []

    def __call__(self, settings, device):
        from strumcoach.errors import DeviceUnavailable

        self.devices.append(device)
        if device in self.fail or "*" in self.fail:
            raise DeviceUnavailable(f"no device {device!r}")
        stream = self.make_stream()
        self.streams.append(stream)
        return stream


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def click_120(tmp_path):
    """Six seconds of 4/4 clicks at 120 BPM written to a WAV file."""
    audio = generate_click_track(bpm=120, beats_per_bar=4, duration_seconds=6)
    return write_wav(tmp_path / "click_120.wav", audio)
