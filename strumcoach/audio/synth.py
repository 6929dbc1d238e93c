"""Synthetic waveforms: reference tones, calibration and metronome clicks.

The generators are pure functions of (frequency, duration, sample rate)
returning int16 buffers. Playback lives in :class:`TonePlayer`, which also
owns the :class:`PlaybackState` handle the capture engine consults to avoid
detecting its own reference tone.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

import numpy as np

from strumcoach.state import Observable

logger = logging.getLogger(__name__)

_DEFAULT_SR = 44100
_INT16_MAX = 32767

# (harmonic number, relative amplitude)
GUITAR_HARMONICS = (
    (1.0, 1.0),
    (2.0, 0.5),
    (3.0, 0.33),
    (4.0, 0.25),
    (5.0, 0.2),
    (6.0, 0.16),
)


def _to_int16(signal: np.ndarray) -> np.ndarray:
    return np.clip(np.round(signal), -_INT16_MAX - 1, _INT16_MAX).astype(np.int16)


def _n_samples(duration_ms: float, sr: int) -> int:
    return int(sr * duration_ms / 1000)


def plucked_tone(
    frequency: float,
    duration_ms: int = 1200,
    sr: int = _DEFAULT_SR,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Multi-harmonic plucked-string tone with an ADSR-style envelope.

    Parameters
    ----------
    frequency:
        Fundamental in Hz.
    duration_ms:
        Total length. The final 300 ms are the release stage.
    sr:
        Sample rate in Hz.
    rng:
        Source for the pluck-noise transient. Pass a seeded generator for
        reproducible output.
    """
    rng = rng if rng is not None else np.random.default_rng()
    n = _n_samples(duration_ms, sr)
    if n == 0:
        return np.zeros(0, dtype=np.int16)

    i = np.arange(n)
    t = i / sr

    signal = np.zeros(n, dtype=np.float64)
    for harmonic, amplitude in GUITAR_HARMONICS:
        signal += amplitude * np.exp(-harmonic * 0.5 * t) * np.sin(2 * np.pi * frequency * harmonic * t)

    attack = int(sr * 0.005)
    decay = int(sr * 0.1)
    sustain_level = 0.7
    release_start = max(n - int(sr * 0.3), 0)

    noise_len = min(attack * 3, n)
    signal[:noise_len] += (rng.random(noise_len) - 0.5) * 0.15 * np.exp(-10.0 * t[:noise_len])

    envelope = sustain_level * np.exp(-1.5 * (i - attack - decay) / n)
    if attack > 0:
        a = i < attack
        envelope[a] = i[a] / attack
    d = (i >= attack) & (i < attack + decay)
    envelope[d] = 1.0 - (1.0 - sustain_level) * (i[d] - attack) / decay
    r = (i > release_start) & (i >= attack + decay)
    if n > release_start:
        envelope[r] = sustain_level * (1.0 - (i[r] - release_start) / (n - release_start)) ** 2

    return _to_int16(signal / 2.5 * envelope * _INT16_MAX * 0.8)


def calibration_click(frequency: float = 1000.0, duration_ms: int = 80, sr: int = _DEFAULT_SR) -> np.ndarray:
    """Pure sine with a linear fade over the first and last tenth."""
    n = _n_samples(duration_ms, sr)
    i = np.arange(n)
    fade = max(n // 10, 1)
    envelope = np.ones(n)
    envelope[:fade] = i[:fade] / fade
    tail = i > n * 9 // 10
    envelope[tail] = (n - i[tail]) / fade
    signal = np.sin(2 * np.pi * frequency * i / sr) * envelope
    return _to_int16(signal * _INT16_MAX * 0.9)


def metronome_click(frequency: float, duration_ms: int = 50, sr: int = _DEFAULT_SR) -> np.ndarray:
    """Sine burst with a linear decay to zero."""
    n = _n_samples(duration_ms, sr)
    i = np.arange(n)
    envelope = 1.0 - i / max(n, 1)
    signal = np.sin(2 * np.pi * frequency * i / sr) * envelope
    return _to_int16(signal * _INT16_MAX * 0.8)


def silence(n_samples: int) -> np.ndarray:
    return np.zeros(max(n_samples, 0), dtype=np.int16)


class PlaybackState:
    """Handle telling consumers whether a synthesized tone is sounding."""

    def __init__(self) -> None:
        self.playing = Observable(False)

    @property
    def is_playing(self) -> bool:
        return self.playing.value


def _sounddevice_sink(samples: np.ndarray, sr: int) -> None:
    import sounddevice as sd

    sd.play(samples, samplerate=sr, blocking=True)


def _sounddevice_stop() -> None:
    import sounddevice as sd

    sd.stop()


class TonePlayer:
    """Plays synthesized tones on worker threads.

    A new reference tone cuts off whatever is sounding. The playback flag
    stays set until the last reference tone has finished, so overlapping
    plays never clear it early.

    Parameters
    ----------
    sink:
        ``sink(samples, sr)`` that blocks until the buffer has played.
        Defaults to sounddevice.
    state:
        Shared playback handle; a fresh one is created when omitted.
    stopper:
        ``stopper()`` that makes a blocked ``sink`` return early. Defaults
        to ``sounddevice.stop`` with the default sink and to nothing with a
        custom one.
    """

    def __init__(
        self,
        sink: Callable[[np.ndarray, int], None] | None = None,
        state: PlaybackState | None = None,
        sr: int = _DEFAULT_SR,
        stopper: Callable[[], None] | None = None,
    ) -> None:
        self._sink = sink or _sounddevice_sink
        if stopper is None and sink is None:
            stopper = _sounddevice_stop
        self._stopper = stopper
        self.state = state or PlaybackState()
        self.sr = sr
        self._lock = threading.RLock()
        self._sounding = 0
        self._tones = 0

    def play_reference(self, frequency: float, duration_ms: int = 1200) -> threading.Thread:
        """Play a plucked reference tone; pitch detection is muted meanwhile."""
        samples = plucked_tone(frequency, duration_ms, self.sr)
        self.stop()
        return self._play(samples, mark_playing=True)

    def play_click(self, frequency: float = 1000.0, duration_ms: int = 80) -> threading.Thread:
        return self._play(calibration_click(frequency, duration_ms, self.sr), mark_playing=False)

    def stop(self) -> None:
        """Cut off anything currently playing. No-op when silent."""
        with self._lock:
            if self._sounding == 0:
                return
        if self._stopper is not None:
            try:
                self._stopper()
            except Exception as e:
                logger.warning(f"Stopping playback failed: {e}")

    def _play(self, samples: np.ndarray, mark_playing: bool) -> threading.Thread:
        with self._lock:
            self._sounding += 1
            if mark_playing:
                self._tones += 1
                if self._tones == 1:
                    self.state.playing.set(True)
            thread = threading.Thread(
                target=self._run, args=(samples, mark_playing), name="tone-player", daemon=True,
            )
            thread.start()
            return thread

    def _run(self, samples: np.ndarray, mark_playing: bool) -> None:
        try:
            self._sink(samples, self.sr)
        except Exception as e:
            logger.warning(f"Tone playback failed: {e}")
        finally:
            with self._lock:
                self._sounding -= 1
                if mark_playing:
                    self._tones -= 1
                    if self._tones == 0:
                        self.state.playing.set(False)
