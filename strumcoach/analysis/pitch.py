"""Pitch estimation and frequency-to-note mapping."""

from __future__ import annotations

import math

import aubio
import numpy as np

from strumcoach.analysis.models import NoteMapping, PitchEstimate

NOTE_NAMES = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")

# aubio default; first CMNDF dip under this is taken as the period
_YIN_TOLERANCE = 0.15


def map_frequency(frequency_hz: float, reference_hz: float = 440.0) -> NoteMapping:
    """Map a frequency to the nearest equal-tempered note.

    ``n = 69 + 12 * log2(f / reference)``; the nearest MIDI number gives the
    note and octave, and the remainder gives cents. Cents are truncated
    toward zero so they stay in [-50, 49].
    """
    if frequency_hz <= 0 or reference_hz <= 0:
        raise ValueError(f"Frequencies must be positive, got {frequency_hz} / {reference_hz}")

    n = 69 + 12 * math.log2(frequency_hz / reference_hz)
    midi = math.floor(n + 0.5)
    cents = int((n - midi) * 100)
    octave = midi // 12 - 1
    note = NOTE_NAMES[((midi % 12) + 12) % 12]
    return NoteMapping(note=note, octave=octave, cents=cents)


class YinPitchEstimator:
    """Frame-wise YIN pitch tracking through aubio.

    Each analysis frame is handed to aubio whole (buffer and hop both equal
    the frame length), so estimates carry no history between frames. The
    returned probability is aubio's YIN confidence, ``1 - min(CMNDF)``:
    close to 1.0 for a clean periodic frame and low for noise or chords.

    Detectors are cached per (frame length, sample rate). Instances are not
    thread-safe; give each capture thread its own.
    """

    def __init__(self, tolerance: float = _YIN_TOLERANCE) -> None:
        self.tolerance = tolerance
        self._detectors: dict[tuple[int, int], aubio.pitch] = {}

    def _detector(self, n: int, sr: int) -> aubio.pitch:
        detector = self._detectors.get((n, sr))
        if detector is None:
            detector = aubio.pitch("yin", n, n, sr)
            detector.set_unit("Hz")
            detector.set_tolerance(self.tolerance)
            self._detectors[(n, sr)] = detector
        return detector

    def __call__(self, frame: np.ndarray, sr: int = 44100) -> PitchEstimate:
        frame = np.ascontiguousarray(np.asarray(frame).ravel(), dtype=aubio.float_type)
        if len(frame) == 0 or not np.any(frame):
            return PitchEstimate(frequency_hz=0.0, probability=0.0)

        detector = self._detector(len(frame), sr)
        frequency = float(detector(frame)[0])
        confidence = float(detector.get_confidence())
        return PitchEstimate(
            frequency_hz=max(frequency, 0.0),
            probability=min(max(confidence, 0.0), 1.0),
        )


def estimate_pitch(frame: np.ndarray, sr: int = 44100) -> PitchEstimate:
    """One-shot YIN estimate for a single frame; gating is the caller's job."""
    return YinPitchEstimator()(frame, sr)


class MedianWindow:
    """Rolling window over the last *size* values, read back as a median.

    The median is an observed value (upper middle for even counts), so an
    integer stream stays integer.
    """

    def __init__(self, size: int = 3) -> None:
        self.size = size
        self._values: list = []

    def push(self, value):
        """Add *value* and return the current median."""
        self._values.append(value)
        if len(self._values) > self.size:
            self._values.pop(0)
        return sorted(self._values)[len(self._values) // 2]

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)
