"""Audio preprocessing utilities."""

from __future__ import annotations

import math

import numpy as np
from scipy.signal import butter, sosfilt, sosfilt_zi


def pcm16_to_float(samples: np.ndarray) -> np.ndarray:
    """Convert int16 PCM to float32 in [-1, 1)."""
    return np.asarray(samples, dtype=np.float32).ravel() / 32768.0


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1, 1] to int16, clipping overs."""
    return np.clip(np.asarray(samples) * 32767.0, -32768, 32767).astype(np.int16)


def rms(samples: np.ndarray) -> float:
    """Root-mean-square level of a float buffer (0.0 for an empty one)."""
    if len(samples) == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def high_pass_filter(
    audio: np.ndarray,
    sr: int,
    cutoff: float = 30.0,
) -> np.ndarray:
    """Apply a Butterworth high-pass filter to a whole signal.

    Parameters
    ----------
    audio:
        Input audio signal.
    sr:
        Sample rate in Hz.
    cutoff:
        High-pass cutoff frequency in Hz. Defaults to 30 Hz.
    """
    sos = butter(N=4, Wn=cutoff, btype="high", fs=sr, output="sos")
    return sosfilt(sos, audio)


class StreamingHighPass:
    """Butterworth high-pass that keeps filter state across chunks.

    Feeding a signal chunk by chunk gives the same output as filtering it
    in one go.
    """

    def __init__(self, sr: int, cutoff: float = 30.0, order: int = 2) -> None:
        self._sos = butter(N=order, Wn=cutoff, btype="high", fs=sr, output="sos")
        self._zi = np.zeros((self._sos.shape[0], 2))
        self._primed = False

    def process(self, chunk: np.ndarray) -> np.ndarray:
        chunk = np.asarray(chunk, dtype=np.float64)
        if len(chunk) == 0:
            return chunk.astype(np.float32)
        if not self._primed:
            # Start from steady state for the first sample to avoid a step transient
            self._zi = sosfilt_zi(self._sos) * chunk[0]
            self._primed = True
        out, self._zi = sosfilt(self._sos, chunk, zi=self._zi)
        return out.astype(np.float32)

    def reset(self) -> None:
        self._zi = np.zeros((self._sos.shape[0], 2))
        self._primed = False


class NoiseGate:
    """Envelope-following gate that fades out signal below *threshold*.

    The envelope rises with a fast attack and falls with a slower release.
    While it is above *threshold* samples pass untouched; below it they
    are scaled by ``envelope / threshold``, so the gate closes smoothly
    instead of clicking. Envelope state carries across chunks.
    """

    def __init__(
        self,
        sr: int,
        threshold: float,
        attack_seconds: float = 0.001,
        release_seconds: float = 0.05,
    ) -> None:
        self.threshold = threshold
        self._attack = 1.0 - math.exp(-1.0 / (sr * attack_seconds))
        self._release = 1.0 - math.exp(-1.0 / (sr * release_seconds))
        self._envelope = 0.0

    def process(self, chunk: np.ndarray) -> np.ndarray:
        chunk = np.asarray(chunk, dtype=np.float32)
        gains = np.empty(len(chunk), dtype=np.float32)
        envelope = self._envelope
        threshold = self.threshold
        for i, level in enumerate(np.abs(chunk).tolist()):
            coeff = self._attack if level > envelope else self._release
            envelope += coeff * (level - envelope)
            gains[i] = 1.0 if envelope > threshold else min(envelope / threshold, 1.0)
        self._envelope = envelope
        return chunk * gains

    def reset(self) -> None:
        self._envelope = 0.0
