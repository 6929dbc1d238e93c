"""Overlapping frame assembly for live audio."""

from __future__ import annotations

import numpy as np

_DEFAULT_FRAME = 4096
_DEFAULT_HOP = 2048


class FrameWindow:
    """Turns a stream of chunks into fixed-size overlapping frames.

    Once the first full frame has been collected, a new frame is emitted
    every *hop* samples; consecutive frames share ``frame_size - hop``
    samples.

    Parameters
    ----------
    frame_size:
        Analysis frame length in samples. Defaults to 4096.
    hop:
        Advance between frames in samples. Defaults to 2048 (50% overlap).
    """

    def __init__(self, frame_size: int = _DEFAULT_FRAME, hop: int = _DEFAULT_HOP) -> None:
        if not 0 < hop <= frame_size:
            raise ValueError(f"hop must be in (0, frame_size], got {hop}")
        self.frame_size = frame_size
        self.hop = hop
        self._buffer = np.zeros(frame_size, dtype=np.float32)
        self._length = 0  # valid samples at the tail of the buffer
        self._pending = 0  # samples since the last emitted frame

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, chunk: np.ndarray) -> list[np.ndarray]:
        """Add a chunk; return every frame it completes (possibly none)."""
        chunk = np.asarray(chunk, dtype=np.float32).ravel()
        frames = []
        pos = 0
        while pos < len(chunk):
            if self._length < self.frame_size:
                need = self.frame_size - self._length
            else:
                need = self.hop - self._pending
            take = min(need, len(chunk) - pos)
            self._append(chunk[pos:pos + take])
            pos += take
            if self._length == self.frame_size and (
                self._pending == self.hop or self._pending == self.frame_size
            ):
                frames.append(self._buffer.copy())
                self._pending = 0
        return frames

    def _append(self, samples: np.ndarray) -> None:
        n = len(samples)
        if n == 0:
            return
        self._buffer = np.roll(self._buffer, -n)
        self._buffer[-n:] = samples
        self._length = min(self._length + n, self.frame_size)
        self._pending += n

    def clear(self) -> None:
        """Reset the window."""
        self._buffer[:] = 0
        self._length = 0
        self._pending = 0
