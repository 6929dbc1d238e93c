"""Crash-tolerant PCM WAV writer.

The 44-byte header is written as zeros when the file is opened and only
rewritten with real sizes on :meth:`WavWriter.close`. A process that dies
mid-recording leaves an unplayable but harmless file.
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path

import numpy as np

from strumcoach.audio.preprocessing import float_to_pcm16
from strumcoach.errors import WriteFailure

logger = logging.getLogger(__name__)

HEADER_SIZE = 44


def wav_header(data_size: int, sample_rate: int, channels: int = 1, bits_per_sample: int = 16) -> bytes:
    """Build a canonical little-endian RIFF/WAVE PCM header."""
    byte_rate = sample_rate * channels * bits_per_sample // 8
    block_align = channels * bits_per_sample // 8
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,  # PCM fmt chunk size
        1,  # PCM
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        data_size,
    )


class WavWriter:
    """Streams mono 16-bit samples to disk.

    Parameters
    ----------
    path:
        Target file; an existing file is replaced.
    sample_rate:
        Sample rate written to the header.
    """

    def __init__(self, path: str | Path, sample_rate: int = 44100) -> None:
        self.path = Path(path)
        self.sample_rate = sample_rate
        self.bytes_written = 0
        self.failed_writes = 0
        if self.path.exists():
            self.path.unlink()
        self._file = open(self.path, "w+b")
        self._file.write(bytes(HEADER_SIZE))

    @property
    def closed(self) -> bool:
        return self._file is None

    def write(self, samples: np.ndarray) -> None:
        """Append samples (int16, or float in [-1, 1]).

        Raises
        ------
        WriteFailure
            The chunk could not be written. The file stays open, so later
            chunks can still succeed.
        """
        if self._file is None:
            return
        samples = np.asarray(samples)
        if samples.dtype != np.int16:
            samples = float_to_pcm16(samples)
        data = samples.astype("<i2").tobytes()
        try:
            self._file.write(data)
            self.bytes_written += len(data)
        except OSError as e:
            self.failed_writes += 1
            raise WriteFailure(f"{self.path.name}: {e}") from e

    def close(self) -> None:
        """Rewrite the header with real sizes and close. Idempotent."""
        if self._file is None:
            return
        f, self._file = self._file, None
        try:
            f.seek(0)
            f.write(wav_header(self.bytes_written, self.sample_rate))
        except OSError as e:
            logger.error(f"Could not finalize WAV header for {self.path}: {e}")
        finally:
            f.close()
        logger.info(f"Recording closed: {self.path.name}, {self.bytes_written} data bytes")

    def __enter__(self) -> "WavWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
