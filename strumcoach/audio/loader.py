"""Recording loader."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Union

import librosa
import numpy as np
import soundfile as sf


def _native_rate(source) -> int | None:
    try:
        return sf.info(source).samplerate
    except RuntimeError:  # LibsndfileError; format libsndfile can't open
        return None
    finally:
        if isinstance(source, BytesIO):
            source.seek(0)


def load_audio(
    source: Union[str, Path, BytesIO],
    sr: int = 44100,
) -> tuple[np.ndarray, int]:
    """Load a recording as mono float32 at *sr*.

    Takes already at *sr* (every capture-engine WAV) are read straight
    through soundfile. Other rates and formats are decoded and resampled
    by librosa.

    Returns
    -------
    tuple[np.ndarray, int]
        A tuple of (audio_array, sample_rate).
    """
    if isinstance(source, Path):
        source = str(source)

    if _native_rate(source) == sr:
        audio, _ = sf.read(source, dtype="float32", always_2d=True)
        return audio.mean(axis=1), sr

    audio, sample_rate = librosa.load(source, sr=sr, mono=True)
    return audio, sample_rate
