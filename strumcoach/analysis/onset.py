"""Onset detection using librosa."""

import numpy as np
import librosa

from strumcoach.analysis.models import Onset

MIN_THRESHOLD = 0.005
MAX_THRESHOLD = 0.4

# Frames after the onset frame searched for the attack's RMS peak
_SALIENCE_LOOKAHEAD = 2


def clamp_threshold(threshold: float) -> float:
    return float(min(max(threshold, MIN_THRESHOLD), MAX_THRESHOLD))


def detect_onsets(
    audio: np.ndarray,
    sr: int = 44100,
    threshold: float = 0.15,
    frame_size: int = 1024,
    hop: int = 512,
) -> list[Onset]:
    """Detect onsets in audio using librosa spectral flux.

    *threshold* is the peak-picking delta on the normalized onset envelope,
    clamped to [0.005, 0.4]. Salience is the peak frame RMS right after the
    onset, in full-scale units, so it reflects how loud the attack was
    rather than how sharp.
    """
    audio = np.asarray(audio, dtype=np.float32)
    if len(audio) < frame_size:
        return []

    onset_env = librosa.onset.onset_strength(y=audio, sr=sr, n_fft=frame_size, hop_length=hop)
    onset_frames = librosa.onset.onset_detect(
        onset_envelope=onset_env,
        sr=sr,
        hop_length=hop,
        delta=clamp_threshold(threshold),
        backtrack=False,
    )
    if len(onset_frames) == 0:
        return []

    frame_rms = librosa.feature.rms(y=audio, frame_length=frame_size, hop_length=hop)[0]
    onset_times = librosa.frames_to_time(onset_frames, sr=sr, hop_length=hop)

    onsets = []
    for frame, t in zip(onset_frames, onset_times):
        lo = min(int(frame), len(frame_rms) - 1)
        hi = min(lo + _SALIENCE_LOOKAHEAD + 1, len(frame_rms))
        salience = float(frame_rms[lo:hi].max())
        onsets.append(Onset(time_seconds=float(t), salience=salience))

    return onsets
