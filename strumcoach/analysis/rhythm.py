"""Post-session rhythm scoring.

Pipeline: detect onsets -> latency correction -> salience gating ->
metronome-click separation -> duplicate clustering -> grid classification.
Each step is a plain function so it can be exercised on synthetic onsets.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path

import numpy as np

from strumcoach.analysis.models import AnalysisResult, NoteType, Onset, RhythmHit
from strumcoach.analysis.onset import detect_onsets
from strumcoach.audio.loader import load_audio
from strumcoach.audio.preprocessing import high_pass_filter
from strumcoach.config import Settings, settings as default_settings
from strumcoach.errors import DegenerateRecording

logger = logging.getLogger(__name__)

# Classification windows
PERFECT_MS = 35.0
GOOD_MARGIN_SCALE_MS = 80.0
GHOST_SIXTEENTH_FRACTION = 0.9

# Clustering: fraction of a sixteenth note, clamped
CLUSTER_SIXTEENTH_FRACTION = 0.8
CLUSTER_MIN_SECONDS = 0.050
CLUSTER_MAX_SECONDS = 0.130
FREE_PLAY_CLUSTER_SECONDS = 0.080

# Metronome bleed separation. Empirically tuned against guitar-plus-click
# takes, not derived; changing any of these moves scores noticeably.
CLICK_SAMPLE_RADIUS_SECONDS = 0.040
CLICK_NEAR_SECONDS = 0.050
CLICK_FAR_SECONDS = 0.120
NEAR_BASELINE_RATIO = 1.1
NEAR_MAX_RATIO = 0.25
MID_BASELINE_RATIO = 0.9
FALLBACK_BASELINE_RATIO = 0.2
MIN_BASELINE_SAMPLES = 3

# Offsets (in beats) tried around the nearest whole beat
SUBDIVISIONS = (0.0, -0.25, 0.25, -0.5, 0.5, -0.75, 0.75)


# ----------------------------------------------------------------------
# Pipeline steps
# ----------------------------------------------------------------------

def apply_latency(onsets: list[Onset], latency_ms: float) -> list[Onset]:
    """Shift onsets earlier by the calibrated latency, clamping at zero."""
    shift = latency_ms / 1000.0
    return [Onset(max(0.0, o.time_seconds - shift), o.salience) for o in onsets]


def drop_below_floor(onsets: list[Onset], floor: float) -> list[Onset]:
    return [o for o in onsets if o.salience >= floor]


def gate_by_salience(onsets: list[Onset], floor: float) -> list[Onset]:
    """Keep onsets at or above max(half the mean salience, floor)."""
    if not onsets:
        return []
    mean = float(np.mean([o.salience for o in onsets]))
    gate = max(0.5 * mean, floor)
    return [o for o in onsets if o.salience >= gate]


def metronome_baseline(onsets: list[Onset], click_times: list[float]) -> float:
    """Estimate how loud a bare metronome click registers.

    Clicks with exactly one onset within 40 ms contribute that onset's
    salience; the median of those samples is the baseline. With fewer than
    three samples, fall back to 20% of the loudest onset.
    """
    if not onsets:
        return 0.0
    times = np.array([o.time_seconds for o in onsets])
    samples = []
    for click in click_times:
        nearby = np.flatnonzero(np.abs(times - click) <= CLICK_SAMPLE_RADIUS_SECONDS)
        if len(nearby) == 1:
            samples.append(onsets[nearby[0]].salience)
    if len(samples) >= MIN_BASELINE_SAMPLES:
        return float(np.median(samples))
    return FALLBACK_BASELINE_RATIO * max(o.salience for o in onsets)


def separate_metronome(onsets: list[Onset], click_times: list[float] | None) -> list[Onset]:
    """Drop onsets that are most likely metronome bleed rather than playing."""
    if not onsets or not click_times:
        return list(onsets)

    clicks = np.sort(np.asarray(click_times, dtype=float))
    baseline = metronome_baseline(onsets, list(clicks))
    max_salience = max(o.salience for o in onsets)

    kept = []
    for o in onsets:
        distance = float(np.min(np.abs(clicks - o.time_seconds)))
        if distance > CLICK_FAR_SECONDS:
            kept.append(o)
        elif distance < CLICK_NEAR_SECONDS:
            if o.salience > NEAR_BASELINE_RATIO * baseline or o.salience > NEAR_MAX_RATIO * max_salience:
                kept.append(o)
        elif o.salience > MID_BASELINE_RATIO * baseline:
            kept.append(o)

    logger.info(f"  Click separation: kept {len(kept)}/{len(onsets)} onsets (baseline {baseline:.4f})")
    return kept


def cluster_window(target_bpm: float) -> float:
    """80% of a sixteenth note at *target_bpm*, clamped to [50, 130] ms."""
    if target_bpm <= 0:
        return FREE_PLAY_CLUSTER_SECONDS
    sixteenth = 60.0 / target_bpm / 4.0
    return min(max(CLUSTER_SIXTEENTH_FRACTION * sixteenth, CLUSTER_MIN_SECONDS), CLUSTER_MAX_SECONDS)


def cluster_onsets(onsets: list[Onset], window_seconds: float) -> list[Onset]:
    """Collapse onsets closer than *window_seconds* to their cluster's first
    onset, keeping the loudest of each cluster."""
    result: list[Onset] = []
    cluster_start = None
    for o in sorted(onsets, key=lambda x: x.time_seconds):
        if cluster_start is not None and o.time_seconds - cluster_start < window_seconds:
            if o.salience > result[-1].salience:
                result[-1] = o
            continue
        cluster_start = o.time_seconds
        result.append(o)
    return result


def nearest_subdivision(time_seconds: float, quarter_seconds: float) -> tuple[float, int]:
    """Return (target time, beat number) of the closest 16th/8th grid point."""
    position = time_seconds / quarter_seconds
    beat = math.floor(position + 0.5)
    offset = min(SUBDIVISIONS, key=lambda s: abs(position - (beat + s)))
    return (beat + offset) * quarter_seconds, beat


def classify_deviation(deviation_ms: float, sixteenth_ms: float, error_margin: float) -> NoteType:
    """Bucket an absolute timing error."""
    error = abs(deviation_ms)
    if error <= PERFECT_MS:
        return NoteType.PERFECT
    if error <= PERFECT_MS + GOOD_MARGIN_SCALE_MS * error_margin:
        return NoteType.GOOD
    if error <= GHOST_SIXTEENTH_FRACTION * sixteenth_ms:
        return NoteType.MISS
    return NoteType.GHOST


def score_consistency(hits: list[RhythmHit]) -> int:
    """Percentage of Perfect plus Good among non-ghost hits."""
    meaningful = [h for h in hits if h.note_type is not NoteType.GHOST]
    if not meaningful:
        return 0
    n = len(meaningful)
    perfect = sum(1 for h in meaningful if h.note_type is NoteType.PERFECT)
    good = sum(1 for h in meaningful if h.note_type is NoteType.GOOD)
    return min(100, round(100 * perfect / n) + round(100 * good / n))


def classify_onsets(onsets: list[Onset], target_bpm: float, error_margin: float) -> list[RhythmHit]:
    quarter = 60.0 / target_bpm
    sixteenth_ms = quarter / 4.0 * 1000.0
    hits = []
    for o in onsets:
        target, beat = nearest_subdivision(o.time_seconds, quarter)
        deviation_ms = (o.time_seconds - target) * 1000.0
        note_type = classify_deviation(deviation_ms, sixteenth_ms, error_margin)
        hits.append(RhythmHit(
            time_seconds=o.time_seconds,
            target_time_seconds=target,
            beat_number=beat,
            deviation_ms=deviation_ms,
            note_type=note_type,
            is_ghost_note=note_type is NoteType.GHOST,
        ))
    return hits


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------

class RhythmAnalyzer:
    """Scores a recorded take against a target tempo."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings

    def analyze_file(
        self,
        path: str | Path,
        target_bpm: int = 0,
        click_times: list[float] | None = None,
        threshold: float | None = None,
        error_margin: float | None = None,
        latency_ms: int | None = None,
    ) -> AnalysisResult:
        """Analyze a closed recording.

        Missing, tiny or unreadable files and silent takes give a zero-valued
        result; "no notes detected" is an ordinary outcome.
        """
        try:
            onsets, duration = self._detect(Path(path), threshold)
        except DegenerateRecording as e:
            logger.warning(f"Degenerate recording: {e}")
            return AnalysisResult()

        return self.analyze_onsets(
            onsets,
            target_bpm=target_bpm,
            click_times=click_times,
            error_margin=error_margin,
            latency_ms=latency_ms,
            duration=duration,
        )

    def _detect(self, path: Path, threshold: float | None) -> tuple[list[Onset], float]:
        s = self.settings
        if not path.exists():
            raise DegenerateRecording(f"{path} does not exist")
        size = path.stat().st_size
        if size < s.min_file_bytes:
            raise DegenerateRecording(f"{path.name} is only {size} bytes")

        try:
            audio, sr = load_audio(path, sr=s.sample_rate)
        except Exception as e:
            raise DegenerateRecording(f"{path.name} could not be decoded: {e}") from e

        duration = len(audio) / sr
        logger.info(f"Analyzing {duration:.1f}s of audio at {sr}Hz")
        logger.info("Step 1: Onset detection")
        audio = high_pass_filter(audio, sr, cutoff=s.high_pass_cutoff_hz)
        onsets = detect_onsets(
            audio,
            sr,
            threshold=s.onset_threshold if threshold is None else threshold,
            frame_size=s.onset_frame_size,
            hop=s.onset_hop_size,
        )
        if not onsets:
            raise DegenerateRecording(f"no onsets detected in {path.name}")
        logger.info(f"  {len(onsets)} raw onsets")
        return onsets, duration

    def analyze_onsets(
        self,
        onsets: list[Onset],
        target_bpm: int = 0,
        click_times: list[float] | None = None,
        error_margin: float | None = None,
        latency_ms: int | None = None,
        duration: float | None = None,
    ) -> AnalysisResult:
        """Score already-detected onsets (times relative to session start)."""
        s = self.settings
        error_margin = s.rhythm_margin if error_margin is None else error_margin
        latency_ms = s.latency_offset_ms if latency_ms is None else latency_ms

        logger.info("Step 2: Latency correction and gating")
        onsets = drop_below_floor(apply_latency(onsets, latency_ms), s.min_salience)
        onsets = gate_by_salience(onsets, s.min_salience)

        if click_times:
            logger.info("Step 3: Metronome separation")
            onsets = separate_metronome(onsets, click_times)

        logger.info("Step 4: Clustering")
        onsets = cluster_onsets(onsets, cluster_window(target_bpm))
        if not onsets:
            logger.info("  No notes detected")
            return AnalysisResult()

        if duration is None:
            duration = onsets[-1].time_seconds

        if target_bpm <= 0:
            hits = tuple(
                RhythmHit(
                    time_seconds=o.time_seconds,
                    target_time_seconds=o.time_seconds,
                    beat_number=i,
                    deviation_ms=0.0,
                    note_type=NoteType.GOOD,
                )
                for i, o in enumerate(onsets)
            )
            return AnalysisResult(hits=hits, session_duration_seconds=duration)

        logger.info(f"Step 5: Classification at {target_bpm} BPM")
        hits = classify_onsets(onsets, target_bpm, error_margin)
        consistency = score_consistency(hits)
        on_beat = sum(1 for h in hits if h.note_type in (NoteType.PERFECT, NoteType.GOOD))
        quarter = 60.0 / target_bpm
        logger.info(f"  {len(hits)} hits, {on_beat} on beat, consistency {consistency}%")

        return AnalysisResult(
            bpm=target_bpm,
            consistency=consistency,
            hits=tuple(hits),
            total_beats=int(duration / quarter),
            hits_on_beat=on_beat,
            session_duration_seconds=duration,
        )
