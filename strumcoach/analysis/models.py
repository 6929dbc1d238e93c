"""Core data models for tuning, timing and rhythm analysis."""

from dataclasses import dataclass, field
from enum import Enum


@dataclass
class PitchEstimate:
    """Raw pitch estimator output for one frame."""
    frequency_hz: float
    probability: float  # 0.0-1.0


@dataclass
class NoteMapping:
    """A frequency expressed as a note name, octave and cents deviation."""
    note: str
    octave: int
    cents: int  # -50..49


@dataclass
class TunerResult:
    """Tuner readout. The default instance is the silence/uncertain state."""
    note: str = "--"
    octave: int | None = None
    frequency_hz: float = 0.0
    cents: int = 0
    is_locked: bool = False


class BeatType(Enum):
    ACCENT = "accent"
    NORMAL = "normal"
    MUTE = "mute"


@dataclass
class BeatEvent:
    """One scheduled metronome beat."""
    beat_index: int  # position within the pattern
    is_accent: bool
    emitted_at_epoch_ms: int


@dataclass
class Onset:
    """A detected transient before classification."""
    time_seconds: float
    salience: float


class NoteType(Enum):
    PERFECT = "perfect"
    GOOD = "good"
    MISS = "miss"
    GHOST = "ghost"


@dataclass
class RhythmHit:
    """One surviving onset matched to the target grid."""
    time_seconds: float
    target_time_seconds: float
    beat_number: int
    deviation_ms: float  # signed, positive = late
    note_type: NoteType
    is_ghost_note: bool = False


@dataclass(frozen=True)
class AnalysisResult:
    """Complete rhythm analysis of one recording."""
    bpm: int = 0
    consistency: int = 0  # 0-100
    hits: tuple[RhythmHit, ...] = ()
    total_beats: int = 0
    hits_on_beat: int = 0
    session_duration_seconds: float = 0.0


@dataclass
class CalibrationSample:
    """A tap paired with the click it most plausibly answers."""
    tap_epoch_ms: int
    nearest_click_epoch_ms: int

    @property
    def difference_ms(self) -> int:
        return self.tap_epoch_ms - self.nearest_click_epoch_ms


@dataclass
class CalibrationResult:
    """Outcome of one calibration run."""
    success: bool
    latency_offset_ms: int | None = None
    message: str = ""
    samples: list[CalibrationSample] = field(default_factory=list)
