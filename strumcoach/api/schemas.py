"""Pydantic models for results handed to collaborators (storage, UI, CLI)."""

from pydantic import BaseModel

from strumcoach.analysis.models import AnalysisResult, BeatEvent, CalibrationResult, TunerResult


class TunerResponse(BaseModel):
    note: str
    octave: int | None = None
    frequency_hz: float
    cents: int
    is_locked: bool


class BeatEventResponse(BaseModel):
    beat_index: int
    is_accent: bool
    emitted_at_epoch_ms: int


class RhythmHitResponse(BaseModel):
    time_seconds: float
    target_time_seconds: float
    beat_number: int
    deviation_ms: float
    note_type: str
    is_ghost_note: bool = False


class AnalysisResponse(BaseModel):
    bpm: int
    consistency: int
    hits: list[RhythmHitResponse]
    total_beats: int = 0
    hits_on_beat: int = 0
    session_duration_seconds: float = 0.0


class CalibrationResponse(BaseModel):
    success: bool
    latency_offset_ms: int | None = None
    message: str = ""
    matched_taps: int = 0


def tuner_to_response(result: TunerResult) -> dict:
    return TunerResponse(
        note=result.note,
        octave=result.octave,
        frequency_hz=result.frequency_hz,
        cents=result.cents,
        is_locked=result.is_locked,
    ).model_dump()


def beat_to_response(event: BeatEvent) -> dict:
    return BeatEventResponse(
        beat_index=event.beat_index,
        is_accent=event.is_accent,
        emitted_at_epoch_ms=event.emitted_at_epoch_ms,
    ).model_dump()


def result_to_response(result: AnalysisResult) -> dict:
    """Convert AnalysisResult to dict for JSON serialization."""
    return AnalysisResponse(
        bpm=result.bpm,
        consistency=result.consistency,
        hits=[
            RhythmHitResponse(
                time_seconds=h.time_seconds,
                target_time_seconds=h.target_time_seconds,
                beat_number=h.beat_number,
                deviation_ms=round(h.deviation_ms, 1),
                note_type=h.note_type.value,
                is_ghost_note=h.is_ghost_note,
            )
            for h in result.hits
        ],
        total_beats=result.total_beats,
        hits_on_beat=result.hits_on_beat,
        session_duration_seconds=result.session_duration_seconds,
    ).model_dump()


def calibration_to_response(result: CalibrationResult) -> dict:
    return CalibrationResponse(
        success=result.success,
        latency_offset_ms=result.latency_offset_ms,
        message=result.message,
        matched_taps=len(result.samples),
    ).model_dump()
