"""Tests for response schemas and the command line."""

import json

import numpy as np

from strumcoach.analysis.models import (
    AnalysisResult,
    BeatEvent,
    CalibrationResult,
    CalibrationSample,
    NoteType,
    RhythmHit,
    TunerResult,
)
from strumcoach.api.schemas import (
    beat_to_response,
    calibration_to_response,
    result_to_response,
    tuner_to_response,
)
from strumcoach.main import _load_clicks, build_parser, main
from tests.conftest import FakeInputStream, FakeOutputStream, StreamFactory, sine


def test_result_to_response():
    hit = RhythmHit(0.512, 0.5, 1, 12.04, NoteType.PERFECT)
    data = result_to_response(AnalysisResult(bpm=120, consistency=100, hits=(hit,), total_beats=8, hits_on_beat=1))
    assert data["bpm"] == 120
    assert data["hits"][0]["note_type"] == "perfect"
    assert data["hits"][0]["deviation_ms"] == 12.0
    json.dumps(data)


def test_tuner_and_beat_responses():
    assert tuner_to_response(TunerResult())["note"] == "--"
    assert tuner_to_response(TunerResult())["octave"] is None
    data = beat_to_response(BeatEvent(beat_index=2, is_accent=False, emitted_at_epoch_ms=123))
    assert data == {"beat_index": 2, "is_accent": False, "emitted_at_epoch_ms": 123}


def test_calibration_response():
    result = CalibrationResult(True, 42, "ok", [CalibrationSample(1042, 1000)] * 3)
    data = calibration_to_response(result)
    assert data["latency_offset_ms"] == 42
    assert data["matched_taps"] == 3


def test_load_clicks(tmp_path):
    path = tmp_path / "clicks.txt"
    path.write_text("# clicks\n0.0\n0.5\n\n1.0\n")
    assert _load_clicks(path) == [0.0, 0.5, 1.0]


def test_parser_defaults():
    args = build_parser().parse_args(["analyze", "take.wav"])
    assert args.bpm == 0
    assert not args.json


def test_analyze_command_json(click_120, capsys):
    assert main(["analyze", str(click_120), "--bpm", "120", "--latency", "0", "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["bpm"] == 120
    assert data["total_beats"] == 12
    assert len(data["hits"]) > 0


def test_analyze_command_missing_file(tmp_path, capsys):
    assert main(["analyze", str(tmp_path / "missing.wav"), "--json"]) == 0
    assert json.loads(capsys.readouterr().out)["hits"] == []


def test_live_commands_accept_json():
    assert build_parser().parse_args(["tune", "--json"]).json
    assert build_parser().parse_args(["metronome", "--json"]).json
    assert not build_parser().parse_args(["metronome"]).json


def test_tune_command_json(monkeypatch, capsys):
    signal = (sine(110.0, n_samples=44100, amplitude=0.3) * 32767).astype(np.int16)
    monkeypatch.setattr(
        "strumcoach.audio.capture.open_input_stream",
        StreamFactory(lambda: FakeInputStream(signal)),
    )
    assert main(["tune", "--json", "--seconds", "0.5"]) == 0

    readouts = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    locked = [r for r in readouts if r["is_locked"]]
    assert locked
    assert (locked[-1]["note"], locked[-1]["octave"]) == ("A", 2)
    assert readouts[-1] == tuner_to_response(TunerResult())


def test_metronome_command_json(monkeypatch, capsys):
    monkeypatch.setattr("strumcoach.metronome.open_output_stream", StreamFactory(FakeOutputStream))
    assert main(["metronome", "--bpm", "300", "--seconds", "0.5", "--json"]) == 0

    beats = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert len(beats) >= 2
    assert beats[0]["beat_index"] == 0 and beats[0]["is_accent"]
    assert beats[1]["beat_index"] == 1 and not beats[1]["is_accent"]
