"""Command-line entry point.

Usage:
    strumcoach tune                          # live tuner readout
    strumcoach tune --json                   # one JSON readout per line
    strumcoach metronome --bpm 90 --time-signature 6/8 --seconds 30
    strumcoach analyze take.wav --bpm 100 --clicks clicks.txt --json
    strumcoach calibrate                     # press Enter on each click
"""

import argparse
import json
import logging
import sys
import threading
import time
from pathlib import Path

from strumcoach.config import settings


def _load_clicks(path: Path) -> list[float]:
    """One click time in seconds per line; blank lines and '#' comments skipped."""
    clicks = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            clicks.append(float(line))
    return clicks


def cmd_tune(args: argparse.Namespace) -> int:
    from strumcoach.api.schemas import tuner_to_response
    from strumcoach.audio.capture import CaptureEngine
    from strumcoach.audio.synth import TonePlayer

    player = TonePlayer(sr=settings.sample_rate)
    engine = CaptureEngine(settings, playback_state=player.state)
    if args.reference is not None:
        engine.reference_frequency_hz = args.reference

    def show(result) -> None:
        if args.json:
            print(json.dumps(tuner_to_response(result)), flush=True)
            return
        if result.is_locked:
            line = f"{result.note}{result.octave}  {result.frequency_hz:7.2f} Hz  {result.cents:+3d} cents"
        else:
            line = "--"
        print(f"\r{line:<40}", end="", flush=True)

    engine.tuner.subscribe(show)
    if not engine.start():
        print("No microphone available", file=sys.stderr)
        return 1
    try:
        if args.play is not None:
            player.play_reference(args.play)
        threading.Event().wait(args.seconds or None)
    except KeyboardInterrupt:
        pass
    finally:
        player.stop()
        engine.stop()
        if not args.json:
            print()
    return 0


def cmd_metronome(args: argparse.Namespace) -> int:
    from strumcoach.api.schemas import beat_to_response
    from strumcoach.metronome import MetronomeScheduler

    metronome = MetronomeScheduler(settings)
    metronome.set_bpm(args.bpm)
    metronome.set_time_signature(args.time_signature)
    if args.json:
        metronome.on_beat(lambda e: print(json.dumps(beat_to_response(e)), flush=True))
    else:
        metronome.on_beat(lambda e: print("X" if e.is_accent else "x", end=" ", flush=True))
    if not metronome.start():
        print("No output device available", file=sys.stderr)
        return 1
    try:
        time.sleep(args.seconds)
    except KeyboardInterrupt:
        pass
    finally:
        metronome.stop()
        if not args.json:
            print()
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    from strumcoach.analysis.rhythm import RhythmAnalyzer
    from strumcoach.api.schemas import result_to_response

    clicks = _load_clicks(args.clicks) if args.clicks else None
    result = RhythmAnalyzer(settings).analyze_file(
        args.file,
        target_bpm=args.bpm,
        click_times=clicks,
        error_margin=args.margin,
        latency_ms=args.latency,
    )

    if args.json:
        print(json.dumps(result_to_response(result), indent=2))
        return 0

    print(f"File:        {args.file}")
    print(f"Duration:    {result.session_duration_seconds:.1f}s")
    print(f"Notes:       {len(result.hits)}")
    if result.bpm:
        print(f"Target BPM:  {result.bpm}")
        print(f"On beat:     {result.hits_on_beat}/{result.total_beats}")
        print(f"Consistency: {result.consistency}%")
        for hit in result.hits:
            print(f"  {hit.time_seconds:7.3f}s  beat {hit.beat_number:3d}  "
                  f"{hit.deviation_ms:+7.1f} ms  {hit.note_type.value}")
    return 0


def cmd_calibrate(args: argparse.Namespace) -> int:
    from strumcoach.api.schemas import calibration_to_response
    from strumcoach.calibration import LatencyCalibrator

    calibrator = LatencyCalibrator(settings)
    print(f"Press Enter on each of the {settings.calibration_clicks} clicks")
    calibrator.start()

    def read_taps() -> None:
        for _ in sys.stdin:
            calibrator.tap()

    threading.Thread(target=read_taps, name="tap-reader", daemon=True).start()
    try:
        result = calibrator.wait()
    except KeyboardInterrupt:
        calibrator.cancel()
        return 1

    if args.json:
        print(json.dumps(calibration_to_response(result), indent=2))
    else:
        print(result.message)
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="strumcoach", description="Guitar practice core")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    tune = sub.add_parser("tune", help="Live tuner")
    tune.add_argument("--reference", type=float, default=None, help="Reference A4 in Hz")
    tune.add_argument("--play", type=float, default=None, help="Play a reference tone (Hz) first")
    tune.add_argument("--seconds", type=float, default=0, help="Stop after N seconds (0=until Ctrl-C)")
    tune.add_argument("--json", action="store_true", help="Print each readout as a JSON line")
    tune.set_defaults(func=cmd_tune)

    metronome = sub.add_parser("metronome", help="Click at a tempo")
    metronome.add_argument("--bpm", type=int, default=settings.bpm)
    metronome.add_argument("--time-signature", default=settings.time_signature)
    metronome.add_argument("--seconds", type=float, default=30.0)
    metronome.add_argument("--json", action="store_true", help="Print each beat as a JSON line")
    metronome.set_defaults(func=cmd_metronome)

    analyze = sub.add_parser("analyze", help="Score a recorded take")
    analyze.add_argument("file", type=Path)
    analyze.add_argument("--bpm", type=int, default=0, help="Target BPM (0=free play)")
    analyze.add_argument("--clicks", type=Path, default=None, help="Click times file, seconds per line")
    analyze.add_argument("--margin", type=float, default=None, help="Error margin 0.0-1.0")
    analyze.add_argument("--latency", type=int, default=None, help="Latency offset in ms")
    analyze.add_argument("--json", action="store_true", help="Print JSON")
    analyze.set_defaults(func=cmd_analyze)

    calibrate = sub.add_parser("calibrate", help="Measure round-trip latency")
    calibrate.add_argument("--json", action="store_true", help="Print JSON")
    calibrate.set_defaults(func=cmd_calibrate)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
