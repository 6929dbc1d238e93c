"""Tests for the capture engine: tuner pipeline, taps, lifecycle, recording."""

import time

import numpy as np
import pytest
import soundfile as sf

from strumcoach.analysis.models import TunerResult
from strumcoach.audio.capture import CaptureEngine
from strumcoach.audio.synth import PlaybackState
from strumcoach.audio.wav import HEADER_SIZE
from strumcoach.config import Settings
from tests.conftest import FakeEstimator, FakeInputStream, FakeOutputStream, StreamFactory, sine


class Clock:
    def __init__(self, *times):
        self.times = list(times)

    def __call__(self):
        return self.times.pop(0) if len(self.times) > 1 else self.times[0]


def _engine(estimator=None, playback=None, factory=None, clock=None, monitor=None, **overrides):
    return CaptureEngine(
        Settings(**overrides),
        playback_state=playback,
        stream_factory=factory,
        pitch_estimator=estimator or FakeEstimator(),
        clock_ms=clock,
        monitor_factory=monitor,
    )


def _wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        time.sleep(0.01)
    return condition()


# ----------------------------------------------------------------------
# Frame processing
# ----------------------------------------------------------------------

@pytest.mark.parametrize("frequency,note,octave", [(82.41, "E", 2), (110.0, "A", 2)])
def test_default_estimator_locks_low_strings(frequency, note, octave):
    engine = CaptureEngine(Settings())
    engine.process_frame(sine(frequency, amplitude=0.3))
    result = engine.tuner.value
    assert result.is_locked
    assert (result.note, result.octave) == (note, octave)
    assert result.frequency_hz == pytest.approx(frequency, rel=0.01)


def test_locks_on_confident_pitch():
    engine = _engine(FakeEstimator(110.0, 0.95))
    engine.process_frame(sine(110.0))
    result = engine.tuner.value
    assert result.is_locked
    assert (result.note, result.octave, result.cents) == ("A", 2, 0)
    assert result.frequency_hz == 110.0
    assert engine.amplitude.value > 0


def test_silence_resets_readout():
    engine = _engine()
    engine.process_frame(sine(110.0))
    assert engine.tuner.value.is_locked

    engine.process_frame(np.zeros(4096, dtype=np.float32))
    assert engine.tuner.value == TunerResult()
    assert len(engine._pitch_window) == 0


def test_uncertain_pitch_reports_default():
    estimator = FakeEstimator(110.0, 0.5)
    engine = _engine(estimator)
    engine.process_frame(sine(110.0))
    assert engine.tuner.value == TunerResult()
    assert estimator.calls == 1


def test_sub_audio_pitch_rejected():
    engine = _engine(FakeEstimator(15.0, 0.99))
    engine.process_frame(sine(110.0))
    assert not engine.tuner.value.is_locked


def test_playback_suppresses_detection():
    playback = PlaybackState()
    playback.playing.set(True)
    estimator = FakeEstimator()
    engine = _engine(estimator, playback=playback)

    engine.process_frame(sine(440.0))
    assert estimator.calls == 0
    assert engine.tuner.value == TunerResult()
    assert engine.amplitude.value > 0

    playback.playing.set(False)
    engine.process_frame(sine(440.0))
    assert estimator.calls == 1


def test_pitch_is_median_smoothed():
    estimator = FakeEstimator(110.0, 0.95)
    engine = _engine(estimator)
    engine.process_frame(sine(110.0))
    estimator.estimate.frequency_hz = 220.0  # single outlier
    engine.process_frame(sine(110.0))
    estimator.estimate.frequency_hz = 110.0
    engine.process_frame(sine(110.0))
    assert engine.tuner.value.frequency_hz == 110.0


def test_reference_frequency_is_live():
    engine = _engine(FakeEstimator(442.0, 0.95))
    engine.process_frame(sine(442.0))
    assert engine.tuner.value.cents > 0
    engine.reference_frequency_hz = 442.0
    engine.process_frame(np.zeros(4096, dtype=np.float32))
    engine.process_frame(sine(442.0))
    assert engine.tuner.value.cents == 0


def test_taps_are_debounced():
    engine = _engine(clock=Clock(1000, 1020, 1100))
    taps = []
    engine.taps.subscribe(taps.append)
    for _ in range(3):
        engine.process_frame(sine(110.0))
    assert taps == [1000, 1100]


def test_quiet_frames_do_not_tap():
    engine = _engine(clock=Clock(1000))
    taps = []
    engine.taps.subscribe(taps.append)
    engine.process_frame(sine(110.0, amplitude=0.01))
    assert taps == []


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------

def test_start_stop_releases_stream():
    factory = StreamFactory(FakeInputStream)
    engine = _engine(factory=factory)
    assert engine.start()
    assert engine.is_running
    time.sleep(0.05)
    engine.stop()

    stream = factory.streams[0]
    assert not engine.is_running
    assert stream.stopped and stream.closed
    assert engine.tuner.value == TunerResult()
    assert engine.amplitude.value == 0.0


def test_stop_is_idempotent():
    engine = _engine(factory=StreamFactory(FakeInputStream))
    engine.stop()
    engine.start()
    engine.stop()
    engine.stop()
    assert not engine.is_running


def test_start_while_running_is_noop():
    factory = StreamFactory(FakeInputStream)
    engine = _engine(factory=factory)
    assert engine.start()
    assert engine.start()
    engine.stop()
    assert len(factory.streams) == 1


def test_falls_back_to_default_device():
    factory = StreamFactory(FakeInputStream, fail={"usb mic"})
    engine = _engine(factory=factory, input_device="usb mic")
    assert engine.start()
    engine.stop()
    assert factory.devices == ["usb mic", None]


def test_no_device_leaves_engine_stopped():
    factory = StreamFactory(FakeInputStream, fail={"*"})
    engine = _engine(factory=factory)
    assert not engine.start()
    assert not engine.is_running


def test_frames_flow_from_stream():
    signal = (sine(110.0, n_samples=44100) * 32767).astype(np.int16)
    estimator = FakeEstimator(110.0, 0.95)
    engine = _engine(estimator, factory=StreamFactory(lambda: FakeInputStream(signal)))
    engine.start()
    deadline = time.monotonic() + 2.0
    while estimator.calls < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    locked = engine.tuner.value.is_locked
    engine.stop()
    assert estimator.calls >= 3
    assert locked


# ----------------------------------------------------------------------
# Recording
# ----------------------------------------------------------------------

def test_recording_is_finalized_on_stop(tmp_path):
    signal = (sine(220.0, n_samples=44100) * 32767).astype(np.int16)
    engine = _engine(factory=StreamFactory(lambda: FakeInputStream(signal)))
    path = tmp_path / "take.wav"

    assert engine.start(path)
    time.sleep(0.1)
    engine.stop()

    audio, sr = sf.read(str(path), dtype="int16")
    assert sr == 44100
    assert len(audio) > 0
    assert path.stat().st_size == HEADER_SIZE + 2 * len(audio)


def test_new_target_restarts_capture(tmp_path):
    factory = StreamFactory(FakeInputStream)
    engine = _engine(factory=factory)
    engine.start()
    assert engine.start(tmp_path / "take.wav")
    engine.stop()

    assert len(factory.streams) == 2
    assert factory.streams[0].closed
    assert (tmp_path / "take.wav").exists()


def test_read_failure_releases_device():
    signal = (sine(110.0, n_samples=44100) * 32767).astype(np.int16)
    factory = StreamFactory(lambda: FakeInputStream(signal, fail_after=4))
    engine = _engine(factory=factory)
    levels = []
    engine.amplitude.subscribe(levels.append)

    assert engine.start()
    assert _wait_for(lambda: not engine.is_running)

    stream = factory.streams[0]
    assert stream.stopped and stream.closed
    assert any(level > 0 for level in levels)
    assert engine.amplitude.value == 0.0
    assert engine.tuner.value == TunerResult()

    assert engine.start()
    assert len(factory.streams) == 2
    engine.stop()


def test_stop_after_read_failure_is_noop():
    factory = StreamFactory(lambda: FakeInputStream(fail_after=0))
    engine = _engine(factory=factory)
    engine.start()
    assert _wait_for(lambda: not engine.is_running)
    engine.stop()
    assert factory.streams[0].closed


# ----------------------------------------------------------------------
# Noise gate and monitoring
# ----------------------------------------------------------------------

def test_gate_silences_hiss_in_recording(tmp_path):
    hiss = (np.random.default_rng(5).uniform(-0.002, 0.002, 44100) * 32767).astype(np.int16)
    engine = _engine(factory=StreamFactory(lambda: FakeInputStream(hiss)))
    path = tmp_path / "hiss.wav"

    engine.start(path)
    time.sleep(0.1)
    engine.stop()

    audio, _ = sf.read(str(path), dtype="float32")
    assert len(audio) > 0
    assert np.abs(audio).max() < 0.002 * 0.25


def test_monitoring_forwards_loud_input():
    signal = (sine(220.0, n_samples=44100) * 32767).astype(np.int16)
    monitor = StreamFactory(FakeOutputStream)
    engine = _engine(factory=StreamFactory(lambda: FakeInputStream(signal)), monitor=monitor)

    assert not engine.set_monitoring(True)  # not capturing yet
    engine.start()
    assert engine.set_monitoring(True)
    assert engine.is_monitoring
    out = monitor.streams[0]
    assert _wait_for(lambda: out.samples_written > 0)

    engine.stop()
    assert out.closed
    assert not engine.is_monitoring


def test_monitoring_skips_quiet_input():
    signal = (sine(220.0, n_samples=44100, amplitude=0.005) * 32767).astype(np.int16)
    monitor = StreamFactory(FakeOutputStream)
    engine = _engine(factory=StreamFactory(lambda: FakeInputStream(signal)), monitor=monitor)
    engine.start()
    engine.set_monitoring(True)
    time.sleep(0.1)
    engine.set_monitoring(False)
    engine.stop()

    out = monitor.streams[0]
    assert out.closed
    assert out.samples_written == 0


def test_monitoring_without_output_device():
    engine = _engine(factory=StreamFactory(FakeInputStream), monitor=StreamFactory(FakeOutputStream, fail={"*"}))
    engine.start()
    assert not engine.set_monitoring(True)
    assert not engine.is_monitoring
    engine.stop()
