"""Microphone capture with live pitch/amplitude tracking and optional recording."""

from __future__ import annotations

import logging
import math
import threading
import time
from pathlib import Path
from typing import Callable, Protocol

import numpy as np

from strumcoach.analysis.models import PitchEstimate, TunerResult
from strumcoach.analysis.pitch import MedianWindow, YinPitchEstimator, map_frequency
from strumcoach.audio.preprocessing import NoiseGate, StreamingHighPass, float_to_pcm16, pcm16_to_float, rms
from strumcoach.audio.stream import FrameWindow
from strumcoach.audio.wav import WavWriter
from strumcoach.config import Settings, settings as default_settings
from strumcoach.errors import DeviceUnavailable, WriteFailure
from strumcoach.metronome import open_output_stream
from strumcoach.state import Observable

logger = logging.getLogger(__name__)

# Floor for the tuner gate derived from input_threshold
_MIN_TUNER_GATE = 0.0005
# Acoustic tap fires above this multiple of input_threshold
_TAP_THRESHOLD_RATIO = 1.2
_AMPLITUDE_SCALE = 400.0


class PlaybackQuery(Protocol):
    @property
    def is_playing(self) -> bool: ...


def open_input_stream(settings: Settings, device=None):
    """Open and start a sounddevice input stream (44.1 kHz mono int16).

    The host buffer is the larger of two analysis frames and the device's
    own low-latency minimum.
    """
    try:
        import sounddevice as sd
    except OSError as e:  # PortAudio shared library missing
        raise DeviceUnavailable(f"audio backend unavailable: {e}") from e

    sr = settings.sample_rate
    try:
        info = sd.query_devices(device, "input")
        device_min = int(math.ceil(info["default_low_input_latency"] * sr))
        buffer_frames = max(2 * settings.frame_size, device_min)
        stream = sd.InputStream(
            samplerate=sr,
            channels=1,
            dtype="int16",
            device=device,
            latency=buffer_frames / sr,
        )
        stream.start()
    except (sd.PortAudioError, ValueError) as e:
        raise DeviceUnavailable(f"input device {device!r}: {e}") from e
    logger.info(f"Input stream open: device={info['name']}, buffer={buffer_frames} frames")
    return stream


class CaptureEngine:
    """Owns the microphone; publishes tuner readouts, amplitude and taps.

    Parameters
    ----------
    settings:
        Configuration; defaults to the module settings.
    playback_state:
        Anything with an ``is_playing`` property. While it reports True the
        engine still publishes amplitude but skips pitch detection, so a
        reference tone from the speaker is not picked up as the player's note.
    stream_factory:
        ``factory(settings, device)`` returning a started stream with
        ``read(n) -> (data, overflowed)``, ``stop()`` and ``close()``.
    pitch_estimator:
        ``estimator(frame, sr) -> PitchEstimate``; aubio YIN by default.
    clock_ms:
        Epoch-millisecond clock used for tap timestamps.
    monitor_factory:
        ``factory(settings, device)`` returning a started output stream with
        ``write(samples)`` and ``close()``, used for monitoring.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        playback_state: PlaybackQuery | None = None,
        stream_factory: Callable | None = None,
        pitch_estimator: Callable[[np.ndarray, int], PitchEstimate] | None = None,
        clock_ms: Callable[[], int] | None = None,
        monitor_factory: Callable | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.playback_state = playback_state
        self._stream_factory = stream_factory or open_input_stream
        self._estimate = pitch_estimator or YinPitchEstimator()
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        self._monitor_factory = monitor_factory or open_output_stream

        self.input_threshold = self.settings.input_threshold
        self.reference_frequency_hz = self.settings.reference_frequency_hz

        self.tuner: Observable[TunerResult] = Observable(TunerResult())
        self.amplitude: Observable[float] = Observable(0.0)
        self.taps: Observable[int | None] = Observable(None)

        self._pitch_window = MedianWindow(self.settings.smoothing_window)
        self._cents_window = MedianWindow(self.settings.smoothing_window)
        self._framer = FrameWindow(self.settings.frame_size, self.settings.hop_size)
        self._high_pass = StreamingHighPass(self.settings.sample_rate, self.settings.high_pass_cutoff_hz)
        self._gate = NoiseGate(self.settings.sample_rate, self.input_threshold)
        self._last_tap_ms = 0

        self._lifecycle = threading.RLock()
        self._running = False
        self._stream = None
        self._writer: WavWriter | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._monitor = None
        self.recording_path: Path | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_monitoring(self) -> bool:
        return self._monitor is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, output_file: str | Path | None = None) -> bool:
        """Start capturing, optionally recording to *output_file*.

        Returns False when no input device could be acquired; the engine is
        then left stopped. A running engine is restarted for a new recording
        target and left alone otherwise.
        """
        with self._lifecycle:
            if self._running:
                if output_file is None:
                    return True
                logger.info("New recording target, restarting capture")
                self._stop_locked()

            stream = self._acquire()
            if stream is None:
                return False

            writer = None
            if output_file is not None:
                try:
                    writer = WavWriter(output_file, self.settings.sample_rate)
                    self.recording_path = writer.path
                except OSError as e:
                    logger.error(f"Cannot open recording {output_file}: {e}")

            self._reset_pipeline()
            self._stream = stream
            self._writer = writer
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(stream, writer, self._stop_event),
                name="capture",
                daemon=True,
            )
            self._running = True
            self._thread.start()
            logger.info(f"Capture started (recording={'yes' if writer else 'no'})")
            return True

    def stop(self) -> None:
        """Stop capture and release the microphone. Safe to call repeatedly."""
        with self._lifecycle:
            self._stop_locked()

    def _stop_locked(self) -> None:
        if not self._running:
            return
        self._stop_event.set()

        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
            except Exception as e:
                logger.warning(f"Error stopping input stream: {e}")

        if self._thread is not None:
            self._thread.join(self.settings.join_timeout_seconds)
            if self._thread.is_alive():
                logger.warning("Capture thread did not exit within timeout")
        self._thread = None

        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.warning(f"Error closing input stream: {e}")

        self._finish_locked()
        logger.info("Capture stopped")

    def _finish_locked(self) -> None:
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()
        self._close_monitor()

        self._reset_pipeline()
        self.tuner.set(TunerResult())
        self.amplitude.set(0.0)
        self._running = False

    def set_monitoring(self, enabled: bool) -> bool:
        """Route the filtered, gated input to the output device.

        Only chunks at or above ``input_threshold`` are forwarded. Monitoring
        ends with the capture session. Returns False when it was requested
        while capture is stopped or no output device could be opened.
        """
        with self._lifecycle:
            if not enabled:
                self._close_monitor()
                return True
            if not self._running:
                return False
            if self._monitor is None:
                try:
                    self._monitor = self._monitor_factory(self.settings, self.settings.output_device)
                except DeviceUnavailable as e:
                    logger.error(f"Monitoring output unavailable: {e}")
                    return False
                logger.info("Monitoring on")
            return True

    def _close_monitor(self) -> None:
        monitor, self._monitor = self._monitor, None
        if monitor is None:
            return
        try:
            monitor.close()
        except Exception as e:
            logger.warning(f"Error closing monitor stream: {e}")
        logger.info("Monitoring off")

    def _acquire(self):
        preferred = self.settings.input_device
        try:
            return self._stream_factory(self.settings, preferred)
        except DeviceUnavailable as e:
            logger.warning(f"Microphone unavailable ({e}), retrying with default input")
        try:
            return self._stream_factory(self.settings, None)
        except DeviceUnavailable as e:
            logger.error(f"Microphone fallback failed: {e}")
            return None

    def _reset_pipeline(self) -> None:
        self._pitch_window.clear()
        self._cents_window.clear()
        self._framer.clear()
        self._high_pass.reset()
        self._gate.reset()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _run(self, stream, writer: WavWriter | None, stop_event: threading.Event) -> None:
        hop = self.settings.hop_size
        try:
            while not stop_event.is_set():
                data, overflowed = stream.read(hop)
                if overflowed:
                    logger.debug("Input overflow")
                samples = self._high_pass.process(pcm16_to_float(data))
                self._gate.threshold = self.input_threshold
                samples = self._gate.process(samples)
                if writer is not None:
                    try:
                        writer.write(samples)
                    except WriteFailure as e:
                        logger.warning(f"Recording chunk dropped: {e}")
                self._forward_to_monitor(samples)
                for frame in self._framer.push(samples):
                    self.process_frame(frame)
        except Exception as e:
            if not stop_event.is_set():
                logger.error(f"Capture loop aborted: {e}")
                self._abandon(stream, stop_event)

    def _abandon(self, stream, stop_event: threading.Event) -> None:
        """Release the device after the loop died without stop() being called."""
        # stop() holds the lock while joining this thread; give way to it
        while not self._lifecycle.acquire(timeout=0.05):
            if stop_event.is_set():
                return
        try:
            if stop_event.is_set() or self._stream is not stream:
                return
            stop_event.set()
            self._stream = None
            self._thread = None
            for release in (stream.stop, stream.close):
                try:
                    release()
                except Exception as e:
                    logger.warning(f"Error releasing input stream: {e}")
            self._finish_locked()
            logger.info("Capture stopped after input failure")
        finally:
            self._lifecycle.release()

    def _forward_to_monitor(self, samples: np.ndarray) -> None:
        monitor = self._monitor
        if monitor is None or rms(samples) < self.input_threshold:
            return
        try:
            monitor.write(float_to_pcm16(samples))
        except Exception as e:
            logger.warning(f"Monitor chunk dropped: {e}")

    def process_frame(self, frame: np.ndarray) -> None:
        """Run the tuner pipeline on one analysis frame."""
        level = rms(frame)
        self.amplitude.set(min(math.sqrt(level) * _AMPLITUDE_SCALE, 100.0))
        self._detect_tap(level)

        if self.playback_state is not None and self.playback_state.is_playing:
            return

        gate = max(self.input_threshold / 4.0, _MIN_TUNER_GATE)
        if level <= gate:
            # Drop history right away so the readout doesn't ring on an old note
            self._pitch_window.clear()
            self._cents_window.clear()
            self.tuner.set(TunerResult())
            return

        s = self.settings
        estimate = self._estimate(frame, s.sample_rate)
        if estimate.probability <= s.pitch_confidence or estimate.frequency_hz <= s.min_frequency_hz:
            self.tuner.set(TunerResult())
            return

        pitch = self._pitch_window.push(estimate.frequency_hz)
        mapping = map_frequency(pitch, self.reference_frequency_hz)
        cents = self._cents_window.push(mapping.cents)
        self.tuner.set(TunerResult(
            note=mapping.note,
            octave=mapping.octave,
            frequency_hz=pitch,
            cents=cents,
            is_locked=True,
        ))

    def _detect_tap(self, level: float) -> None:
        if level <= self.input_threshold * _TAP_THRESHOLD_RATIO:
            return
        now = self._clock_ms()
        if now - self._last_tap_ms > self.settings.min_tap_interval_ms:
            self._last_tap_ms = now
            self.taps.set(now)
