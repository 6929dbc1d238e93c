"""Drift-free metronome with accent patterns.

Two loops run while the metronome is on:

* the render loop writes click/silence samples to the output stream, one
  beat length of samples per beat;
* the timing loop waits for each beat's absolute target time
  (``anchor + n * beat_duration``) and publishes a :class:`BeatEvent`.

Waiting for "time until the next absolute target" instead of a fixed
sleep per tick keeps scheduling jitter from accumulating.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import numpy as np

from strumcoach.analysis.models import BeatEvent, BeatType
from strumcoach.audio.synth import metronome_click, silence
from strumcoach.config import Settings, settings as default_settings
from strumcoach.errors import DeviceUnavailable
from strumcoach.state import DelayedDispatcher, Observable

logger = logging.getLogger(__name__)

MIN_BPM = 20
MAX_BPM = 300
ALLOWED_DENOMINATORS = (4, 8)

# Longest silence block handed to the output in one write
_SILENCE_CHUNK_SECONDS = 0.1


def parse_time_signature(signature: str) -> tuple[int, int]:
    """Parse ``"n/d"``; the denominator must be 4 or 8."""
    try:
        numerator_text, denominator_text = signature.split("/")
        numerator, denominator = int(numerator_text), int(denominator_text)
    except ValueError as e:
        raise ValueError(f"Invalid time signature {signature!r}") from e
    if numerator <= 0 or denominator not in ALLOWED_DENOMINATORS:
        raise ValueError(f"Unsupported time signature {signature!r}")
    return numerator, denominator


def pattern_for_numerator(numerator: int) -> list[BeatType]:
    """Accent on the first beat, normal clicks after it."""
    if numerator <= 0:
        return []
    return [BeatType.ACCENT] + [BeatType.NORMAL] * (numerator - 1)


def effective_bpm(bpm: int, note_value: int) -> int:
    """Clicks per minute when each *note_value* subdivision is clicked."""
    return bpm * note_value // 4


def max_bpm_for(note_value: int) -> int:
    """Highest quarter-note BPM whose click rate stays within MAX_BPM."""
    return MAX_BPM * 4 // note_value


def clamp_bpm(bpm: int) -> int:
    return min(max(int(bpm), MIN_BPM), MAX_BPM)


def beat_duration_ns(bpm: int, note_value: int = 4) -> int:
    return int(60e9 / bpm * 4 / note_value)


def click_tones(settings: Settings) -> dict[BeatType, np.ndarray]:
    """Pre-rendered buffer per beat type; MUTE is silence of click length."""
    s = settings
    return {
        BeatType.ACCENT: metronome_click(s.accent_frequency_hz, s.click_duration_ms, s.sample_rate),
        BeatType.NORMAL: metronome_click(s.normal_frequency_hz, s.click_duration_ms, s.sample_rate),
        BeatType.MUTE: silence(int(s.sample_rate * s.click_duration_ms / 1000)),
    }


def open_output_stream(settings: Settings, device=None):
    """Open and start a sounddevice output stream (mono int16)."""
    try:
        import sounddevice as sd
    except OSError as e:
        raise DeviceUnavailable(f"audio backend unavailable: {e}") from e
    try:
        stream = sd.OutputStream(
            samplerate=settings.sample_rate,
            channels=1,
            dtype="int16",
            device=device,
            latency="low",
        )
        stream.start()
    except (sd.PortAudioError, ValueError) as e:
        raise DeviceUnavailable(f"output device {device!r}: {e}") from e
    return stream


class MetronomeScheduler:
    """Clicks at a fixed cadence and reports each beat.

    ``set_bpm``/``set_pattern`` values are snapshotted by :meth:`start`;
    changes made while running apply on the next start.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        stream_factory: Callable | None = None,
        clock_ns: Callable[[], int] = time.perf_counter_ns,
        epoch_ms: Callable[[], int] | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self._stream_factory = stream_factory or open_output_stream
        self._clock_ns = clock_ns
        self._epoch_ms = epoch_ms or (lambda: int(time.time() * 1000))

        numerator, denominator = parse_time_signature(self.settings.time_signature)
        self.bpm = clamp_bpm(self.settings.bpm)
        self.pattern = pattern_for_numerator(numerator)
        self.note_value = denominator
        self.metronome_offset_ms = self.settings.metronome_offset_ms

        self._tones = click_tones(self.settings)

        self.beats: Observable[BeatEvent | None] = Observable(None)

        self._lifecycle = threading.RLock()
        self._running = False
        self._stop_event = threading.Event()
        self._stream = None
        self._render_thread: threading.Thread | None = None
        self._timing_thread: threading.Thread | None = None
        self._dispatcher: DelayedDispatcher | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_bpm(self, bpm: int) -> None:
        self.bpm = clamp_bpm(bpm)

    def set_pattern(self, pattern: list[BeatType], note_value: int = 4) -> None:
        if not pattern:
            raise ValueError("Beat pattern must not be empty")
        if note_value not in ALLOWED_DENOMINATORS:
            raise ValueError(f"Unsupported note value {note_value}")
        self.pattern = list(pattern)
        self.note_value = note_value

    def set_time_signature(self, signature: str) -> None:
        numerator, denominator = parse_time_signature(signature)
        self.set_pattern(pattern_for_numerator(numerator), denominator)

    def on_beat(self, callback: Callable[[BeatEvent], None]) -> Callable[[], None]:
        """Subscribe to beat events; returns an unsubscribe function."""
        def deliver(event: BeatEvent | None) -> None:
            if event is not None:
                callback(event)

        return self.beats.subscribe(deliver)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start clicking. Returns False if the output device is unavailable."""
        with self._lifecycle:
            if self._running:
                return True
            try:
                stream = self._stream_factory(self.settings, self.settings.output_device)
            except DeviceUnavailable as e:
                logger.error(f"Metronome output unavailable: {e}")
                return False

            bpm, pattern, note_value = self.bpm, list(self.pattern), self.note_value
            duration_ns = beat_duration_ns(bpm, note_value)

            self._stream = stream
            self._stop_event = threading.Event()
            self._dispatcher = DelayedDispatcher(self.metronome_offset_ms / 1000.0, name="beat-dispatch")
            anchor_ns = self._clock_ns()
            anchor_epoch_ms = self._epoch_ms()

            self._render_thread = threading.Thread(
                target=self._render_loop,
                args=(stream, pattern, duration_ns, self._stop_event),
                name="metronome-render",
                daemon=True,
            )
            self._timing_thread = threading.Thread(
                target=self._timing_loop,
                args=(pattern, duration_ns, anchor_ns, anchor_epoch_ms, self._stop_event, self._dispatcher),
                name="metronome-timing",
                daemon=True,
            )
            self._running = True
            self._render_thread.start()
            self._timing_thread.start()
            logger.info(f"Metronome started: {bpm} BPM, {len(pattern)}/{note_value}")
            return True

    def stop(self) -> None:
        """Stop both loops and release the output. Safe to call repeatedly."""
        with self._lifecycle:
            if not self._running:
                return
            timeout = self.settings.join_timeout_seconds
            self._stop_event.set()
            if self._dispatcher is not None:
                self._dispatcher.close(timeout)
                self._dispatcher = None

            stream, self._stream = self._stream, None
            if stream is not None:
                try:
                    stream.abort()
                except Exception as e:
                    logger.warning(f"Error aborting output stream: {e}")

            for thread in (self._timing_thread, self._render_thread):
                if thread is not None:
                    thread.join(timeout)
                    if thread.is_alive():
                        logger.warning(f"{thread.name} did not exit within timeout")
            self._timing_thread = self._render_thread = None

            if stream is not None:
                try:
                    stream.close()
                except Exception as e:
                    logger.warning(f"Error closing output stream: {e}")

            self._running = False
            logger.info("Metronome stopped")

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def _timing_loop(
        self,
        pattern: list[BeatType],
        duration_ns: int,
        anchor_ns: int,
        anchor_epoch_ms: int,
        stop_event: threading.Event,
        dispatcher: DelayedDispatcher,
    ) -> None:
        n = 0
        while not stop_event.is_set():
            target_ns = anchor_ns + n * duration_ns
            remaining = (target_ns - self._clock_ns()) / 1e9
            if remaining > 0 and stop_event.wait(remaining):
                return

            beat_type = pattern[n % len(pattern)]
            event = BeatEvent(
                beat_index=n % len(pattern),
                is_accent=beat_type is BeatType.ACCENT,
                emitted_at_epoch_ms=anchor_epoch_ms + (n * duration_ns) // 1_000_000,
            )
            dispatcher.submit(self.beats.set, event)
            n += 1

    def _render_loop(
        self,
        stream,
        pattern: list[BeatType],
        duration_ns: int,
        stop_event: threading.Event,
    ) -> None:
        sr = self.settings.sample_rate
        samples_per_beat = int(round(duration_ns * sr / 1e9))
        chunk = int(sr * _SILENCE_CHUNK_SECONDS)
        n = 0
        try:
            while not stop_event.is_set():
                tone = self._tones[pattern[n % len(pattern)]][:samples_per_beat]
                stream.write(tone)
                remaining = samples_per_beat - len(tone)
                while remaining > 0 and not stop_event.is_set():
                    block = min(remaining, chunk)
                    stream.write(silence(block))
                    remaining -= block
                n += 1
        except Exception as e:
            if not stop_event.is_set():
                logger.error(f"Metronome render loop aborted: {e}")


def render_beats(
    pattern: list[BeatType],
    bpm: int,
    n_beats: int,
    note_value: int = 4,
    settings: Settings | None = None,
) -> np.ndarray:
    """Render *n_beats* of click track offline, sample-aligned like the render loop."""
    s = settings or default_settings
    tones = click_tones(s)
    samples_per_beat = int(round(beat_duration_ns(clamp_bpm(bpm), note_value) * s.sample_rate / 1e9))
    out = np.zeros(samples_per_beat * n_beats, dtype=np.int16)
    for n in range(n_beats):
        tone = tones[pattern[n % len(pattern)]][:samples_per_beat]
        out[n * samples_per_beat:n * samples_per_beat + len(tone)] = tone
    return out
