"""Tap-based round-trip latency calibration.

The user taps (or strums) along to a short run of synthetic clicks. Each tap
is paired with its nearest click; the median signed difference is the
latency offset applied when scoring recordings.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable

import numpy as np

from strumcoach.analysis.models import CalibrationResult, CalibrationSample
from strumcoach.audio.synth import calibration_click
from strumcoach.config import Settings, settings as default_settings
from strumcoach.errors import InsufficientCalibrationData
from strumcoach.state import AppendOnlyLog, Observable

logger = logging.getLogger(__name__)

# Plausible tap-minus-click window; taps outside it answer no click
MIN_DIFFERENCE_MS = -200
MAX_DIFFERENCE_MS = 1000


class CalibrationState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    COMPUTING = "computing"


def match_taps(click_ms: list[int], tap_ms: list[int]) -> list[CalibrationSample]:
    """Pair each tap with its nearest click, dropping implausible pairs."""
    if not click_ms:
        return []
    clicks = np.asarray(click_ms, dtype=np.int64)
    samples = []
    for tap in tap_ms:
        nearest = int(clicks[np.argmin(np.abs(clicks - tap))])
        sample = CalibrationSample(tap_epoch_ms=int(tap), nearest_click_epoch_ms=nearest)
        if MIN_DIFFERENCE_MS <= sample.difference_ms <= MAX_DIFFERENCE_MS:
            samples.append(sample)
    return samples


def compute_latency_offset(click_ms: list[int], tap_ms: list[int], min_matches: int = 3) -> int:
    """Median tap-minus-click difference in ms, clamped at zero.

    Raises
    ------
    InsufficientCalibrationData
        Fewer than *min_matches* taps could be paired with a click.
    """
    samples = match_taps(click_ms, tap_ms)
    if len(samples) < min_matches:
        raise InsufficientCalibrationData(len(samples), min_matches)
    median = float(np.median([s.difference_ms for s in samples]))
    return max(0, int(round(median)))


def _sounddevice_click(samples: np.ndarray, sr: int) -> None:
    import sounddevice as sd

    sd.play(samples, samplerate=sr)


class LatencyCalibrator:
    """Runs the click/tap protocol on a worker thread.

    Parameters
    ----------
    settings:
        Protocol timings and the current offset.
    player:
        ``player(samples, sr)`` that starts a click without blocking.
        Defaults to sounddevice.
    on_offset:
        Called with the new offset after a successful run, e.g. to persist
        it through the settings collaborator.
    clock_ms:
        Epoch-millisecond clock for click and tap timestamps.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        player: Callable[[np.ndarray, int], None] | None = None,
        on_offset: Callable[[int], None] | None = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self._player = player or _sounddevice_click
        self._on_offset = on_offset
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

        self.state: Observable[CalibrationState] = Observable(CalibrationState.IDLE)
        self.result: Observable[CalibrationResult | None] = Observable(None)
        self.latency_offset_ms: Observable[int] = Observable(self.settings.latency_offset_ms)

        self.clicks: AppendOnlyLog[int] = AppendOnlyLog()
        self.taps: AppendOnlyLog[int] = AppendOnlyLog()

        self._click = calibration_click(sr=self.settings.sample_rate)
        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._unsubscribe: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Begin a calibration run. Returns False if one is already active."""
        with self._lock:
            if self.state.value is not CalibrationState.IDLE:
                return False
            self.clicks.clear()
            self.taps.clear()
            self.result.set(None)
            self._cancel = threading.Event()
            self.state.set(CalibrationState.LISTENING)
            self._thread = threading.Thread(
                target=self._run, args=(self._cancel,), name="calibration", daemon=True,
            )
            self._thread.start()
            logger.info("Calibration started")
            return True

    def tap(self, timestamp_ms: int | None = None) -> None:
        """Record a tap; ignored unless listening."""
        if self.state.value is not CalibrationState.LISTENING:
            return
        self.taps.append(self._clock_ms() if timestamp_ms is None else int(timestamp_ms))

    def attach_taps(self, taps: Observable) -> None:
        """Take taps from an observable of epoch-ms values (acoustic taps)."""
        self.detach_taps()

        def on_tap(timestamp_ms: int | None) -> None:
            if timestamp_ms is not None:
                self.tap(timestamp_ms)

        self._unsubscribe = taps.subscribe(on_tap)

    def detach_taps(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def cancel(self) -> None:
        """Abort the run, discarding partial samples and any pending result."""
        with self._lock:
            self._cancel.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(self.settings.join_timeout_seconds)
        self.clicks.clear()
        self.taps.clear()
        self.state.set(CalibrationState.IDLE)
        logger.info("Calibration cancelled")

    def wait(self, timeout: float | None = None) -> CalibrationResult | None:
        """Block until the current run finishes; returns its result."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return self.result.value

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def _run(self, cancel: threading.Event) -> None:
        s = self.settings
        if cancel.wait(s.calibration_lead_in_ms / 1000.0):
            return

        anchor = time.monotonic()
        interval = s.calibration_interval_ms / 1000.0
        for i in range(s.calibration_clicks):
            remaining = anchor + i * interval - time.monotonic()
            if remaining > 0 and cancel.wait(remaining):
                return
            self.clicks.append(self._clock_ms())
            try:
                self._player(self._click, s.sample_rate)
            except Exception as e:
                logger.warning(f"Calibration click playback failed: {e}")

        if cancel.wait(s.calibration_trailing_ms / 1000.0):
            return

        click_ms, tap_ms = self.clicks.snapshot(), self.taps.snapshot()
        self.state.set(CalibrationState.COMPUTING)
        result = self._compute(click_ms, tap_ms)
        with self._lock:
            # a cancel that lands while computing wins; nothing is published
            if cancel.is_set():
                return
            if result.success:
                self.latency_offset_ms.set(result.latency_offset_ms)
                if self._on_offset is not None:
                    self._on_offset(result.latency_offset_ms)
            self.result.set(result)
            self.state.set(CalibrationState.IDLE)

    def _compute(self, click_ms: list[int], tap_ms: list[int]) -> CalibrationResult:
        min_matches = self.settings.calibration_min_matches
        try:
            offset = compute_latency_offset(click_ms, tap_ms, min_matches)
        except InsufficientCalibrationData as e:
            logger.warning(f"Calibration failed: {e} ({len(tap_ms)} taps, {len(click_ms)} clicks)")
            return CalibrationResult(success=False, message=str(e))

        samples = match_taps(click_ms, tap_ms)
        logger.info(f"Calibration done: latency offset {offset} ms from {len(samples)} taps")
        return CalibrationResult(
            success=True,
            latency_offset_ms=offset,
            message=f"Calibration done ({offset} ms)",
            samples=samples,
        )
