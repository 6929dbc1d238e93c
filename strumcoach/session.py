"""One practice take: metronome + recording, then rhythm scoring."""

from __future__ import annotations

import logging
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable

from strumcoach.analysis.models import AnalysisResult, BeatEvent, BeatType
from strumcoach.analysis.rhythm import RhythmAnalyzer
from strumcoach.audio.capture import CaptureEngine
from strumcoach.config import Settings, settings as default_settings
from strumcoach.metronome import (
    MetronomeScheduler,
    effective_bpm,
    max_bpm_for,
    parse_time_signature,
    pattern_for_numerator,
)
from strumcoach.state import AppendOnlyLog

logger = logging.getLogger(__name__)


class PracticeSession:
    """Coordinates capture, metronome and analysis for a single take.

    Click timestamps are collected from beat events as seconds relative to
    the moment recording started, so they line up with onset times in the
    recorded file.
    """

    def __init__(
        self,
        capture: CaptureEngine,
        metronome: MetronomeScheduler,
        analyzer: RhythmAnalyzer | None = None,
        settings: Settings | None = None,
        recording_dir: str | Path | None = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.capture = capture
        self.metronome = metronome
        self.analyzer = analyzer or RhythmAnalyzer(self.settings)
        self.recording_dir = Path(recording_dir) if recording_dir else None
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

        self.bpm = 0
        self.recording_path: Path | None = None
        self.result: AnalysisResult | None = None
        self.click_times: AppendOnlyLog[float] = AppendOnlyLog()

        self._lock = threading.Lock()
        self._active = False
        self._started_ms = 0
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def is_active(self) -> bool:
        return self._active

    def start(
        self,
        bpm: int | None = None,
        time_signature: str | None = None,
        pattern: list[BeatType] | None = None,
    ) -> bool:
        """Start recording and clicking. Returns False if a device failed."""
        with self._lock:
            if self._active:
                return True

            numerator, note_value = parse_time_signature(time_signature or self.settings.time_signature)
            bpm = min(bpm or self.settings.bpm, max_bpm_for(note_value))
            self.bpm = bpm
            self.metronome.set_bpm(bpm)
            self.metronome.set_pattern(pattern or pattern_for_numerator(numerator), note_value)

            # The microphone must be free before it is reopened for recording
            self.capture.stop()

            with tempfile.NamedTemporaryFile(
                prefix="take-", suffix=".wav", dir=self.recording_dir, delete=False,
            ) as tmp:
                self.recording_path = Path(tmp.name)
            self.click_times.clear()
            self.result = None

            self._started_ms = self._clock_ms()
            if not self.capture.start(self.recording_path):
                logger.error("Session not started: microphone unavailable")
                return False

            self._unsubscribe = self.metronome.on_beat(self._record_click)
            if not self.metronome.start():
                logger.error("Session not started: output unavailable")
                self._unsubscribe()
                self._unsubscribe = None
                self.capture.stop()
                return False

            self._active = True
            logger.info(
                f"Session started: {bpm} BPM, {numerator}/{note_value} "
                f"({effective_bpm(bpm, note_value)} clicks/min), recording {self.recording_path.name}"
            )
            return True

    def _record_click(self, event: BeatEvent) -> None:
        self.click_times.append((event.emitted_at_epoch_ms - self._started_ms) / 1000.0)

    def finish(self, analyze: bool = True) -> AnalysisResult | None:
        """Stop metronome then capture, and score the closed recording."""
        with self._lock:
            if not self._active:
                return self.result
            self.metronome.stop()
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
            self.capture.stop()
            self._active = False

        if not analyze or self.recording_path is None:
            return None

        clicks = self.click_times.snapshot()
        logger.info(f"Session finished: {len(clicks)} clicks recorded")
        self.result = self.analyzer.analyze_file(
            self.recording_path,
            target_bpm=self.bpm,
            click_times=clicks,
        )
        return self.result
