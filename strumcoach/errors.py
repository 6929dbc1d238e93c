"""Error taxonomy for the practice core.

None of these reach the host application: each component catches them at
its own boundary, logs, and degrades to a stopped / empty / failed state.
"""


class StrumcoachError(Exception):
    """Base class for all strumcoach errors."""


class DeviceUnavailable(StrumcoachError):
    """Microphone or output device could not be acquired."""


class InsufficientCalibrationData(StrumcoachError):
    """Fewer valid tap/click matches than the calibration needs."""

    def __init__(self, matches: int, required: int) -> None:
        super().__init__(f"Not enough data: {matches}/{required} valid taps")
        self.matches = matches
        self.required = required


class DegenerateRecording(StrumcoachError):
    """Recording is missing, too short, unreadable or has no onsets."""


class WriteFailure(StrumcoachError):
    """WAV writer I/O error."""
