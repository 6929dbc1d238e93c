"""Application configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings with env var overrides."""

    # Audio
    sample_rate: int = 44100
    input_device: int | str | None = None
    output_device: int | str | None = None

    # Capture / tuner
    frame_size: int = 4096
    hop_size: int = 2048  # 50% overlap
    input_threshold: float = Field(default=0.02, gt=0.0)  # RMS gate, full-scale units
    pitch_confidence: float = 0.85
    min_frequency_hz: float = 20.0
    reference_frequency_hz: float = Field(default=440.0, gt=0.0)
    smoothing_window: int = 3
    high_pass_cutoff_hz: float = 30.0
    min_tap_interval_ms: int = 50
    join_timeout_seconds: float = 1.0

    # Metronome
    bpm: int = 120
    time_signature: str = "4/4"
    metronome_offset_ms: int = Field(default=0, ge=0, le=400)
    accent_frequency_hz: float = 1200.0
    normal_frequency_hz: float = 800.0
    click_duration_ms: int = 50

    # Rhythm analysis
    onset_frame_size: int = 1024
    onset_hop_size: int = 512
    onset_threshold: float = 0.15
    min_salience: float = 0.005
    rhythm_margin: float = Field(default=0.3, ge=0.0, le=1.0)
    latency_offset_ms: int = Field(default=0, ge=0, le=300)
    min_file_bytes: int = 1000

    # Calibration
    calibration_clicks: int = 8
    calibration_interval_ms: int = 750
    calibration_lead_in_ms: int = 1500
    calibration_trailing_ms: int = 1000
    calibration_min_matches: int = 3

    log_level: str = "INFO"

    model_config = {"env_prefix": "STRUMCOACH_"}


settings = Settings()
