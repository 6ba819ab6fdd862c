"""CHORDWAVE global configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Audio
    sample_rate: int = 44100
    headroom: float = 0.8
    render_workers: int = 4
    voice_capacity: int = 64
    max_render_seconds: float = 3600.0

    # Timeline
    ticks_per_quarter: int = 480
    default_bpm: int = 120

    # Chord parsing
    max_chord_tokens: int = 128
    parallel_threshold: int = 16

    # Reverb
    reverb_buffer_seconds: float = 5.0

    # Fallback tone
    fallback_tone_hz: float = 440.0
    fallback_samples: int = 10000

    model_config = {"env_prefix": "CHORDWAVE_"}


settings = Settings()
