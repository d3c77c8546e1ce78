from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, field_validator

_LOGGER = logging.getLogger("soundscript.config")

DEFAULT_BPM = 120.0
RENDER_SAMPLE_RATE = 48_000
PLAYBACK_SAMPLE_RATE = 44_100


class CompressorSettings(BaseModel):
    """Master bus compressor. Disabled means ratio 1:1 at -100 dB."""

    threshold: float = -24.0
    ratio: float = Field(default=4.0, ge=1.0)
    attack: float = Field(default=0.003, ge=0.0)
    release: float = Field(default=0.25, ge=0.0)
    enabled: bool = True

    model_config = ConfigDict(frozen=True, extra="forbid")

    def effective(self) -> "CompressorSettings":
        if self.enabled:
            return self
        return self.model_copy(update={"ratio": 1.0, "threshold": -100.0})


class LimiterSettings(BaseModel):
    """Master bus limiter. Disabled means a threshold far above 0 dB."""

    threshold: float = -1.0
    release: float = Field(default=0.1, ge=0.0)
    enabled: bool = True

    model_config = ConfigDict(frozen=True, extra="forbid")

    def effective(self) -> "LimiterSettings":
        if self.enabled:
            return self
        return self.model_copy(update={"threshold": 20.0})


class SessionConfig(BaseModel):
    bpm: float = DEFAULT_BPM
    render_sample_rate: int = RENDER_SAMPLE_RATE
    playback_sample_rate: int = PLAYBACK_SAMPLE_RATE
    channels: int = 2
    finish_timeout: float = Field(default=10.0, gt=0.0)
    finish_grace: float = Field(default=0.5, ge=0.0)
    master_volume: float = Field(default=0.7, ge=0.0, le=1.0)
    realtime_render: bool = False
    compressor: CompressorSettings = Field(default_factory=CompressorSettings)
    limiter: LimiterSettings = Field(default_factory=LimiterSettings)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("bpm")
    @classmethod
    def _validate_bpm(cls, value: float) -> float:
        if value <= 0:
            _LOGGER.warning("Non-positive BPM %s; using %s", value, DEFAULT_BPM)
            return DEFAULT_BPM
        return value

    @field_validator("channels")
    @classmethod
    def _validate_channels(cls, value: int) -> int:
        if value not in (1, 2):
            raise ValueError("channels must be 1 (mono) or 2 (stereo)")
        return value

    @field_validator("render_sample_rate", "playback_sample_rate")
    @classmethod
    def _validate_sample_rate(cls, value: int) -> int:
        if value < 8_000:
            raise ValueError("sample rate must be at least 8000 Hz")
        return value
