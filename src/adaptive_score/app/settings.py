from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_config_dir() -> Path:
    return Path.home() / ".config" / "adaptive-score"


def _default_artifact_root() -> Path:
    return Path.home() / "Music" / "AdaptiveScore"


class Settings(BaseSettings):
    """Process configuration for the adaptive score service and CLI."""

    model_config = SettingsConfigDict(
        env_prefix="ADAPTIVE_SCORE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    config_dir: Path = Field(default_factory=_default_config_dir)
    artifact_root: Path = Field(default_factory=_default_artifact_root)
    sample_rate: int = Field(
        default=44_100,
        ge=8_000,
        le=192_000,
        description="Sample rate used for every synthesized clip.",
    )
    default_seed: int = Field(default=12345, description="Seed for a fresh score.")
    default_tempo_bpm: float = Field(default=90.0, ge=1.0, le=400.0)
    default_loop_seconds: float = Field(default=12.0, ge=1.0, le=120.0)
    cache_max_megabytes: float = Field(
        default=64.0,
        gt=0.0,
        le=4096.0,
        description="Byte budget of the clip cache in megabytes.",
    )
    cache_max_clips: int = Field(default=128, ge=1, description="Entry budget of the clip cache.")
    tick_hz: float = Field(
        default=60.0,
        description="Rate at which the service clock advances the score.",
    )
    auto_start: bool = Field(default=True, description="Start the score clock with the service.")
    enable_profiling: bool = Field(
        default=False,
        description="Record per-clip generation timings in the cache profile log.",
    )

    @model_validator(mode="after")
    def _clamp_clock(self) -> "Settings":
        if self.tick_hz < 1.0:
            self.tick_hz = 1.0
        elif self.tick_hz > 240.0:
            self.tick_hz = 240.0
        return self

    @property
    def cache_max_bytes(self) -> int:
        return int(self.cache_max_megabytes * 1024 * 1024)

    def ensure_directories(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.artifact_root.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
