from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..services.types import LOOP_LAYERS, LayerKind

FlatValue = Union[str, int, float, bool, None]

MAX_FADE_SECONDS = 60.0
MAX_DUCK_STAGE_SECONDS = 10.0
MAX_PROGRESSION_INTERVAL_SECONDS = 3600.0
MAX_CACHE_MEGABYTES = 4096.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(float(value), high))


class LayerSettings(BaseModel):
    """Per-layer adaptation thresholds, lock override and mixer strip."""

    model_config = ConfigDict(extra="ignore")

    adaptive: bool = True
    medium_threshold: float = 0.35
    high_threshold: float = 0.7
    crossfade_seconds: float = 2.0
    lock_tier: Optional[int] = None
    mute: bool = False
    solo: bool = False
    trim: float = 1.0

    @model_validator(mode="after")
    def _clamp_ranges(self) -> "LayerSettings":
        self.medium_threshold = _clamp(self.medium_threshold, 0.0, 1.0)
        self.high_threshold = _clamp(self.high_threshold, self.medium_threshold, 1.0)
        self.crossfade_seconds = _clamp(self.crossfade_seconds, 0.1, MAX_FADE_SECONDS)
        if self.lock_tier is not None:
            self.lock_tier = int(_clamp(self.lock_tier, 0, 2))
        self.trim = _clamp(self.trim, 0.0, 2.0)
        return self


def _default_layers() -> Dict[LayerKind, LayerSettings]:
    return {
        LayerKind.PAD: LayerSettings(medium_threshold=0.45, high_threshold=0.8, crossfade_seconds=3.0),
        LayerKind.BASS: LayerSettings(medium_threshold=0.4, high_threshold=0.75, crossfade_seconds=2.0),
        LayerKind.DRUMS: LayerSettings(medium_threshold=0.35, high_threshold=0.7, crossfade_seconds=2.0),
        LayerKind.ARP: LayerSettings(adaptive=False, crossfade_seconds=3.0),
    }


class DuckingSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    pad_amount: float = 0.5
    arp_amount: float = 0.6
    attack_seconds: float = 0.02
    hold_seconds: float = 0.08
    release_seconds: float = 0.35

    @model_validator(mode="after")
    def _clamp_ranges(self) -> "DuckingSettings":
        self.pad_amount = _clamp(self.pad_amount, 0.0, 1.0)
        self.arp_amount = _clamp(self.arp_amount, 0.0, 1.0)
        self.attack_seconds = _clamp(self.attack_seconds, 0.005, MAX_DUCK_STAGE_SECONDS)
        self.hold_seconds = _clamp(self.hold_seconds, 0.0, MAX_DUCK_STAGE_SECONDS)
        self.release_seconds = _clamp(self.release_seconds, 0.05, MAX_DUCK_STAGE_SECONDS)
        return self


class ScoreSettings(BaseModel):
    """Every runtime-configurable option of a score orchestrator.

    Wrongly typed values fail validation; well-typed values outside their
    musical range (including infinities and NaN) are clamped. Tempo, loop
    and stinger lengths are rounded to the two decimals cache keys carry.
    """

    model_config = ConfigDict(extra="ignore")

    seed: int = 12345
    intensity: float = 0.0
    tempo_bpm: float = 90.0
    loop_seconds: float = 12.0

    auto_progression: bool = True
    progression_interval_seconds: float = 60.0
    progression_jitter_seconds: float = 10.0
    align_progression_to_chord: bool = True
    beats_per_chord: int = 4
    progression_crossfade_seconds: float = 3.0
    play_fill_on_progression: bool = True

    align_stingers_to_beat: bool = False
    stinger_subdivision: int = 1
    align_fills_to_beat: bool = True
    fill_subdivision: int = 1
    stinger_seconds: float = 2.0

    link_bass_to_progression: bool = True
    bass_base_root_hz: float = 55.0
    bass_progression_crossfade_seconds: float = 2.5

    pad_filter_dynamics: bool = True
    pad_min_cutoff_hz: float = 900.0
    pad_max_cutoff_hz: float = 4800.0

    layers: Dict[LayerKind, LayerSettings] = Field(default_factory=_default_layers)
    ducking: DuckingSettings = Field(default_factory=DuckingSettings)

    cache_max_megabytes: float = 64.0
    cache_max_clips: int = 128

    @model_validator(mode="after")
    def _clamp_ranges(self) -> "ScoreSettings":
        self.intensity = _clamp(self.intensity, 0.0, 1.0)
        self.tempo_bpm = round(_clamp(self.tempo_bpm, 1.0, 400.0), 2)
        self.loop_seconds = round(_clamp(self.loop_seconds, 1.0, 120.0), 2)
        self.progression_interval_seconds = _clamp(
            self.progression_interval_seconds, 0.0, MAX_PROGRESSION_INTERVAL_SECONDS
        )
        self.progression_jitter_seconds = _clamp(
            self.progression_jitter_seconds, 0.0, self.progression_interval_seconds
        )
        self.beats_per_chord = int(_clamp(self.beats_per_chord, 1, 16))
        self.progression_crossfade_seconds = _clamp(self.progression_crossfade_seconds, 0.1, MAX_FADE_SECONDS)
        self.stinger_subdivision = int(_clamp(self.stinger_subdivision, 1, 4))
        self.fill_subdivision = int(_clamp(self.fill_subdivision, 1, 4))
        self.stinger_seconds = round(_clamp(self.stinger_seconds, 0.1, 10.0), 2)
        self.bass_base_root_hz = _clamp(self.bass_base_root_hz, 20.0, 440.0)
        self.bass_progression_crossfade_seconds = _clamp(
            self.bass_progression_crossfade_seconds, 0.0, MAX_FADE_SECONDS
        )
        self.pad_min_cutoff_hz = _clamp(self.pad_min_cutoff_hz, 20.0, 20_000.0)
        self.pad_max_cutoff_hz = _clamp(self.pad_max_cutoff_hz, self.pad_min_cutoff_hz, 20_000.0)
        self.cache_max_megabytes = _clamp(self.cache_max_megabytes, 1.0, MAX_CACHE_MEGABYTES)
        self.cache_max_clips = max(1, int(self.cache_max_clips))

        defaults = _default_layers()
        self.layers = {layer: self.layers.get(layer, defaults[layer]) for layer in LOOP_LAYERS}
        return self

    @property
    def cache_max_bytes(self) -> int:
        return int(self.cache_max_megabytes * 1024 * 1024)

    def to_flat(self) -> Dict[str, FlatValue]:
        """Dotted-key view for key-value stores, e.g. ``layers.pad.trim``."""

        flat: Dict[str, FlatValue] = {}

        def walk(prefix: str, value: Any) -> None:
            if isinstance(value, dict):
                for key, item in value.items():
                    walk(f"{prefix}.{key}" if prefix else str(key), item)
            else:
                flat[prefix] = value

        walk("", self.model_dump(mode="json"))
        return flat

    @classmethod
    def from_flat(cls, flat: Mapping[str, FlatValue]) -> "ScoreSettings":
        nested: Dict[str, Any] = {}
        for dotted, value in flat.items():
            parts = str(dotted).split(".")
            cursor = nested
            for part in parts[:-1]:
                child = cursor.setdefault(part, {})
                if not isinstance(child, dict):
                    raise ValueError(f"flat key {dotted!r} conflicts with scalar {part!r}")
                cursor = child
            cursor[parts[-1]] = value
        return cls.model_validate(nested)


class IntensityRequest(BaseModel):
    value: float = Field(..., ge=0.0, le=1.0)
    ramp_seconds: float = Field(default=0.0, ge=0.0, le=60.0)


class ProgressionRequest(BaseModel):
    steps: int = Field(default=1, ge=-16, le=16)
    aligned: Optional[bool] = None


class SettingsResponse(BaseModel):
    applied: bool
    settings: ScoreSettings


class LayerStatus(BaseModel):
    layer: LayerKind
    tier: int
    volume: float
    crossfading: bool
    buffer_label: Optional[str] = None
    position_seconds: float = 0.0


class ScoreStatus(BaseModel):
    started: bool
    intensity: float
    progression_index: int
    seconds_until_auto_progression: Optional[float] = None
    progression_pending: bool = False
    duck_level: float = 0.0
    bass_root_hz: float
    pad_cutoff_hz: Optional[float] = None
    layers: list[LayerStatus] = Field(default_factory=list)
    cache: Dict[str, Any] = Field(default_factory=dict)
