"""Shared service data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

SAMPLE_BYTES = 4


class LayerKind(str, Enum):
    PAD = "pad"
    BASS = "bass"
    DRUMS = "drums"
    ARP = "arp"
    STINGER = "stinger"
    FILL = "fill"

    @property
    def looping(self) -> bool:
        return self not in (LayerKind.STINGER, LayerKind.FILL)


LOOP_LAYERS = (LayerKind.PAD, LayerKind.BASS, LayerKind.DRUMS, LayerKind.ARP)
DUCKED_LAYERS = (LayerKind.PAD, LayerKind.ARP)


class AccentKind(str, Enum):
    RISE = "rise"
    HIT = "hit"
    FILL = "fill"


class VoiceRole(str, Enum):
    MAIN = "main"
    INCOMING = "incoming"
    ACCENT = "accent"


class DuckPhase(str, Enum):
    IDLE = "idle"
    ATTACK = "attack"
    HOLD = "hold"
    RELEASE = "release"


@dataclass(frozen=True, eq=False)
class AudioBuffer:
    """Immutable mono PCM buffer; samples are float32 and read-only."""

    samples: np.ndarray
    sample_rate: int
    label: str = ""

    def __post_init__(self) -> None:
        data = np.array(self.samples, dtype=np.float32, copy=True).reshape(-1)
        data.setflags(write=False)
        object.__setattr__(self, "samples", data)

    @property
    def channels(self) -> int:
        return 1

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frame_count / float(self.sample_rate)

    @property
    def nbytes(self) -> int:
        return self.frame_count * self.channels * SAMPLE_BYTES

    def to_bytes(self) -> bytes:
        return self.samples.tobytes()


@dataclass
class Voice:
    """A buffer being played by a layer together with its playhead."""

    buffer: AudioBuffer
    position_seconds: float = 0.0
    loop: bool = True

    def advance(self, delta_seconds: float) -> bool:
        """Move the playhead; returns False once a one-shot has finished."""

        duration = self.buffer.duration_seconds
        self.position_seconds += delta_seconds
        if duration <= 0.0:
            return False
        if self.loop:
            self.position_seconds %= duration
            return True
        return self.position_seconds < duration


@dataclass
class Crossfade:
    incoming: Voice
    duration_seconds: float
    elapsed_seconds: float = 0.0
    reason: str = ""
    started_tick: int = 0

    @property
    def progress(self) -> float:
        if self.duration_seconds <= 0.0:
            return 1.0
        return max(0.0, min(self.elapsed_seconds / self.duration_seconds, 1.0))

    @property
    def finished(self) -> bool:
        return self.elapsed_seconds >= self.duration_seconds


@dataclass
class LayerState:
    layer: LayerKind
    voice: Optional[Voice] = None
    tier: int = 0
    crossfade: Optional[Crossfade] = None
    volume: float = 0.0

    @property
    def buffer(self) -> Optional[AudioBuffer]:
        return self.voice.buffer if self.voice is not None else None

    @property
    def crossfading(self) -> bool:
        return self.crossfade is not None


@dataclass
class ProgressionState:
    index: int = 0
    seconds_until_auto: Optional[float] = None
    pending_steps: Optional[int] = None
    pending_delay_seconds: float = 0.0
    beats_per_chord: int = 4

    @property
    def pending(self) -> bool:
        return self.pending_steps is not None


@dataclass
class DuckState:
    level: float = 0.0
    phase: DuckPhase = DuckPhase.IDLE
    phase_elapsed: float = 0.0


@dataclass
class IntensityRamp:
    start: float
    target: float
    duration_seconds: float
    elapsed_seconds: float = 0.0


@dataclass
class PendingAccent:
    kind: AccentKind
    delay_seconds: float


@dataclass(frozen=True)
class VoiceOutput:
    layer: LayerKind
    role: str
    buffer: AudioBuffer
    volume: float
    position_seconds: float
    loop: bool


@dataclass(frozen=True)
class CacheStats:
    count: int
    total_bytes: int
    total_seconds: float
    total_samples: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "total_bytes": self.total_bytes,
            "total_seconds": round(self.total_seconds, 3),
            "total_samples": self.total_samples,
        }


@dataclass
class WarmupStatus:
    name: str
    ready: bool
    generated: int
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "ready": self.ready,
            "generated": self.generated,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.details:
            payload["details"] = self.details
        return payload
