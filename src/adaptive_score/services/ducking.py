"""Attack/hold/release ducking envelope driven by accent playback."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .audio_utils import smoothstep
from .types import DuckPhase, DuckState

MIN_ATTACK_SECONDS = 0.005
MIN_HOLD_SECONDS = 0.0
MIN_RELEASE_SECONDS = 0.05


@dataclass(frozen=True)
class DuckTimings:
    attack_seconds: float = 0.02
    hold_seconds: float = 0.08
    release_seconds: float = 0.35

    def clamped(self) -> "DuckTimings":
        return DuckTimings(
            attack_seconds=max(MIN_ATTACK_SECONDS, float(self.attack_seconds)),
            hold_seconds=max(MIN_HOLD_SECONDS, float(self.hold_seconds)),
            release_seconds=max(MIN_RELEASE_SECONDS, float(self.release_seconds)),
        )


def duck_level_at(elapsed: float, timings: DuckTimings) -> DuckState:
    """Envelope state ``elapsed`` seconds after a trigger."""

    t = timings.clamped()
    if elapsed < 0.0:
        return DuckState(level=0.0, phase=DuckPhase.IDLE, phase_elapsed=0.0)
    if elapsed < t.attack_seconds:
        return DuckState(level=elapsed / t.attack_seconds, phase=DuckPhase.ATTACK, phase_elapsed=elapsed)
    hold_end = t.attack_seconds + t.hold_seconds
    if elapsed < hold_end:
        return DuckState(level=1.0, phase=DuckPhase.HOLD, phase_elapsed=elapsed - t.attack_seconds)
    release_elapsed = elapsed - hold_end
    if release_elapsed < t.release_seconds:
        level = 1.0 - smoothstep(release_elapsed / t.release_seconds)
        return DuckState(level=level, phase=DuckPhase.RELEASE, phase_elapsed=release_elapsed)
    return DuckState(level=0.0, phase=DuckPhase.IDLE, phase_elapsed=0.0)


class DuckEnvelope:
    """Resumable envelope; ``advance`` is called once per tick.

    A retrigger restarts from the attack phase instead of stacking. Once the
    release completes the transient state is dropped and the level reads 0.
    """

    def __init__(self, timings: Optional[DuckTimings] = None) -> None:
        self.timings = timings or DuckTimings()
        self._elapsed: Optional[float] = None
        self._state: Optional[DuckState] = None

    @property
    def active(self) -> bool:
        return self._state is not None

    @property
    def level(self) -> float:
        return self._state.level if self._state is not None else 0.0

    @property
    def phase(self) -> DuckPhase:
        return self._state.phase if self._state is not None else DuckPhase.IDLE

    def trigger(self) -> None:
        self._elapsed = 0.0
        self._state = DuckState(level=0.0, phase=DuckPhase.ATTACK, phase_elapsed=0.0)

    def cancel(self) -> None:
        self._elapsed = None
        self._state = None

    def advance(self, delta_seconds: float) -> float:
        if self._elapsed is None:
            return 0.0
        self._elapsed += max(0.0, delta_seconds)
        state = duck_level_at(self._elapsed, self.timings)
        if state.phase is DuckPhase.IDLE:
            self.cancel()
            return 0.0
        self._state = state
        return state.level
