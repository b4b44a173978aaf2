"""Intensity to layer-volume mapping plus trim, duck, mute and solo."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping

from .audio_utils import lerp, smoothstep
from .types import DUCKED_LAYERS, LOOP_LAYERS, LayerKind

MIN_TRIM = 0.0
MAX_TRIM = 2.0


def base_volume(layer: LayerKind, intensity: float) -> float:
    """Untrimmed volume of ``layer`` at ``intensity``.

    pad    0.25 -> 0.40 over half the intensity range (always audible)
    bass   0 -> 0.45 along a smoothstep
    drums  0 -> 0.60 along intensity ** 0.8
    arp    silent until 0.3, then 0 -> 0.35
    stinger / fill accents 0.3 -> 0.9 and 0.25 -> 0.8
    """

    i = max(0.0, min(float(intensity), 1.0))
    if layer is LayerKind.PAD:
        return lerp(0.25, 0.40, i * 0.5)
    if layer is LayerKind.BASS:
        return lerp(0.0, 0.45, smoothstep(i))
    if layer is LayerKind.DRUMS:
        return lerp(0.0, 0.60, i ** 0.8)
    if layer is LayerKind.ARP:
        return lerp(0.0, 0.35, (i - 0.3) / 0.7)
    if layer is LayerKind.STINGER:
        return lerp(0.3, 0.9, i)
    return lerp(0.25, 0.8, i)


def pad_cutoff_hz(intensity: float, min_cutoff_hz: float, max_cutoff_hz: float) -> float:
    i = max(0.0, min(float(intensity), 1.0))
    return lerp(min_cutoff_hz, max_cutoff_hz, i ** 0.8)


@dataclass
class MixState:
    trims: Dict[LayerKind, float] = field(default_factory=lambda: {layer: 1.0 for layer in LOOP_LAYERS})
    mutes: Dict[LayerKind, bool] = field(default_factory=lambda: {layer: False for layer in LOOP_LAYERS})
    solos: Dict[LayerKind, bool] = field(default_factory=lambda: {layer: False for layer in LOOP_LAYERS})
    duck_amounts: Dict[LayerKind, float] = field(
        default_factory=lambda: {LayerKind.PAD: 0.5, LayerKind.ARP: 0.6}
    )

    @property
    def any_solo(self) -> bool:
        return any(self.solos.values())

    def audible(self, layer: LayerKind) -> bool:
        if self.any_solo:
            return self.solos.get(layer, False)
        return not self.mutes.get(layer, False)


def mix_volumes(intensity: float, mix: MixState, duck_level: float = 0.0) -> Mapping[LayerKind, float]:
    """Final per-layer volume for every looping layer."""

    volumes: Dict[LayerKind, float] = {}
    duck = max(0.0, min(float(duck_level), 1.0))
    for layer in LOOP_LAYERS:
        volume = base_volume(layer, intensity)
        volume *= max(MIN_TRIM, min(mix.trims.get(layer, 1.0), MAX_TRIM))
        if duck > 0.0 and layer in DUCKED_LAYERS:
            amount = max(0.0, min(mix.duck_amounts.get(layer, 0.0), 1.0))
            volume *= 1.0 - amount * duck
        if not mix.audible(layer):
            volume = 0.0
        volumes[layer] = volume
    return volumes
