from __future__ import annotations

import pytest

from adaptive_score.services.mixer import MixState, base_volume, mix_volumes, pad_cutoff_hz
from adaptive_score.services.types import LayerKind


def test_volume_curves() -> None:
    assert base_volume(LayerKind.PAD, 0.0) == pytest.approx(0.25)
    assert base_volume(LayerKind.PAD, 1.0) == pytest.approx(0.325)
    assert base_volume(LayerKind.BASS, 0.0) == 0.0
    assert base_volume(LayerKind.BASS, 0.5) == pytest.approx(0.225)
    assert base_volume(LayerKind.DRUMS, 1.0) == pytest.approx(0.6)
    assert base_volume(LayerKind.ARP, 0.3) == 0.0
    assert base_volume(LayerKind.ARP, 1.0) == pytest.approx(0.35)
    assert base_volume(LayerKind.STINGER, 0.5) == pytest.approx(0.6)
    assert base_volume(LayerKind.FILL, 0.0) == pytest.approx(0.25)


def test_intensity_outside_unit_range_is_clamped() -> None:
    assert base_volume(LayerKind.DRUMS, 4.0) == base_volume(LayerKind.DRUMS, 1.0)
    assert base_volume(LayerKind.PAD, -1.0) == base_volume(LayerKind.PAD, 0.0)


def test_pad_cutoff_curve() -> None:
    assert pad_cutoff_hz(0.0, 900.0, 4800.0) == pytest.approx(900.0)
    assert pad_cutoff_hz(1.0, 900.0, 4800.0) == pytest.approx(4800.0)


def test_trim_duck_and_solo() -> None:
    mix = MixState()
    mix.trims[LayerKind.DRUMS] = 2.0
    mix.trims[LayerKind.BASS] = 5.0
    volumes = mix_volumes(1.0, mix, duck_level=1.0)

    assert volumes[LayerKind.DRUMS] == pytest.approx(1.2)
    assert volumes[LayerKind.BASS] == pytest.approx(0.9)
    assert volumes[LayerKind.PAD] == pytest.approx(0.325 * 0.5)
    assert volumes[LayerKind.ARP] == pytest.approx(0.35 * 0.4)

    mix.solos[LayerKind.BASS] = True
    mix.mutes[LayerKind.BASS] = True
    soloed = mix_volumes(1.0, mix)

    assert soloed[LayerKind.BASS] == pytest.approx(0.9)
    assert soloed[LayerKind.PAD] == 0.0
    assert soloed[LayerKind.DRUMS] == 0.0


def test_mute_without_solo() -> None:
    mix = MixState()
    mix.mutes[LayerKind.PAD] = True
    volumes = mix_volumes(0.5, mix)

    assert volumes[LayerKind.PAD] == 0.0
    assert volumes[LayerKind.DRUMS] > 0.0
