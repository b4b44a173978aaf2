"""Chord tables and progression transposition shared by pad, arp and bass."""

from __future__ import annotations

from typing import List, Sequence

# Am, F, C, G expressed as semitone offsets from the root.
BASE_CHORD_OFFSETS: Sequence[int] = (0, -5, -9, -2)
DEFAULT_PAD_ROOT_HZ = 220.0
DEFAULT_BASS_ROOT_HZ = 55.0
SEMITONES_PER_STEP = 2
MAX_SHIFT_SEMITONES = 6
BEATS_PER_CHORD = 4


def semitone_ratio(semitones: float) -> float:
    return float(2.0 ** (semitones / 12.0))


def progression_shift(progression_index: int) -> int:
    """Semitone shift for an index; the stored index is unbounded but the shift is not."""

    raw = int(progression_index) * SEMITONES_PER_STEP
    return max(-MAX_SHIFT_SEMITONES, min(raw, MAX_SHIFT_SEMITONES))


def chord_progression_variant(
    progression_index: int,
    base_root_hz: float = DEFAULT_PAD_ROOT_HZ,
) -> List[float]:
    """Four chord roots in Hz for the given progression index."""

    shift = progression_shift(progression_index)
    return [base_root_hz * semitone_ratio(offset + shift) for offset in BASE_CHORD_OFFSETS]


def bass_root_for_progression(
    progression_index: int,
    base_root_hz: float = DEFAULT_BASS_ROOT_HZ,
) -> float:
    return base_root_hz * semitone_ratio(progression_shift(progression_index))


def seconds_per_beat(tempo_bpm: float) -> float:
    return 60.0 / max(1.0, float(tempo_bpm))


def chord_seconds(tempo_bpm: float, beats_per_chord: int = BEATS_PER_CHORD) -> float:
    return seconds_per_beat(tempo_bpm) * max(1, int(beats_per_chord))
