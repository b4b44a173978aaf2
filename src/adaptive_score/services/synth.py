"""Deterministic procedural synthesis for every score layer.

Each renderer is a pure function of its arguments: no module state is
read or written, and randomness comes from a generator seeded from the
caller's seed plus a per-layer salt. Equal inputs therefore produce
byte-identical buffers, and renders for different keys can run on
separate threads.

Out-of-range inputs are clamped rather than rejected:

* tempo below 1 BPM renders at 1 BPM,
* durations below 10 ms (negative and NaN included) render 10 ms, and
  every buffer has at least 8 frames,
* tiers are clamped to 0..2,
* sample rates are clamped to 8 kHz..192 kHz,
* unknown stinger kinds render as ``rise``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .audio_utils import (
    TAU,
    normalise_peak,
    one_pole_highpass,
    one_pole_lowpass,
    pad_envelope,
    percussive_envelope,
    soft_saturate,
)
from .harmony import (
    BASE_CHORD_OFFSETS,
    BEATS_PER_CHORD,
    DEFAULT_BASS_ROOT_HZ,
    chord_progression_variant,
    seconds_per_beat,
    semitone_ratio,
)
from .types import AccentKind, AudioBuffer, LayerKind

DEFAULT_SAMPLE_RATE = 44_100
MIN_SAMPLE_RATE = 8_000
MAX_SAMPLE_RATE = 192_000
MIN_TEMPO_BPM = 1.0
MIN_DURATION_SECONDS = 0.01
MIN_FRAMES = 8
MAX_TIER = 2
DEFAULT_STINGER_SECONDS = 2.0

PAD_PEAK = 0.95
BASS_PEAK = 0.92
DRUM_PEAK = 0.85
ARP_PEAK = 0.90
ACCENT_PEAK = 0.95

BASS_CUTOFF_HZ = 250.0
ARP_HIGHPASS_HZ = 300.0
PAD_AIR_HIGHPASS_HZ = 3_000.0
HAT_HIGHPASS_HZ = 6_000.0

_SEED_MASK = 0xFFFFFFFF
_LAYER_SALT = {
    LayerKind.PAD: 73,
    LayerKind.BASS: 37,
    LayerKind.DRUMS: 17,
    LayerKind.ARP: 53,
    LayerKind.STINGER: 91,
    LayerKind.FILL: 911,
}
_SNARE_SALT = 6_151
_HAT_SALT = 7_919
_ARP_DEGREES = (1.0, 1.5, 2.0, 1.5)


@dataclass(frozen=True)
class LayerParams:
    """Layer-specific discriminators passed to :func:`generate`."""

    tier: int = 0
    progression_index: int = 0
    root_hz: Optional[float] = None
    accent: Optional[str] = None
    chord_roots: Optional[Tuple[float, ...]] = None


@dataclass(frozen=True)
class _Timing:
    sample_rate: int
    tempo_bpm: float
    duration_seconds: float
    total_frames: int

    @property
    def seconds_per_beat(self) -> float:
        return seconds_per_beat(self.tempo_bpm)

    @property
    def beat_frames(self) -> int:
        return max(1, int(math.ceil(self.seconds_per_beat * self.sample_rate)))

    def times(self) -> np.ndarray:
        return np.arange(self.total_frames, dtype=np.float64) / self.sample_rate


def clamp_tier(tier: int) -> int:
    return max(0, min(int(tier), MAX_TIER))


def clamp_sample_rate(sample_rate: int) -> int:
    return max(MIN_SAMPLE_RATE, min(int(sample_rate), MAX_SAMPLE_RATE))


def _resolve_timing(tempo_bpm: float, duration_seconds: float, sample_rate: int) -> _Timing:
    rate = clamp_sample_rate(sample_rate)
    tempo = float(tempo_bpm)
    if not tempo >= MIN_TEMPO_BPM:
        logger.debug("Clamping tempo {} to {}", tempo_bpm, MIN_TEMPO_BPM)
        tempo = MIN_TEMPO_BPM
    duration = float(duration_seconds)
    if not duration >= MIN_DURATION_SECONDS:
        logger.debug("Clamping duration {} to {}", duration_seconds, MIN_DURATION_SECONDS)
        duration = MIN_DURATION_SECONDS
    total = max(MIN_FRAMES, int(math.ceil(duration * rate)))
    return _Timing(rate, tempo, duration, total)


def _rng(seed: int, layer: LayerKind, *extra: int) -> np.random.Generator:
    entropy = [int(seed) & _SEED_MASK, _LAYER_SALT[layer], *[int(value) & _SEED_MASK for value in extra]]
    return np.random.default_rng(np.random.SeedSequence(entropy))


def _finish(data: np.ndarray, peak: float, timing: _Timing, label: str) -> AudioBuffer:
    return AudioBuffer(samples=normalise_peak(data, peak), sample_rate=timing.sample_rate, label=label)


# ---------------------------------------------------------------------------
# Percussion voices
# ---------------------------------------------------------------------------


def _add_kick(data: np.ndarray, start: int, sample_rate: int, amp: float) -> None:
    length = min(data.shape[0] - start, sample_rate // 8)
    if length <= 0:
        return
    i = np.arange(length, dtype=np.float64)
    t = i / sample_rate
    freq = 80.0 + (40.0 - 80.0) * (i / length)
    phase = TAU * np.cumsum(freq) / sample_rate
    data[start : start + length] += np.sin(phase) * np.exp(-6.0 * t) * amp


def _add_snare(data: np.ndarray, start: int, sample_rate: int, amp: float, seed: int) -> None:
    length = min(data.shape[0] - start, sample_rate // 6)
    if length <= 0:
        return
    rng = np.random.default_rng([seed & _SEED_MASK, _SNARE_SALT, start, data.shape[0]])
    t = np.arange(length, dtype=np.float64) / sample_rate
    noise = rng.uniform(-1.0, 1.0, size=length)
    tone = np.sin(TAU * 180.0 * t) * np.exp(-10.0 * t)
    data[start : start + length] += (tone * 0.3 + noise * 0.7) * np.exp(-12.0 * t) * amp


def _add_hat(data: np.ndarray, start: int, sample_rate: int, amp: float, seed: int) -> None:
    length = min(data.shape[0] - start, sample_rate // 16)
    if length <= 0:
        return
    rng = np.random.default_rng([seed & _SEED_MASK, _HAT_SALT, start, data.shape[0]])
    t = np.arange(length, dtype=np.float64) / sample_rate
    cutoff = min(HAT_HIGHPASS_HZ, 0.45 * sample_rate)
    noise = one_pole_highpass(rng.uniform(-1.0, 1.0, size=length), sample_rate, cutoff)
    data[start : start + length] += noise * np.exp(-35.0 * t) * amp


# ---------------------------------------------------------------------------
# Looping layers
# ---------------------------------------------------------------------------


def pad_signal(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    *,
    richness: int = 0,
    chord_roots: Optional[Sequence[float]] = None,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> np.ndarray:
    """Unnormalised pad mix; higher richness only adds partials on top of tier 0."""

    timing = _resolve_timing(tempo_bpm, duration_seconds, sample_rate)
    richness = clamp_tier(richness)
    roots = list(chord_roots) if chord_roots else chord_progression_variant(0)
    rng = _rng(seed, LayerKind.PAD)

    total = timing.total_frames
    rate = timing.sample_rate
    chord_frames = max(1, int(math.ceil(timing.seconds_per_beat * BEATS_PER_CHORD * rate)))
    chord_count = int(math.ceil(total / chord_frames))
    # Draws shared by every tier come first so tiers differ only by added partials.
    detunes = 1.0 + rng.uniform(-0.002, 0.002, size=(chord_count, 2))
    air = None
    if richness >= 2:
        air = one_pole_highpass(rng.uniform(-1.0, 1.0, size=total), rate, min(PAD_AIR_HIGHPASS_HZ, 0.45 * rate))

    t = timing.times()
    chorus = 1.0 + 0.02 * np.sin(TAU * 0.1 * t)
    shimmer_lfo = 1.0 + 0.03 * np.sin(TAU * 0.07 * t)
    data = np.zeros(total, dtype=np.float64)

    for chord in range(chord_count):
        start = chord * chord_frames
        end = min(total, start + chord_frames)
        segment = slice(start, end)
        ts = t[segment]
        env = pad_envelope(end - start)
        root = roots[chord % len(roots)]
        detune_a, detune_b = detunes[chord]

        value = (
            0.55 * np.sin(TAU * root * detune_a * ts)
            + 0.30 * np.sin(TAU * root * 1.5 * ts)
            + 0.20 * np.sin(TAU * root * 2.0 * detune_b * ts)
        )
        if richness >= 1:
            ninth = root * semitone_ratio(14)
            value = value + 0.18 * np.sin(TAU * ninth * ts) * shimmer_lfo[segment]
        if richness >= 2 and air is not None:
            eleventh = root * semitone_ratio(17)
            value = value + 0.12 * np.sin(TAU * eleventh * ts)
            value = value + 0.07 * np.sin(TAU * eleventh * 1.01 * ts)
            value = value + air[segment] * env * 0.02
        data[segment] = value * env * 0.18 * chorus[segment]
    return data


def render_pad(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    *,
    richness: int = 0,
    chord_roots: Optional[Sequence[float]] = None,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> AudioBuffer:
    """Sustained chord pad, peak-normalised."""

    timing = _resolve_timing(tempo_bpm, duration_seconds, sample_rate)
    data = pad_signal(
        seed,
        tempo_bpm,
        duration_seconds,
        richness=richness,
        chord_roots=chord_roots,
        sample_rate=sample_rate,
    )
    return _finish(data, PAD_PEAK, timing, f"pad:r{clamp_tier(richness)}:{seed}")


def render_bass(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    *,
    complexity: int = 0,
    root_hz: float = DEFAULT_BASS_ROOT_HZ,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> AudioBuffer:
    """Saturated bass line following the chord table one chord per bar."""

    timing = _resolve_timing(tempo_bpm, duration_seconds, sample_rate)
    complexity = clamp_tier(complexity)
    rng = _rng(seed, LayerKind.BASS, complexity)
    total = timing.total_frames
    rate = timing.sample_rate
    beat_frames = timing.beat_frames
    beats = int(math.ceil(total / beat_frames))
    data = np.zeros(total, dtype=np.float64)

    def add_note(freq: float, start: int, length: int, amp: float, short: bool) -> None:
        length = min(total - start, length)
        if length <= 0:
            return
        t = np.arange(length, dtype=np.float64) / rate
        if short:
            env = percussive_envelope(length, 0.01, 0.20)
        else:
            env = percussive_envelope(length, 0.02, 0.35)
        detune = 1.0 + rng.uniform(-0.002, 0.002)
        tone = 0.75 * np.sin(TAU * freq * detune * t) + 0.25 * np.sin(TAU * (freq * 2.0) * t * 0.25)
        data[start : start + length] += soft_saturate(tone, 1.4) * env * amp

    for beat in range(beats):
        beat_start = beat * beat_frames
        base = root_hz * semitone_ratio(BASE_CHORD_OFFSETS[(beat // BEATS_PER_CHORD) % len(BASE_CHORD_OFFSETS)])
        fifth_pulse = beat % 4 == 3 or (complexity >= 1 and beat % 8 == 5)
        add_note(base * 1.5 if fifth_pulse else base, beat_start, beat_frames, 0.55, False)

        if complexity >= 1:
            off_start = beat_start + beat_frames // 2
            if off_start < total:
                off_freq = base * 2.0 if beat % 6 == 3 else base * 1.5
                add_note(off_freq, off_start, beat_frames // 2, 0.45, True)

        if complexity >= 2:
            sixteenth = beat_frames // 4
            pass_one = beat_start + int(sixteenth * 0.75)
            pass_two = beat_start + int(sixteenth * 1.5)
            if sixteenth > 0 and pass_two < beat_start + beat_frames:
                approach = base * (semitone_ratio(-1) if beat % 7 == 4 else 1.0)
                add_note(approach, pass_one, sixteenth, 0.38, True)
                add_note(base * 2.0, pass_two, sixteenth, 0.40, True)
            if beat % 16 == 12:
                add_note(base * 2.0, beat_start, beat_frames // 2, 0.60, True)

    data = one_pole_lowpass(data, rate, BASS_CUTOFF_HZ)
    return _finish(data, BASS_PEAK, timing, f"bass:c{complexity}:{root_hz:.2f}:{seed}")


def render_drums(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    *,
    complexity: int = 0,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> AudioBuffer:
    """Kick/snare/hat groove; tiers add ghost notes, sixteenth hats and fills."""

    timing = _resolve_timing(tempo_bpm, duration_seconds, sample_rate)
    complexity = clamp_tier(complexity)
    rng = _rng(seed, LayerKind.DRUMS, complexity)
    total = timing.total_frames
    rate = timing.sample_rate
    beat_frames = timing.beat_frames
    beats = int(math.ceil(total / beat_frames))
    data = np.zeros(total, dtype=np.float64)

    for beat in range(beats):
        beat_start = beat * beat_frames
        kick_beat = beat % 4 in (0, 2)
        if kick_beat:
            _add_kick(data, beat_start, rate, 0.9)
        if beat % 4 == 2:
            _add_snare(data, beat_start, rate, 0.6, seed)
            if complexity >= 1:
                _add_snare(data, beat_start + beat_frames // 2, rate, 0.25, seed)

        if complexity >= 2:
            if not kick_beat:
                _add_kick(data, beat_start + beat_frames // 2, rate, 0.55)
            if beat % 8 == 7:
                fill_hits = 6
                fill_span = beat_frames // 3
                for hit in range(fill_hits):
                    amp = 0.18 + 0.05 * rng.random()
                    _add_hat(data, beat_start + (hit * fill_span // fill_hits), rate, amp, seed)

        for half in range(2):
            hat_start = beat_start + half * beat_frames // 2
            amp = 0.15 + 0.05 * rng.random()
            _add_hat(data, hat_start, rate, amp, seed)
            if complexity >= 1:
                between = hat_start + beat_frames // 4
                if between < beat_start + beat_frames:
                    _add_hat(data, between, rate, amp * 0.7, seed)

    return _finish(data, DRUM_PEAK, timing, f"drums:c{complexity}:{seed}")


def render_arp(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    *,
    chord_roots: Optional[Sequence[float]] = None,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> AudioBuffer:
    """Eighth-note root/fifth/octave/fifth arpeggio over the pad's chords."""

    timing = _resolve_timing(tempo_bpm, duration_seconds, sample_rate)
    roots = list(chord_roots) if chord_roots else chord_progression_variant(0)
    total = timing.total_frames
    rate = timing.sample_rate
    note_frames = max(1, int(math.ceil(timing.seconds_per_beat / 2.0 * rate)))
    notes_per_chord = BEATS_PER_CHORD * 2
    note_count = int(math.ceil(total / note_frames))
    t = timing.times()
    vibrato = 1.0 + 0.01 * np.sin(TAU * 6.0 * t)
    data = np.zeros(total, dtype=np.float64)

    for note in range(note_count):
        start = note * note_frames
        end = min(total, start + note_frames)
        segment = slice(start, end)
        root = roots[(note // notes_per_chord) % len(roots)]
        freq = root * _ARP_DEGREES[note % len(_ARP_DEGREES)]
        env = percussive_envelope(end - start, 0.005, 0.25)
        data[segment] += np.sin(TAU * freq * t[segment]) * env * 0.4 * vibrato[segment]

    data = one_pole_highpass(data, rate, ARP_HIGHPASS_HZ)
    return _finish(data, ARP_PEAK, timing, f"arp:{seed}")


# ---------------------------------------------------------------------------
# One-shot accents
# ---------------------------------------------------------------------------


def resolve_accent(kind: Optional[str]) -> AccentKind:
    if kind in (AccentKind.HIT, AccentKind.HIT.value):
        return AccentKind.HIT
    if kind not in (None, AccentKind.RISE, AccentKind.RISE.value):
        logger.debug("Unknown stinger kind {!r}; rendering rise", kind)
    return AccentKind.RISE


def render_stinger(
    seed: int,
    kind: Optional[str] = "rise",
    duration_seconds: float = DEFAULT_STINGER_SECONDS,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> AudioBuffer:
    accent = resolve_accent(kind)
    timing = _resolve_timing(MIN_TEMPO_BPM, duration_seconds, sample_rate)
    rng = _rng(seed, LayerKind.STINGER)
    rate = timing.sample_rate
    t = timing.times()
    length = timing.duration_seconds

    if accent is AccentKind.HIT:
        noise = rng.uniform(-1.0, 1.0, size=timing.total_frames)
        freq = 220.0 + (110.0 - 220.0) * np.clip(t, 0.0, 1.0)
        tone = np.sin(TAU * np.cumsum(freq) / rate)
        data = (tone * 0.4 + noise * 0.6) * np.exp(-6.0 * t)
    else:
        freq = 180.0 + (360.0 - 180.0) * np.power(np.clip(t, 0.0, 1.0), 0.85)
        phase = TAU * np.cumsum(freq) / rate
        env = np.sin(np.clip(t / length, 0.0, 1.0) * math.pi * 0.5)
        env = env * np.exp(-2.0 * np.maximum(0.0, t - length * 0.7))
        data = np.sin(phase) * env + 0.25 * np.sin(phase * 1.01) * env * 0.5

    return _finish(data, ACCENT_PEAK, timing, f"stinger:{accent.value}:{seed}")


def render_fill(
    seed: int,
    tempo_bpm: float,
    duration_seconds: Optional[float] = None,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> AudioBuffer:
    """Kick pickup, rising six-hit snare roll and sprinkled hats; one beat by default."""

    if duration_seconds is None or not duration_seconds > 0.0:
        duration_seconds = seconds_per_beat(tempo_bpm)
    timing = _resolve_timing(tempo_bpm, duration_seconds, sample_rate)
    rng = _rng(seed, LayerKind.FILL)
    total = timing.total_frames
    rate = timing.sample_rate
    data = np.zeros(total, dtype=np.float64)

    _add_kick(data, 0, rate, 0.7)
    hits = 6
    for hit in range(1, hits + 1):
        position = int((hit / (hits + 1)) * total)
        amp = 0.25 + (0.6 - 0.25) * (hit / hits)
        _add_snare(data, position, rate, amp, seed)
    hat_count = 8
    for index in range(hat_count):
        position = int((index / hat_count) * total)
        _add_hat(data, position, rate, 0.18 + 0.06 * rng.random(), seed)

    return _finish(data, ACCENT_PEAK, timing, f"fill:{seed}")


def generate(
    layer: LayerKind | str,
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    params: Optional[LayerParams] = None,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> AudioBuffer:
    """Render one buffer for ``layer``; equal arguments give identical samples."""

    kind = LayerKind(layer)
    params = params or LayerParams()
    if kind is LayerKind.PAD:
        roots = params.chord_roots or tuple(chord_progression_variant(params.progression_index))
        return render_pad(
            seed,
            tempo_bpm,
            duration_seconds,
            richness=params.tier,
            chord_roots=roots,
            sample_rate=sample_rate,
        )
    if kind is LayerKind.BASS:
        root = params.root_hz if params.root_hz is not None else DEFAULT_BASS_ROOT_HZ
        return render_bass(
            seed,
            tempo_bpm,
            duration_seconds,
            complexity=params.tier,
            root_hz=root,
            sample_rate=sample_rate,
        )
    if kind is LayerKind.DRUMS:
        return render_drums(
            seed,
            tempo_bpm,
            duration_seconds,
            complexity=params.tier,
            sample_rate=sample_rate,
        )
    if kind is LayerKind.ARP:
        roots = params.chord_roots or tuple(chord_progression_variant(params.progression_index))
        return render_arp(seed, tempo_bpm, duration_seconds, chord_roots=roots, sample_rate=sample_rate)
    if kind is LayerKind.STINGER:
        return render_stinger(seed, params.accent, duration_seconds, sample_rate=sample_rate)
    return render_fill(seed, tempo_bpm, duration_seconds, sample_rate=sample_rate)
