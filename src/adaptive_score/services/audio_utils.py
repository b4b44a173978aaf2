"""Audio utilities shared by the synthesizer, mixdown and exporters."""

from __future__ import annotations

import io
import math
from pathlib import Path
from typing import BinaryIO, Union

import numpy as np
import soundfile as sf
from scipy.signal import lfilter, lfiltic

TAU = 2.0 * math.pi


def ensure_mono(waveform: np.ndarray) -> np.ndarray:
    """Collapse any waveform orientation to a contiguous float32 vector."""

    data = np.asarray(waveform, dtype=np.float32)
    if data.ndim == 1:
        return data
    if data.ndim == 2 and data.shape[0] in (1, 2) and data.shape[1] > 2:
        return data.mean(axis=0).astype(np.float32)
    if data.ndim == 2:
        return data.mean(axis=1).astype(np.float32)
    return data.reshape(-1).astype(np.float32)


def smoothstep(u: float) -> float:
    """Cubic ease u^2 (3 - 2u) on a clamped unit interval."""

    u = max(0.0, min(float(u), 1.0))
    return u * u * (3.0 - 2.0 * u)


def lerp(start: float, end: float, amount: float) -> float:
    amount = max(0.0, min(float(amount), 1.0))
    return start + (end - start) * amount


def normalise_peak(waveform: np.ndarray, target_peak: float) -> np.ndarray:
    """Scale so the absolute peak equals ``target_peak``; silence is left alone."""

    data = np.asarray(waveform, dtype=np.float64)
    if data.size == 0:
        return data
    peak = float(np.max(np.abs(data)))
    if peak < 1e-6:
        return data
    return data * (target_peak / peak)


def one_pole_lowpass(waveform: np.ndarray, sample_rate: int, cutoff_hz: float) -> np.ndarray:
    """RC-style one-pole low-pass starting from rest."""

    data = np.asarray(waveform, dtype=np.float64)
    if data.size == 0 or cutoff_hz <= 0.0 or sample_rate <= 0:
        return data
    rc = 1.0 / (cutoff_hz * TAU)
    dt = 1.0 / sample_rate
    alpha = dt / (rc + dt)
    return lfilter([alpha], [1.0, alpha - 1.0], data)


def one_pole_highpass(waveform: np.ndarray, sample_rate: int, cutoff_hz: float) -> np.ndarray:
    """RC-style one-pole high-pass; the first sample is treated as the previous input."""

    data = np.asarray(waveform, dtype=np.float64)
    if data.size == 0 or cutoff_hz <= 0.0 or sample_rate <= 0:
        return data
    rc = 1.0 / (cutoff_hz * TAU)
    dt = 1.0 / sample_rate
    alpha = rc / (rc + dt)
    b = [alpha, -alpha]
    a = [1.0, -alpha]
    zi = lfiltic(b, a, y=[0.0], x=[data[0]])
    filtered, _ = lfilter(b, a, data, zi=zi)
    return filtered


def soft_saturate(waveform: np.ndarray, drive: float = 1.4) -> np.ndarray:
    return np.tanh(np.asarray(waveform, dtype=np.float64) * drive)


def soft_limiter(waveform: np.ndarray, *, threshold: float = 0.9) -> np.ndarray:
    """Apply a simple soft limiter using tanh compression above threshold."""

    if threshold <= 0.0:
        return np.clip(waveform, -1.0, 1.0)

    data = ensure_mono(waveform)
    over = np.abs(data) > threshold
    if np.any(over):
        exceeded = data[over]
        data = data.astype(np.float32, copy=True)
        data[over] = threshold * np.tanh(exceeded / threshold)
    return data


def pad_envelope(length: int) -> np.ndarray:
    """Trapezoid: rise over the first 15 %, fall over the final 25 %."""

    if length <= 0:
        return np.zeros(0, dtype=np.float64)
    i = np.arange(length, dtype=np.float64)
    attack = np.clip(i / (length * 0.15), 0.0, 1.0)
    release = 1.0 - np.clip((i - length * 0.75) / (length * 0.25), 0.0, 1.0)
    return np.minimum(attack, release)


def percussive_envelope(length: int, attack_frac: float, decay_frac: float) -> np.ndarray:
    """Linear attack then linear decay to zero at ``decay_frac`` of the note."""

    if length <= 0:
        return np.zeros(0, dtype=np.float64)
    i = np.arange(length, dtype=np.float64)
    attack_end = length * attack_frac
    decay_end = length * decay_frac
    rising = i / max(1.0, attack_end)
    falling = 1.0 - (i - attack_end) / max(1.0, decay_end - attack_end)
    env = np.where(i < attack_end, rising, falling)
    return np.clip(env, 0.0, 1.0)


def _bit_depth_to_int(bit_depth: str) -> int:
    mapping = {
        "pcm16": 16,
        "pcm24": 24,
        "float32": 32,
    }
    return mapping.get(bit_depth.lower(), 16)


def _soundfile_subtype(bit_depth: str) -> str:
    mapping = {
        "pcm16": "PCM_16",
        "pcm24": "PCM_24",
        "float32": "FLOAT",
    }
    return mapping.get(bit_depth.lower(), "PCM_16")


def _apply_tpdf_dither(data: np.ndarray, bit_depth: int) -> np.ndarray:
    if bit_depth <= 0:
        return data
    step = 1.0 / float(2 ** (bit_depth - 1))
    rng = np.random.default_rng()
    noise = (rng.random(data.shape, dtype=np.float32) - rng.random(data.shape, dtype=np.float32)) * step
    return np.clip(data + noise, -1.0, 1.0).astype(np.float32)


def _write_wav(
    target: Union[Path, BinaryIO],
    waveform: np.ndarray,
    sample_rate: int,
    bit_depth: str,
    dither: bool,
) -> None:
    subtype = _soundfile_subtype(bit_depth)
    export = ensure_mono(waveform).astype(np.float32, copy=True)
    if dither and subtype != "FLOAT":
        export = _apply_tpdf_dither(export, _bit_depth_to_int(bit_depth))
    sf.write(target, export, int(sample_rate), subtype=subtype, format="WAV")


def encode_wav(
    waveform: np.ndarray,
    sample_rate: int,
    *,
    bit_depth: str = "pcm16",
    dither: bool = False,
) -> bytes:
    """Encode a mono waveform as WAV bytes (16-bit PCM unless ``bit_depth`` says otherwise)."""

    buffer = io.BytesIO()
    _write_wav(buffer, waveform, sample_rate, bit_depth, dither)
    return buffer.getvalue()


def write_waveform(
    path: Path,
    waveform: np.ndarray,
    sample_rate: int,
    *,
    bit_depth: str = "pcm16",
    dither: bool = True,
) -> None:
    """Persist a mono waveform to disk as WAV."""

    path.parent.mkdir(parents=True, exist_ok=True)
    _write_wav(path, waveform, sample_rate, bit_depth, dither)
