"""Offline playback output that mixes orchestrator voices into one timeline."""

from __future__ import annotations

from typing import List, Sequence

import numpy as np
from loguru import logger

from .audio_utils import soft_limiter
from .synth import DEFAULT_SAMPLE_RATE
from .types import VoiceOutput


class OfflineMixdown:
    """Accumulates ``delta_seconds`` worth of frames for every tick it receives.

    Each voice contributes samples read from its playhead onwards at its
    volume; looping voices wrap and one-shots fall silent past their end.
    Fractional frames are carried between ticks so the timeline length tracks
    the summed deltas.
    """

    def __init__(self, sample_rate: int = DEFAULT_SAMPLE_RATE) -> None:
        self.sample_rate = int(sample_rate)
        self._chunks: List[np.ndarray] = []
        self._carry = 0.0
        self._frames = 0

    @property
    def frame_count(self) -> int:
        return self._frames

    @property
    def duration_seconds(self) -> float:
        return self._frames / float(self.sample_rate)

    def render(self, voices: Sequence[VoiceOutput], delta_seconds: float) -> None:
        exact = max(0.0, float(delta_seconds)) * self.sample_rate + self._carry
        frames = int(exact)
        self._carry = exact - frames
        if frames <= 0:
            return
        chunk = np.zeros(frames, dtype=np.float64)
        offsets = np.arange(frames, dtype=np.float64) / self.sample_rate
        for voice in voices:
            if voice.volume <= 0.0:
                continue
            chunk += self._read(voice, offsets) * voice.volume
        self._chunks.append(chunk)
        self._frames += frames

    def _read(self, voice: VoiceOutput, offsets: np.ndarray) -> np.ndarray:
        samples = voice.buffer.samples
        length = samples.shape[0]
        if length == 0:
            return np.zeros_like(offsets)
        positions = (voice.position_seconds + offsets) * voice.buffer.sample_rate
        indices = np.floor(positions + 1e-9).astype(np.int64)
        if voice.loop:
            return samples[indices % length].astype(np.float64)
        inside = indices < length
        out = np.zeros_like(offsets)
        out[inside] = samples[indices[inside]]
        return out

    def waveform(self) -> np.ndarray:
        if not self._chunks:
            return np.zeros(0, dtype=np.float32)
        data = np.concatenate(self._chunks).astype(np.float32)
        peak = float(np.max(np.abs(data))) if data.size else 0.0
        if peak > 1.0:
            logger.debug("Mixdown peak {:.2f} exceeds full scale; limiting", peak)
        return soft_limiter(data, threshold=0.9)
