"""Bounded LRU cache of generated clips keyed by their synthesis parameters."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Tuple, Union

from loguru import logger

from .synth import DEFAULT_SAMPLE_RATE, clamp_sample_rate, clamp_tier
from .types import AudioBuffer, CacheStats, LayerKind

DEFAULT_MAX_BYTES = 64 * 1024 * 1024
DEFAULT_MAX_COUNT = 128
PROFILE_LOG_LIMIT = 64

_KEY_TAGS = {
    LayerKind.PAD: "pad",
    LayerKind.BASS: "bass",
    LayerKind.DRUMS: "drums",
    LayerKind.ARP: "arp",
    LayerKind.STINGER: "stinger",
    LayerKind.FILL: "drumfill",
}


@dataclass(frozen=True)
class CacheKey:
    """Structured cache key; ``str(key)`` is the stable lookup form.

    Format: ``{tag}|{seed}|{tempo:.2f}|{duration:.2f}|{extra}|sr:{rate}``.
    The render rate is part of the key so caches shared between
    orchestrators running at different rates never alias.
    """

    layer: LayerKind
    seed: int
    tempo_bpm: float
    duration_seconds: float
    extra: str = "-"
    sample_rate: int = DEFAULT_SAMPLE_RATE

    def __str__(self) -> str:
        return "|".join(
            (
                _KEY_TAGS[self.layer],
                str(int(self.seed)),
                f"{self.tempo_bpm:.2f}",
                f"{self.duration_seconds:.2f}",
                self.extra,
                f"sr:{clamp_sample_rate(self.sample_rate)}",
            )
        )


def pad_key(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    progression_index: int,
    richness: int,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> CacheKey:
    extra = f"var:{int(progression_index)}|r:{clamp_tier(richness)}"
    return CacheKey(LayerKind.PAD, seed, tempo_bpm, duration_seconds, extra, sample_rate)


def bass_key(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    root_hz: float,
    complexity: int,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> CacheKey:
    extra = f"c:{clamp_tier(complexity)}|root:{root_hz:.2f}"
    return CacheKey(LayerKind.BASS, seed, tempo_bpm, duration_seconds, extra, sample_rate)


def drums_key(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    complexity: int,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> CacheKey:
    extra = f"c:{clamp_tier(complexity)}"
    return CacheKey(LayerKind.DRUMS, seed, tempo_bpm, duration_seconds, extra, sample_rate)


def arp_key(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    progression_index: int,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> CacheKey:
    extra = f"var:{int(progression_index)}"
    return CacheKey(LayerKind.ARP, seed, tempo_bpm, duration_seconds, extra, sample_rate)


def stinger_key(seed: int, kind: str, duration_seconds: float, *, sample_rate: int = DEFAULT_SAMPLE_RATE) -> CacheKey:
    return CacheKey(LayerKind.STINGER, seed, 0.0, duration_seconds, kind, sample_rate)


def fill_key(
    seed: int,
    tempo_bpm: float,
    duration_seconds: float,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> CacheKey:
    return CacheKey(LayerKind.FILL, seed, tempo_bpm, duration_seconds, "-", sample_rate)


KeyLike = Union[CacheKey, str]


class ClipCache:
    """Key to buffer store with least-recently-used eviction.

    Both limits hold after every public call: the entry count never exceeds
    ``max_count`` and the summed ``AudioBuffer.nbytes`` never exceeds
    ``max_bytes``. Lookups and insertions both count as a touch. A single
    re-entrant lock makes lookup, insert and eviction atomic with respect to
    each other; generation itself runs outside the lock.
    """

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_count: int = DEFAULT_MAX_COUNT,
        *,
        enable_profiling: bool = False,
    ) -> None:
        self._entries: "OrderedDict[str, Tuple[AudioBuffer, int]]" = OrderedDict()
        self._total_bytes = 0
        self._max_bytes = max(1, int(max_bytes))
        self._max_count = max(1, int(max_count))
        self._lock = threading.RLock()
        self._profile_log: Deque[str] = deque(maxlen=PROFILE_LOG_LIMIT)
        self.enable_profiling = enable_profiling
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return str(key) in self._entries

    def keys(self) -> List[str]:
        """Keys ordered from least to most recently used."""

        with self._lock:
            return list(self._entries.keys())

    def limits(self) -> Tuple[int, int]:
        with self._lock:
            return self._max_bytes, self._max_count

    def get(self, key: KeyLike) -> Optional[AudioBuffer]:
        token = str(key)
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            self._entries.move_to_end(token)
            self.hits += 1
            return entry[0]

    def get_or_generate(self, key: KeyLike, generator: Callable[[], AudioBuffer]) -> AudioBuffer:
        token = str(key)
        cached = self.get(token)
        if cached is not None:
            logger.debug("cache hit {}", token)
            return cached

        started = time.perf_counter()
        buffer = generator()
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        with self._lock:
            existing = self._entries.get(token)
            if existing is not None:
                # Another caller inserted the same key while we were rendering.
                self._entries.move_to_end(token)
                return existing[0]
            self.misses += 1
            self._entries[token] = (buffer, buffer.nbytes)
            self._total_bytes += buffer.nbytes
            if self.enable_profiling:
                self._profile_log.append(
                    f"{token} frames={buffer.frame_count} ms={elapsed_ms:.1f}"
                )
            logger.debug("cache miss {} generated in {:.1f} ms", token, elapsed_ms)
            self._enforce_limits()
            if token not in self._entries:
                logger.warning(
                    "Clip {} ({} bytes) exceeds the cache byte limit {}; returned uncached",
                    token,
                    buffer.nbytes,
                    self._max_bytes,
                )
        return buffer

    def set_limits(self, max_bytes: Optional[int] = None, max_count: Optional[int] = None) -> None:
        """Update limits; non-positive or missing values keep the current limit."""

        with self._lock:
            if max_bytes is not None and max_bytes > 0:
                self._max_bytes = int(max_bytes)
            if max_count is not None and max_count > 0:
                self._max_count = int(max_count)
            self._enforce_limits()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total_bytes = 0

    def stats(self) -> CacheStats:
        with self._lock:
            total_seconds = 0.0
            total_samples = 0
            for buffer, _size in self._entries.values():
                total_seconds += buffer.duration_seconds
                total_samples += buffer.frame_count * buffer.channels
            return CacheStats(
                count=len(self._entries),
                total_bytes=self._total_bytes,
                total_seconds=total_seconds,
                total_samples=total_samples,
            )

    def debug_summary(self) -> str:
        stats = self.stats()
        megabytes = stats.total_bytes / (1024.0 * 1024.0)
        return f"cache clips={stats.count} ~{stats.total_seconds:.1f}s ~{megabytes:.1f}MB"

    def drain_profile_log(self) -> List[str]:
        with self._lock:
            entries = list(self._profile_log)
            self._profile_log.clear()
            return entries

    def _enforce_limits(self) -> None:
        evicted: Dict[str, int] = {}
        while self._entries and (
            len(self._entries) > self._max_count or self._total_bytes > self._max_bytes
        ):
            token, (_buffer, size) = self._entries.popitem(last=False)
            self._total_bytes -= size
            evicted[token] = size
        if evicted:
            logger.debug("cache evicted {} entries: {}", len(evicted), list(evicted))
