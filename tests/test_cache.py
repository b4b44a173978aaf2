from __future__ import annotations

from typing import List

import numpy as np
import pytest

from adaptive_score.services.cache import (
    ClipCache,
    arp_key,
    bass_key,
    drums_key,
    fill_key,
    pad_key,
    stinger_key,
)
from adaptive_score.services.types import AudioBuffer


def _buffer(frames: int, label: str = "") -> AudioBuffer:
    return AudioBuffer(samples=np.zeros(frames, dtype=np.float32), sample_rate=8_000, label=label)


class CountingGenerator:
    def __init__(self, frames: int = 100) -> None:
        self.frames = frames
        self.calls: List[int] = []

    def __call__(self) -> AudioBuffer:
        self.calls.append(self.frames)
        return _buffer(self.frames)


def test_key_formats() -> None:
    assert str(pad_key(12345, 90.0, 12.0, 2, 1)) == "pad|12345|90.00|12.00|var:2|r:1|sr:44100"
    assert str(bass_key(12356, 90.0, 12.0, 55.0, 2)) == "bass|12356|90.00|12.00|c:2|root:55.00|sr:44100"
    assert str(drums_key(7, 120.5, 8.0, 5)) == "drums|7|120.50|8.00|c:2|sr:44100"
    assert str(arp_key(7, 120.0, 8.0, -1)) == "arp|7|120.00|8.00|var:-1|sr:44100"
    assert str(stinger_key(7, "hit", 2.0)) == "stinger|7|0.00|2.00|hit|sr:44100"
    assert str(fill_key(7, 120.0, 0.5)) == "drumfill|7|120.00|0.50|-|sr:44100"


def test_keys_differ_by_sample_rate() -> None:
    low = drums_key(7, 120.0, 8.0, 1, sample_rate=8_000)
    high = drums_key(7, 120.0, 8.0, 1, sample_rate=16_000)

    assert str(low) == "drums|7|120.00|8.00|c:1|sr:8000"
    assert str(low) != str(high)
    assert str(pad_key(1, 90.0, 12.0, 0, 0, sample_rate=1)).endswith("|sr:8000")


def test_hit_returns_same_buffer_without_regenerating() -> None:
    cache = ClipCache(max_bytes=10_000, max_count=8)
    generator = CountingGenerator()

    first = cache.get_or_generate("a", generator)
    second = cache.get_or_generate("a", generator)

    assert first is second
    assert len(generator.calls) == 1
    assert cache.hits == 1
    assert cache.misses == 1


def test_count_limit_evicts_least_recently_used() -> None:
    cache = ClipCache(max_bytes=1_000_000, max_count=2)
    cache.get_or_generate("a", CountingGenerator())
    cache.get_or_generate("b", CountingGenerator())
    cache.get_or_generate("a", CountingGenerator())
    cache.get_or_generate("c", CountingGenerator())

    assert cache.keys() == ["a", "c"]
    assert "b" not in cache


def test_third_insert_over_count_limit_drops_oldest() -> None:
    cache = ClipCache(max_bytes=1_000_000, max_count=2)
    for key in ("A", "B", "C"):
        cache.get_or_generate(key, CountingGenerator())

    assert "A" not in cache
    assert cache.keys() == ["B", "C"]
    assert len(cache) == 2
    assert cache.stats().count == 2


def test_byte_limit_holds_after_every_insert() -> None:
    cache = ClipCache(max_bytes=1_000, max_count=100)
    for index in range(10):
        cache.get_or_generate(f"clip-{index}", CountingGenerator(frames=100))
        assert cache.stats().total_bytes <= 1_000
    assert len(cache) == 2
    assert cache.keys() == ["clip-8", "clip-9"]


def test_oversized_clip_is_returned_but_not_kept() -> None:
    cache = ClipCache(max_bytes=100, max_count=4)
    buffer = cache.get_or_generate("huge", CountingGenerator(frames=1_000))

    assert buffer.frame_count == 1_000
    assert len(cache) == 0


def test_lowering_limits_evicts_immediately() -> None:
    cache = ClipCache(max_bytes=1_000_000, max_count=10)
    for key in "abcde":
        cache.get_or_generate(key, CountingGenerator())
    cache.get("a")

    cache.set_limits(max_count=2)

    assert cache.keys() == ["e", "a"]
    assert cache.limits() == (1_000_000, 2)


def test_non_positive_limits_are_ignored() -> None:
    cache = ClipCache(max_bytes=4_000, max_count=3)
    cache.set_limits(max_bytes=0, max_count=-1)
    assert cache.limits() == (4_000, 3)


def test_clear_and_stats() -> None:
    cache = ClipCache(max_bytes=1_000_000, max_count=10)
    cache.get_or_generate("x", CountingGenerator(frames=8_000))
    stats = cache.stats()

    assert stats.count == 1
    assert stats.total_bytes == 32_000
    assert stats.total_seconds == pytest.approx(1.0)
    assert stats.total_samples == 8_000
    assert "clips=1" in cache.debug_summary()

    cache.clear()

    assert len(cache) == 0
    assert cache.stats().total_bytes == 0


def test_profile_log_records_generation_when_enabled() -> None:
    cache = ClipCache(enable_profiling=True)
    cache.get_or_generate("p", CountingGenerator())

    entries = cache.drain_profile_log()
    assert len(entries) == 1
    assert entries[0].startswith("p frames=100")
    assert cache.drain_profile_log() == []
