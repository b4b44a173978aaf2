from __future__ import annotations

from typing import List, Sequence

import pytest

from adaptive_score.app.models import ScoreSettings
from adaptive_score.services.cache import ClipCache
from adaptive_score.services.mixer import base_volume
from adaptive_score.services.orchestrator import ScoreOrchestrator
from adaptive_score.services.types import LOOP_LAYERS, AccentKind, LayerKind, VoiceOutput

RATE = 8_000


class RecordingOutput:
    def __init__(self) -> None:
        self.calls: List[Sequence[VoiceOutput]] = []

    def render(self, voices: Sequence[VoiceOutput], delta_seconds: float) -> None:
        self.calls.append(list(voices))


def _settings(**overrides: object) -> ScoreSettings:
    values: dict[str, object] = {
        "seed": 7,
        "tempo_bpm": 120.0,
        "loop_seconds": 2.0,
        "auto_progression": False,
        "play_fill_on_progression": False,
    }
    values.update(overrides)
    return ScoreSettings(**values)


def _orchestrator(**overrides: object) -> ScoreOrchestrator:
    score = ScoreOrchestrator(_settings(**overrides), sample_rate=RATE, rng_seed=1)
    score.start()
    return score


def _layer_outputs(score: ScoreOrchestrator, layer: LayerKind) -> List[VoiceOutput]:
    return [voice for voice in score.outputs() if voice.layer is layer]


def test_start_builds_every_layer() -> None:
    score = _orchestrator()

    for layer in LOOP_LAYERS:
        assert score.tier(layer) == 0
        assert score.layer_buffer(layer) is not None
    assert score.layer_volume(LayerKind.PAD) == pytest.approx(0.25)
    assert score.layer_volume(LayerKind.DRUMS) == 0.0
    assert len(score.cache) == 4


def test_tick_before_start_does_nothing() -> None:
    score = ScoreOrchestrator(_settings(), sample_rate=RATE)
    assert score.tick(0.1) == []
    assert len(score.cache) == 0


def test_tiers_never_decrease_while_intensity_rises() -> None:
    score = _orchestrator()
    previous = {layer: 0 for layer in LOOP_LAYERS}
    for step in range(21):
        score.set_intensity(step / 20.0)
        score.tick(0.01)
        for layer in LOOP_LAYERS:
            assert score.tier(layer) >= previous[layer]
            previous[layer] = score.tier(layer)
    assert score.tier(LayerKind.DRUMS) == 2
    assert score.tier(LayerKind.BASS) == 2
    assert score.tier(LayerKind.PAD) == 2
    assert score.tier(LayerKind.ARP) == 0


def test_thresholds_select_tiers() -> None:
    score = _orchestrator()
    score.set_intensity(0.4)
    score.tick(0.01)

    assert score.tier(LayerKind.DRUMS) == 1
    assert score.tier(LayerKind.BASS) == 1
    assert score.tier(LayerKind.PAD) == 0


def test_steady_intensity_never_starts_a_crossfade() -> None:
    score = _orchestrator(intensity=0.5)
    for _ in range(50):
        score.set_intensity(0.5)
        score.tick(0.05)
        for layer in LOOP_LAYERS:
            assert not score.layer_state(layer).crossfading
    assert len(score.cache) == 4


def test_crossfade_conserves_layer_volume() -> None:
    score = _orchestrator()
    score.set_intensity(0.5)
    score.tick(0.01)
    assert score.layer_state(LayerKind.DRUMS).crossfading

    for _ in range(10):
        score.tick(0.1)
        voices = _layer_outputs(score, LayerKind.DRUMS)
        assert {voice.role for voice in voices} == {"main", "incoming"}
        total = sum(voice.volume for voice in voices)
        assert total == pytest.approx(score.layer_volume(LayerKind.DRUMS))

    for _ in range(15):
        score.tick(0.1)
    assert not score.layer_state(LayerKind.DRUMS).crossfading
    assert [voice.role for voice in _layer_outputs(score, LayerKind.DRUMS)] == ["main"]


def test_incoming_voice_starts_at_outgoing_playhead() -> None:
    score = _orchestrator()
    score.tick(0.7)
    score.set_intensity(0.5)
    score.tick(0.01)

    state = score.layer_state(LayerKind.DRUMS)
    assert state.crossfade is not None
    assert state.crossfade.incoming.position_seconds == pytest.approx(state.voice.position_seconds)


def test_interrupted_crossfade_promotes_incoming_voice() -> None:
    score = _orchestrator()
    tier_zero = score.layer_buffer(LayerKind.DRUMS)
    score.set_intensity(0.5)
    score.tick(0.01)
    tier_one = score.layer_buffer(LayerKind.DRUMS)
    score.tick(0.5)

    score.set_intensity(0.0)
    score.tick(0.01)

    state = score.layer_state(LayerKind.DRUMS)
    assert state.voice is not None and state.voice.buffer is tier_one
    assert state.crossfade is not None and state.crossfade.incoming.buffer is tier_zero
    assert state.crossfade.elapsed_seconds == pytest.approx(0.01)
    assert score.tier(LayerKind.DRUMS) == 0


def test_intensity_ramp_follows_smoothstep() -> None:
    score = _orchestrator()
    score.set_intensity(1.0, ramp_seconds=1.0)
    score.tick(0.5)
    assert score.intensity == pytest.approx(0.5)
    score.tick(0.6)
    assert score.intensity == pytest.approx(1.0)


def test_immediate_progression_crossfades_harmonic_layers() -> None:
    score = _orchestrator()
    root_before = score.bass_root_hz

    score.advance_progression(1, aligned=False)

    assert score.progression_index == 1
    assert score.layer_state(LayerKind.PAD).crossfading
    assert score.layer_state(LayerKind.ARP).crossfading
    assert score.layer_state(LayerKind.BASS).crossfading
    assert not score.layer_state(LayerKind.DRUMS).crossfading
    assert score.layer_state(LayerKind.PAD).crossfade.duration_seconds == pytest.approx(3.0)
    assert score.layer_state(LayerKind.BASS).crossfade.duration_seconds == pytest.approx(2.5)
    assert score.bass_root_hz == pytest.approx(root_before * 2 ** (2 / 12))


def test_unlinked_bass_keeps_its_clip() -> None:
    score = _orchestrator(link_bass_to_progression=False)
    score.advance_progression(1, aligned=False)

    assert not score.layer_state(LayerKind.BASS).crossfading
    assert score.bass_root_hz == pytest.approx(55.0)


def test_aligned_progression_waits_for_chord_boundary() -> None:
    score = _orchestrator()
    score.tick(0.5)

    score.advance_progression(1)

    assert score.progression_pending
    assert score.progression_index == 0
    score.tick(1.4)
    assert score.progression_index == 0
    score.tick(0.2)
    assert score.progression_index == 1
    assert not score.progression_pending
    assert score.layer_state(LayerKind.PAD).crossfading


def test_progression_index_is_unbounded_but_pitch_clamps() -> None:
    score = _orchestrator()
    for _ in range(5):
        score.advance_progression(1, aligned=False)

    assert score.progression_index == 5
    assert score.bass_root_hz == pytest.approx(55.0 * 2 ** 0.5)


def test_progression_before_start_is_used_on_start() -> None:
    score = ScoreOrchestrator(_settings(), sample_rate=RATE)
    score.advance_progression(2)
    score.start()

    assert score.progression_index == 2
    assert "pad|7|120.00|2.00|var:2|r:0|sr:8000" in score.cache
    assert "arp|60|120.00|2.00|var:2|sr:8000" in score.cache


def test_auto_progression_fires_and_reschedules() -> None:
    score = _orchestrator(
        auto_progression=True,
        progression_interval_seconds=1.0,
        progression_jitter_seconds=0.0,
        align_progression_to_chord=False,
    )
    assert score.seconds_until_auto_progression == pytest.approx(5.0)

    for _ in range(10):
        score.tick(0.5)

    assert score.progression_index == 1
    assert score.seconds_until_auto_progression == pytest.approx(5.0)


def test_progression_fill_plays_on_change() -> None:
    score = _orchestrator(play_fill_on_progression=True, align_fills_to_beat=False)
    score.advance_progression(1, aligned=False)

    assert score.active_accents() == [AccentKind.FILL]


def test_stinger_ducks_pad_and_arp() -> None:
    score = _orchestrator(intensity=0.5)
    score.trigger_stinger("hit")

    accents = [voice for voice in score.outputs() if voice.role == "accent"]
    assert len(accents) == 1
    assert accents[0].layer is LayerKind.STINGER
    assert accents[0].volume == pytest.approx(0.6)

    score.tick(0.05)
    level = score.duck_level
    assert level == pytest.approx(1.0)
    assert score.layer_volume(LayerKind.PAD) == pytest.approx(base_volume(LayerKind.PAD, 0.5) * (1 - 0.5 * level))
    assert score.layer_volume(LayerKind.DRUMS) == pytest.approx(base_volume(LayerKind.DRUMS, 0.5))

    for _ in range(25):
        score.tick(0.1)
    assert score.active_accents() == []
    assert score.duck_level == 0.0


def test_ducking_can_be_disabled() -> None:
    score = _orchestrator(ducking={"enabled": False})
    score.trigger_stinger("rise")
    score.tick(0.05)
    assert score.duck_level == 0.0


def test_aligned_fill_starts_on_beat() -> None:
    score = _orchestrator(align_fills_to_beat=True)
    score.trigger_fill()

    score.tick(0.3)
    assert score.active_accents() == []
    score.tick(0.3)
    assert score.active_accents() == [AccentKind.FILL]


def test_mute_solo_and_trim() -> None:
    score = _orchestrator(intensity=0.5)
    drums = score.layer_volume(LayerKind.DRUMS)

    score.set_trim(LayerKind.DRUMS, 2.0)
    assert score.layer_volume(LayerKind.DRUMS) == pytest.approx(drums * 2.0)

    score.set_mute(LayerKind.DRUMS, True)
    assert score.layer_volume(LayerKind.DRUMS) == 0.0

    score.set_solo(LayerKind.BASS, True)
    assert score.layer_volume(LayerKind.PAD) == 0.0
    assert score.layer_volume(LayerKind.BASS) > 0.0

    score.set_solo(LayerKind.BASS, False)
    assert score.layer_volume(LayerKind.PAD) > 0.0

    with pytest.raises(ValueError):
        score.set_mute("stinger", True)


def test_layer_lock_overrides_intensity() -> None:
    score = _orchestrator()
    score.set_layer_lock(LayerKind.DRUMS, 2)

    assert score.tier(LayerKind.DRUMS) == 2
    score.set_intensity(0.9)
    score.tick(0.01)
    assert score.tier(LayerKind.DRUMS) == 2

    score.set_layer_lock(LayerKind.DRUMS, None)
    score.set_intensity(0.0)
    score.tick(0.01)
    assert score.tier(LayerKind.DRUMS) == 0


def test_attach_output_requires_render() -> None:
    score = _orchestrator()

    assert score.attach_output(None) is False
    assert score.attach_output(object()) is False  # type: ignore[arg-type]

    output = RecordingOutput()
    assert score.attach_output(output) is True
    score.tick(0.02)
    assert len(output.calls) == 1
    assert {voice.layer for voice in output.calls[0]} == set(LOOP_LAYERS)


def test_settings_json_round_trip() -> None:
    source = _orchestrator(intensity=0.3, seed=99)
    source.set_trim(LayerKind.PAD, 1.5)
    payload = source.export_settings_json()

    target = ScoreOrchestrator(sample_rate=RATE)
    assert target.import_settings_json(payload, regenerate=False) is True
    assert target.snapshot_settings() == source.snapshot_settings()


@pytest.mark.parametrize("payload", ["not json", '{"seed": "abc"}', '{"layers": {"pad": {"trim": "loud"}}}'])
def test_malformed_settings_are_rejected(payload: str) -> None:
    score = _orchestrator()
    before = score.snapshot_settings()

    assert score.import_settings_json(payload) is False
    assert score.snapshot_settings() == before


def test_update_settings_rejects_unknown_keys() -> None:
    score = _orchestrator()
    assert score.update_settings({"volume": 1.0}) is False
    assert score.update_settings({"layers.stinger.trim": 1.0}) is False
    assert score.update_settings({"layers.pad.trim": "x"}) is False


def test_update_settings_clamps_and_applies() -> None:
    score = _orchestrator()

    assert score.update_settings({"intensity": 3.0, "layers.pad.trim": 0.5}) is True
    assert score.intensity == 1.0
    assert score.settings.layers[LayerKind.PAD].trim == 0.5
    assert score.update_settings({"ducking": {"pad_amount": 0.25}}) is True
    assert score.settings.ducking.pad_amount == 0.25


def test_generative_update_regenerates_layers() -> None:
    score = _orchestrator()
    assert score.update_settings({"tempo_bpm": 100.0}) is True

    for layer in LOOP_LAYERS:
        assert score.layer_state(layer).crossfading


def test_reset_to_defaults() -> None:
    score = _orchestrator(seed=3)
    score.reset_to_defaults(regenerate=False)
    assert score.settings.seed == ScoreSettings().seed
    assert score.settings.loop_seconds == 12.0


def test_cache_limits_follow_settings() -> None:
    cache = ClipCache()
    score = ScoreOrchestrator(_settings(), cache, sample_rate=RATE)
    assert score.cache is cache
    score.start()

    score.set_cache_limits(max_clips=2)

    assert len(cache) <= 2
    assert cache.limits()[1] == 2
    assert score.settings.cache_max_clips == 2


def test_pad_cutoff_tracks_intensity() -> None:
    score = _orchestrator()
    assert score.pad_cutoff_hz == pytest.approx(900.0)
    score.set_intensity(1.0)
    assert score.pad_cutoff_hz == pytest.approx(4800.0)
    score.update_settings({"pad_filter_dynamics": False})
    assert score.pad_cutoff_hz is None


def test_status_reports_layers() -> None:
    score = _orchestrator()
    status = score.status()

    assert status.started is True
    assert [layer.layer for layer in status.layers] == list(LOOP_LAYERS)
    assert status.cache["count"] == 4


@pytest.mark.asyncio
async def test_warmup_pregenerates_all_tiers() -> None:
    score = ScoreOrchestrator(_settings(), sample_rate=RATE)
    statuses = await score.warmup()

    status = statuses["synth"]
    assert status.ready is True
    assert status.generated == 13
    assert len(score.cache) == 13
    assert score.warmup_status() is status


def test_injected_empty_cache_is_shared() -> None:
    cache = ClipCache(enable_profiling=True)
    assert len(cache) == 0

    score = ScoreOrchestrator(_settings(), cache, sample_rate=RATE)
    score.start()

    assert score.cache is cache
    assert len(cache) == 4
    assert cache.drain_profile_log()


def test_shared_cache_keeps_sample_rates_apart() -> None:
    cache = ClipCache()
    low = ScoreOrchestrator(_settings(), cache, sample_rate=8_000)
    high = ScoreOrchestrator(_settings(), cache, sample_rate=16_000)

    low_pad = low.render_layer_clip(LayerKind.PAD, 0)
    high_pad = high.render_layer_clip(LayerKind.PAD, 0)

    assert low_pad.sample_rate == 8_000
    assert high_pad.sample_rate == 16_000
    assert high_pad.frame_count == 2 * low_pad.frame_count
    assert len(cache) == 2


def test_near_identical_tempos_share_one_quantised_clip() -> None:
    cache = ClipCache()
    first = ScoreOrchestrator(_settings(tempo_bpm=120.001), cache, sample_rate=RATE)
    second = ScoreOrchestrator(_settings(tempo_bpm=120.004), cache, sample_rate=RATE)

    assert first.settings.tempo_bpm == second.settings.tempo_bpm == 120.0
    assert first.render_layer_clip(LayerKind.DRUMS, 1) is second.render_layer_clip(LayerKind.DRUMS, 1)


def test_bass_renders_the_root_its_key_carries() -> None:
    score = _orchestrator()
    score.advance_progression(1, aligned=False)

    incoming = score.layer_state(LayerKind.BASS).crossfade.incoming.buffer
    assert f"root:{round(score.bass_root_hz, 2):.2f}" in " ".join(score.cache.keys())
    assert incoming is score.render_layer_clip(LayerKind.BASS, score.tier(LayerKind.BASS))


@pytest.mark.parametrize("value", [1e308, float("inf")])
def test_huge_timing_settings_are_clamped_and_keep_ticking(value: float) -> None:
    score = _orchestrator(auto_progression=True)

    assert score.update_settings(
        {
            "progression_interval_seconds": value,
            "progression_jitter_seconds": value,
            "progression_crossfade_seconds": value,
            "layers.drums.crossfade_seconds": value,
            "ducking.release_seconds": value,
        }
    ) is True

    s = score.settings
    assert s.progression_interval_seconds == 3600.0
    assert s.progression_jitter_seconds == 3600.0
    assert s.progression_crossfade_seconds == 60.0
    assert s.layers[LayerKind.DRUMS].crossfade_seconds == 60.0
    assert s.ducking.release_seconds == 10.0
    assert score.seconds_until_auto_progression is not None
    assert score.seconds_until_auto_progression <= 7200.0

    score.set_intensity(0.5)
    score.tick(0.1)
    assert score.layer_state(LayerKind.DRUMS).crossfade.duration_seconds == 60.0


def test_huge_interval_imports_from_json() -> None:
    score = _orchestrator(auto_progression=True)
    text = score.export_settings_json().replace(
        '"progression_interval_seconds": 60.0',
        '"progression_interval_seconds": 1e308',
    )
    assert "1e308" in text

    assert score.import_settings_json(text, regenerate=False) is True
    assert score.settings.progression_interval_seconds == 3600.0
    score.tick(0.1)


def test_tier_fade_elapsed_tracks_incoming_playhead() -> None:
    score = _orchestrator()
    score.set_intensity(0.5)

    score.tick(0.25)

    state = score.layer_state(LayerKind.DRUMS)
    assert state.crossfade is not None
    assert state.crossfade.elapsed_seconds == pytest.approx(0.25)
    assert state.crossfade.incoming.position_seconds == pytest.approx(0.25)


def test_progression_fade_started_after_playheads_begins_at_zero() -> None:
    score = _orchestrator()
    score.tick(0.5)
    score.advance_progression(1)

    score.tick(1.6)

    crossfade = score.layer_state(LayerKind.PAD).crossfade
    assert score.progression_index == 1
    assert crossfade is not None
    assert crossfade.elapsed_seconds == 0.0
    score.tick(0.25)
    assert crossfade.elapsed_seconds == pytest.approx(0.25)

def test_fade_requested_between_ticks_advances_on_next_tick() -> None:
    score = _orchestrator()
    score.tick(0.1)
    score.advance_progression(1, aligned=False)

    score.tick(0.2)

    assert score.layer_state(LayerKind.PAD).crossfade.elapsed_seconds == pytest.approx(0.2)


def test_aligned_accent_duck_starts_from_silence() -> None:
    score = _orchestrator(intensity=0.5, align_stingers_to_beat=True)
    score.tick(0.1)
    score.trigger_stinger("hit")

    # Beat grid at 120 BPM is 0.5 s; the stinger starts inside this tick.
    score.tick(0.45)

    assert score.active_accents() == [AccentKind.HIT]
    assert score.duck_level == 0.0
    assert score.layer_volume(LayerKind.PAD) == pytest.approx(base_volume(LayerKind.PAD, 0.5))
    score.tick(0.01)
    assert score.duck_level == pytest.approx(0.5)
