"""Tick-driven adaptive score state machine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import numpy as np
from loguru import logger
from pydantic import ValidationError

from ..app.models import MAX_CACHE_MEGABYTES, LayerStatus, ScoreSettings, ScoreStatus
from .audio_utils import lerp, smoothstep
from .cache import ClipCache, CacheKey, arp_key, bass_key, drums_key, fill_key, pad_key, stinger_key
from .ducking import DuckEnvelope, DuckTimings
from .exceptions import SettingsRejected
from .harmony import bass_root_for_progression, chord_seconds, seconds_per_beat
from .mixer import MixState, base_volume, mix_volumes
from .mixer import pad_cutoff_hz as _pad_cutoff_curve
from .synth import (
    DEFAULT_SAMPLE_RATE,
    MAX_TIER,
    LayerParams,
    clamp_sample_rate,
    clamp_tier,
    generate,
    resolve_accent,
)
from .types import (
    LOOP_LAYERS,
    AccentKind,
    AudioBuffer,
    Crossfade,
    IntensityRamp,
    LayerKind,
    LayerState,
    PendingAccent,
    ProgressionState,
    Voice,
    VoiceOutput,
    VoiceRole,
    WarmupStatus,
)

MIN_CROSSFADE_SECONDS = 0.1
MIN_ALIGN_DELAY_SECONDS = 0.02
MIN_AUTO_PROGRESSION_SECONDS = 5.0
MIN_RAMP_SECONDS = 0.01
MAX_RAMP_SECONDS = 3600.0
INTENSITY_EPSILON = 0.001

SEED_OFFSETS: Dict[LayerKind, int] = {
    LayerKind.PAD: 0,
    LayerKind.BASS: 11,
    LayerKind.DRUMS: 29,
    LayerKind.ARP: 53,
    LayerKind.STINGER: 91,
    LayerKind.FILL: 131,
}

# Changing any of these invalidates every loaded clip.
_GENERATIVE_FIELDS = (
    "seed",
    "tempo_bpm",
    "loop_seconds",
    "bass_base_root_hz",
    "link_bass_to_progression",
)


class PlaybackOutput(Protocol):
    def render(self, voices: Sequence[VoiceOutput], delta_seconds: float) -> None:
        ...


@dataclass
class _AccentVoice:
    layer: LayerKind
    kind: AccentKind
    voice: Voice
    volume: float


def _loop_layer(layer: LayerKind | str) -> LayerKind:
    kind = LayerKind(layer)
    if not kind.looping:
        raise ValueError(f"{kind.value} is not a looping layer")
    return kind


def _merge_changes(target: Dict[str, Any], changes: Mapping[str, Any], prefix: str = "") -> None:
    for raw_key, value in changes.items():
        parts = str(raw_key).split(".")
        cursor = target
        for index, part in enumerate(parts):
            path = ".".join(filter(None, (prefix, *parts[: index + 1])))
            if not isinstance(cursor, dict) or part not in cursor:
                raise SettingsRejected(f"unknown setting {path!r}")
            if index < len(parts) - 1:
                cursor = cursor[part]
                continue
            if isinstance(value, Mapping) and isinstance(cursor[part], dict):
                _merge_changes(cursor[part], value, path)
            else:
                cursor[part] = value


class ScoreOrchestrator:
    """Owns layer voices, progression, accents and ducking for one score.

    All time flows through :meth:`tick`; every other call only mutates
    state that the next tick acts upon, apart from clip generation which
    happens synchronously through the cache.
    """

    def __init__(
        self,
        settings: Optional[ScoreSettings] = None,
        cache: Optional[ClipCache] = None,
        *,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        rng_seed: Optional[int] = None,
    ) -> None:
        self._settings = (settings or ScoreSettings()).model_copy(deep=True)
        if cache is None:
            cache = ClipCache(self._settings.cache_max_bytes, self._settings.cache_max_clips)
        self._cache = cache
        self._sample_rate = clamp_sample_rate(sample_rate)
        self._rng = np.random.default_rng(rng_seed)
        self._layers: Dict[LayerKind, LayerState] = {layer: LayerState(layer) for layer in LOOP_LAYERS}
        self._progression = ProgressionState(beats_per_chord=self._settings.beats_per_chord)
        self._intensity = self._settings.intensity
        self._evaluated_intensity: Optional[float] = None
        self._ramp: Optional[IntensityRamp] = None
        self._duck = DuckEnvelope(self._duck_timings())
        self._accents: List[_AccentVoice] = []
        self._pending_accents: List[PendingAccent] = []
        self._output: Optional[PlaybackOutput] = None
        self._started = False
        self._warmup_status: Optional[WarmupStatus] = None
        # Fades and ducks begun after the playheads moved in a tick start
        # advancing on the next one, so their elapsed time tracks their voice.
        self._tick_serial = 0
        self._playheads_moved = True
        self._duck_started_tick = -1

    # ------------------------------------------------------------------
    # Properties and diagnostics
    # ------------------------------------------------------------------

    @property
    def settings(self) -> ScoreSettings:
        return self._settings

    @property
    def cache(self) -> ClipCache:
        return self._cache

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def started(self) -> bool:
        return self._started

    @property
    def intensity(self) -> float:
        return self._intensity

    @property
    def progression_index(self) -> int:
        return self._progression.index

    @property
    def progression_pending(self) -> bool:
        return self._progression.pending

    @property
    def seconds_until_auto_progression(self) -> Optional[float]:
        return self._progression.seconds_until_auto

    @property
    def duck_level(self) -> float:
        return self._duck.level

    @property
    def bass_root_hz(self) -> float:
        return self._bass_root(self._progression.index)

    @property
    def pad_cutoff_hz(self) -> Optional[float]:
        s = self._settings
        if not s.pad_filter_dynamics:
            return None
        return _pad_cutoff_curve(self._intensity, s.pad_min_cutoff_hz, s.pad_max_cutoff_hz)

    def tier(self, layer: LayerKind | str) -> int:
        return self._layers[_loop_layer(layer)].tier

    def layer_volume(self, layer: LayerKind | str) -> float:
        return self._layers[_loop_layer(layer)].volume

    def layer_state(self, layer: LayerKind | str) -> LayerState:
        return self._layers[_loop_layer(layer)]

    def layer_buffer(self, layer: LayerKind | str) -> Optional[AudioBuffer]:
        state = self._layers[_loop_layer(layer)]
        if state.crossfade is not None:
            return state.crossfade.incoming.buffer
        return state.buffer

    def active_accents(self) -> List[AccentKind]:
        return [accent.kind for accent in self._accents]

    def outputs(self) -> List[VoiceOutput]:
        """Voices a playback output should currently hear, with final volumes."""

        voices: List[VoiceOutput] = []
        for layer in LOOP_LAYERS:
            state = self._layers[layer]
            if state.voice is None:
                continue
            crossfade = state.crossfade
            if crossfade is None:
                voices.append(self._voice_output(layer, VoiceRole.MAIN, state.voice, state.volume))
                continue
            eased = smoothstep(crossfade.progress)
            voices.append(self._voice_output(layer, VoiceRole.MAIN, state.voice, state.volume * (1.0 - eased)))
            voices.append(self._voice_output(layer, VoiceRole.INCOMING, crossfade.incoming, state.volume * eased))
        for accent in self._accents:
            voices.append(self._voice_output(accent.layer, VoiceRole.ACCENT, accent.voice, accent.volume))
        return voices

    def status(self) -> ScoreStatus:
        layers = []
        for layer in LOOP_LAYERS:
            state = self._layers[layer]
            layers.append(
                LayerStatus(
                    layer=layer,
                    tier=state.tier,
                    volume=round(state.volume, 4),
                    crossfading=state.crossfading,
                    buffer_label=state.buffer.label if state.buffer is not None else None,
                    position_seconds=round(state.voice.position_seconds, 4) if state.voice else 0.0,
                )
            )
        return ScoreStatus(
            started=self._started,
            intensity=round(self._intensity, 4),
            progression_index=self._progression.index,
            seconds_until_auto_progression=self._progression.seconds_until_auto,
            progression_pending=self._progression.pending,
            duck_level=round(self._duck.level, 4),
            bass_root_hz=round(self.bass_root_hz, 3),
            pad_cutoff_hz=self.pad_cutoff_hz,
            layers=layers,
            cache=self._cache.stats().as_dict(),
        )

    def warmup_status(self) -> Optional[WarmupStatus]:
        return self._warmup_status

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def attach_output(self, output: Optional[PlaybackOutput]) -> bool:
        render = getattr(output, "render", None) if output is not None else None
        if not callable(render):
            logger.warning("Ignoring playback output without a callable render(): {!r}", output)
            return False
        self._output = output
        logger.info("Attached playback output {}", type(output).__name__)
        return True

    def detach_output(self) -> None:
        self._output = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._evaluated_intensity = self._intensity
        for layer in LOOP_LAYERS:
            state = self._layers[layer]
            state.tier = self._desired_tier(layer)
            state.voice = Voice(self._render_layer(layer, state.tier, self._progression.index))
            state.crossfade = None
        self._schedule_auto_progression()
        self._refresh_volumes()
        logger.info(
            "Score started seed={} tempo={:.1f} intensity={:.2f} tiers={}",
            self._settings.seed,
            self._settings.tempo_bpm,
            self._intensity,
            {layer.value: self._layers[layer].tier for layer in LOOP_LAYERS},
        )

    def stop(self) -> None:
        for state in self._layers.values():
            state.voice = None
            state.crossfade = None
            state.volume = 0.0
        self._accents.clear()
        self._pending_accents.clear()
        self._progression.pending_steps = None
        self._progression.seconds_until_auto = None
        self._duck.cancel()
        self._ramp = None
        self._started = False

    def tick(self, delta_seconds: float) -> List[VoiceOutput]:
        """Advance the score by ``delta_seconds`` and push the resulting voices."""

        if not self._started:
            return []
        dt = max(0.0, float(delta_seconds))
        self._tick_serial += 1
        self._playheads_moved = False
        self._advance_ramp(dt)
        if (
            self._evaluated_intensity is None
            or abs(self._intensity - self._evaluated_intensity) > INTENSITY_EPSILON
        ):
            self._evaluated_intensity = self._intensity
            self._evaluate_tiers()
        self._advance_playheads(dt)
        self._playheads_moved = True
        self._advance_progression_clock(dt)
        self._advance_pending_accents(dt)
        self._advance_crossfades(dt)
        if self._duck_started_tick != self._tick_serial:
            self._duck.advance(dt)
        self._refresh_volumes()
        voices = self.outputs()
        if self._output is not None:
            self._output.render(voices, dt)
        return voices

    advance = tick

    async def warmup(self) -> Dict[str, WarmupStatus]:
        """Pre-render every tier of the current progression off the event loop."""

        try:
            generated = await asyncio.to_thread(self._pregenerate)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Clip warmup failed")
            status = WarmupStatus(name="synth", ready=False, generated=0, error=str(exc))
        else:
            status = WarmupStatus(
                name="synth",
                ready=True,
                generated=generated,
                details={
                    "progression_index": self._progression.index,
                    "cache": self._cache.stats().as_dict(),
                },
            )
            logger.info("Warmup rendered {} clips ({})", generated, self._cache.debug_summary())
        self._warmup_status = status
        return {"synth": status}

    # ------------------------------------------------------------------
    # Intensity
    # ------------------------------------------------------------------

    def set_intensity(self, value: float, ramp_seconds: float = 0.0) -> None:
        target = max(0.0, min(float(value), 1.0))
        self._settings.intensity = target
        if ramp_seconds <= 0.0:
            self._ramp = None
            self._intensity = target
            self._refresh_volumes()
            return
        self._ramp = IntensityRamp(
            start=self._intensity,
            target=target,
            duration_seconds=max(MIN_RAMP_SECONDS, min(float(ramp_seconds), MAX_RAMP_SECONDS)),
        )
        logger.debug("Ramping intensity {:.3f} -> {:.3f} over {:.2f}s", self._intensity, target, ramp_seconds)

    def _advance_ramp(self, dt: float) -> None:
        ramp = self._ramp
        if ramp is None:
            return
        ramp.elapsed_seconds += dt
        u = ramp.elapsed_seconds / ramp.duration_seconds
        if u >= 1.0:
            self._intensity = ramp.target
            self._ramp = None
            return
        self._intensity = lerp(ramp.start, ramp.target, smoothstep(u))

    # ------------------------------------------------------------------
    # Tiers and crossfades
    # ------------------------------------------------------------------

    def _desired_tier(self, layer: LayerKind) -> int:
        cfg = self._settings.layers[layer]
        if cfg.lock_tier is not None:
            return clamp_tier(cfg.lock_tier)
        if not cfg.adaptive:
            return 0
        if self._intensity >= cfg.high_threshold:
            return 2
        if self._intensity >= cfg.medium_threshold:
            return 1
        return 0

    def _evaluate_tiers(self) -> None:
        for layer in LOOP_LAYERS:
            desired = self._desired_tier(layer)
            if desired != self._layers[layer].tier:
                self._transition(
                    layer,
                    desired,
                    self._settings.layers[layer].crossfade_seconds,
                    reason=f"tier {self._layers[layer].tier}->{desired}",
                )

    def reapply_adaptive_state(self) -> None:
        if self._started:
            self._evaluated_intensity = self._intensity
            self._evaluate_tiers()
        self._refresh_volumes()

    def _transition(self, layer: LayerKind, tier: int, seconds: float, *, reason: str) -> None:
        state = self._layers[layer]
        buffer = self._render_layer(layer, tier, self._progression.index)
        if state.voice is None:
            state.voice = Voice(buffer)
            state.tier = tier
            return
        if state.crossfade is not None:
            # Interrupted fade: the incoming voice becomes the one faded out.
            state.voice = state.crossfade.incoming
            state.crossfade = None
        state.tier = tier
        if state.voice.buffer is buffer:
            return
        position = state.voice.position_seconds
        if buffer.duration_seconds > 0.0:
            position %= buffer.duration_seconds
        state.crossfade = Crossfade(
            incoming=Voice(buffer, position_seconds=position),
            duration_seconds=max(MIN_CROSSFADE_SECONDS, float(seconds)),
            reason=reason,
            started_tick=self._tick_serial if self._playheads_moved else -1,
        )
        logger.info("Crossfading {} ({}) over {:.2f}s", layer.value, reason, state.crossfade.duration_seconds)

    def _advance_crossfades(self, dt: float) -> None:
        for state in self._layers.values():
            crossfade = state.crossfade
            if crossfade is None or crossfade.started_tick == self._tick_serial:
                continue
            crossfade.elapsed_seconds += dt
            if crossfade.finished:
                state.voice = crossfade.incoming
                state.crossfade = None
                logger.debug("Crossfade on {} complete", state.layer.value)

    def _advance_playheads(self, dt: float) -> None:
        for state in self._layers.values():
            if state.voice is not None:
                state.voice.advance(dt)
            if state.crossfade is not None:
                state.crossfade.incoming.advance(dt)
        self._accents = [accent for accent in self._accents if accent.voice.advance(dt)]

    # ------------------------------------------------------------------
    # Progression
    # ------------------------------------------------------------------

    def advance_progression(self, steps: int = 1, *, aligned: Optional[bool] = None) -> None:
        """Move the harmony ``steps`` variants, optionally on the next chord boundary.

        A new aligned request replaces one that is still waiting.
        """

        steps = int(steps)
        if steps == 0:
            return
        if aligned is None:
            aligned = self._settings.align_progression_to_chord
        if not aligned or not self._started or self._layers[LayerKind.PAD].voice is None:
            self._progression.pending_steps = None
            self._apply_progression(steps)
            return
        chord = chord_seconds(self._settings.tempo_bpm, self._settings.beats_per_chord)
        delay = self._delay_to_grid(chord)
        self._progression.pending_steps = steps
        self._progression.pending_delay_seconds = delay
        logger.debug("Progression {:+d} queued for chord boundary in {:.3f}s", steps, delay)

    def _apply_progression(self, steps: int) -> None:
        self._progression.index += steps
        logger.info("Progression -> {} (bass root {:.2f} Hz)", self._progression.index, self.bass_root_hz)
        if not self._started:
            return
        s = self._settings
        fade = s.progression_crossfade_seconds
        reason = f"progression {self._progression.index}"
        self._transition(LayerKind.PAD, self._layers[LayerKind.PAD].tier, fade, reason=reason)
        self._transition(LayerKind.ARP, self._layers[LayerKind.ARP].tier, fade, reason=reason)
        if s.link_bass_to_progression:
            bass_fade = s.bass_progression_crossfade_seconds or fade
            self._transition(LayerKind.BASS, self._layers[LayerKind.BASS].tier, bass_fade, reason=reason)
        if s.play_fill_on_progression:
            self.trigger_fill()

    def _advance_progression_clock(self, dt: float) -> None:
        progression = self._progression
        if progression.pending_steps is not None:
            progression.pending_delay_seconds -= dt
            if progression.pending_delay_seconds <= 0.0:
                steps = progression.pending_steps
                progression.pending_steps = None
                progression.pending_delay_seconds = 0.0
                self._apply_progression(steps)
        if not self._settings.auto_progression or progression.seconds_until_auto is None:
            return
        progression.seconds_until_auto -= dt
        if progression.seconds_until_auto <= 0.0:
            self._schedule_auto_progression()
            self.advance_progression(1)

    def _schedule_auto_progression(self) -> None:
        s = self._settings
        if not s.auto_progression:
            self._progression.seconds_until_auto = None
            return
        jitter = 0.0
        if s.progression_jitter_seconds > 0.0:
            jitter = float(self._rng.uniform(-s.progression_jitter_seconds, s.progression_jitter_seconds))
        self._progression.seconds_until_auto = max(
            MIN_AUTO_PROGRESSION_SECONDS, s.progression_interval_seconds + jitter
        )

    def _bass_root(self, progression_index: int) -> float:
        s = self._settings
        if s.link_bass_to_progression:
            return bass_root_for_progression(progression_index, s.bass_base_root_hz)
        return s.bass_base_root_hz

    # ------------------------------------------------------------------
    # Accents and ducking
    # ------------------------------------------------------------------

    def trigger_stinger(self, kind: Optional[str] = "rise") -> None:
        accent = resolve_accent(kind)
        s = self._settings
        self._queue_accent(accent, s.align_stingers_to_beat, s.stinger_subdivision)

    def trigger_fill(self) -> None:
        s = self._settings
        self._queue_accent(AccentKind.FILL, s.align_fills_to_beat, s.fill_subdivision)

    def _queue_accent(self, kind: AccentKind, aligned: bool, subdivision: int) -> None:
        if not self._started:
            logger.warning("Ignoring {} accent before the score has started", kind.value)
            return
        if not aligned:
            self._start_accent(kind)
            return
        grid = seconds_per_beat(self._settings.tempo_bpm) / max(1, min(int(subdivision), 4))
        delay = self._delay_to_grid(grid)
        self._pending_accents.append(PendingAccent(kind=kind, delay_seconds=delay))
        logger.debug("{} accent queued in {:.3f}s", kind.value, delay)

    def _advance_pending_accents(self, dt: float) -> None:
        if not self._pending_accents:
            return
        due: List[PendingAccent] = []
        waiting: List[PendingAccent] = []
        for pending in self._pending_accents:
            pending.delay_seconds -= dt
            (due if pending.delay_seconds <= 0.0 else waiting).append(pending)
        self._pending_accents = waiting
        for pending in due:
            self._start_accent(pending.kind)

    def _start_accent(self, kind: AccentKind) -> None:
        s = self._settings
        if kind is AccentKind.FILL:
            layer = LayerKind.FILL
            duration = seconds_per_beat(s.tempo_bpm)
            seed = s.seed + SEED_OFFSETS[layer]
            key = fill_key(seed, s.tempo_bpm, duration, sample_rate=self._sample_rate)
            params = LayerParams()
        else:
            layer = LayerKind.STINGER
            duration = s.stinger_seconds
            seed = s.seed + SEED_OFFSETS[layer]
            key = stinger_key(seed, kind.value, duration, sample_rate=self._sample_rate)
            params = LayerParams(accent=kind.value)
        buffer = self._fetch(key, layer, seed, duration, params)
        volume = base_volume(layer, self._intensity)
        self._accents.append(_AccentVoice(layer, kind, Voice(buffer, loop=False), volume))
        if s.ducking.enabled:
            self._duck.trigger()
            self._duck_started_tick = self._tick_serial
        logger.info("Playing {} accent at volume {:.2f}", kind.value, volume)

    def _delay_to_grid(self, grid_seconds: float) -> float:
        pad = self._layers[LayerKind.PAD].voice
        position = pad.position_seconds if pad is not None else 0.0
        delay = grid_seconds - (position % grid_seconds)
        return max(MIN_ALIGN_DELAY_SECONDS, delay)

    def _duck_timings(self) -> DuckTimings:
        ducking = self._settings.ducking
        return DuckTimings(
            attack_seconds=ducking.attack_seconds,
            hold_seconds=ducking.hold_seconds,
            release_seconds=ducking.release_seconds,
        ).clamped()

    # ------------------------------------------------------------------
    # Mixer overrides
    # ------------------------------------------------------------------

    def set_layer_lock(self, layer: LayerKind | str, tier: Optional[int]) -> None:
        kind = _loop_layer(layer)
        self._settings.layers[kind].lock_tier = None if tier is None else clamp_tier(tier)
        self.reapply_adaptive_state()

    def set_mute(self, layer: LayerKind | str, muted: bool) -> None:
        self._settings.layers[_loop_layer(layer)].mute = bool(muted)
        self._refresh_volumes()

    def set_solo(self, layer: LayerKind | str, solo: bool) -> None:
        self._settings.layers[_loop_layer(layer)].solo = bool(solo)
        self._refresh_volumes()

    def set_trim(self, layer: LayerKind | str, trim: float) -> None:
        self._settings.layers[_loop_layer(layer)].trim = max(0.0, min(float(trim), 2.0))
        self._refresh_volumes()

    def set_cache_limits(self, max_megabytes: Optional[float] = None, max_clips: Optional[int] = None) -> None:
        if max_megabytes is not None and max_megabytes > 0:
            self._settings.cache_max_megabytes = min(float(max_megabytes), MAX_CACHE_MEGABYTES)
        if max_clips is not None and max_clips > 0:
            self._settings.cache_max_clips = int(max_clips)
        self._cache.set_limits(self._settings.cache_max_bytes, self._settings.cache_max_clips)

    def _mix_state(self) -> MixState:
        s = self._settings
        return MixState(
            trims={layer: s.layers[layer].trim for layer in LOOP_LAYERS},
            mutes={layer: s.layers[layer].mute for layer in LOOP_LAYERS},
            solos={layer: s.layers[layer].solo for layer in LOOP_LAYERS},
            duck_amounts={LayerKind.PAD: s.ducking.pad_amount, LayerKind.ARP: s.ducking.arp_amount},
        )

    def _refresh_volumes(self) -> None:
        volumes = mix_volumes(self._intensity, self._mix_state(), self._duck.level)
        for layer, state in self._layers.items():
            state.volume = volumes[layer] if state.voice is not None else 0.0

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def snapshot_settings(self) -> ScoreSettings:
        snapshot = self._settings.model_copy(deep=True)
        snapshot.intensity = self._intensity if self._ramp is None else self._ramp.target
        return snapshot

    def export_settings_json(self) -> str:
        return self.snapshot_settings().model_dump_json(indent=2)

    def apply_settings(self, snapshot: ScoreSettings, regenerate: bool = False) -> None:
        """Adopt ``snapshot``; with ``regenerate`` every layer fades to freshly keyed clips."""

        previous = self._settings
        self._settings = snapshot.model_copy(deep=True)
        self._progression.beats_per_chord = self._settings.beats_per_chord
        self._duck.timings = self._duck_timings()
        if not self._settings.ducking.enabled:
            self._duck.cancel()
        self._cache.set_limits(self._settings.cache_max_bytes, self._settings.cache_max_clips)

        reference = self._ramp.target if self._ramp is not None else self._intensity
        if abs(self._settings.intensity - reference) > INTENSITY_EPSILON:
            self._ramp = None
            self._intensity = self._settings.intensity

        timer_changed = (
            previous.auto_progression != self._settings.auto_progression
            or previous.progression_interval_seconds != self._settings.progression_interval_seconds
            or previous.progression_jitter_seconds != self._settings.progression_jitter_seconds
        )
        if self._started and timer_changed:
            self._schedule_auto_progression()

        if self._started:
            self._evaluated_intensity = self._intensity
            if regenerate:
                for layer in LOOP_LAYERS:
                    self._transition(
                        layer,
                        self._desired_tier(layer),
                        self._settings.layers[layer].crossfade_seconds,
                        reason="settings",
                    )
            else:
                self._evaluate_tiers()
        self._refresh_volumes()
        logger.info("Applied score settings (regenerate={})", regenerate)

    def update_settings(self, changes: Mapping[str, Any]) -> bool:
        """Merge nested or dotted-key ``changes``; returns False and keeps state on rejection."""

        current = self.snapshot_settings()
        merged = current.model_dump(mode="json")
        try:
            _merge_changes(merged, changes)
            snapshot = self._validate_settings(merged)
        except SettingsRejected as exc:
            logger.warning("Rejected settings update: {}", exc.reason)
            return False
        regenerate = any(
            getattr(current, name) != getattr(snapshot, name) for name in _GENERATIVE_FIELDS
        )
        self.apply_settings(snapshot, regenerate=regenerate)
        return True

    def import_settings_json(self, text: str, regenerate: bool = True) -> bool:
        try:
            snapshot = self._validate_settings_json(text)
        except SettingsRejected as exc:
            logger.warning("Rejected settings import: {}", exc.reason)
            return False
        self.apply_settings(snapshot, regenerate=regenerate)
        return True

    def reset_to_defaults(self, regenerate: bool = True) -> None:
        self.apply_settings(ScoreSettings(), regenerate=regenerate)

    @staticmethod
    def _validate_settings(payload: Mapping[str, Any]) -> ScoreSettings:
        try:
            return ScoreSettings.model_validate(payload)
        except ValidationError as exc:
            raise SettingsRejected(f"{exc.error_count()} invalid field(s): {exc.errors()[0]['msg']}") from exc

    @staticmethod
    def _validate_settings_json(text: str) -> ScoreSettings:
        try:
            return ScoreSettings.model_validate_json(text)
        except ValidationError as exc:
            raise SettingsRejected(f"{exc.error_count()} invalid field(s): {exc.errors()[0]['msg']}") from exc

    # ------------------------------------------------------------------
    # Clip generation
    # ------------------------------------------------------------------

    def render_layer_clip(self, layer: LayerKind | str, tier: int, progression_index: Optional[int] = None) -> AudioBuffer:
        index = self._progression.index if progression_index is None else int(progression_index)
        return self._render_layer(_loop_layer(layer), clamp_tier(tier), index)

    def _render_layer(self, layer: LayerKind, tier: int, progression_index: int) -> AudioBuffer:
        s = self._settings
        seed = s.seed + SEED_OFFSETS[layer]
        tempo = s.tempo_bpm
        duration = s.loop_seconds
        rate = self._sample_rate
        if layer is LayerKind.PAD:
            key = pad_key(seed, tempo, duration, progression_index, tier, sample_rate=rate)
            params = LayerParams(tier=tier, progression_index=progression_index)
        elif layer is LayerKind.BASS:
            # The key carries the root at two decimals; render exactly that value.
            root = round(self._bass_root(progression_index), 2)
            key = bass_key(seed, tempo, duration, root, tier, sample_rate=rate)
            params = LayerParams(tier=tier, root_hz=root)
        elif layer is LayerKind.DRUMS:
            key = drums_key(seed, tempo, duration, tier, sample_rate=rate)
            params = LayerParams(tier=tier)
        else:
            key = arp_key(seed, tempo, duration, progression_index, sample_rate=rate)
            params = LayerParams(progression_index=progression_index)
        return self._fetch(key, layer, seed, duration, params)

    def _fetch(
        self,
        key: CacheKey,
        layer: LayerKind,
        seed: int,
        duration: float,
        params: LayerParams,
    ) -> AudioBuffer:
        tempo = self._settings.tempo_bpm
        rate = self._sample_rate
        return self._cache.get_or_generate(
            key,
            lambda: generate(layer, seed, tempo, duration, params, sample_rate=rate),
        )

    def _pregenerate(self) -> int:
        generated = 0
        index = self._progression.index
        for layer in LOOP_LAYERS:
            tiers = (0,) if layer is LayerKind.ARP else range(MAX_TIER + 1)
            for tier in tiers:
                self._render_layer(layer, tier, index)
                generated += 1
        s = self._settings
        for kind in (AccentKind.RISE, AccentKind.HIT):
            seed = s.seed + SEED_OFFSETS[LayerKind.STINGER]
            self._fetch(
                stinger_key(seed, kind.value, s.stinger_seconds, sample_rate=self._sample_rate),
                LayerKind.STINGER,
                seed,
                s.stinger_seconds,
                LayerParams(accent=kind.value),
            )
            generated += 1
        fill_seconds = seconds_per_beat(s.tempo_bpm)
        fill_seed = s.seed + SEED_OFFSETS[LayerKind.FILL]
        self._fetch(
            fill_key(fill_seed, s.tempo_bpm, fill_seconds, sample_rate=self._sample_rate),
            LayerKind.FILL,
            fill_seed,
            fill_seconds,
            LayerParams(),
        )
        return generated + 1

    @staticmethod
    def _voice_output(layer: LayerKind, role: VoiceRole, voice: Voice, volume: float) -> VoiceOutput:
        return VoiceOutput(
            layer=layer,
            role=role.value,
            buffer=voice.buffer,
            volume=volume,
            position_seconds=voice.position_seconds,
            loop=voice.loop,
        )
