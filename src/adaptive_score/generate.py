"""
CLI entry point that renders score loops and an offline adaptive mixdown.

Example:
    python -m adaptive_score.generate --seed 7 --mixdown-seconds 45 --intensity-to 0.9
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Optional

from .app.models import ScoreSettings
from .app.settings import Settings
from .services.audio_utils import write_waveform
from .services.cache import ClipCache
from .services.mixdown import OfflineMixdown
from .services.orchestrator import ScoreOrchestrator
from .services.synth import MAX_TIER
from .services.types import LOOP_LAYERS, LayerKind


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render procedural score loops to WAV files.")
    parser.add_argument("--seed", type=int, default=None, help="Score seed (defaults to settings).")
    parser.add_argument("--tempo", type=float, default=None, help="Tempo in BPM.")
    parser.add_argument("--loop-seconds", type=float, default=None, help="Loop length in seconds.")
    parser.add_argument("--sample-rate", type=int, default=None, help="Render sample rate.")
    parser.add_argument(
        "--mixdown-seconds",
        type=float,
        default=30.0,
        help="Length of the adaptive mixdown (0 skips it).",
    )
    parser.add_argument("--intensity-from", type=float, default=0.0, help="Mixdown start intensity.")
    parser.add_argument("--intensity-to", type=float, default=1.0, help="Mixdown end intensity.")
    parser.add_argument(
        "--artifact-dir",
        type=Path,
        default=None,
        help="Override artifact directory (defaults to settings).",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Override config directory (defaults to settings).",
    )
    return parser.parse_args()


async def _run(
    *,
    seed: Optional[int] = None,
    tempo: Optional[float] = None,
    loop_seconds: Optional[float] = None,
    sample_rate: Optional[int] = None,
    mixdown_seconds: float = 30.0,
    intensity_from: float = 0.0,
    intensity_to: float = 1.0,
    artifact_dir: Optional[Path] = None,
    config_dir: Optional[Path] = None,
) -> Path:
    settings_kwargs: dict[str, object] = {}
    if artifact_dir is not None:
        settings_kwargs["artifact_root"] = artifact_dir
    if config_dir is not None:
        settings_kwargs["config_dir"] = config_dir
    if sample_rate is not None:
        settings_kwargs["sample_rate"] = sample_rate

    settings = Settings(**settings_kwargs)
    settings.ensure_directories()

    score_settings = ScoreSettings(
        seed=settings.default_seed if seed is None else seed,
        tempo_bpm=tempo or settings.default_tempo_bpm,
        loop_seconds=loop_seconds or settings.default_loop_seconds,
        intensity=intensity_from,
        auto_progression=False,
    )
    cache = ClipCache(settings.cache_max_bytes, settings.cache_max_clips, enable_profiling=True)
    orchestrator = ScoreOrchestrator(score_settings, cache, sample_rate=settings.sample_rate)
    statuses = await orchestrator.warmup()

    output_dir = settings.artifact_root / f"score-{score_settings.seed}"
    written = 0
    for layer in LOOP_LAYERS:
        tiers = (0,) if layer is LayerKind.ARP else range(MAX_TIER + 1)
        for tier in tiers:
            buffer = orchestrator.render_layer_clip(layer, tier)
            write_waveform(output_dir / f"{layer.value}-t{tier}.wav", buffer.samples, buffer.sample_rate)
            written += 1

    mixdown_path: Optional[Path] = None
    if mixdown_seconds > 0.0:
        mixdown = OfflineMixdown(settings.sample_rate)
        orchestrator.attach_output(mixdown)
        orchestrator.start()
        orchestrator.set_intensity(intensity_to, ramp_seconds=mixdown_seconds * 0.8)
        delta = 1.0 / settings.tick_hz
        elapsed = 0.0
        progressed = False
        stung = False
        while elapsed < mixdown_seconds:
            orchestrator.tick(delta)
            elapsed += delta
            if not progressed and elapsed >= mixdown_seconds * 0.5:
                orchestrator.advance_progression(1)
                progressed = True
            if not stung and elapsed >= mixdown_seconds * 0.75:
                orchestrator.trigger_stinger("hit")
                stung = True
        mixdown_path = output_dir / "mixdown.wav"
        write_waveform(mixdown_path, mixdown.waveform(), mixdown.sample_rate)

    print(f"seed          : {score_settings.seed}")
    print(f"output_dir    : {output_dir}")
    print(f"loops_written : {written}")
    print(f"mixdown_path  : {mixdown_path or 'skipped'}")
    print(f"sample_rate   : {settings.sample_rate}")
    print(f"warmup_ready  : {all(status.ready for status in statuses.values())}")
    print(f"cache         : {cache.debug_summary()}")
    return output_dir


def main() -> None:
    args = _parse_args()
    asyncio.run(
        _run(
            seed=args.seed,
            tempo=args.tempo,
            loop_seconds=args.loop_seconds,
            sample_rate=args.sample_rate,
            mixdown_seconds=args.mixdown_seconds,
            intensity_from=args.intensity_from,
            intensity_to=args.intensity_to,
            artifact_dir=args.artifact_dir,
            config_dir=args.config_dir,
        )
    )


if __name__ == "__main__":
    main()
