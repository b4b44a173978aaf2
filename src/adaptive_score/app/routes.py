from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, cast

from fastapi import APIRouter, HTTPException, Query, Request, Response

from ..services.audio_utils import encode_wav
from ..services.orchestrator import ScoreOrchestrator
from ..services.types import AccentKind, LayerKind
from .clock import TickLoop
from .models import IntensityRequest, ProgressionRequest, ScoreSettings, ScoreStatus, SettingsResponse
from .settings import Settings

router = APIRouter()


def get_clock(request: Request) -> TickLoop:
    return cast(TickLoop, request.app.state.clock)


def _loop_layer(name: str) -> LayerKind:
    try:
        layer = LayerKind(name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"layer {name} not found") from exc
    if not layer.looping:
        raise HTTPException(status_code=404, detail=f"layer {name} has no loop clip")
    return layer


@router.get("/health")
async def health(request: Request) -> dict[str, object]:
    settings = cast(Settings, request.app.state.settings)
    clock = get_clock(request)
    status_map = getattr(request.app.state, "warmup_status", {})
    warmup: dict[str, object] = {}
    if isinstance(status_map, dict):
        for name, status in status_map.items():
            if hasattr(status, "as_dict"):
                warmup[name] = status.as_dict()  # type: ignore[attr-defined]
            else:
                warmup[name] = status
    warmup_complete = bool(warmup) and all(
        isinstance(value, dict) and value.get("ready") for value in warmup.values()
    )
    return {
        "status": "ok",
        "sample_rate": settings.sample_rate,
        "tick_hz": settings.tick_hz,
        "artifact_root": str(settings.artifact_root),
        "clock_running": clock.running,
        "warmup": warmup,
        "warmup_complete": warmup_complete,
    }


@router.get("/status", response_model=ScoreStatus)
async def status(request: Request) -> ScoreStatus:
    return await get_clock(request).run(lambda score: score.status())


@router.get("/settings", response_model=ScoreSettings)
async def read_settings(request: Request) -> ScoreSettings:
    return await get_clock(request).run(lambda score: score.snapshot_settings())


@router.put("/settings", response_model=SettingsResponse)
async def update_settings(changes: Dict[str, Any], request: Request) -> SettingsResponse:
    def _apply(score: ScoreOrchestrator) -> SettingsResponse:
        applied = score.update_settings(changes)
        return SettingsResponse(applied=applied, settings=score.snapshot_settings())

    response = await get_clock(request).run_in_thread(_apply)
    if not response.applied:
        raise HTTPException(status_code=422, detail="settings rejected")
    return response


@router.post("/intensity", response_model=ScoreStatus)
async def set_intensity(payload: IntensityRequest, request: Request) -> ScoreStatus:
    def _apply(score: ScoreOrchestrator) -> ScoreStatus:
        score.set_intensity(payload.value, payload.ramp_seconds)
        return score.status()

    return await get_clock(request).run(_apply)


@router.post("/progression/advance", response_model=ScoreStatus)
async def advance_progression(payload: ProgressionRequest, request: Request) -> ScoreStatus:
    def _apply(score: ScoreOrchestrator) -> ScoreStatus:
        score.advance_progression(payload.steps, aligned=payload.aligned)
        return score.status()

    return await get_clock(request).run_in_thread(_apply)


@router.post("/stingers/{kind}", response_model=ScoreStatus)
async def trigger_stinger(kind: str, request: Request) -> ScoreStatus:
    if kind not in (AccentKind.RISE.value, AccentKind.HIT.value):
        raise HTTPException(status_code=404, detail=f"stinger {kind} not found")

    def _apply(score: ScoreOrchestrator) -> ScoreStatus:
        score.trigger_stinger(kind)
        return score.status()

    return await get_clock(request).run_in_thread(_apply)


@router.post("/fills", response_model=ScoreStatus)
async def trigger_fill(request: Request) -> ScoreStatus:
    def _apply(score: ScoreOrchestrator) -> ScoreStatus:
        score.trigger_fill()
        return score.status()

    return await get_clock(request).run_in_thread(_apply)


@router.get("/layers/{layer}/clip.wav")
async def layer_clip(
    layer: str,
    request: Request,
    tier: Optional[int] = Query(default=None, ge=0, le=2),
) -> Response:
    kind = _loop_layer(layer)

    def _render(score: ScoreOrchestrator):
        if tier is not None:
            return score.render_layer_clip(kind, tier)
        return score.layer_buffer(kind) or score.render_layer_clip(kind, score.tier(kind))

    buffer = await get_clock(request).run_in_thread(_render)
    payload = await asyncio.to_thread(encode_wav, buffer.samples, buffer.sample_rate)
    return Response(
        content=payload,
        media_type="audio/wav",
        headers={"X-Clip-Label": buffer.label},
    )


@router.get("/cache")
async def cache_stats(request: Request) -> dict[str, object]:
    def _collect(score: ScoreOrchestrator) -> dict[str, object]:
        max_bytes, max_count = score.cache.limits()
        return {
            **score.cache.stats().as_dict(),
            "max_bytes": max_bytes,
            "max_count": max_count,
            "hits": score.cache.hits,
            "misses": score.cache.misses,
            "summary": score.cache.debug_summary(),
        }

    return await get_clock(request).run(_collect)


@router.delete("/cache")
async def clear_cache(request: Request) -> dict[str, object]:
    def _clear(score: ScoreOrchestrator) -> dict[str, object]:
        score.cache.clear()
        return score.cache.stats().as_dict()

    return await get_clock(request).run(_clear)
