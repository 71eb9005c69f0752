"""Music selection and generation REST endpoints.

Provides REST endpoints for a game client or tool to:
- Pick the best stored preset for a scene
- Generate (or fetch cached) music for a scene
- Ask the director for music end to end (preset, else generation)
- Fill the preset library in bulk under the service's rate limit
- Inspect and clear the preset library and artifact cache

Components live on ``app.state``; see main.py for how they are built.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from scenescore.exceptions import GenerationInProgressError, SceneScoreError
from scenescore.models import SceneDescriptor
from scenescore.services import similarity
from scenescore.services.artifact_cache import ArtifactCache
from scenescore.services.batch_scheduler import (
    BatchScheduler,
    SubmissionWindow,
    SubmitFailurePolicy,
    common_scenes,
    scenes_needing_presets,
)
from scenescore.services.director import MusicDirector
from scenescore.services.generation import DEFAULT_REQUESTER, MusicGenerator
from scenescore.services.preset_library import PresetLibrary

router = APIRouter(prefix="/api/music", tags=["music"])
logger = logging.getLogger(__name__)


def get_library(request: Request) -> PresetLibrary:
    return request.app.state.library


def get_generator(request: Request) -> MusicGenerator:
    return request.app.state.generator


def get_cache(request: Request) -> ArtifactCache:
    return request.app.state.cache


def get_director(request: Request) -> MusicDirector:
    return request.app.state.director


def get_submission_window(request: Request) -> SubmissionWindow:
    return request.app.state.submission_window


class SelectResponse(BaseModel):
    preset: dict[str, Any]
    score: float


class GenerateRequest(BaseModel):
    scene: SceneDescriptor
    requester: str = DEFAULT_REQUESTER
    save_to_library: bool | None = None


class GenerateResponse(BaseModel):
    source: str
    state: str
    job_id: str | None = None
    size: int
    preset_id: str | None = None


class MusicRequest(BaseModel):
    scene: SceneDescriptor
    requester: str = DEFAULT_REQUESTER
    crossfade: float = Field(default=1.0, ge=0.0)


class MusicResponse(BaseModel):
    source: str
    label: str
    size: int
    preset_id: str | None = None
    job_id: str | None = None


class BatchRequestBody(BaseModel):
    scenes: list[SceneDescriptor] = Field(default_factory=list)
    only_missing: bool = False
    max_per_category: int = Field(default=3, ge=1)
    max_concurrent_polls: int | None = Field(default=None, ge=1)
    idle_seconds: float | None = Field(default=None, ge=0)
    submit_failure_policy: SubmitFailurePolicy | None = None


class CacheResponse(BaseModel):
    size: int
    capacity: int
    info: str
    keys: list[str]


def _error_detail(error: SceneScoreError | None) -> dict[str, Any]:
    if error is None:
        return {"kind": "error", "reason": "generation failed"}
    return {"kind": error.kind, "reason": error.reason}


@router.post("/select", response_model=SelectResponse)
async def select_preset(
    scene: SceneDescriptor,
    library: PresetLibrary = Depends(get_library),
):
    preset = library.select_best(scene)
    if preset is None:
        raise HTTPException(status_code=404, detail="No preset available")
    return SelectResponse(preset=preset.summary(), score=similarity.score(scene, preset.scene))


@router.post("/generate", response_model=GenerateResponse)
async def generate_music(
    body: GenerateRequest,
    generator: MusicGenerator = Depends(get_generator),
    library: PresetLibrary = Depends(get_library),
):
    try:
        outcome = await generator.generate_for_scene(
            body.scene,
            requester=body.requester,
            save_to_library=body.save_to_library,
        )
    except GenerationInProgressError as exc:
        raise HTTPException(status_code=409, detail=exc.reason) from exc

    if not outcome.ok:
        logger.warning("[JOB] Generation for %s failed: %s", body.requester, outcome.reason)
        raise HTTPException(status_code=502, detail=_error_detail(outcome.error))

    saved = library.get(body.scene.preset_id())
    return GenerateResponse(
        source="cache" if outcome.cached else "generated",
        state=outcome.state.value,
        job_id=outcome.job_id,
        size=len(outcome.artifact),
        preset_id=saved.id if saved else None,
    )


@router.post("/request", response_model=MusicResponse)
async def request_music(
    body: MusicRequest,
    director: MusicDirector = Depends(get_director),
):
    try:
        result = await director.request_music(
            body.scene, requester=body.requester, crossfade=body.crossfade
        )
    except GenerationInProgressError as exc:
        raise HTTPException(status_code=409, detail=exc.reason) from exc
    except SceneScoreError as exc:
        raise HTTPException(status_code=502, detail=_error_detail(exc)) from exc

    return MusicResponse(
        source=result.source,
        label=result.label,
        size=len(result.artifact),
        preset_id=result.preset_id,
        job_id=result.job_id,
    )


@router.post("/batch")
async def run_batch(
    body: BatchRequestBody,
    generator: MusicGenerator = Depends(get_generator),
    library: PresetLibrary = Depends(get_library),
    window: SubmissionWindow = Depends(get_submission_window),
):
    scenes = body.scenes or common_scenes()
    if body.only_missing:
        scenes = scenes_needing_presets(library, scenes, body.max_per_category)

    limits = {
        name: value
        for name, value in body.model_dump(
            include={
                "max_concurrent_polls",
                "idle_seconds",
                "submit_failure_policy",
            }
        ).items()
        if value is not None
    }
    scheduler = BatchScheduler(
        generator.client,
        library,
        cache=generator.cache,
        notifier=generator.notifier,
        window=window,
        poll_interval=generator.poll_interval,
        max_wait=generator.max_wait,
        sleep=generator.sleep,
        clock=generator.clock,
        **limits,
    )
    scheduler.extend(scenes)
    report = await scheduler.run()
    return report.to_dict()


@router.get("/presets")
async def list_presets(library: PresetLibrary = Depends(get_library)):
    return {"presets": [entry.summary() for entry in library.entries]}


@router.delete("/presets")
async def clear_presets(library: PresetLibrary = Depends(get_library)):
    saved = await asyncio.to_thread(library.clear_all)
    return {"cleared": True, "saved": saved}


@router.get("/presets/stats")
async def preset_stats(library: PresetLibrary = Depends(get_library)):
    return library.stats()


@router.get("/cache", response_model=CacheResponse)
async def cache_info(cache: ArtifactCache = Depends(get_cache)):
    return CacheResponse(
        size=len(cache),
        capacity=cache.capacity,
        info=cache.info(),
        keys=cache.keys(),
    )
