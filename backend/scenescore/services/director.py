"""Scene -> music orchestration.

Presets first, generation second. Whatever audio comes out is handed to the
playback sink; the caller also gets it back in a MusicResult.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from scenescore.models import SceneDescriptor
from scenescore.services.generation import DEFAULT_REQUESTER, MusicGenerator
from scenescore.services.preset_library import PresetLibrary

logger = logging.getLogger(__name__)

SOURCE_PRESET = "preset"
SOURCE_CACHE = "cache"
SOURCE_GENERATED = "generated"


class PlaybackSink(Protocol):
    def play(self, artifact: bytes, crossfade: float, label: str) -> None:
        ...


class NullPlaybackSink:
    """Sink for headless use: logs what would play and drops it."""

    def play(self, artifact: bytes, crossfade: float, label: str) -> None:
        logger.info("Would play %s (%d bytes, crossfade %.1fs)", label, len(artifact), crossfade)


@dataclass
class MusicResult:
    source: str
    artifact: bytes
    label: str
    preset_id: str | None = None
    job_id: str | None = None


class MusicDirector:
    def __init__(
        self,
        library: PresetLibrary,
        generator: MusicGenerator,
        sink: PlaybackSink | None = None,
    ):
        self.library = library
        self.generator = generator
        self.sink = sink or NullPlaybackSink()

    async def request_music(
        self,
        scene: SceneDescriptor,
        *,
        requester: str = DEFAULT_REQUESTER,
        crossfade: float = 1.0,
    ) -> MusicResult:
        """Play music for ``scene``.

        Raises the job's error when no preset fits and generation fails,
        and GenerationInProgressError when ``requester`` is already waiting.
        """
        preset = self.library.select_best(scene)
        if preset is not None:
            artifact = await self.library.resolve_artifact(preset)
            if artifact is not None:
                result = MusicResult(
                    source=SOURCE_PRESET,
                    artifact=artifact,
                    label=preset.name,
                    preset_id=preset.id,
                )
                self.sink.play(artifact, crossfade, result.label)
                return result
            logger.warning("[PRESETS] %s has no playable audio, generating instead", preset.id)

        outcome = await self.generator.generate_for_scene(scene, requester=requester)
        if not outcome.ok:
            raise outcome.error
        saved = self.library.get(scene.preset_id())
        result = MusicResult(
            source=SOURCE_CACHE if outcome.cached else SOURCE_GENERATED,
            artifact=outcome.artifact,
            label=scene.scene_name,
            preset_id=saved.id if saved else None,
            job_id=outcome.job_id,
        )
        self.sink.play(outcome.artifact, crossfade, result.label)
        return result
