"""Music generation jobs.

A GenerationJob drives one submit -> poll -> download cycle:

  (new) --submit--> submitted --first tick--> polling --> complete
                       |                         |------> failed
                       '--> failed               '------> timed_out

States never repeat and the three terminal states are final. ``run()``
returns exactly one JobOutcome per job. The timeout budget is measured on
the job clock from submission, not in poll ticks, so a job that waits for
its turn in a batch still times out on schedule.

MusicGenerator is the per-requester front door: cache lookup first, then
one outstanding job per requester. Batch callers use ``submit`` and
``poll_and_fetch`` instead, which have no such guard.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from scenescore.config import AUTO_SAVE_GENERATED, MAX_WAIT_S, POLL_INTERVAL_S
from scenescore.exceptions import (
    ContractViolation,
    GenerationInProgressError,
    GenerationTimeout,
    RemoteReportedFailure,
    SceneScoreError,
    TerminalTransportError,
    TransientTransportError,
)
from scenescore.models import SceneDescriptor
from scenescore.services.artifact_cache import ArtifactCache, cache_key
from scenescore.services.events import Event, Notifier
from scenescore.services.preset_library import PresetLibrary
from scenescore.services.suno_client import SunoClient

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]

DEFAULT_REQUESTER = "default"

ZONE_PROMPTS = {
    1: "Peaceful forest ambient music with gentle nature sounds, birds chirping, "
       "soft wind, calming and relaxing atmosphere for {zone}",
    2: "Urban city background music with modern electronic beats, traffic sounds, "
       "people talking, energetic and dynamic for {zone}",
    3: "Dark cave atmospheric music with deep echoes, dripping water, "
       "mysterious and suspenseful ambient sounds for {zone}",
    4: "Ocean beach music with waves crashing, seagulls, gentle breeze, "
       "tropical and peaceful atmosphere for {zone}",
}
DEFAULT_ZONE_PROMPT = "Background music for {zone}, ambient and atmospheric"


def zone_prompt(zone_id: int, zone_name: str) -> str:
    return ZONE_PROMPTS.get(zone_id, DEFAULT_ZONE_PROMPT).format(zone=zone_name)


class JobState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETE = "complete"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset({JobState.COMPLETE, JobState.FAILED, JobState.TIMED_OUT})

_ALLOWED_TRANSITIONS: dict[JobState | None, frozenset[JobState]] = {
    None: frozenset({JobState.SUBMITTED, JobState.FAILED}),
    JobState.SUBMITTED: frozenset({JobState.POLLING, JobState.FAILED, JobState.TIMED_OUT}),
    JobState.POLLING: frozenset({JobState.COMPLETE, JobState.FAILED, JobState.TIMED_OUT}),
}


@dataclass
class JobOutcome:
    """The single result a job reports to its caller."""

    job_id: str | None
    state: JobState
    artifact: bytes | None = None
    error: SceneScoreError | None = None
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.state is JobState.COMPLETE and self.artifact is not None

    @property
    def reason(self) -> str | None:
        return self.error.reason if self.error else None

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error else None


class GenerationJob:
    """State machine for one remote generation."""

    def __init__(
        self,
        client: SunoClient,
        *,
        prompt: str = "",
        scene: SceneDescriptor | None = None,
        job_id: str | None = None,
        cache: ArtifactCache | None = None,
        cache_context: str | None = None,
        notifier: Notifier | None = None,
        poll_interval: float = POLL_INTERVAL_S,
        max_wait: float = MAX_WAIT_S,
        sleep: Sleep | None = None,
        clock: Clock | None = None,
    ):
        self.client = client
        self.prompt = prompt
        self.scene = scene
        self.id = job_id
        self.cache = cache
        self.cache_context = cache_context
        self.notifier = notifier
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

        self.state: JobState | None = JobState.SUBMITTED if job_id else None
        self.submitted_at: float | None = self._clock() if job_id else None
        self.last_polled_at: float | None = None
        self.finished_at: float | None = None
        self.polls = 0
        self.artifact: bytes | None = None
        self.error: SceneScoreError | None = None

    def __repr__(self) -> str:
        state = self.state.value if self.state else "new"
        return f"<GenerationJob id={self.id} state={state} elapsed={self.elapsed:.1f}s>"

    @property
    def elapsed(self) -> float:
        """Seconds since submission by the job clock; frozen once terminal."""
        if self.submitted_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else self._clock()
        return end - self.submitted_at

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def progress(self) -> float:
        if self.max_wait <= 0:
            return 1.0
        return min(1.0, self.elapsed / self.max_wait)

    @property
    def artifact_key(self) -> str:
        """Cache key: the prompt under the caller's context, or the job id."""
        if self.cache_context is not None:
            return cache_key(self.prompt, self.cache_context)
        return cache_key(self.id or "", "")

    def _transition(self, new_state: JobState) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise RuntimeError(f"Illegal job transition {self.state} -> {new_state}")
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.finished_at = self._clock()

    def _fail(self, error: SceneScoreError, state: JobState = JobState.FAILED) -> None:
        self.error = error
        self._transition(state)
        logger.error("[JOB] %s %s (%s): %s", self.id, state.value, error.kind, error.reason)
        if self.notifier:
            self.notifier.emit(
                Event.GENERATION_FAILED, job_id=self.id, reason=error.reason, kind=error.kind
            )

    def abort(self, reason: str) -> None:
        """Force a non-terminal job to failed (used when polling blew up)."""
        if not self.done:
            self._fail(SceneScoreError(reason))

    async def submit(self) -> JobState:
        """Send the generation request. Never retried."""
        if self.state is not None:
            raise RuntimeError(f"Job already submitted ({self.state.value})")
        logger.info("[JOB] Submitting prompt: %s", self.prompt)
        try:
            self.id = await self.client.submit(self.prompt)
        except SceneScoreError as exc:
            self._fail(exc)
            return self.state
        self.submitted_at = self._clock()
        self._transition(JobState.SUBMITTED)
        return self.state

    async def poll_once(self) -> JobState:
        """Wait one interval, then check status once; download on completion."""
        if self.done:
            return self.state
        if self.state is None:
            raise RuntimeError("Job has not been submitted")
        if self.state is JobState.SUBMITTED:
            self._transition(JobState.POLLING)

        await self._sleep(self.poll_interval)
        self.polls += 1
        self.last_polled_at = self._clock()
        if self.notifier:
            self.notifier.emit(Event.GENERATION_PROGRESS, job_id=self.id, progress=self.progress)

        try:
            status = await self.client.fetch_status(self.id)
        except ContractViolation as exc:
            self._fail(exc)
            return self.state
        except TransientTransportError as exc:
            logger.warning("[JOB] %s status check failed, retrying: %s", self.id, exc.reason)
            status = None

        if status is not None:
            remote = SunoClient.extract_status(status)
            if remote == "complete":
                await self._download(SunoClient.extract_audio_url(status))
                return self.state
            if remote == "failed":
                reason = SunoClient.extract_error(status) or "generation failed"
                self._fail(RemoteReportedFailure(reason))
                return self.state
            logger.debug("[JOB] %s %s (%.1fs)", self.id, remote, self.elapsed)

        if self.elapsed >= self.max_wait:
            self._fail(GenerationTimeout(), JobState.TIMED_OUT)
        return self.state

    async def _download(self, audio_url: str | None) -> None:
        if not audio_url:
            self._fail(RemoteReportedFailure("Generation completed without an audio URL"))
            return
        logger.info("[JOB] %s complete, downloading %s", self.id, audio_url)
        try:
            artifact = await self.client.download(audio_url)
        except TerminalTransportError as exc:
            self._fail(exc)
            return
        if not artifact:
            self._fail(TerminalTransportError("Downloaded audio is empty"))
            return

        self.artifact = artifact
        if self.cache is not None:
            self.cache.put(self.artifact_key, artifact)
        self._transition(JobState.COMPLETE)
        logger.info("[JOB] %s downloaded %d bytes", self.id, len(artifact))
        if self.notifier:
            self.notifier.emit(Event.GENERATION_COMPLETED, job_id=self.id, size=len(artifact))

    async def run(self) -> JobOutcome:
        """Submit if needed and poll until terminal."""
        if self.state is None:
            await self.submit()
        while not self.done:
            await self.poll_once()
        return self.outcome()

    def outcome(self) -> JobOutcome:
        if not self.done:
            raise RuntimeError(f"Job {self.id} is still {self.state}")
        return JobOutcome(job_id=self.id, state=self.state, artifact=self.artifact, error=self.error)


class MusicGenerator:
    """Runs generation jobs for callers, one outstanding job per requester."""

    def __init__(
        self,
        client: SunoClient,
        cache: ArtifactCache,
        *,
        library: PresetLibrary | None = None,
        notifier: Notifier | None = None,
        auto_save: bool = AUTO_SAVE_GENERATED,
        poll_interval: float = POLL_INTERVAL_S,
        max_wait: float = MAX_WAIT_S,
        sleep: Sleep | None = None,
        clock: Clock | None = None,
    ):
        self.client = client
        self.cache = cache
        self.library = library
        self.notifier = notifier or (library.notifier if library else Notifier())
        self.auto_save = auto_save
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.sleep = sleep
        self.clock = clock
        self._active: dict[str, asyncio.Task] = {}

    def new_job(
        self,
        *,
        prompt: str = "",
        scene: SceneDescriptor | None = None,
        job_id: str | None = None,
        cache_context: str | None = None,
    ) -> GenerationJob:
        return GenerationJob(
            self.client,
            prompt=prompt,
            scene=scene,
            job_id=job_id,
            cache=self.cache,
            cache_context=cache_context,
            notifier=self.notifier,
            poll_interval=self.poll_interval,
            max_wait=self.max_wait,
            sleep=self.sleep,
            clock=self.clock,
        )

    def is_generating(self, requester: str = DEFAULT_REQUESTER) -> bool:
        return requester in self._active

    def cancel(self, requester: str = DEFAULT_REQUESTER) -> bool:
        """Abandon the requester's job. Its pending ``generate`` call is cancelled."""
        task = self._active.pop(requester, None)
        if task is None:
            return False
        task.cancel()
        logger.info("[JOB] Generation for %s abandoned", requester)
        return True

    async def generate(
        self,
        prompt: str,
        *,
        requester: str = DEFAULT_REQUESTER,
        context: str = "",
        scene: SceneDescriptor | None = None,
        save_to_library: bool | None = None,
    ) -> JobOutcome:
        """Cached artifact for (prompt, context), or a freshly generated one.

        Raises GenerationInProgressError when ``requester`` already waits on
        a job. Generated audio is committed to the library when a scene is
        given and saving is enabled.
        """
        key = cache_key(prompt, context)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("[JOB] Using cached music: %s", key)
            return JobOutcome(job_id=None, state=JobState.COMPLETE, artifact=cached, cached=True)

        if requester in self._active:
            raise GenerationInProgressError(requester)

        job = self.new_job(prompt=prompt, scene=scene, cache_context=context)
        task = asyncio.ensure_future(job.run())
        self._active[requester] = task
        try:
            outcome = await task
        finally:
            if self._active.get(requester) is task:
                del self._active[requester]

        save = self.auto_save if save_to_library is None else save_to_library
        if outcome.ok and save and scene is not None and self.library is not None:
            await self.library.create_entry(scene, outcome.artifact, file_stem=scene.bucket_key())
        return outcome

    async def generate_for_scene(
        self,
        scene: SceneDescriptor,
        *,
        requester: str = DEFAULT_REQUESTER,
        save_to_library: bool | None = None,
    ) -> JobOutcome:
        return await self.generate(
            scene.describe(),
            requester=requester,
            context=scene.scene_name,
            scene=scene,
            save_to_library=save_to_library,
        )

    async def generate_for_zone(
        self,
        zone_id: int,
        zone_name: str,
        *,
        requester: str = DEFAULT_REQUESTER,
    ) -> JobOutcome:
        return await self.generate(
            zone_prompt(zone_id, zone_name), requester=requester, context=zone_name
        )

    async def submit(self, prompt: str, scene: SceneDescriptor | None = None) -> GenerationJob:
        """Submit only; the returned job is in submitted or failed state."""
        job = self.new_job(prompt=prompt, scene=scene)
        await job.submit()
        return job

    async def poll_and_fetch(self, job_id: str) -> JobOutcome:
        """Poll an already submitted job to completion and download it."""
        return await self.new_job(job_id=job_id).run()

    async def test_connection(self):
        models = await self.client.list_models()
        logger.info("[SUNO] Connection OK, models: %s", models)
        return models
