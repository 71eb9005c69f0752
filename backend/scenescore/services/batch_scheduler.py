"""Rate-limited concurrent batch generation.

Fills the preset library from many scenes at once while staying under the
service's submission limit. Each cycle:

  1. reset the submission window once ``window_seconds`` have passed
  2. admit pending requests until the window's submission budget is spent
  3. advance up to ``max_concurrent_polls`` in-flight jobs by one poll each
  4. idle briefly

The window is a SubmissionWindow object so that several schedulers (one per
batch request) can share a single budget against the service.

The loop ends when nothing is pending or in flight. Every job reaches a
terminal state through its own timeout, so the loop always terminates once
the pending queue stops growing. Failed jobs count as done and are not
retried. Under the requeue policy only transport failures on submit go back
in the queue; a missing credential or a service-side rejection is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum

from scenescore.config import (
    BATCH_IDLE_S,
    BATCH_MAX_CONCURRENT_POLLS,
    BATCH_MAX_REQUEUES,
    BATCH_MAX_SUBMISSIONS_PER_WINDOW,
    BATCH_SUBMIT_FAILURE_POLICY,
    BATCH_WINDOW_S,
    MAX_WAIT_S,
    POLL_INTERVAL_S,
)
from scenescore.exceptions import ConfigurationError, TerminalTransportError
from scenescore.models import (
    Action,
    EnemyPresence,
    Environment,
    GameLevel,
    SceneDescriptor,
    TimeOfDay,
)
from scenescore.services.artifact_cache import ArtifactCache
from scenescore.services.events import Notifier
from scenescore.services.generation import Clock, GenerationJob, JobState, Sleep
from scenescore.services.preset_library import PresetLibrary
from scenescore.services.suno_client import SunoClient

logger = logging.getLogger(__name__)


class SubmitFailurePolicy(str, Enum):
    DROP = "drop"
    REQUEUE = "requeue"


@dataclass
class BatchRequest:
    label: str
    scene: SceneDescriptor
    prompt: str
    attempts: int = 0


@dataclass
class BatchItemResult:
    label: str
    job_id: str | None
    state: str
    reason: str | None = None
    preset_id: str | None = None
    elapsed: float = 0.0


@dataclass
class BatchReport:
    total: int = 0
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0
    requeued: int = 0
    preset_ids: list[str] = field(default_factory=list)
    items: list[BatchItemResult] = field(default_factory=list)

    @property
    def done(self) -> int:
        return self.completed + self.failed

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "dropped": self.dropped,
            "requeued": self.requeued,
            "preset_ids": list(self.preset_ids),
            "items": [item.__dict__.copy() for item in self.items],
        }


def common_scenes() -> list[SceneDescriptor]:
    """Scenes every game needs music for: explore, combat, boss, stealth."""
    return [
        SceneDescriptor(
            scene_name="Peaceful Exploration",
            environment=Environment.GRASSLANDS,
            current_action=Action.WALKING,
            enemy_presence=EnemyPresence.NONE,
            game_level=GameLevel.TUTORIAL,
            time_of_day=TimeOfDay.DAY,
        ),
        SceneDescriptor(
            scene_name="Intense Combat",
            environment=Environment.DARK_DUNGEON,
            current_action=Action.COMBAT,
            enemy_presence=EnemyPresence.MANY,
            game_level=GameLevel.MID,
            time_of_day=TimeOfDay.NIGHT,
            threat_level=0.8,
        ),
        SceneDescriptor(
            scene_name="Boss Fight",
            environment=Environment.DARK_DUNGEON,
            current_action=Action.COMBAT,
            enemy_presence=EnemyPresence.BOSS,
            game_level=GameLevel.FINAL_BOSS,
            time_of_day=TimeOfDay.NIGHT,
            threat_level=1.0,
            is_boss_fight=True,
        ),
        SceneDescriptor(
            scene_name="Stealth Mission",
            environment=Environment.URBAN,
            current_action=Action.STEALTH,
            enemy_presence=EnemyPresence.LURKING,
            game_level=GameLevel.MID,
            time_of_day=TimeOfDay.NIGHT,
            is_stealth=True,
        ),
    ]


def scenes_needing_presets(
    library: PresetLibrary,
    scenes: list[SceneDescriptor],
    max_per_category: int = 3,
) -> list[SceneDescriptor]:
    """Scenes whose category has fewer than ``max_per_category`` presets."""
    return [s for s in scenes if library.count_for_category(s) < max_per_category]


class SubmissionWindow:
    """Fixed-window submission budget, shareable between schedulers.

    The window restarts once ``window_seconds`` have passed since it opened.
    A slot is taken before the submit request is awaited, so concurrent
    schedulers on one event loop can never overrun the limit.
    """

    def __init__(
        self,
        max_submissions: int = BATCH_MAX_SUBMISSIONS_PER_WINDOW,
        window_seconds: float = BATCH_WINDOW_S,
        *,
        clock: Clock | None = None,
    ):
        if max_submissions < 1:
            raise ValueError("max_submissions must be >= 1")
        self.max_submissions = max_submissions
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._start: float | None = None
        self._sent = 0
        self.submission_times: list[float] = []

    def roll(self) -> None:
        now = self._clock()
        if self._start is None or now - self._start >= self.window_seconds:
            self._start = now
            self._sent = 0

    def take(self) -> bool:
        """Claim one submission slot in the current window."""
        self.roll()
        if self._sent >= self.max_submissions:
            return False
        self._sent += 1
        self.submission_times.append(self._clock())
        return True


class BatchScheduler:
    """Drives many generation jobs under a submission-rate window."""

    def __init__(
        self,
        client: SunoClient,
        library: PresetLibrary | None = None,
        *,
        max_submissions_per_window: int = BATCH_MAX_SUBMISSIONS_PER_WINDOW,
        window_seconds: float = BATCH_WINDOW_S,
        max_concurrent_polls: int = BATCH_MAX_CONCURRENT_POLLS,
        idle_seconds: float = BATCH_IDLE_S,
        submit_failure_policy: SubmitFailurePolicy | str = BATCH_SUBMIT_FAILURE_POLICY,
        max_requeues: int = BATCH_MAX_REQUEUES,
        poll_interval: float = POLL_INTERVAL_S,
        max_wait: float = MAX_WAIT_S,
        cache: ArtifactCache | None = None,
        notifier: Notifier | None = None,
        window: SubmissionWindow | None = None,
        sleep: Sleep | None = None,
        clock: Clock | None = None,
    ):
        if max_concurrent_polls < 1:
            raise ValueError("max_concurrent_polls must be >= 1")
        self.client = client
        self.library = library
        self.max_concurrent_polls = max_concurrent_polls
        self.idle_seconds = idle_seconds
        self.submit_failure_policy = SubmitFailurePolicy(submit_failure_policy)
        self.max_requeues = max_requeues
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.cache = cache
        self.notifier = notifier
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

        self._pending: deque[BatchRequest] = deque()
        self._in_flight: OrderedDict[str, tuple[BatchRequest, GenerationJob]] = OrderedDict()
        # A shared window replaces the per-scheduler limits.
        self.window = window or SubmissionWindow(
            max_submissions_per_window, window_seconds, clock=self._clock
        )
        self.submission_times: list[float] = []
        self._running = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def add(self, scene: SceneDescriptor, label: str | None = None, prompt: str | None = None) -> None:
        self._pending.append(
            BatchRequest(
                label=label or scene.scene_name,
                scene=scene,
                prompt=prompt or scene.describe(),
            )
        )

    def extend(self, scenes: list[SceneDescriptor]) -> None:
        for scene in scenes:
            self.add(scene)

    async def run(self) -> BatchReport:
        """Process the queue until it drains. No partial cancel."""
        if self._running:
            raise RuntimeError("Batch already running")
        self._running = True
        report = BatchReport(total=len(self._pending))
        logger.info(
            "[BATCH] Starting: %d items, %d submissions per %.1fs, %d polls per cycle",
            report.total,
            self.window.max_submissions,
            self.window.window_seconds,
            self.max_concurrent_polls,
        )
        try:
            while self._pending or self._in_flight:
                await self._admit(report)
                await self._poll_cycle(report)
                await self._sleep(self.idle_seconds)
        finally:
            self._running = False

        logger.info(
            "[BATCH] Finished: total=%d completed=%d failed=%d dropped=%d",
            report.total,
            report.completed,
            report.failed,
            report.dropped,
        )
        return report

    def _new_job(self, request: BatchRequest) -> GenerationJob:
        return GenerationJob(
            self.client,
            prompt=request.prompt,
            scene=request.scene,
            cache=self.cache,
            notifier=self.notifier,
            poll_interval=self.poll_interval,
            max_wait=self.max_wait,
            sleep=self._sleep,
            clock=self._clock,
        )

    def _drop(self, request: BatchRequest, reason: str, report: BatchReport) -> None:
        logger.warning("[BATCH] Submit failed for %s, dropping: %s", request.label, reason)
        report.dropped += 1
        report.items.append(
            BatchItemResult(label=request.label, job_id=None, state="dropped", reason=reason)
        )

    async def _admit(self, report: BatchReport) -> None:
        while self._pending:
            request = self._pending[0]
            try:
                self.client.ensure_credentials()
            except ConfigurationError as exc:
                # Never reaches the service: no window slot, no retry.
                self._pending.popleft()
                self._drop(request, exc.reason, report)
                continue
            if not self.window.take():
                return

            self._pending.popleft()
            request.attempts += 1
            self.submission_times.append(self._clock())
            job = self._new_job(request)
            await job.submit()

            if job.state is JobState.SUBMITTED:
                self._in_flight[job.id] = (request, job)
                report.submitted += 1
                continue

            reason = job.error.reason if job.error else "unknown"
            if (
                self.submit_failure_policy is SubmitFailurePolicy.REQUEUE
                and isinstance(job.error, TerminalTransportError)
                and request.attempts <= self.max_requeues
            ):
                logger.warning("[BATCH] Submit failed for %s, requeueing: %s", request.label, reason)
                self._pending.append(request)
                report.requeued += 1
                continue

            self._drop(request, reason, report)

    async def _poll_cycle(self, report: BatchReport) -> None:
        if not self._in_flight:
            return
        batch = list(self._in_flight.items())[: self.max_concurrent_polls]
        results = await asyncio.gather(
            *(job.poll_once() for _, (_, job) in batch),
            return_exceptions=True,
        )

        for (job_id, (request, job)), result in zip(batch, results):
            if isinstance(result, Exception):
                logger.error("[BATCH] Polling %s raised: %s", job_id, result)
                job.abort(f"poll error: {result}")
            if not job.done:
                # Rotate so jobs beyond the per-cycle cap get their turn.
                self._in_flight.move_to_end(job_id)
                continue
            del self._in_flight[job_id]
            await self._finish(request, job, report)

    async def _finish(self, request: BatchRequest, job: GenerationJob, report: BatchReport) -> None:
        item = BatchItemResult(
            label=request.label, job_id=job.id, state=job.state.value, elapsed=job.elapsed
        )
        if job.state is JobState.COMPLETE:
            report.completed += 1
            if self.library is not None:
                entry = await self.library.create_entry(
                    request.scene, job.artifact, file_stem=request.scene.bucket_key()
                )
                item.preset_id = entry.id
                report.preset_ids.append(entry.id)
            logger.info("[BATCH] %s complete (job %s)", request.label, job.id)
        else:
            report.failed += 1
            item.reason = job.error.reason if job.error else None
            logger.warning("[BATCH] Job %s failed: %s", job.id, item.reason)
        report.items.append(item)
