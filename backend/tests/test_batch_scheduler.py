"""Tests for the rate-limited batch scheduler."""

import asyncio

import httpx
import pytest

from scenescore.models import Environment, SceneDescriptor
from scenescore.services.batch_scheduler import (
    BatchScheduler,
    SubmissionWindow,
    SubmitFailurePolicy,
    common_scenes,
    scenes_needing_presets,
)
from tests.conftest import make_client


def _scenes(count: int) -> list[SceneDescriptor]:
    environments = list(Environment)
    return [
        SceneDescriptor(scene_name=f"scene-{i}", environment=environments[i])
        for i in range(count)
    ]


def _scheduler(client, clock, library=None, **kwargs) -> BatchScheduler:
    kwargs.setdefault("max_submissions_per_window", 2)
    kwargs.setdefault("window_seconds", 10)
    kwargs.setdefault("idle_seconds", 1)
    return BatchScheduler(
        client,
        library,
        poll_interval=0,
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )


def _max_in_any_window(times: list[float], window: float) -> int:
    return max(sum(1 for t in times if start <= t < start + window) for start in times)


def _max_per_fixed_window(times: list[float], window: float) -> int:
    counts: list[int] = []
    start = None
    for t in sorted(times):
        if start is None or t - start >= window:
            start = t
            counts.append(0)
        counts[-1] += 1
    return max(counts, default=0)


@pytest.mark.asyncio
async def test_rate_limited_batch_completes(fake_suno, suno_client, fake_clock, library):
    fake_suno.processing_polls = 3
    scheduler = _scheduler(suno_client, fake_clock, library)
    scheduler.extend(_scenes(5))

    report = await scheduler.run()

    assert report.total == 5
    assert report.submitted == 5
    assert report.completed == 5
    assert report.failed == 0
    assert len(set(report.preset_ids)) == 5
    assert len(library) == 5

    times = scheduler.submission_times
    assert len(times) == 5
    assert _max_in_any_window(times, 10) <= 2
    assert all(calls == 4 for calls in fake_suno.status_calls.values())
    assert scheduler.pending_count == 0
    assert scheduler.in_flight_count == 0


@pytest.mark.asyncio
async def test_poll_cap_rotates_through_jobs(fake_suno, suno_client, fake_clock):
    fake_suno.processing_polls = 1
    scheduler = _scheduler(
        suno_client,
        fake_clock,
        max_submissions_per_window=10,
        max_concurrent_polls=1,
    )
    scheduler.extend(_scenes(3))

    report = await scheduler.run()

    assert report.completed == 3
    assert sorted(fake_suno.status_calls.values()) == [2, 2, 2]


@pytest.mark.asyncio
async def test_failed_submission_dropped(fake_suno, suno_client, fake_clock):
    fake_suno.submit_errors = 1
    scheduler = _scheduler(suno_client, fake_clock)
    scheduler.extend(_scenes(3))

    report = await scheduler.run()

    assert report.dropped == 1
    assert report.completed == 2
    dropped = [item for item in report.items if item.state == "dropped"]
    assert dropped[0].label == "scene-0"
    assert len(scheduler.submission_times) == 3


@pytest.mark.asyncio
async def test_failed_submission_requeued(fake_suno, suno_client, fake_clock):
    fake_suno.submit_errors = 1
    scheduler = _scheduler(suno_client, fake_clock, submit_failure_policy=SubmitFailurePolicy.REQUEUE)
    scheduler.extend(_scenes(3))

    report = await scheduler.run()

    assert report.requeued == 1
    assert report.dropped == 0
    assert report.completed == 3
    assert len(fake_suno.submits) == 4
    assert _max_in_any_window(scheduler.submission_times, 10) <= 2


@pytest.mark.asyncio
async def test_requeue_limit(fake_suno, suno_client, fake_clock):
    fake_suno.submit_errors = 10
    scheduler = _scheduler(suno_client, fake_clock, submit_failure_policy="requeue", max_requeues=2)
    scheduler.extend(_scenes(1))

    report = await scheduler.run()

    assert report.requeued == 2
    assert report.dropped == 1
    assert len(fake_suno.submits) == 3


@pytest.mark.asyncio
async def test_missing_api_key_dropped_without_slot_or_retry(fake_suno, fake_clock):
    scheduler = _scheduler(
        make_client(fake_suno, api_key=""),
        fake_clock,
        submit_failure_policy=SubmitFailurePolicy.REQUEUE,
    )
    scheduler.extend(_scenes(3))

    report = await scheduler.run()

    assert report.dropped == 3
    assert report.requeued == 0
    assert {item.reason for item in report.items} == {"Suno API key is not set"}
    assert scheduler.window.submission_times == []
    assert fake_suno.requests == []


@pytest.mark.asyncio
async def test_service_rejection_not_requeued(fake_clock):
    submits = []

    def handler(request):
        submits.append(request)
        return httpx.Response(200, json={"error": "quota exceeded"})

    scheduler = _scheduler(
        make_client(handler),
        fake_clock,
        submit_failure_policy=SubmitFailurePolicy.REQUEUE,
    )
    scheduler.extend(_scenes(1))

    report = await scheduler.run()

    assert report.requeued == 0
    assert report.dropped == 1
    assert report.items[0].reason == "quota exceeded"
    assert len(submits) == 1


@pytest.mark.asyncio
async def test_concurrent_batches_share_submission_window(fake_suno, suno_client, fake_clock):
    window = SubmissionWindow(2, 10, clock=fake_clock)
    first = _scheduler(suno_client, fake_clock, window=window)
    second = _scheduler(suno_client, fake_clock, window=window)
    first.extend(_scenes(3))
    second.extend(_scenes(6)[3:])

    reports = await asyncio.gather(first.run(), second.run())

    assert [report.completed for report in reports] == [3, 3]
    assert len(window.submission_times) == 6
    assert _max_per_fixed_window(window.submission_times, 10) <= 2
    assert len(fake_suno.submits) == 6


def test_submission_window_resets_after_window_seconds(fake_clock):
    window = SubmissionWindow(2, 10, clock=fake_clock)
    assert window.take()
    assert window.take()
    assert not window.take()

    fake_clock.now = 9.9
    assert not window.take()
    fake_clock.now = 10
    assert window.take()
    assert window.submission_times == [0, 0, 10]


@pytest.mark.asyncio
async def test_failed_jobs_count_as_done(fake_suno, suno_client, fake_clock, library):
    fake_suno.fail_reason = "rejected"
    scheduler = _scheduler(suno_client, fake_clock, library)
    scheduler.extend(_scenes(3))

    report = await scheduler.run()

    assert report.failed == 3
    assert report.done == 3
    assert report.preset_ids == []
    assert len(library) == 0
    assert {item.reason for item in report.items} == {"rejected"}


@pytest.mark.asyncio
async def test_timed_out_jobs_terminate_batch(fake_suno, suno_client, fake_clock):
    fake_suno.processing_polls = 10_000
    scheduler = BatchScheduler(
        suno_client,
        poll_interval=2,
        max_wait=10,
        idle_seconds=0,
        sleep=fake_clock.sleep,
        clock=fake_clock,
    )
    scheduler.extend(_scenes(2))

    report = await scheduler.run()

    assert report.failed == 2
    assert {item.state for item in report.items} == {"timed_out"}


@pytest.mark.asyncio
async def test_timeout_counts_time_spent_waiting_for_a_poll_slot(fake_suno, suno_client, fake_clock):
    fake_suno.processing_polls = 10_000
    scheduler = BatchScheduler(
        suno_client,
        max_concurrent_polls=1,
        poll_interval=2,
        max_wait=10,
        idle_seconds=0,
        sleep=fake_clock.sleep,
        clock=fake_clock,
    )
    scheduler.extend(_scenes(3))

    report = await scheduler.run()

    assert {item.state for item in report.items} == {"timed_out"}
    # Three jobs share one poll slot, so each is polled every 6 clock seconds.
    assert all(10 <= item.elapsed <= 14 for item in report.items)
    assert fake_clock.now == 14
    assert fake_suno.total_status_calls == 7


@pytest.mark.asyncio
async def test_poll_exception_aborts_job(fake_suno, fake_clock):
    def handler(request):
        if "/status/" in request.url.path:
            raise RuntimeError("status endpoint exploded")
        return fake_suno(request)

    scheduler = _scheduler(make_client(handler), fake_clock)
    scheduler.extend(_scenes(1))

    report = await scheduler.run()

    assert report.failed == 1
    assert report.items[0].reason.startswith("poll error")


@pytest.mark.asyncio
async def test_empty_batch(suno_client, fake_clock):
    report = await _scheduler(suno_client, fake_clock).run()
    assert report.total == 0
    assert report.to_dict()["items"] == []


def test_invalid_limits(suno_client):
    with pytest.raises(ValueError):
        BatchScheduler(suno_client, max_submissions_per_window=0)
    with pytest.raises(ValueError):
        BatchScheduler(suno_client, max_concurrent_polls=0)
    with pytest.raises(ValueError):
        SubmissionWindow(0)
    with pytest.raises(ValueError):
        BatchScheduler(suno_client, submit_failure_policy="retry-forever")


def test_common_scenes():
    names = [scene.scene_name for scene in common_scenes()]
    assert names == ["Peaceful Exploration", "Intense Combat", "Boss Fight", "Stealth Mission"]
    boss = common_scenes()[2]
    assert boss.is_boss_fight
    assert boss.intensity() > 0.5


@pytest.mark.asyncio
async def test_scenes_needing_presets(library):
    combat = common_scenes()[1]
    for threat in (0.1, 0.2, 0.3):
        await library.create_entry(combat.model_copy(update={"threat_level": threat}), b"audio")

    missing = scenes_needing_presets(library, common_scenes())

    assert [scene.scene_name for scene in missing] == [
        "Peaceful Exploration",
        "Boss Fight",
        "Stealth Mission",
    ]
    assert len(scenes_needing_presets(library, common_scenes(), max_per_category=4)) == 4
