"""
Tests for the wave-based batch scheduler in genwave.scheduler.
"""

import asyncio
from datetime import timedelta

import pytest

from genwave.cache import CompletedOperationCache
from genwave.exceptions import (
    BatchNotFoundError,
    BatchPermissionError,
    BatchStateError,
    BatchValidationError,
    TemplateNotFoundError,
)
from genwave.models import utcnow
from genwave.notifications import BATCH_COMPLETED, BATCH_UPDATE, JOB_UPDATE, NotificationFanout
from genwave.operations import OperationService
from genwave.poller import AdaptivePoller
from genwave.request import RetryPolicy
from genwave.scheduler import BatchScheduler
from genwave.status import BatchStatus, JobStatus
from genwave.templates import InMemoryTemplateStore
from tests.mocks.backends import (
    CountingMaterializer,
    FakeGenerationBackend,
    RecordingPushTransport,
)


def make_scheduler(
    *,
    backend: FakeGenerationBackend,
    push_transport: RecordingPushTransport | None = None,
    materializer: CountingMaterializer | None = None,
    job_poll_max_iterations: int = 50,
) -> BatchScheduler:
    cache = CompletedOperationCache()
    notifications = NotificationFanout(push_transport=push_transport)
    operations = OperationService(
        backend=backend,
        poller=AdaptivePoller(backend=backend, cache=cache),
        cache=cache,
        notifications=notifications,
        materializer=materializer,
    )
    return BatchScheduler(
        backend=backend,
        operations=operations,
        notifications=notifications,
        templates=InMemoryTemplateStore(),
        retry_policy=RetryPolicy(base_delay_seconds=0.0, jitter_seconds=0.0),
        job_poll_interval_seconds=0.001,
        job_poll_max_iterations=job_poll_max_iterations,
    )


def text_inputs(count: int) -> list[dict]:
    return [{"text": f"scene {index}"} for index in range(count)]


@pytest.mark.asyncio
async def test_batch_runs_in_waves_and_completes():
    backend = FakeGenerationBackend(submit_delay=0.01)
    scheduler = make_scheduler(backend=backend)
    updates: list[dict] = []
    scheduler.notifications.subscribe(BATCH_UPDATE, updates.append)

    batch_id = await scheduler.create_batch(text_inputs(5), settings={"max_concurrent": 2})
    assert scheduler.get_batch_status(batch_id).status is BatchStatus.PREPARING

    snapshot = await scheduler.wait(batch_id)

    assert snapshot.status is BatchStatus.COMPLETED
    assert snapshot.total_jobs == 5
    assert snapshot.completed_jobs == 5
    assert snapshot.failed_jobs == 0
    assert snapshot.progress == 100
    assert snapshot.completed_at is not None
    assert len(snapshot.results) == 5
    assert backend.max_active == 2
    assert [call["prompt"] for call in backend.submit_calls] == [
        f"scene {index} (optimized)" for index in range(5)
    ]
    progress = [update["progress"] for update in updates]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    assert [update["progress"] for update in updates if update["status"] == "processing"] == [
        0,
        40,
        80,
        100,
    ]


@pytest.mark.asyncio
async def test_results_carry_prompts():
    backend = FakeGenerationBackend()
    scheduler = make_scheduler(backend=backend)

    batch_id = await scheduler.create_batch([{"text": "a red fox"}])
    snapshot = await scheduler.wait(batch_id)

    entry = snapshot.results[0]
    assert entry.job_id == f"{batch_id}_job_0"
    assert entry.prompt == "a red fox"
    assert entry.optimized_prompt == "a red fox (optimized)"
    assert entry.result["videoUri"] == "https://cdn.test/video-1.mp4"
    assert entry.input == {"text": "a red fox"}


@pytest.mark.asyncio
async def test_fatal_error_fails_only_its_job():
    backend = FakeGenerationBackend(fatal_prompts=("scene 2",))
    scheduler = make_scheduler(backend=backend)

    batch_id = await scheduler.create_batch(
        text_inputs(5), settings={"max_concurrent": 2, "retry_attempts": 3}
    )
    snapshot = await scheduler.wait(batch_id)

    assert snapshot.status is BatchStatus.COMPLETED_WITH_ERRORS
    assert snapshot.completed_jobs == 4
    assert snapshot.failed_jobs == 1
    assert snapshot.progress == 100
    assert len(snapshot.errors) == 1
    assert snapshot.errors[0].index == 2
    assert snapshot.errors[0].error == "Bad request"
    assert sum("scene 2" in call["prompt"] for call in backend.submit_calls) == 1
    jobs = scheduler.store.get(batch_id).jobs
    assert jobs[2].status is JobStatus.FAILED
    assert jobs[2].attempts == 1


@pytest.mark.asyncio
async def test_retryable_error_is_retried_within_budget():
    backend = FakeGenerationBackend(transient_failures={"scene 1": 1})
    scheduler = make_scheduler(backend=backend)

    batch_id = await scheduler.create_batch(text_inputs(2), settings={"retry_attempts": 2})
    snapshot = await scheduler.wait(batch_id)

    assert snapshot.status is BatchStatus.COMPLETED
    assert scheduler.store.get(batch_id).jobs[1].attempts == 2
    assert sum("scene 1" in call["prompt"] for call in backend.submit_calls) == 2


@pytest.mark.asyncio
async def test_retryable_error_fails_job_when_budget_is_spent():
    backend = FakeGenerationBackend(transient_failures={"scene 0": 5})
    scheduler = make_scheduler(backend=backend)

    batch_id = await scheduler.create_batch(text_inputs(1), settings={"retry_attempts": 2})
    snapshot = await scheduler.wait(batch_id)

    assert snapshot.status is BatchStatus.COMPLETED_WITH_ERRORS
    assert snapshot.errors[0].error == "Service unavailable"
    assert len(backend.submit_calls) == 2


@pytest.mark.asyncio
async def test_cancel_between_waves():
    backend = FakeGenerationBackend(submit_delay=0.05)
    scheduler = make_scheduler(backend=backend)

    batch_id = await scheduler.create_batch(text_inputs(6), settings={"max_concurrent": 2})
    await asyncio.sleep(delay=0.01)

    cancelled = scheduler.cancel_batch(batch_id)
    assert cancelled.status is BatchStatus.CANCELLED

    snapshot = await scheduler.wait(batch_id)

    assert snapshot.status is BatchStatus.CANCELLED
    assert snapshot.completed_jobs == 2
    assert snapshot.progress == 33
    assert snapshot.completed_at is None
    assert len(backend.submit_calls) == 2
    jobs = scheduler.store.get(batch_id).jobs
    assert [job.status for job in jobs[2:]] == [JobStatus.PENDING] * 4

    with pytest.raises(BatchStateError):
        scheduler.cancel_batch(batch_id)


@pytest.mark.asyncio
async def test_cancel_checks_identity():
    scheduler = make_scheduler(backend=FakeGenerationBackend(submit_delay=0.05))
    batch_id = await scheduler.create_batch(text_inputs(1), owner="alice")

    with pytest.raises(BatchNotFoundError):
        scheduler.cancel_batch("batch_missing", owner="alice")
    with pytest.raises(BatchPermissionError):
        scheduler.cancel_batch(batch_id, owner="bob")

    scheduler.cancel_batch(batch_id, owner="alice")
    snapshot = await scheduler.wait(batch_id)
    assert snapshot.status is BatchStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_without_owner_skips_identity_check():
    scheduler = make_scheduler(backend=FakeGenerationBackend(submit_delay=0.05))
    batch_id = await scheduler.create_batch(text_inputs(1), owner="alice")

    cancelled = scheduler.cancel_batch(batch_id)

    assert cancelled.status is BatchStatus.CANCELLED
    snapshot = await scheduler.wait(batch_id)
    assert snapshot.status is BatchStatus.CANCELLED


@pytest.mark.asyncio
async def test_completed_batch_cannot_be_cancelled():
    scheduler = make_scheduler(backend=FakeGenerationBackend())
    batch_id = await scheduler.create_batch(text_inputs(1))
    await scheduler.wait(batch_id)

    with pytest.raises(BatchStateError):
        scheduler.cancel_batch(batch_id)


@pytest.mark.asyncio
async def test_invalid_batches_are_rejected():
    scheduler = make_scheduler(backend=FakeGenerationBackend())

    with pytest.raises(BatchValidationError):
        await scheduler.create_batch([])
    with pytest.raises(TemplateNotFoundError):
        await scheduler.create_batch(text_inputs(1), template_id="does_not_exist")
    with pytest.raises(BatchValidationError):
        await scheduler.create_batch(text_inputs(1), settings={"max_concurrent": 0})

    assert len(scheduler.store.values()) == 0


@pytest.mark.asyncio
async def test_template_expands_prompts():
    backend = FakeGenerationBackend()
    scheduler = make_scheduler(backend=backend)
    template = InMemoryTemplateStore().load_template("social_media")

    batch_id = await scheduler.create_batch(
        text_inputs(4),
        template_id="social_media",
        settings={"optimize_prompts": False},
    )
    await scheduler.wait(batch_id)

    prompts = [call["prompt"] for call in backend.submit_calls]
    assert prompts == [template.build_prompt(text=f"scene {index}", index=index) for index in range(4)]
    assert prompts[0].startswith(template.base_prompt)
    assert prompts[0].endswith(template.variations[0].suffix)
    assert prompts[3].endswith(template.variations[0].suffix)
    assert prompts[1].endswith(template.variations[1].suffix)
    assert backend.optimize_calls == []


@pytest.mark.asyncio
async def test_optimization_failure_is_not_fatal():
    backend = FakeGenerationBackend(optimize_error=ValueError("no candidates"))
    scheduler = make_scheduler(backend=backend)

    batch_id = await scheduler.create_batch(text_inputs(2))
    snapshot = await scheduler.wait(batch_id)

    assert snapshot.status is BatchStatus.COMPLETED
    assert [call["prompt"] for call in backend.submit_calls] == ["scene 0", "scene 1"]
    assert all(entry.optimized_prompt is None for entry in snapshot.results)


@pytest.mark.asyncio
async def test_media_inputs_skip_optimization(tmp_path):
    image = tmp_path / "frame.png"
    image.write_bytes(b"\x89PNG")
    backend = FakeGenerationBackend()
    scheduler = make_scheduler(backend=backend)

    batch_id = await scheduler.create_batch(
        [{"image": image.as_posix(), "text": "slow pan", "negative_prompt": "blur"}]
    )
    snapshot = await scheduler.wait(batch_id)

    assert snapshot.status is BatchStatus.COMPLETED
    assert backend.optimize_calls == []
    assert backend.submit_calls[0]["media_ref"] == image.as_posix()
    assert backend.submit_calls[0]["prompt"] == "slow pan"
    assert backend.submit_calls[0]["negative_prompt"] == "blur"
    assert scheduler.store.get(batch_id).jobs[0].type.value == "image-to-video"


@pytest.mark.asyncio
async def test_submitted_operations_are_awaited_and_materialized():
    backend = FakeGenerationBackend(mode="operation", polls_until_done=2)
    materializer = CountingMaterializer()
    scheduler = make_scheduler(backend=backend, materializer=materializer)

    batch_id = await scheduler.create_batch(text_inputs(3), settings={"optimize_prompts": False})
    snapshot = await scheduler.wait(batch_id)

    assert snapshot.status is BatchStatus.COMPLETED
    results = sorted(snapshot.results, key=lambda entry: entry.index)
    assert [entry.result["operationHandle"] for entry in results] == [
        "operations/op-1",
        "operations/op-2",
        "operations/op-3",
    ]
    assert results[0].result["artifactUrl"] == "/generated/op-1.mp4"
    assert all(count == 1 for count in materializer.calls.values())


@pytest.mark.asyncio
async def test_failed_operation_fails_job():
    backend = FakeGenerationBackend(mode="operation", operation_error="Content policy violation")
    scheduler = make_scheduler(backend=backend)

    batch_id = await scheduler.create_batch(text_inputs(1), settings={"optimize_prompts": False})
    snapshot = await scheduler.wait(batch_id)

    assert snapshot.status is BatchStatus.COMPLETED_WITH_ERRORS
    assert snapshot.errors[0].error == "Content policy violation"


@pytest.mark.asyncio
async def test_operation_wait_times_out():
    backend = FakeGenerationBackend(mode="operation", polls_until_done=1_000)
    scheduler = make_scheduler(backend=backend, job_poll_max_iterations=3)

    batch_id = await scheduler.create_batch(text_inputs(1), settings={"optimize_prompts": False})
    snapshot = await scheduler.wait(batch_id)

    assert snapshot.failed_jobs == 1
    assert "timed out" in snapshot.errors[0].error
    assert backend.check_calls["operations/op-1"] == 3


@pytest.mark.asyncio
async def test_listener_receives_job_and_batch_events():
    transport = RecordingPushTransport()
    scheduler = make_scheduler(backend=FakeGenerationBackend(), push_transport=transport)

    batch_id = await scheduler.create_batch(
        text_inputs(2), settings={"listener_id": "listener-1"}, owner="alice"
    )
    await scheduler.wait(batch_id)
    await scheduler.notifications.flush()

    events = transport.names("listener-1")
    assert events.count(JOB_UPDATE) == 4
    assert events[-1] == BATCH_COMPLETED
    completed = transport.events[-1][2]
    assert completed["owner"] == "alice"
    assert completed["stats"] == {"total": 2, "completed": 2, "failed": 0}
    await scheduler.notifications.aclose()


@pytest.mark.asyncio
async def test_snapshots_are_copies():
    scheduler = make_scheduler(backend=FakeGenerationBackend())
    batch_id = await scheduler.create_batch(text_inputs(1))
    snapshot = await scheduler.wait(batch_id)

    snapshot.results[0].result["videoUri"] = "tampered"

    assert scheduler.get_batch_status(batch_id).results[0].result["videoUri"] != "tampered"
    assert scheduler.get_batch_status("batch_missing") is None


@pytest.mark.asyncio
async def test_list_cleanup_and_stats():
    scheduler = make_scheduler(backend=FakeGenerationBackend())
    first = await scheduler.create_batch(text_inputs(1), owner="alice")
    second = await scheduler.create_batch(text_inputs(2), owner="alice")
    third = await scheduler.create_batch(text_inputs(1), owner="bob")
    for batch_id in (first, second, third):
        await scheduler.wait(batch_id)

    page = scheduler.list_batches(owner="alice")
    assert page.total == 2
    assert {summary.id for summary in page.batches} == {first, second}

    paged = scheduler.list_batches(owner="alice", page=2, limit=1)
    assert len(paged.batches) == 1
    assert paged.total_pages == 2

    stats = scheduler.stats()
    assert stats["total_batches"] == 3
    assert stats["completed"] == 3
    assert stats["total_jobs"] == 4
    assert stats["running_batches"] == 0

    scheduler.store.get(first).created_at = utcnow() - timedelta(days=8)
    assert scheduler.cleanup() == 1
    assert scheduler.get_batch_status(first) is None
    assert scheduler.list_batches().total == 2
