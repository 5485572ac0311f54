"""
Tests for the operation service in genwave.operations.
"""

import asyncio

import pytest

from genwave.cache import CompletedOperationCache
from genwave.models import OperationSnapshot
from genwave.notifications import (
    GENERATION_COMPLETE,
    GENERATION_ERROR,
    GENERATION_PROGRESS,
    NotificationFanout,
)
from genwave.operations import OperationService, progress_message
from genwave.poller import AdaptivePoller, PollSchedule
from tests.mocks.backends import (
    CountingMaterializer,
    FakeGenerationBackend,
    RecordingPushTransport,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def make_service(
    *,
    backend: FakeGenerationBackend,
    materializer: CountingMaterializer,
    cache: CompletedOperationCache | None = None,
    push_transport: RecordingPushTransport | None = None,
    max_tracked_artifacts: int = 1024,
) -> OperationService:
    cache = cache if cache is not None else CompletedOperationCache()
    poller = AdaptivePoller(
        backend=backend,
        cache=cache,
        schedule=PollSchedule(
            fast_interval=0.001,
            moderate_interval=0.001,
            slow_interval=0.001,
            floor_interval=0.001,
        ),
    )
    return OperationService(
        backend=backend,
        poller=poller,
        cache=cache,
        notifications=NotificationFanout(push_transport=push_transport),
        materializer=materializer,
        max_tracked_artifacts=max_tracked_artifacts,
    )


def test_progress_message():
    assert progress_message(OperationSnapshot(done=False))["message"] == "Generating video..."
    running = OperationSnapshot(done=False, metadata={"progressPercent": 42.4})
    assert progress_message(running)["message"] == "Generating video... 42%"
    assert progress_message(OperationSnapshot(done=True))["progress"] == 95


@pytest.mark.asyncio
async def test_check_status_is_idempotent():
    backend = FakeGenerationBackend(mode="operation")
    materializer = CountingMaterializer()
    service = make_service(backend=backend, materializer=materializer)

    first = await service.check_status("operations/op-1")
    second = await service.check_status("operations/op-1")

    assert first.done and first.success
    assert first.result == {
        "videoUri": "https://cdn.test/op-1.mp4",
        "artifactUrl": "/generated/op-1.mp4",
    }
    assert second == first
    assert backend.check_calls["operations/op-1"] == 1
    assert materializer.calls["https://cdn.test/op-1.mp4"] == 1


@pytest.mark.asyncio
async def test_artifact_is_not_retrieved_again_after_cache_eviction():
    clock = FakeClock()
    cache = CompletedOperationCache(ttl_seconds=600, clock=clock)
    backend = FakeGenerationBackend(mode="operation")
    materializer = CountingMaterializer()
    service = make_service(backend=backend, materializer=materializer, cache=cache)

    await service.check_status("operations/op-1")
    clock.now += 601
    status = await service.check_status("operations/op-1")

    assert status.success
    assert status.result["artifactUrl"] == "/generated/op-1.mp4"
    assert backend.check_calls["operations/op-1"] == 2
    assert materializer.calls["https://cdn.test/op-1.mp4"] == 1


@pytest.mark.asyncio
async def test_concurrent_checks_retrieve_artifact_once():
    backend = FakeGenerationBackend(mode="operation")
    materializer = CountingMaterializer(delay=0.01)
    service = make_service(backend=backend, materializer=materializer)

    statuses = await asyncio.gather(
        service.check_status("operations/op-1"),
        service.check_status("operations/op-1"),
    )

    assert all(status.success for status in statuses)
    assert materializer.calls["https://cdn.test/op-1.mp4"] == 1


@pytest.mark.asyncio
async def test_check_status_of_running_operation():
    backend = FakeGenerationBackend(mode="operation", polls_until_done=4)
    service = make_service(backend=backend, materializer=CountingMaterializer())

    status = await service.check_status("operations/op-1")

    assert status.done is False
    assert status.success is None
    assert status.progress == 25.0


@pytest.mark.asyncio
async def test_failed_retrieval_is_reported_as_failure():
    backend = FakeGenerationBackend(mode="operation")
    materializer = CountingMaterializer(error=OSError("disk full"))
    service = make_service(backend=backend, materializer=materializer)

    status = await service.check_status("operations/op-1")

    assert status.done is True
    assert status.success is False
    assert "disk full" in status.error


@pytest.mark.asyncio
async def test_watch_pushes_progress_and_completion():
    backend = FakeGenerationBackend(mode="operation", polls_until_done=2)
    materializer = CountingMaterializer()
    transport = RecordingPushTransport()
    service = make_service(backend=backend, materializer=materializer, push_transport=transport)

    service.watch("operations/op-1", listener_id="listener-1")
    await service.poller.wait("operations/op-1")
    await service.notifications.flush()

    events = transport.names("listener-1")
    assert events == [GENERATION_PROGRESS, GENERATION_PROGRESS, GENERATION_COMPLETE]
    completion = transport.events[-1][2]
    assert completion["artifactUrl"] == "/generated/op-1.mp4"

    status = await service.check_status("operations/op-1")
    assert status.success
    assert backend.check_calls["operations/op-1"] == 2
    assert materializer.calls["https://cdn.test/op-1.mp4"] == 1


@pytest.mark.asyncio
async def test_watch_pushes_error():
    backend = FakeGenerationBackend(mode="operation", operation_error="Content policy violation")
    transport = RecordingPushTransport()
    service = make_service(
        backend=backend, materializer=CountingMaterializer(), push_transport=transport
    )

    service.watch("operations/op-1", listener_id="listener-1")
    await service.poller.wait("operations/op-1")
    await service.notifications.flush()

    assert transport.names("listener-1")[-1] == GENERATION_ERROR
    assert "Content policy violation" in transport.events[-1][2]["message"]
    status = await service.check_status("operations/op-1")
    assert status.success is False


@pytest.mark.asyncio
async def test_only_recent_artifacts_are_remembered():
    backend = FakeGenerationBackend(mode="operation")
    materializer = CountingMaterializer()
    service = make_service(backend=backend, materializer=materializer, max_tracked_artifacts=1)

    first = await service.materialize({"videoUri": "https://cdn.test/a.mp4"})
    await service.materialize({"videoUri": "https://cdn.test/b.mp4"})
    await service.materialize({"videoUri": "https://cdn.test/b.mp4"})
    again = await service.materialize({"videoUri": "https://cdn.test/a.mp4"})

    assert first == again == {"videoUri": "https://cdn.test/a.mp4", "artifactUrl": "/generated/a.mp4"}
    assert materializer.calls["https://cdn.test/b.mp4"] == 1
    assert materializer.calls["https://cdn.test/a.mp4"] == 2
