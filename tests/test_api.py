"""
Tests for engine wiring in genwave.api.
"""

import pytest

from genwave.api import build_engine
from genwave.artifacts import HttpArtifactMaterializer
from genwave.backends.gemini import GeminiBackend
from genwave.config import Settings
from genwave.status import BatchStatus
from tests.mocks.backends import FakeGenerationBackend, RecordingPushTransport


@pytest.mark.asyncio
async def test_default_engine_uses_gemini(tmp_path):
    engine = build_engine(Settings(generated_dir=tmp_path))

    assert isinstance(engine.backend, GeminiBackend)
    assert isinstance(engine.operations._materializer, HttpArtifactMaterializer)
    assert len(engine.templates) == 3
    await engine.aclose()


@pytest.mark.asyncio
async def test_engine_runs_batch_end_to_end():
    backend = FakeGenerationBackend(mode="operation", polls_until_done=2)
    transport = RecordingPushTransport()
    settings = Settings(job_poll_interval_seconds=0.001, retry_base_delay_seconds=0.0)

    async with build_engine(
        settings, backend=backend, push_transport=transport, download_artifacts=False
    ) as engine:
        batch_id = await engine.scheduler.create_batch(
            [{"text": "a red fox"}, {"text": "a blue whale"}],
            template_id="tutorial",
            settings={"listener_id": "listener-1"},
        )
        snapshot = await engine.scheduler.wait(batch_id)
        await engine.notifications.flush()

        assert snapshot.status is BatchStatus.COMPLETED
        assert engine.operations.polling_stats() == {"active_polls": 0, "cached_operations": 2}
        assert transport.names("listener-1")[-1] == "batch_completed"

    assert backend.closed is True
