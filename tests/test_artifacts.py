"""
Tests for artifact retrieval in genwave.artifacts.
"""

import httpx
import pytest

from genwave.artifacts import HttpArtifactMaterializer
from genwave.exceptions import RequestError
from genwave.request import RequestClient, RetryPolicy


def make_materializer(*, handler, output_dir) -> HttpArtifactMaterializer:
    request_client = RequestClient(
        retry_policy=RetryPolicy(attempts=2, base_delay_seconds=0.0, jitter_seconds=0.0)
    )
    request_client._client_factory = lambda: httpx.AsyncClient(
        transport=httpx.MockTransport(handler)
    )
    return HttpArtifactMaterializer(request_client=request_client, output_dir=output_dir)


@pytest.mark.asyncio
async def test_artifact_is_written_locally(tmp_path):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=b"video-bytes")

    materializer = make_materializer(handler=handler, output_dir=tmp_path / "generated")

    local_ref = await materializer.materialize("https://cdn.test/op-1.mp4")

    assert local_ref.startswith("/generated/video_")
    assert local_ref.endswith(".mp4")
    written = tmp_path / "generated" / local_ref.rsplit("/", 1)[-1]
    assert written.read_bytes() == b"video-bytes"
    assert requests[0].headers["x-goog-api-key"] == "test-key"


@pytest.mark.asyncio
async def test_download_failure_raises(tmp_path):
    materializer = make_materializer(
        handler=lambda request: httpx.Response(404), output_dir=tmp_path
    )

    with pytest.raises(RequestError):
        await materializer.materialize("https://cdn.test/missing.mp4")

    assert list(tmp_path.iterdir()) == []
