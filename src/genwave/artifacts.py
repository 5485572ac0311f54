"""
Retrieval of generated artifacts into local storage.
"""

from __future__ import annotations

import time
import typing as t
import uuid
from pathlib import Path

import structlog

from genwave.config import resolve_api_keys
from genwave.request import RequestClient, RequestSpec

log = structlog.get_logger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 5 * 60


class Materializer(t.Protocol):
    async def materialize(self, result_ref: str) -> str: ...


class HttpArtifactMaterializer:
    """
    Download a result URI into ``output_dir`` and return its public path.

    Parameters
    ----------
    request_client : RequestClient
        Client used for the download, with its retry policy.
    output_dir : Path
        Directory receiving downloaded files.
    public_prefix : str
        URL prefix under which ``output_dir`` is served.
    """

    def __init__(
        self,
        *,
        request_client: RequestClient,
        output_dir: Path,
        public_prefix: str = "/generated",
        api_key: str | None = None,
    ) -> None:
        self._request_client = request_client
        self._output_dir = output_dir
        self._public_prefix = public_prefix.rstrip("/")
        self._api_key = api_key

    def _headers(self) -> dict[str, str]:
        keys = resolve_api_keys(session_key=self._api_key)
        return {"x-goog-api-key": keys[0]} if keys else {}

    async def materialize(self, result_ref: str) -> str:
        self._output_dir.mkdir(parents=True, exist_ok=True)
        filename = f"video_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}.mp4"
        path = self._output_dir / filename
        size_bytes = await self._request_client.download(
            RequestSpec(
                method="GET",
                url=result_ref,
                headers=self._headers(),
                timeout=DOWNLOAD_TIMEOUT_SECONDS,
            ),
            destination=path,
        )
        log.info(
            event="Artifact downloaded",
            result_ref=result_ref,
            path=path.as_posix(),
            size_bytes=size_bytes,
        )
        return f"{self._public_prefix}/{filename}"
