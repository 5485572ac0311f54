"""
Gemini / Veo generation backend.
"""

from __future__ import annotations

import base64
import typing as t
from pathlib import Path

import aiofiles
import structlog

from genwave.backends.base import GenerationBackend
from genwave.config import Settings, mask_api_key, resolve_api_keys
from genwave.exceptions import ConfigurationError, ErrorClassification, RequestError
from genwave.models import GenerationSubmission, OperationSnapshot
from genwave.request import RequestClient, RequestSpec

log = structlog.get_logger(__name__)

_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

OPTIMIZATION_INSTRUCTION = (
    "Rewrite the following video generation prompt so it is more detailed and expressive. "
    "Describe the scene, the action, the visual style and the camera movement:\n\n"
)


def guess_mime_type(*, path: str | Path) -> str:
    return _MIME_TYPES.get(Path(path).suffix.lower(), "image/jpeg")


def extract_video_uri(*, result: dict[str, t.Any] | None) -> str | None:
    """
    Find the generated video URI in an operation response.

    Parameters
    ----------
    result : dict[str, typing.Any] | None
        ``response`` field of a finished operation.

    Returns
    -------
    str | None
        First generated sample URI, when present.
    """
    if not result:
        return None
    if result.get("videoUri"):
        return str(result["videoUri"])
    samples = result.get("generateVideoResponse", {}).get("generatedSamples") or []
    for sample in samples:
        uri = sample.get("video", {}).get("uri")
        if uri:
            return str(uri)
    return None


class GeminiBackend(GenerationBackend):
    """
    Submit ``predictLongRunning`` generations and poll their operations.

    Every call rotates through the available API keys until one succeeds.
    """

    name = "gemini"

    def __init__(
        self,
        *,
        request_client: RequestClient,
        settings: Settings | None = None,
    ) -> None:
        self._request_client = request_client
        self._settings = settings or Settings()

    @property
    def base_url(self) -> str:
        return self._settings.base_url.rstrip("/")

    def _headers(self, *, api_key: str) -> dict[str, str]:
        return {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }

    def _keys(self, *, api_key: str | None) -> list[str]:
        keys = resolve_api_keys(session_key=api_key)
        if not keys:
            raise ConfigurationError(
                "No API key available. Set GEMINI_API_KEYS or GEMINI_API_KEY, or pass api_key."
            )
        return keys

    async def _call_with_keys(
        self,
        *,
        api_key: str | None,
        build_spec: t.Callable[[str], RequestSpec],
        operation: str,
    ) -> tuple[dict[str, t.Any], str]:
        """
        Issue a request with each available key until one succeeds.

        Returns
        -------
        tuple[dict[str, typing.Any], str]
            Decoded JSON body and the key that succeeded.
        """
        keys = self._keys(api_key=api_key)
        for key in keys[:-1]:
            try:
                return await self._request_client.send_json(build_spec(key)), key
            except RequestError as error:
                log.warning(
                    event="Gemini call failed for API key",
                    operation=operation,
                    api_key=mask_api_key(key),
                    status_code=error.status_code,
                    error=error.message,
                )
        return await self._request_client.send_json(build_spec(keys[-1])), keys[-1]

    async def _build_instance(
        self, *, prompt: str, media_ref: str | None
    ) -> dict[str, t.Any]:
        instance: dict[str, t.Any] = {"prompt": prompt}
        if media_ref:
            async with aiofiles.open(media_ref, "rb") as f:
                image_bytes = await f.read()
            instance["image"] = {
                "bytesBase64Encoded": base64.b64encode(image_bytes).decode("ascii"),
                "mimeType": guess_mime_type(path=media_ref),
            }
        return instance

    async def submit_generation(
        self,
        *,
        prompt: str,
        negative_prompt: str | None = None,
        media_ref: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
    ) -> GenerationSubmission:
        model_name = model or self._settings.video_model
        body: dict[str, t.Any] = {
            "instances": [await self._build_instance(prompt=prompt, media_ref=media_ref)],
        }
        if negative_prompt:
            body["parameters"] = {"negativePrompt": negative_prompt}

        url = f"{self.base_url}/models/{model_name}:predictLongRunning"
        payload, _ = await self._call_with_keys(
            api_key=api_key,
            build_spec=lambda key: RequestSpec(
                method="POST",
                url=url,
                headers=self._headers(api_key=key),
                json_body=body,
            ),
            operation="submit_generation",
        )
        operation_name = payload.get("name")
        if not operation_name:
            raise RequestError(
                classification=ErrorClassification.FATAL,
                message="Generation response did not include an operation name",
            )
        log.info(
            event="Generation submitted",
            model=model_name,
            operation_handle=operation_name,
            has_media=media_ref is not None,
        )
        return GenerationSubmission(operation_handle=str(operation_name))

    async def check_operation(
        self,
        *,
        handle: str,
        api_key: str | None = None,
    ) -> OperationSnapshot:
        url = f"{self.base_url}/{handle.lstrip('/')}"
        payload, _ = await self._call_with_keys(
            api_key=api_key,
            build_spec=lambda key: RequestSpec(
                method="GET",
                url=url,
                headers=self._headers(api_key=key),
            ),
            operation="check_operation",
        )
        snapshot = OperationSnapshot.model_validate(payload)
        video_uri = extract_video_uri(result=snapshot.result)
        if snapshot.done and video_uri and snapshot.result is not None:
            snapshot.result.setdefault("videoUri", video_uri)
        return snapshot

    async def optimize_prompt(
        self,
        *,
        prompt: str,
        api_key: str | None = None,
        model: str | None = None,
    ) -> str:
        model_name = model or self._settings.optimization_model
        url = f"{self.base_url}/models/{model_name}:generateContent"
        body = {"contents": [{"parts": [{"text": f"{OPTIMIZATION_INSTRUCTION}{prompt}"}]}]}
        payload, _ = await self._call_with_keys(
            api_key=api_key,
            build_spec=lambda key: RequestSpec(
                method="POST",
                url=url,
                headers=self._headers(api_key=key),
                json_body=body,
            ),
            operation="optimize_prompt",
        )
        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as error:
            raise ValueError("Prompt optimization response had no text candidate") from error
        log.debug(event="Prompt optimized", model=model_name)
        return str(text).strip()
