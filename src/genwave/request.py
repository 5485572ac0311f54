"""
Outbound HTTP client with classification-aware retry and exponential backoff.
"""

from __future__ import annotations

import asyncio
import random
import time
import typing as t
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles
import httpx
import structlog

from genwave.exceptions import ErrorClassification, RequestError

log = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

T = t.TypeVar("T")


@dataclass(frozen=True)
class RequestSpec:
    """
    Transport-agnostic description of one outbound request.

    Parameters
    ----------
    method : str
        HTTP method.
    url : str
        Absolute request URL.
    headers : dict[str, str]
        Request headers.
    params : dict[str, str] | None
        Optional query parameters.
    json_body : dict[str, typing.Any] | None
        Optional JSON payload.
    content : bytes | None
        Optional raw request body.
    timeout : float | None
        Per-request timeout override in seconds.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] | None = None
    json_body: dict[str, t.Any] | None = None
    content: bytes | None = None
    timeout: float | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Geometric backoff policy with additive jitter.

    Parameters
    ----------
    attempts : int
        Total attempts allowed for one request, first try included.
    base_delay_seconds : float
        Delay before the first retry.
    multiplier : float
        Growth factor applied per attempt.
    max_delay_seconds : float
        Upper bound for any computed delay, jitter included.
    jitter_seconds : float
        Upper bound of the uniform random jitter added to each delay.
    """

    attempts: int = 3
    base_delay_seconds: float = 5.0
    multiplier: float = 1.5
    max_delay_seconds: float = 60.0
    jitter_seconds: float = 1.0

    def delay_for(self, *, attempt: int) -> float:
        """
        Compute the backoff delay after a failed attempt.

        Parameters
        ----------
        attempt : int
            One-based number of the attempt that just failed.

        Returns
        -------
        float
            Delay in seconds before the next attempt.
        """
        delay = self.base_delay_seconds * self.multiplier ** max(attempt - 1, 0)
        jitter = random.uniform(0.0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return min(delay + jitter, self.max_delay_seconds)


def classify_status(*, status_code: int) -> ErrorClassification:
    """
    Classify an error HTTP status.

    Parameters
    ----------
    status_code : int
        Response status code (``>= 400``).

    Returns
    -------
    ErrorClassification
        ``RETRYABLE`` for 5xx and 429, ``FATAL`` for any other 4xx.
    """
    if status_code >= 500 or status_code == 429:
        return ErrorClassification.RETRYABLE
    return ErrorClassification.FATAL


def _error_message(*, response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(object=error["message"])
        if isinstance(error, str):
            return error
    return f"HTTP {response.status_code} {response.reason_phrase}".strip()


class RequestClient:
    """
    Issue outbound requests over a pooled ``httpx.AsyncClient``.

    Retryable failures (no response, 5xx, 429) are retried within the policy
    budget. Fatal failures (other 4xx) are raised on first occurrence.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_connections: int = 10,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self._client: httpx.AsyncClient | None = None
        self._client_factory: t.Callable[[], httpx.AsyncClient] = lambda: httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
            ),
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = self._client_factory()
        return self._client

    @staticmethod
    def _request_kwargs(*, request_spec: RequestSpec) -> dict[str, t.Any]:
        kwargs: dict[str, t.Any] = {
            "method": request_spec.method,
            "url": request_spec.url,
            "headers": request_spec.headers,
            "params": request_spec.params,
        }
        if request_spec.json_body is not None:
            kwargs["json"] = request_spec.json_body
        elif request_spec.content is not None:
            kwargs["content"] = request_spec.content
        if request_spec.timeout is not None:
            kwargs["timeout"] = request_spec.timeout
        return kwargs

    @staticmethod
    def _transport_error(
        *, request_spec: RequestSpec, error: httpx.TransportError, started: float
    ) -> RequestError:
        log.info(
            event="Request failed without response",
            method=request_spec.method,
            url=request_spec.url,
            duration_ms=round((time.perf_counter() - started) * 1000),
            error=str(object=error) or type(error).__name__,
        )
        return RequestError(
            classification=ErrorClassification.RETRYABLE,
            message=str(object=error) or type(error).__name__,
        )

    @staticmethod
    def _raise_for_status(
        *, request_spec: RequestSpec, response: httpx.Response, started: float
    ) -> None:
        duration_ms = round((time.perf_counter() - started) * 1000)
        if response.is_error:
            log.info(
                event="Request failed",
                method=request_spec.method,
                url=request_spec.url,
                status_code=response.status_code,
                duration_ms=duration_ms,
            )
            raise RequestError(
                classification=classify_status(status_code=response.status_code),
                message=_error_message(response=response),
                status_code=response.status_code,
            )
        log.debug(
            event="Request completed",
            method=request_spec.method,
            url=request_spec.url,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )

    async def _send_once(self, *, request_spec: RequestSpec) -> httpx.Response:
        client = self._get_client()
        started = time.perf_counter()
        try:
            response = await client.request(**self._request_kwargs(request_spec=request_spec))
        except httpx.TransportError as error:
            raise self._transport_error(
                request_spec=request_spec, error=error, started=started
            ) from error
        self._raise_for_status(request_spec=request_spec, response=response, started=started)
        return response

    async def _download_once(self, *, request_spec: RequestSpec, destination: Path) -> int:
        client = self._get_client()
        started = time.perf_counter()
        size_bytes = 0
        try:
            async with client.stream(**self._request_kwargs(request_spec=request_spec)) as response:
                if response.is_error:
                    await response.aread()
                self._raise_for_status(
                    request_spec=request_spec, response=response, started=started
                )
                async with aiofiles.open(destination, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        await f.write(chunk)
                        size_bytes += len(chunk)
        except httpx.TransportError as error:
            destination.unlink(missing_ok=True)
            raise self._transport_error(
                request_spec=request_spec, error=error, started=started
            ) from error
        return size_bytes

    async def _with_retry(
        self, *, request_spec: RequestSpec, call: t.Callable[[], t.Awaitable[T]]
    ) -> T:
        attempts = max(self.retry_policy.attempts, 1)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except RequestError as error:
                if not error.is_retryable or attempt >= attempts:
                    raise
                delay = self.retry_policy.delay_for(attempt=attempt)
                log.warning(
                    event="Retrying request after backoff",
                    method=request_spec.method,
                    url=request_spec.url,
                    attempt=attempt,
                    delay_seconds=round(delay, 3),
                    status_code=error.status_code,
                    error=error.message,
                )
                await asyncio.sleep(delay=delay)

    async def send(self, request_spec: RequestSpec) -> httpx.Response:
        """
        Send a request, retrying retryable failures with backoff.

        Parameters
        ----------
        request_spec : RequestSpec
            Request to issue.

        Returns
        -------
        httpx.Response
            Successful (non-error) response.

        Raises
        ------
        RequestError
            When a fatal error occurs or the retry budget is exhausted.
        """
        return await self._with_retry(
            request_spec=request_spec,
            call=lambda: self._send_once(request_spec=request_spec),
        )

    async def download(self, request_spec: RequestSpec, *, destination: Path) -> int:
        """
        Stream a response body into ``destination`` with the same retry rules as ``send``.

        A connection dropped mid-transfer removes the partial file before the retry.

        Returns
        -------
        int
            Number of bytes written.
        """
        return await self._with_retry(
            request_spec=request_spec,
            call=lambda: self._download_once(request_spec=request_spec, destination=destination),
        )

    async def send_json(self, request_spec: RequestSpec) -> dict[str, t.Any]:
        """
        Send a request and decode its JSON object body.

        Parameters
        ----------
        request_spec : RequestSpec
            Request to issue.

        Returns
        -------
        dict[str, typing.Any]
            Decoded JSON body.
        """
        response = await self.send(request_spec)
        try:
            payload = response.json()
        except ValueError as error:
            raise RequestError(
                classification=ErrorClassification.FATAL,
                message=f"Invalid JSON response from {request_spec.url}",
                status_code=response.status_code,
            ) from error
        if not isinstance(payload, dict):
            raise RequestError(
                classification=ErrorClassification.FATAL,
                message=f"Expected a JSON object from {request_spec.url}",
                status_code=response.status_code,
            )
        return payload

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
