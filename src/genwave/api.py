"""
Main endpoint for users.
Exposes a `build_engine` function wiring every engine component together.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from genwave.artifacts import HttpArtifactMaterializer, Materializer
from genwave.backends.base import GenerationBackend
from genwave.backends.gemini import GeminiBackend
from genwave.cache import CompletedOperationCache
from genwave.config import Settings
from genwave.notifications import NotificationFanout, PushTransport
from genwave.operations import OperationService
from genwave.poller import AdaptivePoller
from genwave.request import RequestClient
from genwave.scheduler import BatchScheduler
from genwave.store import BatchStore
from genwave.templates import InMemoryTemplateStore

log = structlog.get_logger(__name__)


@dataclass
class Engine:
    """
    Running engine components sharing one cache, poller and notification fan-out.
    """

    settings: Settings
    request_client: RequestClient
    backend: GenerationBackend
    cache: CompletedOperationCache
    poller: AdaptivePoller
    notifications: NotificationFanout
    operations: OperationService
    templates: InMemoryTemplateStore
    scheduler: BatchScheduler

    async def aclose(self) -> None:
        """
        Stop background work and release network resources.
        """
        await self.scheduler.aclose()
        await self.poller.aclose()
        await self.notifications.aclose()
        await self.backend.aclose()
        await self.request_client.aclose()
        log.debug(event="Engine closed")

    async def __aenter__(self) -> "Engine":
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.aclose()


def build_engine(
    settings: Settings | None = None,
    *,
    backend: GenerationBackend | None = None,
    push_transport: PushTransport | None = None,
    materializer: Materializer | None = None,
    store: BatchStore | None = None,
    download_artifacts: bool = True,
) -> Engine:
    """
    Build an engine from settings.

    Parameters
    ----------
    settings : Settings | None, optional
        Engine configuration. Defaults to ``Settings.from_env()``.
    backend : GenerationBackend | None, optional
        Generation provider. Defaults to a ``GeminiBackend``.
    push_transport : PushTransport | None, optional
        Delivery channel for listener events.
    materializer : Materializer | None, optional
        Artifact retrieval. Defaults to downloading into ``settings.generated_dir``.
    store : BatchStore | None, optional
        Batch storage. Defaults to an in-memory store.
    download_artifacts : bool, optional
        If ``False`` and no ``materializer`` is given, results are not downloaded.

    Returns
    -------
    Engine
        Wired engine components.
    """
    settings = settings or Settings.from_env()
    retry_policy = settings.retry_policy
    request_client = RequestClient(
        retry_policy=retry_policy,
        timeout=settings.request_timeout_seconds,
    )
    if backend is None:
        backend = GeminiBackend(request_client=request_client, settings=settings)
    if materializer is None and download_artifacts:
        materializer = HttpArtifactMaterializer(
            request_client=request_client,
            output_dir=settings.generated_dir,
        )

    cache = CompletedOperationCache(ttl_seconds=settings.cache_ttl_seconds)
    poller = AdaptivePoller(
        backend=backend,
        cache=cache,
        retry_policy=retry_policy,
        default_max_attempts=settings.poll_max_attempts,
    )
    notifications = NotificationFanout(push_transport=push_transport)
    operations = OperationService(
        backend=backend,
        poller=poller,
        cache=cache,
        notifications=notifications,
        materializer=materializer,
    )
    templates = InMemoryTemplateStore()
    scheduler = BatchScheduler(
        backend=backend,
        operations=operations,
        notifications=notifications,
        templates=templates,
        store=store,
        retry_policy=retry_policy,
        job_poll_interval_seconds=settings.job_poll_interval_seconds,
        job_poll_max_iterations=settings.job_poll_max_iterations,
        default_max_concurrent=settings.default_max_concurrent,
    )
    return Engine(
        settings=settings,
        request_client=request_client,
        backend=backend,
        cache=cache,
        poller=poller,
        notifications=notifications,
        operations=operations,
        templates=templates,
        scheduler=scheduler,
    )
