"""
Operation tracking service: listener-facing watches and idempotent status checks.
"""

from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass

import structlog

from genwave.artifacts import Materializer
from genwave.backends.base import GenerationBackend
from genwave.cache import CompletedOperation, CompletedOperationCache
from genwave.models import OperationSnapshot
from genwave.notifications import (
    GENERATION_COMPLETE,
    GENERATION_ERROR,
    GENERATION_PROGRESS,
    NotificationFanout,
)
from genwave.poller import AdaptivePoller, OperationHandle

log = structlog.get_logger(__name__)

RESULT_REF_FIELDS = ("videoUri", "uri")
ARTIFACT_URL_FIELD = "artifactUrl"
MAX_TRACKED_ARTIFACTS = 1024


@dataclass(frozen=True)
class OperationStatus:
    """
    Answer to a status check.

    Parameters
    ----------
    handle : str
        Provider operation handle.
    done : bool
        ``True`` once the operation reached a terminal state.
    success : bool | None
        Terminal outcome, ``None`` while pending.
    result : dict[str, typing.Any] | None
        Result payload of a successful operation.
    error : str | None
        Error description of a failed operation.
    progress : float
        Last reported progress percentage.
    completed_at : float | None
        Timestamp of the cached terminal record.
    """

    handle: str
    done: bool
    success: bool | None = None
    result: dict[str, t.Any] | None = None
    error: str | None = None
    progress: float = 0.0
    completed_at: float | None = None

    @classmethod
    def from_record(cls, record: CompletedOperation) -> "OperationStatus":
        return cls(
            handle=record.handle,
            done=True,
            success=record.success,
            result=record.result,
            error=record.error,
            progress=100.0 if record.success else 0.0,
            completed_at=record.completed_at,
        )


def result_ref_of(result: dict[str, t.Any] | None) -> str | None:
    if not result:
        return None
    for field_name in RESULT_REF_FIELDS:
        value = result.get(field_name)
        if value:
            return str(value)
    return None


def progress_message(snapshot: OperationSnapshot) -> dict[str, t.Any]:
    """
    Build the listener payload for a progress tick.
    """
    if snapshot.done:
        return {"message": "Video generated, downloading...", "done": False, "progress": 95}
    progress = snapshot.progress
    message = "Generating video..."
    if progress > 0:
        message = f"Generating video... {round(progress)}%"
    return {"message": message, "done": False, "progress": progress}


class OperationService:
    """
    Track provider operations for listeners and answer status checks.

    Artifact materialization is performed at most once per result reference,
    whichever path (poller completion or a self-healing status check) observes
    the completion first. The most recent ``max_tracked_artifacts`` references
    are remembered; older finished ones are forgotten.
    """

    def __init__(
        self,
        *,
        backend: GenerationBackend,
        poller: AdaptivePoller,
        cache: CompletedOperationCache,
        notifications: NotificationFanout,
        materializer: Materializer | None = None,
        max_tracked_artifacts: int = MAX_TRACKED_ARTIFACTS,
    ) -> None:
        self._backend = backend
        self._poller = poller
        self._cache = cache
        self._notifications = notifications
        self._materializer = materializer
        self._materializations: dict[str, asyncio.Task[str]] = {}
        self._max_tracked_artifacts = max_tracked_artifacts

    def _forget_finished_materializations(self) -> None:
        while len(self._materializations) > self._max_tracked_artifacts:
            oldest = next(iter(self._materializations))
            if not self._materializations[oldest].done():
                return
            del self._materializations[oldest]

    @property
    def poller(self) -> AdaptivePoller:
        return self._poller

    @property
    def notifications(self) -> NotificationFanout:
        return self._notifications

    async def materialize(self, result: dict[str, t.Any] | None) -> dict[str, t.Any] | None:
        """
        Retrieve the artifact referenced by ``result`` and annotate its local path.

        Parameters
        ----------
        result : dict[str, typing.Any] | None
            Result payload of a finished operation.

        Returns
        -------
        dict[str, typing.Any] | None
            ``result`` with ``artifactUrl`` set, or unchanged when there is
            nothing to retrieve.
        """
        result_ref = result_ref_of(result)
        if self._materializer is None or result_ref is None or result is None:
            return result

        task = self._materializations.get(result_ref)
        if task is None:
            task = asyncio.ensure_future(self._materializer.materialize(result_ref))
            self._materializations[result_ref] = task
            self._forget_finished_materializations()
            log.debug(event="Materializing artifact", result_ref=result_ref)
        try:
            local_ref = await asyncio.shield(task)
        except Exception:
            if self._materializations.get(result_ref) is task:
                del self._materializations[result_ref]
            raise
        return {**result, ARTIFACT_URL_FIELD: local_ref}

    def watch(
        self,
        handle: str,
        *,
        api_key: str | None = None,
        listener_id: str | None = None,
        webhook_url: str | None = None,
        max_attempts: int | None = None,
    ) -> OperationHandle:
        """
        Poll ``handle`` and push progress, completion and error events.

        Parameters
        ----------
        handle : str
            Provider operation handle.
        api_key : str | None, optional
            Credential that owns the operation.
        listener_id : str | None, optional
            Push listener receiving ``generation_*`` events.
        webhook_url : str | None, optional
            HTTP callback receiving ``generation_*`` events.
        max_attempts : int | None, optional
            Poll budget override.

        Returns
        -------
        OperationHandle
            Tracking state of the poll.
        """

        def on_progress(snapshot: OperationSnapshot, operation: OperationHandle) -> None:
            self._notifications.publish(
                GENERATION_PROGRESS,
                {"handle": handle, "attempt": operation.attempts, **progress_message(snapshot)},
                listener_id=listener_id,
                webhook_url=webhook_url,
            )

        async def on_complete(
            snapshot: OperationSnapshot, operation: OperationHandle
        ) -> dict[str, t.Any] | None:
            try:
                result = await self.materialize(snapshot.result)
            except Exception as error:
                self._notifications.publish(
                    GENERATION_ERROR,
                    {"handle": handle, "message": f"Generation failed: {error}", "error": True},
                    listener_id=listener_id,
                    webhook_url=webhook_url,
                )
                raise
            self._notifications.publish(
                GENERATION_COMPLETE,
                {
                    "handle": handle,
                    "message": "Video generation complete!",
                    "result": result,
                    ARTIFACT_URL_FIELD: (result or {}).get(ARTIFACT_URL_FIELD),
                    "done": True,
                },
                listener_id=listener_id,
                webhook_url=webhook_url,
            )
            return result

        def on_error(error: Exception, operation: OperationHandle) -> None:
            self._notifications.publish(
                GENERATION_ERROR,
                {
                    "handle": handle,
                    "message": f"Generation failed: {error}",
                    "error": True,
                    "state": operation.state.value,
                },
                listener_id=listener_id,
                webhook_url=webhook_url,
            )

        return self._poller.start(
            handle,
            api_key=api_key,
            on_progress=on_progress,
            on_complete=on_complete,
            on_error=on_error,
            max_attempts=max_attempts,
        )

    def stop_watching(self, handle: str) -> bool:
        return self._poller.stop(handle)

    def polling_stats(self) -> dict[str, int]:
        return {**self._poller.stats(), "cached_operations": len(self._cache)}

    async def check_status(self, handle: str, *, api_key: str | None = None) -> OperationStatus:
        """
        Report the status of ``handle`` without re-triggering side effects.

        A cached terminal record is returned as is. An actively polled handle
        is reported as pending. Otherwise one status check is issued against
        the backend; a completion seen by that check is materialized and
        cached here.

        Parameters
        ----------
        handle : str
            Provider operation handle.
        api_key : str | None, optional
            Credential that owns the operation.

        Returns
        -------
        OperationStatus
            Current status.

        Raises
        ------
        RequestError
            If the self-healing status check fails.
        """
        record = self._cache.get(handle=handle)
        if record is not None:
            return OperationStatus.from_record(record)

        operation = self._poller.get(handle)
        if operation is not None:
            return OperationStatus(handle=handle, done=False, progress=operation.progress)

        log.debug(event="Status cache miss; checking backend", handle=handle)
        snapshot = await self._backend.check_operation(handle=handle, api_key=api_key)
        if not snapshot.done:
            return OperationStatus(handle=handle, done=False, progress=snapshot.progress)

        if snapshot.error:
            record = self._cache.record(handle=handle, success=False, error=snapshot.error)
            return OperationStatus.from_record(record)

        try:
            result = await self.materialize(snapshot.result)
        except Exception as error:
            log.error(
                event="Artifact retrieval failed",
                handle=handle,
                error=str(object=error),
            )
            record = self._cache.record(
                handle=handle,
                success=False,
                error=f"Artifact retrieval failed: {error}",
            )
            return OperationStatus.from_record(record)

        record = self._cache.record(handle=handle, success=True, result=result)
        return OperationStatus.from_record(record)
