"""
Adaptive poller turning a long-running provider operation into a completion event.

Each handle is owned by at most one poll loop. The loop checks the operation,
reports progress, and settles on a terminal state exactly once: ``completed``,
``failed`` or ``timed_out``. Removing a handle from the active set stops the
loop; a check already in flight finishes but fires no callbacks.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import typing as t
from dataclasses import dataclass, field

import structlog

from genwave.backends.base import GenerationBackend
from genwave.cache import CompletedOperationCache
from genwave.exceptions import (
    OperationFailedError,
    PollingTimeoutError,
    RequestError,
)
from genwave.models import OperationSnapshot
from genwave.request import RetryPolicy
from genwave.status import OperationState

log = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 120

ProgressCallback = t.Callable[[OperationSnapshot, "OperationHandle"], t.Any]
CompleteCallback = t.Callable[[OperationSnapshot, "OperationHandle"], t.Any]
ErrorCallback = t.Callable[[Exception, "OperationHandle"], t.Any]


@dataclass(frozen=True)
class PollSchedule:
    """
    Adaptive poll interval table, in seconds.

    Parameters
    ----------
    fast_interval : float
        Interval for the first ``fast_attempts`` checks.
    moderate_interval : float
        Interval up to ``moderate_attempts`` checks.
    slow_interval : float
        Interval up to ``slow_attempts`` checks.
    floor_interval : float
        Interval beyond ``slow_attempts`` checks.
    long_running_after_seconds : float
        Elapsed time after which intervals are doubled.
    max_interval : float
        Cap applied to doubled intervals.
    """

    fast_interval: float = 3.0
    fast_attempts: int = 3
    moderate_interval: float = 8.0
    moderate_attempts: int = 10
    slow_interval: float = 15.0
    slow_attempts: int = 20
    floor_interval: float = 30.0
    long_running_after_seconds: float = 5 * 60
    max_interval: float = 60.0

    def interval_for(self, *, attempt: int, elapsed_seconds: float) -> float:
        """
        Compute the delay before the next check.

        Parameters
        ----------
        attempt : int
            Number of checks performed so far.
        elapsed_seconds : float
            Wall time since polling started.

        Returns
        -------
        float
            Delay in seconds.
        """
        if attempt <= self.fast_attempts:
            interval = self.fast_interval
        elif attempt <= self.moderate_attempts:
            interval = self.moderate_interval
        elif attempt <= self.slow_attempts:
            interval = self.slow_interval
        else:
            interval = self.floor_interval

        if elapsed_seconds > self.long_running_after_seconds:
            interval = min(interval * 2, self.max_interval)
        return interval


@dataclass
class OperationHandle:
    """
    Mutable tracking state for one polled operation.
    """

    handle: str
    api_key: str | None
    max_attempts: int
    on_progress: ProgressCallback | None = None
    on_complete: CompleteCallback | None = None
    on_error: ErrorCallback | None = None
    created_at: float = field(default_factory=time.monotonic)
    attempts: int = 0
    last_polled_at: float | None = None
    interval: float = 0.0
    progress: float = 0.0
    state: OperationState = OperationState.STARTED
    result: dict[str, t.Any] | None = None
    error: Exception | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.created_at


async def _invoke(callback: t.Callable[..., t.Any] | None, *args: t.Any) -> t.Any:
    if callback is None:
        return None
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


class AdaptivePoller:
    """
    Poll provider operations at an adaptively growing interval.
    """

    def __init__(
        self,
        *,
        backend: GenerationBackend,
        cache: CompletedOperationCache,
        schedule: PollSchedule | None = None,
        retry_policy: RetryPolicy | None = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._backend = backend
        self._cache = cache
        self._schedule = schedule or PollSchedule()
        self._retry_policy = retry_policy or RetryPolicy()
        self._default_max_attempts = default_max_attempts
        self._active: dict[str, OperationHandle] = {}

    def is_active(self, handle: str) -> bool:
        return handle in self._active

    def active_handles(self) -> list[str]:
        return list(self._active.keys())

    def get(self, handle: str) -> OperationHandle | None:
        return self._active.get(handle)

    def stats(self) -> dict[str, int]:
        return {"active_polls": len(self._active)}

    def start(
        self,
        handle: str,
        *,
        api_key: str | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
        max_attempts: int | None = None,
    ) -> OperationHandle:
        """
        Start polling ``handle`` with an immediate first check.

        Parameters
        ----------
        handle : str
            Provider operation handle.
        api_key : str | None, optional
            Credential that owns the operation.
        on_progress : ProgressCallback | None, optional
            Called after every successful check.
        on_complete : CompleteCallback | None, optional
            Called once when the operation finishes without error. A non-``None``
            return value replaces the result stored in the completed-operation cache.
        on_error : ErrorCallback | None, optional
            Called once when the operation fails or polling gives up.
        max_attempts : int | None, optional
            Check budget before timing out.

        Returns
        -------
        OperationHandle
            Tracking state; the existing one when ``handle`` is already polled.
        """
        existing = self._active.get(handle)
        if existing is not None:
            log.debug(event="Handle already being polled", handle=handle)
            return existing

        operation = OperationHandle(
            handle=handle,
            api_key=api_key,
            max_attempts=max_attempts or self._default_max_attempts,
            on_progress=on_progress,
            on_complete=on_complete,
            on_error=on_error,
        )
        self._active[handle] = operation
        operation.task = asyncio.create_task(
            coro=self._poll_loop(operation=operation),
            name=f"genwave_poll_{handle}",
        )
        log.info(
            event="Started polling operation",
            handle=handle,
            max_attempts=operation.max_attempts,
        )
        return operation

    def stop(self, handle: str) -> bool:
        """
        Remove ``handle`` from the active set so no further callbacks fire.

        Returns
        -------
        bool
            ``True`` if the handle was being polled.
        """
        operation = self._active.pop(handle, None)
        if operation is None:
            return False
        log.info(event="Stopped polling operation", handle=handle, attempts=operation.attempts)
        return True

    def _owns(self, *, operation: OperationHandle) -> bool:
        return self._active.get(operation.handle) is operation

    async def wait(self, handle: str) -> None:
        """
        Wait for the poll loop of ``handle`` to exit.
        """
        operation = self._active.get(handle)
        if operation is not None and operation.task is not None:
            await asyncio.shield(operation.task)

    async def _poll_loop(self, *, operation: OperationHandle) -> None:
        operation.state = OperationState.POLLING
        try:
            while self._owns(operation=operation):
                delay = await self._check_once(operation=operation)
                if delay is None:
                    return
                operation.interval = delay
                await asyncio.sleep(delay=delay)
            log.debug(event="Poll loop exited after stop", handle=operation.handle)
        except asyncio.CancelledError:
            log.debug(event="Poll loop cancelled", handle=operation.handle)
            raise
        except Exception as error:
            log.error(
                event="Poll loop crashed",
                handle=operation.handle,
                error=str(object=error),
            )
            await self._settle_failure(operation=operation, error=error, state=OperationState.FAILED)

    async def _check_once(self, *, operation: OperationHandle) -> float | None:
        """
        Perform one status check.

        Returns
        -------
        float | None
            Delay before the next check, or ``None`` once settled.
        """
        operation.attempts += 1
        operation.last_polled_at = time.time()
        try:
            snapshot = await self._backend.check_operation(
                handle=operation.handle,
                api_key=operation.api_key,
            )
        except RequestError as error:
            if error.is_retryable and operation.attempts < operation.max_attempts:
                delay = self._retry_policy.delay_for(attempt=operation.attempts)
                log.warning(
                    event="Operation check failed; retrying",
                    handle=operation.handle,
                    attempt=operation.attempts,
                    delay_seconds=round(delay, 3),
                    status_code=error.status_code,
                    error=error.message,
                )
                return delay
            if error.is_retryable:
                timeout_error = PollingTimeoutError(
                    f"Polling timed out after {operation.attempts} attempts: {error.message}",
                    handle=operation.handle,
                )
                timeout_error.__cause__ = error
                await self._settle_failure(
                    operation=operation, error=timeout_error, state=OperationState.TIMED_OUT
                )
            else:
                await self._settle_failure(
                    operation=operation, error=error, state=OperationState.FAILED
                )
            return None

        if not self._owns(operation=operation):
            return None

        operation.progress = snapshot.progress
        try:
            await _invoke(operation.on_progress, snapshot, operation)
        except Exception as error:
            log.warning(event="Progress callback failed", handle=operation.handle, error=str(object=error))

        log.debug(
            event="Operation poll tick",
            handle=operation.handle,
            attempt=operation.attempts,
            done=snapshot.done,
            progress=snapshot.progress,
        )

        if snapshot.done:
            if snapshot.error:
                await self._settle_failure(
                    operation=operation,
                    error=OperationFailedError(snapshot.error, handle=operation.handle),
                    state=OperationState.FAILED,
                )
            else:
                await self._settle_success(operation=operation, snapshot=snapshot)
            return None

        if operation.attempts >= operation.max_attempts:
            await self._settle_failure(
                operation=operation,
                error=PollingTimeoutError(
                    f"Polling timed out after {operation.attempts} attempts",
                    handle=operation.handle,
                ),
                state=OperationState.TIMED_OUT,
            )
            return None

        return self._schedule.interval_for(
            attempt=operation.attempts,
            elapsed_seconds=operation.elapsed_seconds,
        )

    def _release(self, *, operation: OperationHandle) -> bool:
        if not self._owns(operation=operation):
            log.debug(event="Skipping settle for stopped handle", handle=operation.handle)
            return False
        del self._active[operation.handle]
        return True

    async def _settle_success(
        self, *, operation: OperationHandle, snapshot: OperationSnapshot
    ) -> None:
        if not self._release(operation=operation):
            return
        operation.state = OperationState.COMPLETED
        operation.result = snapshot.result
        try:
            replacement = await _invoke(operation.on_complete, snapshot, operation)
        except Exception as error:
            log.error(
                event="Completion callback failed",
                handle=operation.handle,
                error=str(object=error),
            )
            operation.error = error
            self._cache.record(handle=operation.handle, success=False, error=str(object=error))
            return
        if replacement is not None:
            operation.result = replacement
        self._cache.record(handle=operation.handle, success=True, result=operation.result)
        log.info(
            event="Operation completed",
            handle=operation.handle,
            attempts=operation.attempts,
        )

    async def _settle_failure(
        self,
        *,
        operation: OperationHandle,
        error: Exception,
        state: OperationState,
    ) -> None:
        if not self._release(operation=operation):
            return
        operation.state = state
        operation.error = error
        log.warning(
            event="Operation failed",
            handle=operation.handle,
            state=state.value,
            attempts=operation.attempts,
            error=str(object=error),
            error_type=type(error).__name__,
        )
        try:
            await _invoke(operation.on_error, error, operation)
        except Exception as callback_error:
            log.error(
                event="Error callback failed",
                handle=operation.handle,
                error=str(object=callback_error),
            )
        self._cache.record(handle=operation.handle, success=False, error=str(object=error))

    async def aclose(self) -> None:
        """
        Cancel every poll loop and clear the active set.
        """
        operations = list(self._active.values())
        self._active.clear()
        for operation in operations:
            if operation.task is not None and not operation.task.done():
                operation.task.cancel()
        for operation in operations:
            if operation.task is not None:
                try:
                    await operation.task
                except asyncio.CancelledError:
                    pass
