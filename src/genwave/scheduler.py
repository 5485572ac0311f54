"""
Batch scheduler running generation jobs in bounded waves.

A batch is decomposed into one job per input and executed in waves of at most
``max_concurrent`` jobs. A wave is fully settled before the next one starts, so
slow jobs delay the remaining waves. Cancellation is cooperative and takes
effect between waves: jobs already running finish, but no new wave starts.
"""

from __future__ import annotations

import asyncio
import math
import time
import typing as t
import uuid
from datetime import timedelta

import structlog

from genwave.backends.base import GenerationBackend
from genwave.exceptions import (
    BatchNotFoundError,
    BatchPermissionError,
    BatchStateError,
    BatchValidationError,
    OperationFailedError,
    PollingTimeoutError,
    RequestError,
)
from genwave.models import (
    Batch,
    BatchInput,
    BatchPage,
    BatchSettings,
    BatchSnapshot,
    BatchSummary,
    Job,
    JobErrorEntry,
    JobResultEntry,
    MediaGenerationJob,
    Template,
    TextGenerationJob,
    utcnow,
)
from genwave.notifications import (
    BATCH_COMPLETED,
    BATCH_UPDATE,
    JOB_UPDATE,
    NotificationFanout,
)
from genwave.operations import OperationService
from genwave.request import RetryPolicy
from genwave.status import BatchStatus
from genwave.store import BatchStore, InMemoryBatchStore
from genwave.templates import TemplateStore
from genwave.utils.logging import logging_context

log = structlog.get_logger(__name__)

DEFAULT_BATCH_MAX_AGE_SECONDS = 7 * 24 * 60 * 60


def new_batch_id() -> str:
    return f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class BatchScheduler:
    """
    Create, run, observe and cancel batches of generation jobs.

    Parameters
    ----------
    backend : GenerationBackend
        Provider used to optimize prompts and submit generations.
    operations : OperationService
        Status checks for submitted operations.
    notifications : NotificationFanout
        Destination of ``job_update``, ``batch_update`` and ``batch_completed`` events.
    templates : TemplateStore
        Lookup of prompt templates referenced by ``template_id``.
    store : BatchStore | None, optional
        Batch storage. Defaults to an in-memory store.
    retry_policy : RetryPolicy | None, optional
        Backoff applied between job attempts.
    job_poll_interval_seconds : float
        Wait between status checks of a submitted job.
    job_poll_max_iterations : int
        Status checks before a job is declared timed out.
    default_max_concurrent : int
        Wave size used when the batch settings do not name one.
    """

    def __init__(
        self,
        *,
        backend: GenerationBackend,
        operations: OperationService,
        notifications: NotificationFanout,
        templates: TemplateStore,
        store: BatchStore | None = None,
        retry_policy: RetryPolicy | None = None,
        job_poll_interval_seconds: float = 5.0,
        job_poll_max_iterations: int = 120,
        default_max_concurrent: int = 3,
    ) -> None:
        self._backend = backend
        self._operations = operations
        self._notifications = notifications
        self._templates = templates
        self._store = store if store is not None else InMemoryBatchStore()
        self._retry_policy = retry_policy or RetryPolicy()
        self._job_poll_interval_seconds = job_poll_interval_seconds
        self._job_poll_max_iterations = job_poll_max_iterations
        self._default_max_concurrent = default_max_concurrent
        self._batch_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def store(self) -> BatchStore:
        return self._store

    @property
    def notifications(self) -> NotificationFanout:
        return self._notifications

    def _resolve_settings(
        self, settings: BatchSettings | dict[str, t.Any] | None
    ) -> BatchSettings:
        if isinstance(settings, BatchSettings):
            return settings
        return BatchSettings.model_validate(
            {"max_concurrent": self._default_max_concurrent, **(settings or {})}
        )

    async def create_batch(
        self,
        inputs: t.Sequence[BatchInput | dict[str, t.Any]],
        *,
        template_id: str | None = None,
        settings: BatchSettings | dict[str, t.Any] | None = None,
        name: str | None = None,
        owner: str | None = None,
    ) -> str:
        """
        Register a batch and start processing it in the background.

        Parameters
        ----------
        inputs : typing.Sequence[BatchInput | dict[str, typing.Any]]
            One entry per job to generate.
        template_id : str | None, optional
            Template expanding each input's text into a full prompt.
        settings : BatchSettings | dict[str, typing.Any] | None, optional
            Concurrency, retry and delivery settings.
        name : str | None, optional
            Display name.
        owner : str | None, optional
            Caller identity checked on cancellation.

        Returns
        -------
        str
            Identifier of the new batch, in ``preparing`` status.

        Raises
        ------
        BatchValidationError
            If ``inputs`` is empty or an input is malformed.
        TemplateNotFoundError
            If ``template_id`` names no known template.
        """
        if not inputs:
            raise BatchValidationError("A batch needs at least one input")
        try:
            parsed_inputs = [
                item if isinstance(item, BatchInput) else BatchInput.model_validate(item)
                for item in inputs
            ]
            batch_settings = self._resolve_settings(settings)
        except ValueError as error:
            raise BatchValidationError(f"Invalid batch request: {error}") from error

        template: Template | None = None
        if template_id:
            template = self._templates.load_template(template_id)

        batch_id = new_batch_id()
        batch = Batch(
            id=batch_id,
            name=name or f"Batch {utcnow():%Y-%m-%d %H:%M:%S}",
            owner=owner,
            inputs=parsed_inputs,
            template=template,
            settings=batch_settings,
        )
        self._store.put(batch)

        task = asyncio.create_task(
            coro=self._process_batch(batch=batch),
            name=f"genwave_batch_{batch_id}",
        )
        self._batch_tasks[batch_id] = task
        task.add_done_callback(lambda _: self._batch_tasks.pop(batch_id, None))

        log.info(
            event="Batch created",
            batch_id=batch_id,
            inputs=len(parsed_inputs),
            template_id=template_id,
            max_concurrent=batch_settings.max_concurrent,
        )
        return batch_id

    def _build_jobs(self, *, batch: Batch) -> list[Job]:
        jobs: list[Job] = []
        for index, item in enumerate(batch.inputs):
            if batch.template is not None:
                prompt = batch.template.build_prompt(text=item.text, index=index)
            else:
                prompt = item.text or ""
            common = {
                "id": f"{batch.id}_job_{index}",
                "batch_id": batch.id,
                "index": index,
                "input": item,
                "prompt": prompt,
            }
            if item.media_ref:
                jobs.append(MediaGenerationJob(**common, media_ref=item.media_ref))
            else:
                jobs.append(TextGenerationJob(**common))
        return jobs

    async def _process_batch(self, *, batch: Batch) -> None:
        with logging_context(batch_id=batch.id):
            try:
                if batch.status is BatchStatus.CANCELLED:
                    log.info(event="Batch cancelled before processing started")
                    return
                batch.jobs = self._build_jobs(batch=batch)
                batch.total_jobs = len(batch.jobs)
                batch.status = BatchStatus.PROCESSING
                batch.touch()
                self._emit_batch_update(batch=batch)
                log.info(event="Batch processing started", total_jobs=batch.total_jobs)
                await self._run_waves(batch=batch)
            except asyncio.CancelledError:
                log.debug(event="Batch task cancelled")
                raise
            except Exception as error:
                log.error(event="Batch processing failed", error=str(object=error))
                if not batch.status.is_terminal:
                    batch.status = BatchStatus.FAILED
                    batch.error = str(object=error)
                    batch.touch()
                    self._emit_batch_update(batch=batch)

    async def _run_waves(self, *, batch: Batch) -> None:
        wave_size = batch.settings.max_concurrent
        for start in range(0, len(batch.jobs), wave_size):
            if batch.status is BatchStatus.CANCELLED:
                log.info(event="Batch cancelled; skipping remaining waves", next_job=start)
                return
            wave = batch.jobs[start : start + wave_size]
            log.debug(event="Starting wave", first_job=start, size=len(wave))
            outcomes = await asyncio.gather(
                *(self._execute_job(batch=batch, job=job) for job in wave),
                return_exceptions=True,
            )
            for job, outcome in zip(wave, outcomes):
                if isinstance(outcome, BaseException):
                    log.error(
                        event="Job bookkeeping failed",
                        job_id=job.id,
                        error=str(object=outcome),
                    )
            batch.recompute_progress()
            self._emit_batch_update(batch=batch)
            if batch.status is BatchStatus.CANCELLED:
                log.info(event="Batch cancelled; skipping remaining waves", next_job=start + wave_size)
                return
        self._complete_batch(batch=batch)

    def _complete_batch(self, *, batch: Batch) -> None:
        if batch.settled_jobs != batch.total_jobs:
            batch.status = BatchStatus.FAILED
            batch.error = f"{batch.total_jobs - batch.settled_jobs} jobs did not settle"
        elif batch.failed_jobs:
            batch.status = BatchStatus.COMPLETED_WITH_ERRORS
        else:
            batch.status = BatchStatus.COMPLETED
        batch.progress = 100
        batch.completed_at = utcnow()
        batch.touch()
        log.info(
            event="Batch finished",
            status=batch.status.value,
            completed_jobs=batch.completed_jobs,
            failed_jobs=batch.failed_jobs,
        )
        self._emit_batch_update(batch=batch)
        self._notifications.publish(
            BATCH_COMPLETED,
            {
                "batchId": batch.id,
                "owner": batch.owner,
                "status": batch.status.value,
                "stats": {
                    "total": batch.total_jobs,
                    "completed": batch.completed_jobs,
                    "failed": batch.failed_jobs,
                },
            },
            listener_id=batch.settings.listener_id,
            webhook_url=batch.settings.webhook_url,
        )

    async def _execute_job(self, *, batch: Batch, job: Job) -> None:
        with logging_context(job_id=job.id):
            job.mark_processing()
            self._emit_job_update(batch=batch, job=job)
            try:
                result = await self._run_job(batch=batch, job=job)
            except Exception as error:
                message = str(object=error) or type(error).__name__
                job.mark_failed(error=message)
                batch.failed_jobs += 1
                batch.errors.append(
                    JobErrorEntry(
                        job_id=job.id,
                        index=job.index,
                        input=job.input.model_dump(exclude_none=True),
                        error=message,
                    )
                )
                log.warning(
                    event="Job failed",
                    attempts=job.attempts,
                    error=message,
                    error_type=type(error).__name__,
                )
            else:
                job.mark_completed(result=result)
                batch.completed_jobs += 1
                batch.results.append(
                    JobResultEntry(
                        job_id=job.id,
                        index=job.index,
                        input=job.input.model_dump(exclude_none=True),
                        result=result,
                        prompt=job.prompt,
                        optimized_prompt=job.optimized_prompt,
                    )
                )
                log.info(event="Job completed", attempts=job.attempts)
            batch.touch()
            self._emit_job_update(batch=batch, job=job)

    async def _run_job(self, *, batch: Batch, job: Job) -> dict[str, t.Any]:
        max_attempts = batch.settings.retry_attempts
        while True:
            job.attempts += 1
            try:
                return await self._attempt_job(batch=batch, job=job)
            except RequestError as error:
                if not error.is_retryable or job.attempts >= max_attempts:
                    raise
                delay = self._retry_policy.delay_for(attempt=job.attempts)
                log.warning(
                    event="Job attempt failed; retrying",
                    attempt=job.attempts,
                    delay_seconds=round(delay, 3),
                    status_code=error.status_code,
                    error=error.message,
                )
                await asyncio.sleep(delay=delay)

    async def _optimize(self, *, batch: Batch, job: TextGenerationJob) -> None:
        if job.optimized_prompt is not None or not job.prompt:
            return
        try:
            job.optimized_prompt = await self._backend.optimize_prompt(
                prompt=job.prompt,
                api_key=batch.settings.api_key,
            )
        except Exception as error:
            log.warning(
                event="Prompt optimization failed; using original prompt",
                error=str(object=error),
            )

    async def _attempt_job(self, *, batch: Batch, job: Job) -> dict[str, t.Any]:
        media_ref: str | None = None
        if isinstance(job, MediaGenerationJob):
            media_ref = job.media_ref
            prompt = job.prompt
        else:
            if batch.settings.optimize_prompts:
                await self._optimize(batch=batch, job=job)
            prompt = job.optimized_prompt or job.prompt

        submission = await self._backend.submit_generation(
            prompt=prompt,
            negative_prompt=job.input.negative_prompt,
            media_ref=media_ref,
            api_key=batch.settings.api_key,
            model=batch.settings.model,
        )
        if submission.operation_handle is None:
            return dict(submission.result or {})

        job.operation_handle = submission.operation_handle
        log.debug(event="Generation submitted", handle=submission.operation_handle)
        result = await self._wait_for_operation(
            handle=submission.operation_handle,
            api_key=batch.settings.api_key,
        )
        return {"operationHandle": submission.operation_handle, **result}

    async def _wait_for_operation(self, *, handle: str, api_key: str | None) -> dict[str, t.Any]:
        for iteration in range(1, self._job_poll_max_iterations + 1):
            await asyncio.sleep(delay=self._job_poll_interval_seconds)
            try:
                status = await self._operations.check_status(handle, api_key=api_key)
            except RequestError as error:
                if not error.is_retryable:
                    raise
                log.warning(
                    event="Status check failed; will check again",
                    handle=handle,
                    iteration=iteration,
                    error=error.message,
                )
                continue
            if status.done:
                if not status.success:
                    raise OperationFailedError(status.error or "Generation failed", handle=handle)
                return dict(status.result or {})
        raise PollingTimeoutError(
            f"Generation timed out after {self._job_poll_max_iterations} status checks",
            handle=handle,
        )

    def _emit_batch_update(self, *, batch: Batch) -> None:
        self._notifications.publish(
            BATCH_UPDATE,
            {
                "batchId": batch.id,
                "status": batch.status.value,
                "progress": batch.progress,
                "totalJobs": batch.total_jobs,
                "completedJobs": batch.completed_jobs,
                "failedJobs": batch.failed_jobs,
            },
            listener_id=batch.settings.listener_id,
            webhook_url=batch.settings.webhook_url,
        )

    def _emit_job_update(self, *, batch: Batch, job: Job) -> None:
        self._notifications.publish(
            JOB_UPDATE,
            {
                "batchId": batch.id,
                "jobId": job.id,
                "index": job.index,
                "status": job.status.value,
                "error": job.error,
            },
            listener_id=batch.settings.listener_id,
            webhook_url=batch.settings.webhook_url,
        )

    def get_batch_status(self, batch_id: str) -> BatchSnapshot | None:
        batch = self._store.get(batch_id)
        if batch is None:
            return None
        return BatchSnapshot.from_batch(batch)

    def cancel_batch(self, batch_id: str, *, owner: str | None = None) -> BatchSnapshot:
        """
        Request cancellation of a batch.

        Jobs already running finish and record their outcome; no new wave
        starts afterwards.

        Parameters
        ----------
        batch_id : str
            Batch to cancel.
        owner : str | None, optional
            Caller identity; must match the batch owner when the batch has one.

        Returns
        -------
        BatchSnapshot
            State of the batch right after cancellation.

        Raises
        ------
        BatchNotFoundError
            If no batch has this id.
        BatchPermissionError
            If ``owner`` is given and does not own the batch.
        BatchStateError
            If the batch already reached a terminal status.
        """
        batch = self._store.get(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        if owner is not None and batch.owner is not None and owner != batch.owner:
            raise BatchPermissionError(f"Batch {batch_id} belongs to another owner")
        if batch.status.is_terminal:
            raise BatchStateError(
                f"Batch {batch_id} is already {batch.status.value} and cannot be cancelled"
            )
        batch.status = BatchStatus.CANCELLED
        batch.touch()
        log.info(event="Batch cancelled", batch_id=batch_id, settled_jobs=batch.settled_jobs)
        self._emit_batch_update(batch=batch)
        return BatchSnapshot.from_batch(batch)

    def list_batches(
        self, *, owner: str | None = None, page: int = 1, limit: int = 20
    ) -> BatchPage:
        """
        List batches, newest first.

        Parameters
        ----------
        owner : str | None, optional
            Only include batches of this owner.
        page : int
            1-based page number.
        limit : int
            Page size.

        Returns
        -------
        BatchPage
            Requested page of batch summaries.
        """
        page = max(page, 1)
        limit = max(limit, 1)
        batches = [
            batch for batch in self._store.values() if owner is None or batch.owner == owner
        ]
        batches.sort(key=lambda batch: batch.created_at, reverse=True)
        offset = (page - 1) * limit
        return BatchPage(
            batches=[
                BatchSummary(
                    id=batch.id,
                    name=batch.name,
                    status=batch.status,
                    progress=batch.progress,
                    total_jobs=batch.total_jobs,
                    completed_jobs=batch.completed_jobs,
                    failed_jobs=batch.failed_jobs,
                    created_at=batch.created_at,
                    updated_at=batch.updated_at,
                )
                for batch in batches[offset : offset + limit]
            ],
            page=page,
            limit=limit,
            total=len(batches),
            total_pages=math.ceil(len(batches) / limit),
        )

    def cleanup(self, *, max_age_seconds: float = DEFAULT_BATCH_MAX_AGE_SECONDS) -> int:
        """
        Forget batches created more than ``max_age_seconds`` ago.

        Batches whose processing task is still running are kept.

        Returns
        -------
        int
            Number of batches removed.
        """
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        removed = 0
        for batch in self._store.values():
            if batch.created_at < cutoff and batch.id not in self._batch_tasks:
                self._store.delete(batch.id)
                removed += 1
        if removed:
            log.info(event="Old batches removed", removed=removed)
        return removed

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in BatchStatus}
        total_jobs = 0
        for batch in self._store.values():
            counts[batch.status.value] += 1
            total_jobs += batch.total_jobs
        return {
            "total_batches": len(self._store.values()),
            "running_batches": len(self._batch_tasks),
            "total_jobs": total_jobs,
            **counts,
        }

    async def wait(self, batch_id: str) -> BatchSnapshot | None:
        """
        Wait for the processing task of ``batch_id`` to exit.

        Returns
        -------
        BatchSnapshot | None
            Final state of the batch, ``None`` if it is unknown.
        """
        task = self._batch_tasks.get(batch_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_batch_status(batch_id)

    async def aclose(self) -> None:
        """
        Cancel every running batch task.
        """
        tasks = list(self._batch_tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._batch_tasks.clear()
