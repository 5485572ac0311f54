import typing as t
from datetime import datetime, timezone

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from genwave.exceptions import JobStateError
from genwave.status import BatchStatus, JobStatus, JobType


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class _WireModel(BaseModel):
    """Snake-case fields exposed with camelCase aliases on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OperationSnapshot(BaseModel):
    """Normalized status of one long-running provider operation."""

    model_config = ConfigDict(extra="allow")

    name: str | None = None
    done: bool = False
    result: dict[str, t.Any] | None = Field(
        default=None, validation_alias=AliasChoices("result", "response")
    )
    error: str | None = None
    metadata: dict[str, t.Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def unify_error(cls, data: t.Any):
        if not isinstance(data, dict):
            return data
        error = data.get("error")
        if isinstance(error, dict):
            data = {**data, "error": str(error.get("message") or "Unknown operation error")}
        return data

    @property
    def progress(self) -> float:
        value = self.metadata.get("progress") or self.metadata.get("progressPercent") or 0
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0


class GenerationSubmission(BaseModel):
    """Result of a generation call: either an operation handle or an immediate result."""

    operation_handle: str | None = None
    result: dict[str, t.Any] | None = None

    @model_validator(mode="after")
    def check_shape(self) -> "GenerationSubmission":
        if self.operation_handle is None and self.result is None:
            raise ValueError("A generation submission needs an operation handle or a result")
        return self


class TemplateVariation(BaseModel):
    suffix: str


class Template(BaseModel):
    """Reusable prompt skeleton with round-robin variation suffixes."""

    id: str
    name: str = ""
    description: str = ""
    base_prompt: str = Field(validation_alias=AliasChoices("base_prompt", "basePrompt"))
    variations: list[TemplateVariation] = Field(default_factory=list)
    settings: dict[str, t.Any] = Field(default_factory=dict)
    is_custom: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def build_prompt(self, *, text: str | None, index: int) -> str:
        """
        Expand the template for the input at ``index``.

        Parameters
        ----------
        text : str | None
            The input's own prompt text.
        index : int
            Zero-based position of the input inside its batch.

        Returns
        -------
        str
            Base prompt, input text and the ``index``-selected variation suffix.
        """
        parts = [self.base_prompt]
        if text:
            parts.append(text)
        if self.variations:
            parts.append(self.variations[index % len(self.variations)].suffix)
        return " ".join(parts)


class BatchInput(BaseModel):
    """One user input of a batch: prompt text and an optional reference image."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    text: str | None = Field(default=None, validation_alias=AliasChoices("text", "prompt"))
    media_ref: str | None = Field(
        default=None, validation_alias=AliasChoices("media_ref", "image", "mediaRef")
    )
    negative_prompt: str | None = Field(
        default=None, validation_alias=AliasChoices("negative_prompt", "negativePrompt")
    )

    @property
    def job_type(self) -> JobType:
        return JobType.IMAGE_TO_VIDEO if self.media_ref else JobType.TEXT_TO_VIDEO


class BatchSettings(BaseModel):
    """Execution configuration of a batch."""

    max_concurrent: int = Field(default=3, ge=1)
    retry_attempts: int = Field(default=2, ge=1)
    optimize_prompts: bool = True
    api_key: str | None = None
    model: str | None = None
    listener_id: str | None = None
    webhook_url: str | None = None


_ALLOWED_JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class _JobEnvelope(BaseModel):
    """Fields shared by every job variant."""

    id: str
    batch_id: str
    index: int
    input: BatchInput
    prompt: str
    optimized_prompt: str | None = None
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    operation_handle: str | None = None
    result: dict[str, t.Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    def _transition(self, *, status: JobStatus) -> None:
        if status not in _ALLOWED_JOB_TRANSITIONS[self.status]:
            raise JobStateError(f"Job {self.id} cannot move from {self.status.value} to {status.value}")
        self.status = status

    def mark_processing(self) -> None:
        self._transition(status=JobStatus.PROCESSING)
        self.started_at = utcnow()

    def mark_completed(self, *, result: dict[str, t.Any]) -> None:
        self._transition(status=JobStatus.COMPLETED)
        self.result = result
        self.completed_at = utcnow()

    def mark_failed(self, *, error: str) -> None:
        self._transition(status=JobStatus.FAILED)
        self.error = error
        self.failed_at = utcnow()


class TextGenerationJob(_JobEnvelope):
    type: t.Literal[JobType.TEXT_TO_VIDEO] = JobType.TEXT_TO_VIDEO


class MediaGenerationJob(_JobEnvelope):
    type: t.Literal[JobType.IMAGE_TO_VIDEO] = JobType.IMAGE_TO_VIDEO
    media_ref: str


Job = t.Annotated[TextGenerationJob | MediaGenerationJob, Field(discriminator="type")]


class JobResultEntry(_WireModel):
    job_id: str
    index: int
    input: dict[str, t.Any]
    result: dict[str, t.Any]
    prompt: str
    optimized_prompt: str | None = None


class JobErrorEntry(_WireModel):
    job_id: str
    index: int
    input: dict[str, t.Any]
    error: str


class Batch(BaseModel):
    """In-memory batch record mutated by the scheduler."""

    id: str
    name: str
    owner: str | None = None
    status: BatchStatus = BatchStatus.PREPARING
    inputs: list[BatchInput]
    template: Template | None = None
    settings: BatchSettings = Field(default_factory=BatchSettings)
    jobs: list[Job] = Field(default_factory=list)
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    progress: int = 0
    results: list[JobResultEntry] = Field(default_factory=list)
    errors: list[JobErrorEntry] = Field(default_factory=list)
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def settled_jobs(self) -> int:
        return self.completed_jobs + self.failed_jobs

    def touch(self) -> None:
        self.updated_at = utcnow()

    def recompute_progress(self) -> int:
        self.progress = round(100 * self.settled_jobs / self.total_jobs) if self.total_jobs else 0
        self.touch()
        return self.progress


class BatchSnapshot(_WireModel):
    """Read-only projection of a batch returned by status queries."""

    id: str
    name: str
    status: BatchStatus
    progress: int
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    results: list[JobResultEntry] = Field(default_factory=list)
    errors: list[JobErrorEntry] = Field(default_factory=list)

    @classmethod
    def from_batch(cls, batch: Batch) -> "BatchSnapshot":
        return cls(
            id=batch.id,
            name=batch.name,
            status=batch.status,
            progress=batch.progress,
            total_jobs=batch.total_jobs,
            completed_jobs=batch.completed_jobs,
            failed_jobs=batch.failed_jobs,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
            completed_at=batch.completed_at,
            results=[entry.model_copy(deep=True) for entry in batch.results],
            errors=[entry.model_copy(deep=True) for entry in batch.errors],
        )


class BatchSummary(_WireModel):
    id: str
    name: str
    status: BatchStatus
    progress: int
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    created_at: datetime
    updated_at: datetime


class BatchPage(_WireModel):
    batches: list[BatchSummary]
    page: int
    limit: int
    total: int
    total_pages: int
