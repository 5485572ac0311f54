"""
Genwave-specific runtime exceptions.
"""

from __future__ import annotations

from enum import Enum


class ErrorClassification(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class GenwaveError(Exception):
    """Base class for every error raised by genwave."""


class ConfigurationError(GenwaveError):
    """Raised when required configuration such as an API key is missing."""


class RequestError(GenwaveError):
    """
    Outbound request failure with a retry classification.

    Parameters
    ----------
    classification : ErrorClassification
        Whether the failure may be retried.
    message : str
        Human readable failure description.
    status_code : int | None, optional
        HTTP status code, ``None`` when no response was received.
    """

    def __init__(
        self,
        *,
        classification: ErrorClassification,
        message: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.classification = classification
        self.message = message
        self.status_code = status_code

    @property
    def is_retryable(self) -> bool:
        return self.classification is ErrorClassification.RETRYABLE

    def __repr__(self) -> str:
        return (
            f"RequestError(classification={self.classification.value!r}, "
            f"status_code={self.status_code!r}, message={self.message!r})"
        )


class OperationError(GenwaveError):
    """Base class for failures of a long-running operation."""

    def __init__(self, message: str, *, handle: str | None = None) -> None:
        super().__init__(message)
        self.handle = handle


class OperationFailedError(OperationError):
    """The provider reported that the long-running operation itself failed."""


class PollingTimeoutError(OperationError):
    """Polling gave up before the operation reached a terminal state."""


class BatchError(GenwaveError):
    """Base class for batch-level errors."""


class BatchValidationError(BatchError):
    """The batch submission was rejected before any job was created."""


class BatchNotFoundError(BatchError):
    """No batch exists for the given identifier."""


class BatchPermissionError(BatchError):
    """The caller does not own the batch."""


class BatchStateError(BatchError):
    """The batch is in a status that does not allow the requested transition."""


class TemplateNotFoundError(BatchValidationError):
    """The requested prompt template does not exist."""


class JobStateError(GenwaveError):
    """A job was asked to make a non-monotonic status transition."""
