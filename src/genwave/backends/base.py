from __future__ import annotations

from abc import ABC, abstractmethod

from genwave.models import GenerationSubmission, OperationSnapshot


class GenerationBackend(ABC):
    """
    Standard interface for a provider hosting long-running generation work.

    Backends implement:
    - submit_generation: start a generation and return a handle or a result
    - check_operation: report the current status of a handle
    """

    name: str = "base"

    @abstractmethod
    async def submit_generation(
        self,
        *,
        prompt: str,
        negative_prompt: str | None = None,
        media_ref: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
    ) -> GenerationSubmission:
        """
        Start a generation.

        Parameters
        ----------
        prompt : str
            Final prompt text.
        negative_prompt : str | None, optional
            Content the generation should avoid.
        media_ref : str | None, optional
            Reference media (image path) for media-based generation.
        api_key : str | None, optional
            Caller-supplied credential overriding configured keys.
        model : str | None, optional
            Provider model override.

        Returns
        -------
        GenerationSubmission
            Operation handle to poll, or an immediate result.
        """

    @abstractmethod
    async def check_operation(
        self,
        *,
        handle: str,
        api_key: str | None = None,
    ) -> OperationSnapshot:
        """
        Fetch the current status of an operation.

        Parameters
        ----------
        handle : str
            Provider operation handle.
        api_key : str | None, optional
            Credential used to submit the operation.

        Returns
        -------
        OperationSnapshot
            Normalized status.
        """

    async def optimize_prompt(
        self,
        *,
        prompt: str,
        api_key: str | None = None,
        model: str | None = None,
    ) -> str:
        """
        Rewrite a prompt to be more descriptive.

        Backends without an optimizer return the prompt unchanged.
        """
        return prompt

    async def aclose(self) -> None:
        return None
