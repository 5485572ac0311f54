"""
Time-bounded in-memory cache of terminal operation outcomes.
"""

from __future__ import annotations

import time
import typing as t
from dataclasses import dataclass

import structlog

log = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 10 * 60


@dataclass(frozen=True)
class CompletedOperation:
    """
    Terminal outcome recorded for one operation handle.

    Parameters
    ----------
    handle : str
        Provider operation handle.
    success : bool
        ``True`` when the operation completed without error.
    result : dict[str, typing.Any] | None
        Result payload, typically a retrievable artifact reference.
    error : str | None
        Error description for failed operations.
    completed_at : float
        Unix timestamp when the outcome was recorded.
    """

    handle: str
    success: bool
    result: dict[str, t.Any] | None
    error: str | None
    completed_at: float


class CompletedOperationCache:
    """
    Keyed store of terminal outcomes evicted after a fixed TTL.

    Expired entries are swept lazily on every write; reads never return an
    entry older than the TTL.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: t.Callable[[], float] = time.time,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CompletedOperation] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, handle: object) -> bool:
        return isinstance(handle, str) and self.get(handle=handle) is not None

    def _is_expired(self, *, entry: CompletedOperation, now: float) -> bool:
        return now - entry.completed_at > self._ttl_seconds

    def record(
        self,
        *,
        handle: str,
        success: bool,
        result: dict[str, t.Any] | None = None,
        error: str | None = None,
    ) -> CompletedOperation:
        """
        Build and store a record stamped with the current time.

        Returns
        -------
        CompletedOperation
            The stored record.
        """
        entry = CompletedOperation(
            handle=handle,
            success=success,
            result=result,
            error=error,
            completed_at=self._clock(),
        )
        self.put(entry=entry)
        return entry

    def put(self, *, entry: CompletedOperation) -> None:
        """
        Store or overwrite the record for ``entry.handle``.

        Parameters
        ----------
        entry : CompletedOperation
            Terminal outcome to store.
        """
        self._entries[entry.handle] = entry
        evicted = self.sweep()
        log.debug(
            event="Cached completed operation",
            handle=entry.handle,
            success=entry.success,
            evicted_count=evicted,
            cache_size=len(self._entries),
        )

    def get(self, *, handle: str) -> CompletedOperation | None:
        """
        Return the record for ``handle`` unless it is missing or expired.
        """
        entry = self._entries.get(handle)
        if entry is None:
            return None
        if self._is_expired(entry=entry, now=self._clock()):
            return None
        return entry

    def sweep(self) -> int:
        """
        Evict every entry older than the TTL.

        Returns
        -------
        int
            Number of evicted entries.
        """
        now = self._clock()
        expired = [
            handle
            for handle, entry in self._entries.items()
            if self._is_expired(entry=entry, now=now)
        ]
        for handle in expired:
            del self._entries[handle]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
