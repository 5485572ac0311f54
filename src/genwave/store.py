"""
Keyed batch storage.
"""

from __future__ import annotations

import typing as t

from genwave.models import Batch


class BatchStore(t.Protocol):
    def get(self, batch_id: str) -> Batch | None: ...

    def put(self, batch: Batch) -> None: ...

    def delete(self, batch_id: str) -> None: ...

    def values(self) -> list[Batch]: ...


class InMemoryBatchStore:
    """
    Process-local batch store; contents are lost on restart.
    """

    def __init__(self) -> None:
        self._batches: dict[str, Batch] = {}

    def get(self, batch_id: str) -> Batch | None:
        return self._batches.get(batch_id)

    def put(self, batch: Batch) -> None:
        self._batches[batch.id] = batch

    def delete(self, batch_id: str) -> None:
        self._batches.pop(batch_id, None)

    def values(self) -> list[Batch]:
        return list(self._batches.values())

    def __len__(self) -> int:
        return len(self._batches)
