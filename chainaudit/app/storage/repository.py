from __future__ import annotations

from typing import Any, Dict, Generic, Optional, Protocol, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Repository(Protocol[T]):
    """
    Minimal persistence interface the engine depends on.

    Values are stored per job id. Implementations must return copies
    or immutable values so that readers cannot mutate stored state.
    """

    async def save(self, job_id: str, value: T) -> None:
        ...

    async def get(self, job_id: str) -> Optional[T]:
        ...

    async def update(self, job_id: str, **changes: Any) -> Optional[T]:
        ...


class InMemoryRepository(Generic[T]):
    """
    Process-local repository backed by a dict.
    """

    def __init__(self) -> None:
        self._items: Dict[str, T] = {}

    async def save(self, job_id: str, value: T) -> None:
        self._items[job_id] = self._copy(value)

    async def get(self, job_id: str) -> Optional[T]:
        value = self._items.get(job_id)
        return None if value is None else self._copy(value)

    async def update(self, job_id: str, **changes: Any) -> Optional[T]:
        current = self._items.get(job_id)
        if current is None:
            return None
        if not isinstance(current, BaseModel):
            raise TypeError("update() requires pydantic model values")

        updated = current.model_copy(update=changes, deep=True)
        self._items[job_id] = updated
        return self._copy(updated)

    def __len__(self) -> int:
        return len(self._items)

    @staticmethod
    def _copy(value: T) -> T:
        if isinstance(value, BaseModel) and not value.model_config.get("frozen"):
            return value.model_copy(deep=True)
        return value
