"""
Stream helpers shared by the engine and the backend adapters.

Collaborators may hand back either async iterables or plain iterables
(lists in tests, generators in offline tools); everything downstream
consumes them through ``to_async_iterable``.
"""
from __future__ import annotations

from typing import Any, AsyncIterable, AsyncIterator, Iterable, TypeVar, Union

T = TypeVar("T")

AsyncIterableLike = Union[AsyncIterable[T], Iterable[T]]


def is_async_iterable(source: Any) -> bool:
    return hasattr(source, "__aiter__")


async def to_async_iterable(source: AsyncIterableLike[T]) -> AsyncIterator[T]:
    """Normalise a sync or async iterable into an async iterator."""
    if is_async_iterable(source):
        async for item in source:
            yield item
    else:
        for item in source:
            yield item


async def close_async_iterator(iterator: Any) -> None:
    """Close an async generator if it supports it."""
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()
