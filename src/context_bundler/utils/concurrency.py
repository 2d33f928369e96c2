"""Bounded async fan-out used by the bundle builder."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

T = TypeVar("T")
R = TypeVar("R")


class BoundedSemaphore:
    """``asyncio.Semaphore`` that also tracks how many permits are in use."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak(self) -> int:
        return self._peak

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self._semaphore.acquire()
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)
        try:
            yield
        finally:
            self._in_use -= 1
            self._semaphore.release()


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """
    Run coroutines with a fixed concurrency ceiling.

    ``run`` yields ``(index, result)`` pairs as tasks finish; ``gather_ordered``
    collects them back into input order.
    """

    max_concurrency: int
    _semaphore: BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._semaphore = BoundedSemaphore(self.max_concurrency)

    @property
    def peak_concurrency(self) -> int:
        return self._semaphore.peak

    async def run(
        self, factories: Sequence[Callable[[], Awaitable[T]]]
    ) -> AsyncIterator[tuple[int, T]]:
        tasks: set[asyncio.Task[tuple[int, T]]] = {
            asyncio.create_task(self._run_one(index, factory))
            for index, factory in enumerate(factories)
        }
        try:
            while tasks:
                done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                tasks = set(pending)
                for task in done:
                    exc = task.exception()
                    if exc is not None:
                        await _cancel_all(tasks)
                        raise exc
                    yield task.result()
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise

    async def gather_ordered(self, factories: Sequence[Callable[[], Awaitable[T]]]) -> list[T]:
        results: dict[int, T] = {}
        async for index, value in self.run(factories):
            results[index] = value
        return [results[index] for index in range(len(factories))]

    async def _run_one(self, index: int, factory: Callable[[], Awaitable[T]]) -> tuple[int, T]:
        # The coroutine is only created once a permit is held.
        async with self._semaphore.permit():
            return index, await factory()


async def map_bounded(
    items: Sequence[R],
    func: Callable[[R], Awaitable[T]],
    *,
    max_concurrency: int,
) -> list[T]:
    """Apply ``func`` to every item with bounded concurrency, preserving order."""

    if not items:
        return []
    pool: WorkerPool[T] = WorkerPool(max_concurrency=max_concurrency)
    return await pool.gather_ordered([_bind(func, item) for item in items])


def _bind(func: Callable[[R], Awaitable[T]], item: R) -> Callable[[], Awaitable[T]]:
    def factory() -> Awaitable[T]:
        return func(item)

    return factory


async def _cancel_all(tasks: set[asyncio.Task[tuple[int, T]]]) -> None:
    for task in tasks:
        task.cancel()
    if tasks:
        with suppress(Exception):
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "BoundedSemaphore",
    "WorkerPool",
    "map_bounded",
]
