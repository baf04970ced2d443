"""Async utilities for fanning work out over a bounded pool."""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_with_concurrency(
    n: int,
    *coros: Awaitable[T],
) -> list[T]:
    """Run coroutines with limited concurrency.

    Args:
        n: Maximum number of concurrent coroutines
        *coros: Coroutines to run

    Returns:
        List of results in the same order as input
    """
    semaphore = asyncio.Semaphore(max(1, n))

    async def sem_coro(coro: Awaitable[T]) -> T:
        async with semaphore:
            return await coro

    return await asyncio.gather(*[sem_coro(coro) for coro in coros])


async def map_in_threads(
    func: Callable[[T], R],
    items: Iterable[T],
    concurrency: int,
) -> list[R]:
    """Apply a blocking function to items on a bounded thread pool.

    At most ``concurrency`` calls run at once; results keep input order.
    An exception raised by ``func`` propagates, so callers that need a result
    per item must catch inside ``func``.
    """
    loop = asyncio.get_running_loop()
    workers = max(1, concurrency)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="deployctl") as pool:

        async def call(item: T) -> R:
            return await loop.run_in_executor(pool, func, item)

        return await gather_with_concurrency(workers, *[call(item) for item in items])


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async function synchronously.

    This is useful for integrating async code with Click commands and the
    synchronous sequencer.

    Args:
        coro: Coroutine to run

    Returns:
        Result of the coroutine
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Already inside an event loop: run on a fresh loop in a worker thread
        import concurrent.futures

        with concurrent.futures.ThreadPoolExecutor() as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    else:
        return asyncio.run(coro)
