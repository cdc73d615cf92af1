"""Thread offloading for the blocking Tasks API client.

``TasksClient`` is built on requests and blocks; the sync engine runs each
call in the default thread pool.  A run-wide semaphore caps the number of
requests in flight at ``max_parallel_requests``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Set by init_semaphore() when a sync run starts; None means unbounded.
_semaphore: asyncio.Semaphore | None = None


def init_semaphore(max_parallel: int = 4) -> None:
    """Create the request semaphore.  Must run inside the event loop of the sync run."""
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.debug("Request limit for this run: %d in flight", max_parallel)


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call *func* in a worker thread, ignoring the request limit."""
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Call *func* in a worker thread once a request slot is free.

    Used for every Tasks API call, e.g.::

        task = await run_sync_limited(client.create_task, list_id, body)

    Without an initialized semaphore the call is not throttled.
    """
    if _semaphore is None:
        return await run_sync(func, *args, **kwargs)
    async with _semaphore:
        return await run_sync(func, *args, **kwargs)


async def gather_settled(
    aws: Iterable[Awaitable[T]],
) -> list[T | BaseException]:
    """Await every item of *aws* and return the outcomes in input order.

    A failing awaitable does not cancel its siblings; its exception is
    returned in its slot instead.  The executor uses this as the barrier
    between phases: no operation of the next phase starts before every
    operation of the current one has settled.
    """
    return list(await asyncio.gather(*aws, return_exceptions=True))
