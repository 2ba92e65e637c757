"""Runs blocking calls on a bounded worker pool and hands the result back to the event loop.

Request handlers are coroutines scheduled on the dispatcher's loop; the catalog
(SQLAlchemy) and the storage client (boto3) only offer blocking calls. Every such
call goes through an ``AsyncBridge`` so the loop thread is never parked on I/O.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Iterable, List, Tuple, Type, TypeVar

from photo_catalog.core.exceptions import UpstreamFailure

logger = logging.getLogger("photo_catalog.bridge")

T = TypeVar("T")


class AsyncBridge:
    """Bounded worker pool exposing blocking callables as awaitables.

    ``upstream_errors`` lists the exception types raised by the wrapped
    client that mean "the collaborator failed"; they are re-raised as
    ``UpstreamFailure`` so the request layer never sees driver internals.
    """

    def __init__(
        self,
        max_workers: int,
        name: str,
        upstream_errors: Tuple[Type[BaseException], ...] = (),
        upstream_message: str = "Upstream service unavailable",
    ) -> None:
        self.name = name
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"{name}-io")
        self._upstream_errors = upstream_errors
        self._upstream_message = upstream_message

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        call = functools.partial(fn, *args, **kwargs)
        try:
            return await loop.run_in_executor(self._executor, call)
        except self._upstream_errors as exc:
            logger.error(
                "event=upstream_failure bridge=%s call=%s error=%s",
                self.name,
                getattr(fn, "__name__", repr(fn)),
                exc,
            )
            raise UpstreamFailure(self._upstream_message) from exc

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


async def bounded_gather(awaitables: Iterable[Awaitable[T]], limit: int) -> List[T]:
    """Await ``awaitables`` with at most ``limit`` in flight, preserving order."""
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _guarded(awaitable: Awaitable[T]) -> T:
        async with semaphore:
            return await awaitable

    return list(await asyncio.gather(*(_guarded(aw) for aw in awaitables)))
