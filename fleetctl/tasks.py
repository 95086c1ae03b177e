"""Fan-out helpers: one task per item, joined in order.

``gather_settled`` isolates failures: every task runs to completion and its
outcome is returned as a ``(value, error)`` pair.  ``gather_or_cancel``
cancels the remaining tasks on the first error and must only be used for
side-effect-free reads.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Iterable, List, Optional, Tuple, TypeVar

T = TypeVar("T")

Outcome = Tuple[Optional[T], Optional[Exception]]


async def gather_settled(aws: Iterable[Awaitable[T]]) -> List[Outcome]:
    results = await asyncio.gather(*aws, return_exceptions=True)
    outcomes: List[Outcome] = []
    for result in results:
        if isinstance(result, Exception):
            outcomes.append((None, result))
        elif isinstance(result, BaseException):
            raise result
        else:
            outcomes.append((result, None))
    return outcomes


async def gather_or_cancel(aws: Iterable[Awaitable[T]]) -> List[T]:
    tasks: List["asyncio.Future[Any]"] = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in tasks:
            if task.done() and not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
        return [task.result() for task in tasks]
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
