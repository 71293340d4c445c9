"""Structured concurrency helpers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any


async def gather_first_error(*aws: Awaitable[Any]) -> list[Any]:
    """Run awaitables concurrently and fail on the first error.

    When any awaitable raises, the remaining ones are cancelled and the
    error is re-raised. On success the results are returned in argument
    order, not completion order.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []

    try:
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    for task in tasks:
        if not task.done() or task.cancelled():
            continue
        error = task.exception()
        if error is None:
            continue
        for other in pending:
            other.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        raise error

    return [task.result() for task in tasks]


__all__ = ["gather_first_error"]
