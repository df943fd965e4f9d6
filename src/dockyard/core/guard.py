"""Caller-side timeout and cancellation for external calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from dockyard.core.errors import AttemptCancelled, DeployError


T = TypeVar("T")


async def guarded(
    call: Awaitable[T],
    *,
    project_id: str,
    failure: type[DeployError],
    what: str,
    timeout: float,
    cancel: asyncio.Event | None = None,
) -> T:
    """Await ``call``, giving up after ``timeout`` or once ``cancel`` is set.

    The call is cancelled when either fires. A timeout or an ordinary
    exception is raised as ``failure``; the cancel token raises
    ``AttemptCancelled``.
    """
    task = asyncio.ensure_future(call)
    waiters: set[asyncio.Future[Any]] = {task}
    cancel_waiter: asyncio.Task[bool] | None = None
    if cancel is not None:
        if cancel.is_set():
            task.cancel()
            raise AttemptCancelled(f"Cancelled before {what}", project_id=project_id)
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if task not in done:
        task.cancel()
        if cancel_waiter is not None and cancel_waiter in done:
            raise AttemptCancelled(f"Cancelled during {what}", project_id=project_id)
        raise failure(f"{what} timed out after {timeout}s", project_id=project_id)

    try:
        return task.result()
    except DeployError:
        raise
    except Exception as exc:
        raise failure(f"{what} failed: {exc}", project_id=project_id) from exc
