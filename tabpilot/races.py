from __future__ import annotations

# mypy: ignore-errors
import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, TypeVar

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

RaceBranch = Literal["event", "fallback", "none"]

T = TypeVar("T")

log = logging.getLogger(__name__)


@dataclass(slots=True)
class RaceOutcome(Generic[T]):
    value: T | None
    branch: RaceBranch
    trigger_result: Any = None
    timeout_error: BaseException | None = None


async def _cancel(task: asyncio.Future) -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await task


async def race_event(
    event_waiter: Awaitable[T],
    trigger: Callable[[], Awaitable[Any]] | None,
    *,
    fallback: Callable[[], Awaitable[T | None]] | None = None,
) -> RaceOutcome[T]:
    """Race a browser event against the action that should cause it.

    ``event_waiter`` must carry its own deadline (a Playwright ``timeout=``)
    and is scheduled before ``trigger`` runs. ``fallback`` runs at most once,
    and only after the event branch has timed out and settled.
    """
    event_task = asyncio.ensure_future(event_waiter)
    # let the waiter register its listener before the trigger fires
    await asyncio.sleep(0)

    trigger_result = None
    if trigger is not None:
        try:
            trigger_result = await trigger()
        except BaseException:
            await _cancel(event_task)
            raise

    try:
        value = await event_task
    except (PlaywrightTimeoutError, asyncio.TimeoutError) as exc:
        timeout_error = exc
    else:
        return RaceOutcome(value, "event", trigger_result)

    if fallback is None:
        log.debug("Event race timed out without fallback: %s", timeout_error)
        return RaceOutcome(None, "none", trigger_result, timeout_error)
    value = await fallback()
    if value is None:
        log.debug("Event race fallback produced nothing after timeout: %s", timeout_error)
        return RaceOutcome(None, "none", trigger_result, timeout_error)
    log.info("Event did not fire before deadline; used fallback branch")
    return RaceOutcome(value, "fallback", trigger_result, timeout_error)
