# polling.py
"""
Bounded poll loop shared by the Printful mockup/file pollers and the
render-server job poller.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

log = logging.getLogger(__name__)


class PollFailed(Exception):
    """The remote task reported failure. `payload` is the last response."""

    def __init__(self, payload: Any):
        super().__init__("remote task failed")
        self.payload = payload


class PollTimedOut(Exception):
    """Attempt budget (or deadline) exhausted before the task settled."""

    def __init__(self, attempts: int):
        super().__init__(f"gave up after {attempts} attempts")
        self.attempts = attempts


async def poll_until(
    fetch: Callable[[], Awaitable[Optional[Any]]],
    *,
    is_done: Callable[[Any], bool],
    is_failed: Callable[[Any], bool],
    interval: float,
    max_attempts: int,
    delay_first: bool = True,
    deadline: Optional[float] = None,
    label: str = "task",
) -> Any:
    """
    Calls `fetch` until `is_done` or `is_failed` holds for its payload.

    `fetch` returning None means a transient bad response; it still uses up
    an attempt. `deadline` is an absolute `time.monotonic()` value.
    Returns the completed payload, raises PollFailed / PollTimedOut.
    """
    attempts = 0
    while attempts < max_attempts:
        if deadline is not None and time.monotonic() >= deadline:
            log.warning(f"Polling {label}: deadline passed after {attempts} attempts.")
            break

        if delay_first or attempts:
            await asyncio.sleep(interval)

        attempts += 1
        payload = await fetch()
        if payload is None:
            continue
        if is_done(payload):
            log.info(f"Polling {label}: done after {attempts} attempt(s).")
            return payload
        if is_failed(payload):
            raise PollFailed(payload)

    raise PollTimedOut(attempts)
