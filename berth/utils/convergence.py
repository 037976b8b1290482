"""Bounded convergence polling.

``converge`` re-runs a probe until a predicate accepts its result or the
attempt budget runs out. The wait between attempts is driven by an optional
``asyncio.Event`` so a caller can cut the wait short.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class Convergence(Generic[T]):
    """Outcome of one polling loop."""

    value: T  # Last observed value
    converged: bool
    attempts: int
    cancelled: bool = False


async def converge(
    probe: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    attempts: int,
    interval: float,
    cancel: asyncio.Event | None = None,
) -> Convergence[T]:
    """Poll ``probe`` until ``predicate`` holds.

    The probe runs first, then the loop sleeps ``interval`` seconds between
    attempts. The caller is blocked for at most
    ``(attempts - 1) * interval`` seconds plus the probe time.

    Args:
        probe: Coroutine factory returning the observed value
        predicate: Returns True once the observed value is acceptable
        attempts: Maximum number of probes (>= 1)
        interval: Seconds between probes
        cancel: Setting this event stops the loop at the next wait

    Returns:
        Convergence with the last observed value
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    attempt = 0
    while True:
        attempt += 1
        value = await probe()
        if predicate(value):
            return Convergence(value=value, converged=True, attempts=attempt)

        if attempt >= attempts:
            return Convergence(value=value, converged=False, attempts=attempt)

        logger.debug("convergence.wait", attempt=attempt, max_attempts=attempts)
        if cancel is None:
            await asyncio.sleep(interval)
            continue

        try:
            await asyncio.wait_for(cancel.wait(), timeout=interval)
        except TimeoutError:
            continue
        return Convergence(value=value, converged=False, attempts=attempt, cancelled=True)
