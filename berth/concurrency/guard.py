"""Reconciliation guard.

At most one volume reconciliation runs per process. A second caller is
rejected rather than queued, unless it asks to force its way through.
A forced pass takes the guard when it is free; otherwise it runs alongside
the holder and is tracked so that unforced callers stay rejected until every
pass has finished.

The guard is constructed once (see ``berth.api.dependencies``) and handed to
every component that reconciles, instead of living in module state.

Note: This only works within a single process/instance.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from berth.errors import ReconciliationInProgressError

logger = structlog.get_logger()


class ReconciliationGuard:
    """Try-lock handle for reconciliation passes."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._holder: str | None = None
        self._alongside: list[str] = []
        self._log = logger.bind(component="reconciliation_guard")

    @property
    def locked(self) -> bool:
        """True while any pass, forced or not, is in flight."""
        return self._lock.locked() or bool(self._alongside)

    @property
    def holder(self) -> str | None:
        """Owner whose reconciliation currently holds the guard."""
        if self._holder is not None:
            return self._holder
        return self._alongside[0] if self._alongside else None

    @property
    def forced(self) -> list[str]:
        """Owners of forced passes running alongside the holder."""
        return list(self._alongside)

    @asynccontextmanager
    async def hold(self, owner: str, *, force: bool = False) -> AsyncIterator[None]:
        """Hold the guard for one reconciliation pass.

        Args:
            owner: Owner being reconciled (for diagnostics)
            force: Run even if another pass is in flight

        Raises:
            ReconciliationInProgressError: If a pass is in flight and
                ``force`` is not set
        """
        # No await between the check and the acquire: an unlocked
        # asyncio.Lock is taken without suspending.
        if not self.locked:
            async with self._lock:
                self._holder = owner
                try:
                    yield
                finally:
                    self._holder = None
            return

        if not force:
            self._log.info("guard.rejected", owner=owner, holder=self.holder)
            raise ReconciliationInProgressError(
                details={"owner": owner, "holder": self.holder},
            )

        self._log.warning("guard.forced", owner=owner, holder=self.holder)
        self._alongside.append(owner)
        try:
            yield
        finally:
            self._alongside.remove(owner)
