"""Unit tests for ReconciliationGuard and KeyedLocks."""

from __future__ import annotations

import asyncio

import pytest

from berth.concurrency import KeyedLocks, ReconciliationGuard
from berth.errors import ReconciliationInProgressError


class TestReconciliationGuard:
    async def test_hold_sets_holder(self):
        guard = ReconciliationGuard()

        async with guard.hold("alice"):
            assert guard.locked
            assert guard.holder == "alice"

        assert not guard.locked
        assert guard.holder is None

    async def test_rejects_instead_of_queueing(self):
        guard = ReconciliationGuard()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with guard.hold("alice"):
                entered.set()
                await release.wait()

        task = asyncio.create_task(first())
        await entered.wait()

        with pytest.raises(ReconciliationInProgressError):
            async with guard.hold("bob"):
                pass

        release.set()
        await task

        async with guard.hold("bob"):
            assert guard.holder == "bob"

    async def test_force_runs_alongside_holder(self):
        guard = ReconciliationGuard()

        async with guard.hold("alice"):
            async with guard.hold("bob", force=True):
                assert guard.holder == "alice"
                assert guard.forced == ["bob"]
            assert guard.locked
            assert guard.forced == []

        assert not guard.locked

    async def test_forced_pass_takes_free_guard(self):
        guard = ReconciliationGuard()

        async with guard.hold("alice", force=True):
            assert guard.locked
            assert guard.holder == "alice"

            with pytest.raises(ReconciliationInProgressError):
                async with guard.hold("bob"):
                    pass

        assert not guard.locked

    async def test_unforced_rejected_while_forced_pass_outlives_holder(self):
        guard = ReconciliationGuard()
        forced_entered = asyncio.Event()
        release_forced = asyncio.Event()

        async def forced():
            async with guard.hold("bob", force=True):
                forced_entered.set()
                await release_forced.wait()

        async with guard.hold("alice"):
            task = asyncio.create_task(forced())
            await forced_entered.wait()

        assert guard.locked
        assert guard.holder == "bob"
        with pytest.raises(ReconciliationInProgressError):
            async with guard.hold("carol"):
                pass

        release_forced.set()
        await task

        assert not guard.locked
        async with guard.hold("carol"):
            assert guard.holder == "carol"

    async def test_released_on_error(self):
        guard = ReconciliationGuard()

        with pytest.raises(RuntimeError):
            async with guard.hold("alice"):
                raise RuntimeError("boom")

        assert not guard.locked


class TestKeyedLocks:
    async def test_same_key_same_lock(self):
        locks = KeyedLocks()

        assert await locks.get("ctr-1") is await locks.get("ctr-1")
        assert await locks.get("ctr-1") is not await locks.get("ctr-2")
        assert len(locks) == 2

    async def test_discard(self):
        locks = KeyedLocks()
        await locks.get("ctr-1")

        await locks.discard("ctr-1")
        await locks.discard("missing")

        assert len(locks) == 0

    async def test_serializes_same_key(self):
        locks = KeyedLocks()
        order: list[str] = []

        async def worker(name: str):
            async with await locks.get("ctr-1"):
                order.append(f"{name}:enter")
                await asyncio.sleep(0)
                order.append(f"{name}:exit")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a:enter", "a:exit", "b:enter", "b:exit"]
