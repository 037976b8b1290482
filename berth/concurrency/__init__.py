"""Concurrency utilities for Berth."""

from berth.concurrency.guard import ReconciliationGuard
from berth.concurrency.locks import KeyedLocks

__all__ = ["KeyedLocks", "ReconciliationGuard"]
