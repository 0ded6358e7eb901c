"""
Per-identity exclusive leases.

A worker must hold an identity's lease for the whole fetch-then-drain cycle;
fetch and drain on the same identity would otherwise interleave cursor writes.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class IdentityLocks:
    """One asyncio.Lock per identity name, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())

    def locked(self, name: str) -> bool:
        return name in self._locks and self._locks[name].locked()

    @asynccontextmanager
    async def lease(self, name: str) -> AsyncIterator[None]:
        async with self._lock(name):
            yield
