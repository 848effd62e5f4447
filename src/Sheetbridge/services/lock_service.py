from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from Sheetbridge.metrics import inc_counter, observe_histogram


class AsyncRWLock:
    """Shared/exclusive lock for state read by many tasks and written by few.

    Readers share the lock; a writer waits for active readers to drain and
    blocks new readers while it waits, so a steady read load cannot starve
    health updates or cache inserts.
    """

    def __init__(self, name: str = "rwlock") -> None:
        self._name = name
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield None
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        start = time.monotonic()
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._writers_waiting -= 1
                # Wake readers parked behind a writer that gave up waiting
                self._cond.notify_all()
            self._writer = True
        waited_ms = int((time.monotonic() - start) * 1000)
        inc_counter(f"locks.{self._name}.write")
        observe_histogram("locks.wait_ms", waited_ms)
        try:
            yield None
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()
