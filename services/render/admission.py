from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from services.render.errors import BusyError


class TranscodeGate:
    """Bounded slots for concurrent transcodes with a bounded wait queue.

    Beyond `max_active` running plus `max_waiting` queued, new work is
    rejected instead of piling up CPU-bound children.
    """

    def __init__(self, *, max_active: int, max_waiting: int) -> None:
        self._max_active = max(1, int(max_active))
        self._max_waiting = max(0, int(max_waiting))
        self._sem: Optional[asyncio.Semaphore] = None
        self._active = 0
        self._waiting = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return self._waiting

    def _semaphore(self) -> asyncio.Semaphore:
        # created lazily so it binds to the running loop
        if self._sem is None:
            self._sem = asyncio.Semaphore(self._max_active)
        return self._sem

    @asynccontextmanager
    async def slot(self, request_id: str) -> AsyncIterator[None]:
        sem = self._semaphore()
        if self._active >= self._max_active and self._waiting >= self._max_waiting:
            raise BusyError(
                "render capacity exhausted, retry later",
                request_id=request_id,
                details={"active": self._active, "waiting": self._waiting},
            )
        self._waiting += 1
        try:
            await sem.acquire()
        finally:
            self._waiting -= 1
        self._active += 1
        try:
            yield
        finally:
            self._active -= 1
            sem.release()
