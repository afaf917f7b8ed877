from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol


def utcnow() -> datetime:
    """Timezone-aware wall clock used for persisted timestamps"""
    return datetime.now(timezone.utc)


class Clock(Protocol):
    def now_ms(self) -> int: ...

    async def sleep_ms(self, ms: int) -> None: ...


@dataclass(frozen=True)
class RealClock:
    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    async def sleep_ms(self, ms: int) -> None:
        await asyncio.sleep(ms / 1000.0)


class FakeClock:
    """
    Deterministic clock for tests.

    - now_ms() only moves when advance() is called.
    - sleep_ms() blocks until advance() reaches the wake time.
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = start_ms
        self._sleepers: list[tuple[int, asyncio.Future[None]]] = []

    def now_ms(self) -> int:
        return self._now_ms

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now_ms + ms, fut))
        self._sleepers.sort(key=lambda x: x[0])
        await fut

    @property
    def sleeper_count(self) -> int:
        return sum(1 for _, fut in self._sleepers if not fut.done())

    async def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("FakeClock.advance(ms): ms must be >= 0")

        # Let tasks created in this tick register their sleepers first.
        await asyncio.sleep(0)

        self._now_ms += ms
        ready: list[asyncio.Future[None]] = []
        remaining: list[tuple[int, asyncio.Future[None]]] = []
        for wake_at, fut in self._sleepers:
            if fut.done():
                continue
            if wake_at <= self._now_ms:
                ready.append(fut)
            else:
                remaining.append((wake_at, fut))
        self._sleepers = remaining

        for fut in ready:
            fut.set_result(None)

        # Let the woken tasks run up to their next suspension point.
        for _ in range(3):
            await asyncio.sleep(0)
