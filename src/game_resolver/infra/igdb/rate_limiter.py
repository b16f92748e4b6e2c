"""IGDB への送信レートを制限するトークンバケット。"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from game_resolver.shared.exceptions import ConfigurationError


class TokenBucketRateLimiter:
    """秒間 `qps` 件までに送信を抑えるトークンバケット。

    バケット容量は 1 トークンで、`acquire()` は拒否せず待機のみ行う。
    待機中もロックを保持するため、待ち手は到着順に 1/qps 間隔で解放される。
    """

    def __init__(
        self,
        qps: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if qps <= 0:
            msg = f"Rate limiter qps must be positive (got {qps})"
            raise ConfigurationError(msg)

        self._qps = float(qps)
        self._clock = clock
        self._sleep = sleep_func
        self._tokens = 1.0
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    @property
    def qps(self) -> float:
        return self._qps

    async def acquire(self) -> None:
        """トークンが得られるまで待機し、1 つ消費する。"""

        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                await self._sleep((1.0 - self._tokens) / self._qps)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._updated_at = now
        self._tokens = min(1.0, self._tokens + elapsed * self._qps)


__all__ = ["TokenBucketRateLimiter"]
