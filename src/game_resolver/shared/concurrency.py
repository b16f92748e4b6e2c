"""asyncio 向けの並行実行ユーティリティ。"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable, Iterable
from contextlib import asynccontextmanager
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    concurrency: int,
) -> list[R]:
    """`concurrency` 件までの同時実行で worker を適用し、入力順に結果を返す。

    いずれかの worker が例外を送出した場合、残りのタスクをキャンセルして
    その例外を再送出する。呼び出し側のキャンセルも同様に伝播する。
    """

    if concurrency < 1:
        msg = "concurrency must be a positive integer"
        raise ValueError(msg)

    semaphore = asyncio.Semaphore(concurrency)

    async def _run(item: T) -> R:
        async with semaphore:
            return await worker(item)

    tasks = [asyncio.create_task(_run(item)) for item in items]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class KeyedLocks:
    """キーごとの asyncio.Lock を払い出す。

    同一ゲーム ID・同一ユーザーへの読み書きを到着順に直列化するために使う。
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, *keys: Hashable) -> AsyncIterator[None]:
        """複数キーを重複排除・整列した順で取得する。"""

        ordered = sorted(set(keys), key=repr)
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self.get(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


__all__ = ["KeyedLocks", "run_bounded"]
