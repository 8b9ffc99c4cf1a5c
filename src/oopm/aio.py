"""Cancellation and bounded-concurrency helpers shared by the installer."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from .client import OopmError

T = TypeVar("T")


class AbortedError(OopmError):
    """The operation's cancel token fired before it could finish."""

    def __init__(self, message: str = "Operation aborted") -> None:
        super().__init__(message)


class CancelToken:
    """
    One cancellation signal threaded explicitly through an install or repair.

    Every subprocess started under the token is terminated once it fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortedError()


async def gather_or_cancel(aws: Iterable[Awaitable[T]]) -> list[T]:
    """
    Run awaitables concurrently and return their results in order.

    On the first failure the siblings still running are cancelled and awaited, then the
    original exception is re-raised unchanged.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def bounded(limit: int) -> Callable[[Callable[[], Awaitable[T]]], Awaitable[T]]:
    sem = asyncio.Semaphore(limit)

    async def _run(factory: Callable[[], Awaitable[Any]]) -> Any:
        async with sem:
            return await factory()

    return _run
