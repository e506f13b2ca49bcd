import asyncio
from collections.abc import Awaitable, Callable, Hashable
from typing import Any


class KeyedSerializer:
    """Runs jobs one at a time per key, in submission order.

    A failing job propagates to whoever submitted it and never blocks the
    next job for the same key. Jobs for different keys run concurrently.
    """

    def __init__(self):
        self._tails: dict[Hashable, asyncio.Task] = {}
        self._pending: dict[Hashable, int] = {}

    async def _chain(self, previous: asyncio.Task | None, fn: Callable[[], Awaitable[Any]]) -> Any:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        return await fn()

    def _job_done(self, key: Hashable, task: asyncio.Task):
        remaining = self._pending.get(key, 1) - 1
        if remaining <= 0:
            self._pending.pop(key, None)
        else:
            self._pending[key] = remaining
        if self._tails.get(key) is task:
            del self._tails[key]
        if not task.cancelled():
            task.exception()  # retrieved by the submitter or drain; silence the loop warning

    async def run(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        task = asyncio.ensure_future(self._chain(self._tails.get(key), fn))
        self._tails[key] = task
        self._pending[key] = self._pending.get(key, 0) + 1
        task.add_done_callback(lambda t: self._job_done(key, t))
        # a cancelled submitter must not cancel the job the next one is waiting on
        return await asyncio.shield(task)

    def pending(self, key: Hashable) -> int:
        return self._pending.get(key, 0)

    async def drain(self):
        while self._tails:
            await asyncio.gather(*list(self._tails.values()), return_exceptions=True)
