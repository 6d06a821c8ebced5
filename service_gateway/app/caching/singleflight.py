"""
Collapse identical concurrent tool calls into one execution.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Tuple

from shared.logging import get_logger


class _Call:
    __slots__ = ("task", "waiters")

    def __init__(self, task: "asyncio.Task[Any]"):
        self.task = task
        self.waiters = 0


class SingleFlight:
    """At most one in-flight execution per key.

    The first caller for a key starts ``fn`` as a task; callers arriving
    while it runs await the same task. Each waiter is shielded from the
    others' cancellation; the shared task is only cancelled when its last
    waiter goes away, and a cancelled call is forgotten before it is torn
    down so later callers start fresh work instead of joining it.
    """

    def __init__(self):
        self.logger = get_logger("gateway.singleflight")
        self._calls: Dict[str, _Call] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """Run ``fn`` (or join the running call). Returns (result, shared)."""
        while True:
            call = self._calls.get(key)
            shared = call is not None
            if call is None:
                call = self._start(key, fn)
            else:
                self.logger.debug("Joined in-flight call", key=key, waiters=call.waiters + 1)

            call.waiters += 1
            try:
                result = await asyncio.shield(call.task)
            except asyncio.CancelledError:
                call.waiters -= 1
                if call.task.cancelled() and not asyncio.current_task().cancelling():
                    # The shared work was cancelled, not this caller
                    self.logger.debug("In-flight call was cancelled; retrying", key=key)
                    continue
                if call.waiters == 0 and not call.task.done():
                    self._forget(key, call)
                    call.task.cancel()
                    # Wait for the work to tear down before propagating
                    await asyncio.gather(call.task, return_exceptions=True)
                raise
            call.waiters -= 1
            return result, shared

    def _start(self, key: str, fn: Callable[[], Awaitable[Any]]) -> _Call:
        call = _Call(asyncio.ensure_future(fn()))
        self._calls[key] = call
        call.task.add_done_callback(lambda _t, k=key, c=call: self._forget(k, c))
        return call

    def _forget(self, key: str, call: _Call) -> None:
        if self._calls.get(key) is call:
            del self._calls[key]

    def inflight(self) -> int:
        return len(self._calls)

    def __contains__(self, key: str) -> bool:
        return key in self._calls
