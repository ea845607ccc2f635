"""
timers.py — Cancellable deferred actions tracked per negotiation record.

A timer never runs protocol logic itself: when it expires it hands its
action to ``dispatch`` (the owning agent's inbox), so every state change
still happens on the agent's single consumer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("satoshi_ride.timers")

Action = Callable[[], Awaitable[None]]


class DeferredTasks:
    """Delayed actions grouped by owner key (a request_id or bid_id)."""

    def __init__(self, dispatch: Callable[[str, Action], None]) -> None:
        self._dispatch = dispatch
        self._tasks: dict[str, set[asyncio.Task[None]]] = {}

    def schedule(
        self,
        owner: str,
        delay: float,
        action: Action,
        label: str = "",
    ) -> asyncio.Task[None]:
        loop = asyncio.get_running_loop()
        task = loop.create_task(
            self._fire(owner, delay, action),
            name=f"deferred:{owner}:{label or 'action'}",
        )
        self._tasks.setdefault(owner, set()).add(task)
        task.add_done_callback(lambda t: self._forget(owner, t))
        logger.debug("Scheduled %s for %s in %.3fs", label or "action", owner, delay)
        return task

    async def _fire(self, owner: str, delay: float, action: Action) -> None:
        await asyncio.sleep(delay)
        self._dispatch(owner, action)

    def _forget(self, owner: str, task: asyncio.Task[None]) -> None:
        tasks = self._tasks.get(owner)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            del self._tasks[owner]

    def pending(self, owner: Optional[str] = None) -> int:
        if owner is not None:
            return len(self._tasks.get(owner, ()))
        return sum(len(tasks) for tasks in self._tasks.values())

    def cancel(self, owner: str) -> int:
        """Cancel every pending action for ``owner``. Returns how many were cancelled."""
        tasks = self._tasks.pop(owner, set())
        for task in tasks:
            task.cancel()
        return len(tasks)

    def cancel_all(self) -> int:
        cancelled = 0
        for owner in list(self._tasks):
            cancelled += self.cancel(owner)
        return cancelled
