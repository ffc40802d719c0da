"""Change notification for batch runs.

Observers subscribe to one run and receive a sequence of RunDelta events:
one per run status change and one per run item field change, in the order
they were committed. Unsubscribing (or closing the subscription) ends the
iteration.

Usage:
    feed = ChangeFeed()
    sub = feed.subscribe(run_id)
    try:
        async for delta in sub:
            ...
    finally:
        sub.close()
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)

KIND_RUN = "run"
KIND_ITEM = "item"

# Slow consumers lose the oldest events rather than stalling the orchestrator
DEFAULT_QUEUE_SIZE = 1000


@dataclass
class RunDelta:
    run_id: int
    kind: str
    data: dict
    seq: int = 0
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


class Subscription:
    def __init__(self, feed: "ChangeFeed", run_id: int, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.feed = feed
        self.run_id = run_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _offer(self, delta: Optional[RunDelta]) -> None:
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(delta)

    async def get(self, timeout: Optional[float] = None) -> Optional[RunDelta]:
        """Next delta; None once closed or when `timeout` passes without one."""
        if self.closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self.feed.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> RunDelta:
        delta = await self.get()
        if delta is None:
            raise StopAsyncIteration
        return delta


class ChangeFeed:
    """In-process publish/subscribe channel keyed by run id."""

    def __init__(self):
        self._subs: Dict[int, Set[Subscription]] = {}
        self._seq = itertools.count(1)

    def subscribe(self, run_id: int, maxsize: int = DEFAULT_QUEUE_SIZE) -> Subscription:
        sub = Subscription(self, run_id, maxsize=maxsize)
        self._subs.setdefault(run_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub.closed:
            return
        sub.closed = True
        subs = self._subs.get(sub.run_id)
        if subs is not None:
            subs.discard(sub)
            if not subs:
                self._subs.pop(sub.run_id, None)
        # wake a consumer blocked in get()
        sub._offer(None)

    def subscriber_count(self, run_id: int) -> int:
        return len(self._subs.get(run_id, ()))

    def publish(self, run_id: int, kind: str, data: dict) -> RunDelta:
        delta = RunDelta(run_id=run_id, kind=kind, data=dict(data), seq=next(self._seq))
        for sub in list(self._subs.get(run_id, ())):
            sub._offer(delta)
        return delta
