"""Per-run progress fan-out to live observers.

Every subscription starts with a full ``state`` snapshot followed by the
incremental events published for that run, in publish order. Events that
arrive while the snapshot is still loading are buffered and delivered right
after it. A background task publishes ``ping`` keep-alives so idle
connections (SSE through proxies) stay open.
"""

import asyncio
import logging
import uuid
from typing import AsyncIterator, Awaitable, Callable, Optional

from renderpipe.schemas.run import ProgressEvent, RunSnapshot

logger = logging.getLogger(__name__)

SnapshotLoader = Callable[[uuid.UUID], Awaitable[RunSnapshot]]


class Subscription:
    """One observer's bounded event queue."""

    def __init__(self, run_id: uuid.UUID, maxsize: int):
        self.run_id = run_id
        self.queue: asyncio.Queue[Optional[ProgressEvent]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = False
        # Not None while the snapshot is loading
        self._buffer: Optional[list[ProgressEvent]] = []

    async def get(self) -> Optional[ProgressEvent]:
        """Next event, or None once the subscription has been closed."""
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._buffer = None
        if self.dropped:
            # Make room for the end-of-stream marker
            while not self.queue.empty():
                self.queue.get_nowait()
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


class ProgressBroadcaster:
    """Registry of subscriptions keyed by run id."""

    def __init__(
        self,
        snapshot_loader: SnapshotLoader,
        keepalive_seconds: float = 15.0,
        queue_size: int = 500,
    ):
        self._load_snapshot = snapshot_loader
        self.keepalive_seconds = keepalive_seconds
        self.queue_size = queue_size
        self._subscribers: dict[uuid.UUID, set[Subscription]] = {}
        self._keepalive_task: Optional[asyncio.Task] = None

    async def subscribe(self, run_id: uuid.UUID) -> Subscription:
        """Register an observer and deliver the current snapshot first.

        Raises:
            RunNotFoundError: propagated from the snapshot loader
        """
        subscription = Subscription(run_id, self.queue_size)
        self._subscribers.setdefault(run_id, set()).add(subscription)
        try:
            snapshot = await self._load_snapshot(run_id)
        except BaseException:
            self.unsubscribe(subscription)
            raise

        self._deliver(subscription, ProgressEvent(
            type="state",
            run_id=run_id,
            status=snapshot.status,
            progress=snapshot.progress,
            step=snapshot.current_step,
            snapshot=snapshot,
        ))
        buffered, subscription._buffer = subscription._buffer or [], None
        for event in buffered:
            if subscription.closed:
                break
            self._deliver(subscription, event)
        return subscription

    def publish(self, run_id: uuid.UUID, event: ProgressEvent) -> None:
        for subscription in list(self._subscribers.get(run_id, ())):
            if subscription._buffer is not None:
                subscription._buffer.append(event)
            else:
                self._deliver(subscription, event)

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.run_id)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.run_id]
        subscription._close()

    def subscriber_count(self, run_id: Optional[uuid.UUID] = None) -> int:
        if run_id is not None:
            return len(self._subscribers.get(run_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    @property
    def run_ids(self) -> list[uuid.UUID]:
        return list(self._subscribers)

    def _deliver(self, subscription: Subscription, event: ProgressEvent) -> None:
        try:
            subscription.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"Run {subscription.run_id}: dropping slow progress subscriber "
                f"({subscription.queue.maxsize} events pending)"
            )
            subscription.dropped = True
            self.unsubscribe(subscription)

    # ------------------------------------------------------------------
    # Keep-alive
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = asyncio.get_running_loop().create_task(self._keepalive_loop())

    async def stop(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for run_id in self.run_ids:
            for subscription in list(self._subscribers.get(run_id, ())):
                self.unsubscribe(subscription)

    def ping_all(self) -> None:
        for run_id in self.run_ids:
            self.publish(run_id, ProgressEvent(type="ping", run_id=run_id))

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_seconds)
            self.ping_all()
