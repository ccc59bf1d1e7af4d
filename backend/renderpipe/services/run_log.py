"""Serialized writers for a run's log, checkpoint and artifact manifest.

These three fields live as JSON on the run row, so every change is a
read-modify-write. Image synthesis logs from several coroutines at once,
which would lose entries if the writes interleaved. ``KeyedSerializer``
gives every key (here: the run id) its own FIFO mailbox drained by a
single task, so writes for one run are applied strictly one at a time
while different runs stay independent.
"""

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Hashable, Iterable, Optional

from renderpipe.schemas.run import LogEntry, LogLevel, ProgressEvent
from renderpipe.services.run_store import RunStore

logger = logging.getLogger(__name__)

_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class KeyedSerializer:
    """Run async operations one at a time per key, in submission order.

    ``submit`` returns a future that resolves with the operation's result.
    If an operation raises, its future and every future still queued for
    the same key are rejected with that exception; later submissions start
    a fresh drain.
    """

    def __init__(self):
        self._queues: dict[Hashable, deque] = {}
        self._drainers: dict[Hashable, asyncio.Task] = {}

    def submit(self, key: Hashable, operation: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queues.setdefault(key, deque()).append((operation, future))
        if key not in self._drainers:
            self._drainers[key] = loop.create_task(self._drain(key))
        return future

    def pending(self, key: Hashable) -> int:
        return len(self._queues.get(key, ()))

    async def flush(self) -> None:
        """Wait until every mailbox has been drained."""
        while self._drainers:
            await asyncio.gather(*list(self._drainers.values()), return_exceptions=True)

    async def _drain(self, key: Hashable) -> None:
        queue = self._queues[key]
        try:
            while queue:
                operation, future = queue.popleft()
                try:
                    result = await operation()
                except Exception as exc:
                    rejected = 1 + len(queue)
                    _reject(future, exc)
                    while queue:
                        _, queued = queue.popleft()
                        _reject(queued, exc)
                    logger.error(f"Serialized write for {key} failed, rejected {rejected} operation(s): {exc}")
                    break
                if not future.done():
                    future.set_result(result)
        finally:
            # Reached on normal exit, on failure and on task cancellation
            while queue:
                _, queued = queue.popleft()
                queued.cancel()
            self._queues.pop(key, None)
            self._drainers.pop(key, None)


def _reject(future: asyncio.Future, exc: BaseException) -> None:
    if not future.done():
        future.set_exception(exc)


class RunLog:
    """Per-run serialized access to log, checkpoint and artifacts.

    Log entries are published to the progress broadcaster after they have
    been persisted, so observers never see an entry the store lost.
    """

    def __init__(self, store: RunStore, broadcaster=None, serializer: Optional[KeyedSerializer] = None):
        self.store = store
        self.broadcaster = broadcaster
        self.serializer = serializer or KeyedSerializer()

    def append(self, run_id: uuid.UUID, entry: LogEntry) -> asyncio.Future:
        """Queue one log entry; the returned future resolves once it is stored."""

        async def _write() -> LogEntry:
            await self.store.append_log(run_id, entry)
            if self.broadcaster is not None:
                self.broadcaster.publish(run_id, ProgressEvent(type="log", run_id=run_id, log=entry))
            return entry

        return self.serializer.submit(run_id, _write)

    async def log(
        self,
        run_id: uuid.UUID,
        msg: str,
        level: LogLevel = "info",
        step: Optional[str] = None,
    ) -> LogEntry:
        logger.log(_LEVELS[level], f"Run {run_id}: {msg}")
        return await self.append(run_id, LogEntry(level=level, msg=msg, step=step))

    def merge_artifacts(
        self,
        run_id: uuid.UUID,
        patch: dict[str, Any],
        remove: Iterable[str] = (),
    ) -> asyncio.Future:
        remove = list(remove)
        return self.serializer.submit(
            run_id, lambda: self.store.merge_artifacts(run_id, patch, remove)
        )

    def append_checkpoint(self, run_id: uuid.UUID, step_name: str) -> asyncio.Future:
        return self.serializer.submit(
            run_id, lambda: self.store.append_checkpoint(run_id, step_name)
        )

    def truncate_checkpoint(self, run_id: uuid.UUID, from_step) -> asyncio.Future:
        return self.serializer.submit(
            run_id, lambda: self.store.truncate_checkpoint(run_id, from_step)
        )

    async def flush(self) -> None:
        await self.serializer.flush()
