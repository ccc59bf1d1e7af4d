"""Single execution slot with a FIFO of waiting runs.

At most one run executes at a time, process-wide. Waiters start in arrival
order. The slot is released in a ``finally`` no matter how the run ends, so
one run's crash never blocks the next.
"""

import asyncio
import logging
import uuid
from collections import deque
from typing import Awaitable, Callable, Optional

from renderpipe.errors import SlotInconsistencyError

logger = logging.getLogger(__name__)

Runner = Callable[[uuid.UUID], Awaitable[None]]
ErrorHandler = Callable[[uuid.UUID, Exception], Awaitable[None]]


class ExecutionSlot:
    """Capacity-1 permit tagged with the run that holds it."""

    def __init__(self):
        self._holder: Optional[uuid.UUID] = None

    @property
    def holder(self) -> Optional[uuid.UUID]:
        return self._holder

    @property
    def free(self) -> bool:
        return self._holder is None

    def acquire(self, run_id: uuid.UUID) -> bool:
        if self._holder is not None:
            return False
        self._holder = run_id
        return True

    def release(self, run_id: uuid.UUID) -> None:
        """Release the slot.

        Raises:
            SlotInconsistencyError: If run_id does not hold the slot.
        """
        if self._holder != run_id:
            raise SlotInconsistencyError(
                f"Run {run_id} released the execution slot held by {self._holder}"
            )
        self._holder = None


class RenderQueue:
    def __init__(self, runner: Runner, on_error: Optional[ErrorHandler] = None):
        self.slot = ExecutionSlot()
        self._runner = runner
        self._on_error = on_error
        self._waiting: deque[uuid.UUID] = deque()
        self._tasks: set[asyncio.Task] = set()

    @property
    def holder(self) -> Optional[uuid.UUID]:
        return self.slot.holder

    @property
    def waiting(self) -> list[uuid.UUID]:
        return list(self._waiting)

    def position(self, run_id: uuid.UUID) -> Optional[int]:
        """1-based place in line, or None if the run is not waiting."""
        try:
            return self._waiting.index(run_id) + 1
        except ValueError:
            return None

    def enqueue(self, run_id: uuid.UUID) -> bool:
        """Register a run; returns False if it is already waiting or executing."""
        if run_id == self.slot.holder or run_id in self._waiting:
            return False
        self._waiting.append(run_id)
        logger.info(f"Run {run_id} queued (position {len(self._waiting)})")
        self.on_slot_available()
        return True

    def restore(self, run_ids: list[uuid.UUID]) -> int:
        """Re-register runs after a restart, preserving the given order."""
        return sum(1 for run_id in run_ids if self.enqueue(run_id))

    def remove(self, run_id: uuid.UUID) -> bool:
        """Drop a waiting run; no side effects beyond losing its place."""
        try:
            self._waiting.remove(run_id)
        except ValueError:
            return False
        logger.info(f"Run {run_id} removed from queue")
        return True

    def on_slot_available(self) -> None:
        if not self.slot.free or not self._waiting:
            return
        run_id = self._waiting.popleft()
        self.slot.acquire(run_id)
        task = asyncio.get_running_loop().create_task(self._execute(run_id), name=f"render-{run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def release(self, run_id: uuid.UUID) -> None:
        """Free the slot and start the next waiter.

        Raises:
            SlotInconsistencyError: If run_id does not hold the slot.
        """
        self.slot.release(run_id)
        self.on_slot_available()

    async def _execute(self, run_id: uuid.UUID) -> None:
        try:
            await self._runner(run_id)
        except Exception as e:
            logger.exception(f"Run {run_id} crashed outside step handling")
            await self._report(run_id, e)
        finally:
            try:
                self.release(run_id)
            except SlotInconsistencyError as e:
                logger.error(str(e))
                await self._report(run_id, e)
                self.on_slot_available()

    async def _report(self, run_id: uuid.UUID, error: Exception) -> None:
        if self._on_error is None:
            return
        try:
            await self._on_error(run_id, error)
        except Exception:
            logger.exception(f"Run {run_id}: could not record failure")

    async def join(self) -> None:
        """Wait until nothing is executing or waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel the executing run (it stays 'running' for startup reconciliation)."""
        self._waiting.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
