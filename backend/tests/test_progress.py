"""Progress fan-out: snapshot first, ordered delivery, slow subscriber handling."""

import asyncio
import uuid

import pytest

from renderpipe.errors import RunNotFoundError
from renderpipe.schemas.run import ProgressEvent, RunSnapshot
from renderpipe.services.progress import ProgressBroadcaster


def _snapshot(run_id: uuid.UUID, status: str = "running", progress: int = 28) -> RunSnapshot:
    return RunSnapshot(id=run_id, plan_id=uuid.uuid4(), status=status, progress=progress)


def _loader(**kwargs):
    async def load(run_id):
        return _snapshot(run_id, **kwargs)
    return load


def _progress(run_id, value):
    return ProgressEvent(type="progress", run_id=run_id, progress=value)


class TestProgressBroadcaster:
    async def test_first_event_is_state_snapshot(self):
        broadcaster = ProgressBroadcaster(_loader(progress=42))
        run_id = uuid.uuid4()
        subscription = await broadcaster.subscribe(run_id)

        event = await subscription.get()
        assert event.type == "state"
        assert event.progress == 42
        assert event.snapshot.id == run_id

    async def test_events_delivered_in_publish_order_to_every_subscriber(self):
        broadcaster = ProgressBroadcaster(_loader())
        run_id = uuid.uuid4()
        first = await broadcaster.subscribe(run_id)
        second = await broadcaster.subscribe(run_id)
        for value in (42, 57, 71):
            broadcaster.publish(run_id, _progress(run_id, value))

        for subscription in (first, second):
            assert (await subscription.get()).type == "state"
            assert [(await subscription.get()).progress for _ in range(3)] == [42, 57, 71]

    async def test_other_runs_are_not_delivered(self):
        broadcaster = ProgressBroadcaster(_loader())
        run_id = uuid.uuid4()
        subscription = await broadcaster.subscribe(run_id)
        broadcaster.publish(uuid.uuid4(), _progress(run_id, 99))
        await subscription.get()
        assert subscription.queue.empty()

    async def test_events_during_snapshot_load_follow_the_snapshot(self):
        run_id = uuid.uuid4()
        broadcaster = None

        async def load(rid):
            broadcaster.publish(rid, _progress(rid, 57))
            await asyncio.sleep(0)
            return _snapshot(rid, progress=42)

        broadcaster = ProgressBroadcaster(load)
        subscription = await broadcaster.subscribe(run_id)
        assert (await subscription.get()).type == "state"
        assert (await subscription.get()).progress == 57

    async def test_unknown_run_leaves_no_subscription(self):
        async def load(run_id):
            raise RunNotFoundError(f"Run {run_id} not found")

        broadcaster = ProgressBroadcaster(load)
        with pytest.raises(RunNotFoundError):
            await broadcaster.subscribe(uuid.uuid4())
        assert broadcaster.subscriber_count() == 0

    async def test_slow_subscriber_is_dropped(self):
        broadcaster = ProgressBroadcaster(_loader(), queue_size=3)
        run_id = uuid.uuid4()
        slow = await broadcaster.subscribe(run_id)
        for value in range(5):
            broadcaster.publish(run_id, _progress(run_id, value))

        assert slow.dropped
        assert broadcaster.subscriber_count(run_id) == 0
        assert await slow.get() is None

    async def test_unsubscribe_removes_registry_key(self):
        broadcaster = ProgressBroadcaster(_loader())
        run_id = uuid.uuid4()
        subscription = await broadcaster.subscribe(run_id)
        assert broadcaster.run_ids == [run_id]

        broadcaster.unsubscribe(subscription)
        assert broadcaster.run_ids == []
        assert subscription.closed
        events = [event async for event in subscription]
        assert [e.type for e in events] == ["state"]

    async def test_keepalive_pings_open_subscriptions(self):
        broadcaster = ProgressBroadcaster(_loader(), keepalive_seconds=0.01)
        run_id = uuid.uuid4()
        subscription = await broadcaster.subscribe(run_id)
        await subscription.get()

        broadcaster.start()
        try:
            event = await asyncio.wait_for(subscription.get(), timeout=1)
        finally:
            await broadcaster.stop()
        assert event.type == "ping"
        assert broadcaster.subscriber_count() == 0

    def test_sse_frame(self):
        run_id = uuid.uuid4()
        frame = _progress(run_id, 14).to_sse()
        assert frame.startswith("event: progress\ndata: {")
        assert frame.endswith("\n\n")
        assert '"progress":14' in frame
