"""Per-run serialization of log, checkpoint and artifact writes."""

import asyncio
import uuid

import pytest

from renderpipe.errors import RunNotFoundError
from renderpipe.orchestrator.state import Step
from renderpipe.services.run_log import KeyedSerializer


class TestKeyedSerializer:
    async def test_operations_run_in_submission_order(self):
        serializer = KeyedSerializer()
        seen = []

        def op(i):
            async def _op():
                await asyncio.sleep(0.001 * (5 - i))
                seen.append(i)
                return i
            return _op

        futures = [serializer.submit("run", op(i)) for i in range(5)]
        assert await asyncio.gather(*futures) == [0, 1, 2, 3, 4]
        assert seen == [0, 1, 2, 3, 4]

    async def test_failure_rejects_queued_operations(self):
        serializer = KeyedSerializer()

        async def fail():
            raise RuntimeError("disk full")

        async def ok():
            return "ok"

        first = serializer.submit("run", fail)
        second = serializer.submit("run", ok)
        with pytest.raises(RuntimeError, match="disk full"):
            await first
        with pytest.raises(RuntimeError, match="disk full"):
            await second
        assert serializer.pending("run") == 0

        # A later submission starts a fresh drain
        assert await serializer.submit("run", ok) == "ok"

    async def test_keys_are_independent(self):
        serializer = KeyedSerializer()
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()
            return "a"

        async def quick():
            return "b"

        slow = serializer.submit("a", blocked)
        assert await serializer.submit("b", quick) == "b"
        assert not slow.done()
        gate.set()
        assert await slow == "a"
        await serializer.flush()


class TestRunLog:
    async def test_concurrent_appends_are_all_kept_in_order(self, runtime, plan_id):
        run = await runtime.store.create_run(plan_id)
        await asyncio.gather(*[runtime.run_log.log(run.id, f"entry {i}") for i in range(20)])

        snapshot = await runtime.store.snapshot(run.id)
        assert [e.msg for e in snapshot.log] == [f"entry {i}" for i in range(20)]

    async def test_log_entry_is_published_after_persisting(self, runtime, plan_id):
        run = await runtime.store.create_run(plan_id)
        subscription = await runtime.broadcaster.subscribe(run.id)
        assert (await subscription.get()).type == "state"

        await runtime.run_log.log(run.id, "hello", level="warn", step="Music-Mix")
        event = await subscription.get()
        assert event.type == "log"
        assert event.log.msg == "hello"
        assert event.log.level == "warn"
        assert event.log.step == "Music-Mix"
        runtime.broadcaster.unsubscribe(subscription)

    async def test_checkpoint_and_artifacts_merge(self, runtime, plan_id):
        run = await runtime.store.create_run(plan_id)
        await asyncio.gather(
            runtime.run_log.append_checkpoint(run.id, "speech_synthesis"),
            runtime.run_log.merge_artifacts(run.id, {"voice_over": "a.mp3"}),
            runtime.run_log.append_checkpoint(run.id, "transcription_alignment"),
            runtime.run_log.merge_artifacts(run.id, {"timestamps": "t.json"}),
            runtime.run_log.append_checkpoint(run.id, "speech_synthesis"),
        )
        await runtime.run_log.merge_artifacts(run.id, {}, remove=["voice_over"])

        snapshot = await runtime.store.snapshot(run.id)
        assert snapshot.checkpoint == ["speech_synthesis", "transcription_alignment"]
        assert snapshot.artifacts == {"timestamps": "t.json"}

    async def test_checkpoint_truncation_is_ordered_with_appends(self, runtime, plan_id):
        run = await runtime.store.create_run(plan_id)
        await asyncio.gather(
            runtime.run_log.append_checkpoint(run.id, "speech_synthesis"),
            runtime.run_log.append_checkpoint(run.id, "transcription_alignment"),
            runtime.run_log.append_checkpoint(run.id, "image_synthesis"),
            runtime.run_log.truncate_checkpoint(run.id, Step.TRANSCRIPTION_ALIGNMENT),
        )

        snapshot = await runtime.store.snapshot(run.id)
        assert snapshot.checkpoint == ["speech_synthesis"]
        assert snapshot.progress == 14

    async def test_unknown_run_rejects(self, runtime):
        with pytest.raises(RunNotFoundError):
            await runtime.run_log.log(uuid.uuid4(), "nobody home")
