"""End-to-end dry-run renders through the orchestrator and queue."""

import asyncio
import uuid

import pytest

from renderpipe.errors import PlanNotFoundError, RunNotFoundError, RunStateError
from renderpipe.orchestrator.state import STEPS, Step
from renderpipe.providers.dry_run import DryRunInspector
from renderpipe.schemas.media import SilenceSpan

ALL_STEPS = [s.value for s in STEPS]


class HangingSilenceDetector(DryRunInspector):
    async def detect_silences(self, path, noise_db, min_duration):
        await asyncio.sleep(3600)
        return []


async def _finish(runtime, run_id):
    await runtime.orchestrator.queue.join()
    return await runtime.store.snapshot(run_id)


def _messages(snapshot):
    return [entry.msg for entry in snapshot.log]


class TestHappyPath:
    async def test_dry_run_reaches_done(self, runtime, plan_id):
        queued = await runtime.orchestrator.submit(plan_id)
        assert queued.status == "queued"
        assert queued.attempt == 1

        final = await _finish(runtime, queued.id)
        assert final.status == "done"
        assert final.progress == 100
        assert final.checkpoint == ALL_STEPS
        assert final.current_step is None
        assert final.error_message is None
        assert final.artifacts["qa"]["passed"] is True
        assert set(final.artifacts["thumbnails"]) == {"start", "early", "mid"}

        final_video = runtime.file_manager.resolve(final.artifacts["final_video"])
        assert final_video.is_file()
        assert "Render complete" in _messages(final)

    async def test_every_step_logs_start_and_completion(self, runtime, plan_id):
        run = await runtime.orchestrator.submit(plan_id)
        messages = _messages(await _finish(runtime, run.id))
        for step in STEPS:
            assert messages.index(f"{step.display_name} started") < messages.index(f"{step.display_name} completed")

    async def test_progress_events_are_monotonic(self, runtime, plan_id):
        runtime.capabilities.faults.step_delay_ms = 5
        run = await runtime.orchestrator.submit(plan_id)
        subscription = await runtime.broadcaster.subscribe(run.id)

        events = []
        async for event in subscription:
            events.append(event)
            if event.type == "terminal":
                break
        runtime.broadcaster.unsubscribe(subscription)

        assert events[0].type == "state"
        progress = [e.progress for e in events if e.type == "progress"]
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert events[-1].status == "done"
        assert events[-1].qa.passed

    async def test_verify_reports_missing_artifacts(self, runtime, plan_id):
        run = await runtime.orchestrator.submit(plan_id)
        final = await _finish(runtime, run.id)
        assert (await runtime.orchestrator.verify(run.id))["ok"] is True

        runtime.file_manager.resolve(final.artifacts["captions"]).unlink()
        result = await runtime.orchestrator.verify(run.id)
        assert result["ok"] is False
        assert result["missing"] == [final.artifacts["captions"]]

    async def test_unknown_plan_is_rejected(self, runtime):
        with pytest.raises(PlanNotFoundError):
            await runtime.orchestrator.submit(uuid.uuid4())

    async def test_unapproved_plan_is_rejected(self, runtime, plan):
        plan_id = await runtime.store.create_plan(plan, approved=False)
        with pytest.raises(PlanNotFoundError, match="not approved"):
            await runtime.orchestrator.submit(plan_id)


class TestFailureAndResume:
    async def test_injected_failure_stops_at_step(self, runtime, plan_id):
        runtime.capabilities.faults.fail_step = Step.VIDEO_ENCODE
        run = await runtime.orchestrator.submit(plan_id)
        final = await _finish(runtime, run.id)

        assert final.status == "failed"
        assert final.failed_step == "video_encode"
        assert final.current_step == "video_encode"
        assert final.checkpoint == ALL_STEPS[:5]
        assert final.progress == 71
        assert "Video-Encode" in final.error_message
        assert "final_video" not in final.artifacts
        assert final.log[-1].level == "error"

    async def test_retry_resumes_without_recomputing(self, runtime, plan_id):
        runtime.capabilities.faults.fail_step = Step.VIDEO_ENCODE
        run = await runtime.orchestrator.submit(plan_id)
        failed = await _finish(runtime, run.id)
        images = [runtime.file_manager.resolve(p) for p in failed.artifacts["scene_images"]]
        mtimes = [p.stat().st_mtime_ns for p in images]

        runtime.capabilities.faults.fail_step = None
        retried = await runtime.orchestrator.retry(run.id)
        assert retried.attempt == 2
        final = await _finish(runtime, run.id)

        assert final.status == "done"
        assert final.checkpoint == ALL_STEPS
        assert final.error_message is None
        assert final.failed_step is None
        assert [p.stat().st_mtime_ns for p in images] == mtimes
        assert "Render started at Video-Encode (attempt 2)" in _messages(final)

    async def test_retry_from_step_recomputes_later_steps(self, runtime, plan_id):
        runtime.capabilities.faults.fail_step = Step.MUSIC_MIX
        run = await runtime.orchestrator.submit(plan_id)
        failed = await _finish(runtime, run.id)
        assert failed.checkpoint == ALL_STEPS[:4]

        runtime.capabilities.faults.fail_step = None
        await runtime.orchestrator.retry(run.id, from_step="Image-Synthesis")
        final = await _finish(runtime, run.id)

        assert final.status == "done"
        assert final.checkpoint == ALL_STEPS
        messages = _messages(final)
        assert "Retry requested from Image-Synthesis (attempt 2)" in messages
        assert messages.count("Generating 3 of 3 image(s), up to 3 at a time") == 2
        assert "Word timestamps present, skipping transcription" not in messages

    async def test_retry_rejects_non_retryable_runs(self, runtime, plan_id):
        run = await runtime.orchestrator.submit(plan_id)
        await _finish(runtime, run.id)
        with pytest.raises(RunStateError):
            await runtime.orchestrator.retry(run.id)

    async def test_retry_rejects_unknown_step(self, runtime, plan_id):
        runtime.capabilities.faults.fail_step = Step.SPEECH_SYNTHESIS
        run = await runtime.orchestrator.submit(plan_id)
        await _finish(runtime, run.id)
        with pytest.raises(ValueError, match="Unknown step"):
            await runtime.orchestrator.retry(run.id, from_step="Upload")
        assert (await runtime.store.snapshot(run.id)).status == "failed"

    async def test_retry_unknown_run(self, runtime):
        with pytest.raises(RunNotFoundError):
            await runtime.orchestrator.retry(uuid.uuid4())

    async def test_retry_from_step_truncates_checkpoint_and_progress(self, runtime, plan_id):
        runtime.capabilities.faults.fail_step = Step.VIDEO_ENCODE
        run = await runtime.orchestrator.submit(plan_id)
        await _finish(runtime, run.id)

        runtime.capabilities.faults.fail_step = None
        runtime.capabilities.faults.step_delay_ms = 50
        retried = await runtime.orchestrator.retry(run.id, from_step="captions_build")
        assert retried.attempt == 2
        assert retried.checkpoint == ALL_STEPS[:3]
        assert retried.progress == 42
        assert retried.current_step is None
        assert "captions" not in retried.artifacts
        await runtime.orchestrator.queue.join()

    async def test_failed_invalidation_leaves_run_retryable(self, runtime, plan_id, monkeypatch):
        runtime.capabilities.faults.fail_step = Step.MUSIC_MIX
        run = await runtime.orchestrator.submit(plan_id)
        await _finish(runtime, run.id)

        def unwritable(paths):
            raise OSError("read-only file system")

        monkeypatch.setattr(runtime.file_manager, "remove_outputs", unwritable)
        with pytest.raises(OSError):
            await runtime.orchestrator.retry(run.id, from_step="Image-Synthesis")
        snapshot = await runtime.store.snapshot(run.id)
        assert snapshot.status == "failed"
        assert snapshot.attempt == 1
        assert runtime.orchestrator.queue.position(run.id) is None

        monkeypatch.undo()
        runtime.capabilities.faults.fail_step = None
        await runtime.orchestrator.retry(run.id, from_step="Image-Synthesis")
        assert (await _finish(runtime, run.id)).status == "done"


class TestQualityGate:
    async def test_wrong_resolution_is_quality_failed(self, runtime, plan_id):
        runtime.capabilities.inspector = DryRunInspector(width=720, height=1280)
        run = await runtime.orchestrator.submit(plan_id)
        final = await _finish(runtime, run.id)

        assert final.status == "quality_failed"
        assert final.progress == 100
        assert final.checkpoint == ALL_STEPS
        assert final.failed_step == "finalize"
        assert final.error_message.startswith("QA failed: Resolution 720x1280")
        assert final.artifacts["qa"]["checks"]["resolution"] is False

    async def test_long_silence_is_quality_failed(self, runtime, plan_id):
        runtime.capabilities.inspector = DryRunInspector(
            silences=[SilenceSpan(start=10.0, end=12.5, duration=2.5)]
        )
        run = await runtime.orchestrator.submit(plan_id)
        final = await _finish(runtime, run.id)

        assert final.status == "quality_failed"
        assert final.artifacts["qa"]["passed"] is False
        assert final.artifacts["qa"]["checks"]["silence"] is False
        assert final.artifacts["qa"]["checks"]["resolution"] is True
        assert "silence" in final.error_message

    async def test_hung_inspector_times_out_and_frees_the_slot(self, runtime, plan_id):
        runtime.settings.render.capability_timeout_seconds = 0.2
        runtime.capabilities.inspector = HangingSilenceDetector()
        first = await runtime.orchestrator.submit(plan_id)
        second = await runtime.orchestrator.submit(plan_id)

        await asyncio.wait_for(runtime.orchestrator.queue.join(), timeout=10)

        for run in (first, second):
            final = await runtime.store.snapshot(run.id)
            assert final.status == "quality_failed"
            assert final.artifacts["qa"]["checks"]["silence"] is False
            assert "timed out" in final.error_message
        assert runtime.orchestrator.queue.holder is None

    async def test_retry_after_quality_failure_reruns_only_the_gate(self, runtime, plan_id):
        runtime.capabilities.inspector = DryRunInspector(width=720, height=1280)
        run = await runtime.orchestrator.submit(plan_id)
        await _finish(runtime, run.id)

        runtime.capabilities.inspector = DryRunInspector()
        await runtime.orchestrator.retry(run.id)
        final = await _finish(runtime, run.id)

        assert final.status == "done"
        assert final.attempt == 2
        assert final.artifacts["qa"]["passed"] is True
        assert "Render started at QA (attempt 2)" in _messages(final)


class TestCancel:
    async def test_cancel_queued_run(self, runtime, plan_id):
        runtime.capabilities.faults.step_delay_ms = 10
        first = await runtime.orchestrator.submit(plan_id)
        second = await runtime.orchestrator.submit(plan_id)
        assert runtime.orchestrator.queue.position(second.id) == 1

        canceled = await runtime.orchestrator.cancel(second.id)
        assert canceled.status == "canceled"
        await runtime.orchestrator.queue.join()

        assert (await runtime.store.snapshot(first.id)).status == "done"
        second_final = await runtime.store.snapshot(second.id)
        assert second_final.status == "canceled"
        assert second_final.checkpoint == []

    async def test_cancel_running_run_stops_at_step_boundary(self, runtime, plan_id):
        runtime.capabilities.faults.step_delay_ms = 50
        run = await runtime.orchestrator.submit(plan_id)
        await asyncio.sleep(0.12)

        await runtime.orchestrator.cancel(run.id)
        final = await _finish(runtime, run.id)

        assert final.status == "canceled"
        assert len(final.checkpoint) < len(STEPS)
        assert final.current_step is None
        assert final.log[-1].level == "warn"

    async def test_canceled_run_can_be_retried(self, runtime, plan_id):
        runtime.capabilities.faults.step_delay_ms = 10
        first = await runtime.orchestrator.submit(plan_id)
        second = await runtime.orchestrator.submit(plan_id)
        await runtime.orchestrator.cancel(second.id)
        await runtime.orchestrator.retry(second.id)

        assert (await _finish(runtime, second.id)).status == "done"
        assert (await runtime.store.snapshot(first.id)).status == "done"

    async def test_cancel_terminal_run_is_rejected(self, runtime, plan_id):
        run = await runtime.orchestrator.submit(plan_id)
        await _finish(runtime, run.id)
        with pytest.raises(RunStateError):
            await runtime.orchestrator.cancel(run.id)


class TestQueueing:
    async def test_runs_execute_one_at_a_time_in_order(self, runtime, plan_id):
        runtime.capabilities.faults.step_delay_ms = 10
        runs = [await runtime.orchestrator.submit(plan_id) for _ in range(3)]
        assert runtime.orchestrator.queue.holder == runs[0].id
        await runtime.orchestrator.queue.join()

        records = [await runtime.store.get_run(r.id) for r in runs]
        assert all(r.status == "done" for r in records)
        for earlier, later in zip(records, records[1:]):
            assert earlier.finished_at <= later.started_at

    async def test_one_failure_does_not_block_the_next_run(self, runtime, plan_id):
        runtime.capabilities.faults.fail_step = Step.CAPTIONS_BUILD
        first = await runtime.orchestrator.submit(plan_id)
        second = await runtime.orchestrator.submit(plan_id)
        await runtime.orchestrator.queue.join()

        assert (await runtime.store.snapshot(first.id)).status == "failed"
        assert (await runtime.store.snapshot(second.id)).status == "failed"
        assert runtime.orchestrator.queue.slot.free
