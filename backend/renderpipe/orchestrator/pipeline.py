"""Main pipeline orchestrator with idempotent step execution.

Coordinates the seven render steps with:
- Single-slot FIFO scheduling through the render queue
- Resume from the first step missing from the run's checkpoint
- Retry (optionally from a named step) and cooperative cancellation
- Failure state persistence (error message and failing step)
- Progress and terminal events for live observers
- The post-render QA gate deciding done vs quality_failed
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

from renderpipe.config import Settings
from renderpipe.errors import RunStateError
from renderpipe.orchestrator.queue import RenderQueue
from renderpipe.orchestrator.state import (
    RETRYABLE_STATUSES,
    STEPS,
    RunStatus,
    Step,
    can_cancel,
    can_retry,
    compute_progress,
    get_resume_step,
    steps_from,
)
from renderpipe.pipeline import captions, encode, finalize, images, music, speech, transcription
from renderpipe.pipeline.base import STEP_ARTIFACT_KEYS, StepContext, step_outputs
from renderpipe.providers.base import Capabilities
from renderpipe.schemas.run import ProgressEvent, QAResult, RunSnapshot
from renderpipe.services.file_manager import FileManager
from renderpipe.services.progress import ProgressBroadcaster
from renderpipe.services.qa import QAGate
from renderpipe.services.run_log import RunLog
from renderpipe.services.run_store import RunStore, to_snapshot

logger = logging.getLogger(__name__)

STEP_MODULES = {
    Step.SPEECH_SYNTHESIS: speech,
    Step.TRANSCRIPTION_ALIGNMENT: transcription,
    Step.IMAGE_SYNTHESIS: images,
    Step.CAPTIONS_BUILD: captions,
    Step.MUSIC_MIX: music,
    Step.VIDEO_ENCODE: encode,
    Step.FINALIZE: finalize,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


class PipelineOrchestrator:
    """Owns the render queue and drives runs through the step sequence."""

    def __init__(
        self,
        store: RunStore,
        run_log: RunLog,
        broadcaster: ProgressBroadcaster,
        file_manager: FileManager,
        capabilities: Capabilities,
        settings: Settings,
    ):
        self.store = store
        self.run_log = run_log
        self.broadcaster = broadcaster
        self.file_manager = file_manager
        self.caps = capabilities
        self.settings = settings
        self.queue = RenderQueue(self.start, on_error=self._record_crash)
        self._cancel_requested: set[uuid.UUID] = set()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def submit(self, plan_id: uuid.UUID) -> RunSnapshot:
        """Create a queued run for an approved plan and enqueue it.

        Raises:
            PlanNotFoundError: If the plan does not exist or is not approved.
        """
        run = await self.store.create_run(plan_id)
        snapshot = to_snapshot(run)
        await self.run_log.log(run.id, "Run queued")
        self.queue.enqueue(run.id)
        return snapshot

    async def get_state(self, run_id: uuid.UUID) -> RunSnapshot:
        return await self.store.snapshot(run_id)

    async def retry(
        self,
        run_id: uuid.UUID,
        from_step: Optional[Union[Step, str]] = None,
    ) -> RunSnapshot:
        """Re-queue a failed, quality_failed or canceled run.

        Without from_step the run resumes at its first incomplete step. With
        from_step the checkpoint is cut back to before that step and the
        outputs of every dropped step are deleted so they are recomputed.

        Raises:
            RunNotFoundError: Unknown run.
            RunStateError: The run is not in a retryable status.
            ValueError: from_step names no known step.
        """
        step = Step.parse(from_step) if isinstance(from_step, str) else from_step
        run = await self.store.get_run(run_id)
        if not can_retry(run.status):
            raise RunStateError(f"Run {run_id} is {run.status}; only failed, quality_failed or canceled runs can be retried")

        checkpoint = list(run.checkpoint or [])
        if step is not None:
            # Invalidate while still idle; on error the run stays retryable
            await self._invalidate_from(run_id, run.plan_id, step)
            checkpoint = await self.run_log.truncate_checkpoint(run_id, step)

        queued = await self.store.transition(
            run_id,
            RETRYABLE_STATUSES,
            status=RunStatus.QUEUED.value,
            attempt=run.attempt + 1,
            queued_at=_now(),
            started_at=None,
            finished_at=None,
            error_message=None,
            failed_step=None,
        )
        if not queued:
            raise RunStateError(f"Run {run_id} changed status while retrying")

        try:
            if step is not None:
                await self.run_log.log(run_id, f"Retry requested from {step.display_name} (attempt {run.attempt + 1})")
            else:
                resume = get_resume_step(checkpoint)
                where = resume.display_name if resume else "QA"
                await self.run_log.log(run_id, f"Retry requested, resuming at {where} (attempt {run.attempt + 1})")
        finally:
            self.queue.enqueue(run_id)
        snapshot = await self.store.snapshot(run_id)
        self._publish_state(snapshot)
        return snapshot

    async def cancel(self, run_id: uuid.UUID) -> RunSnapshot:
        """Cancel a queued or running run.

        A queued run is removed from the queue and marked canceled at once.
        A running run is flagged and stops at the next step boundary.

        Raises:
            RunNotFoundError: Unknown run.
            RunStateError: The run is already terminal.
        """
        run = await self.store.get_run(run_id)
        if not can_cancel(run.status):
            raise RunStateError(f"Run {run_id} is {run.status} and cannot be canceled")

        if run.status == RunStatus.QUEUED.value:
            self.queue.remove(run_id)
            if await self.store.transition(
                run_id, [RunStatus.QUEUED], status=RunStatus.CANCELED.value, finished_at=_now()
            ):
                await self.run_log.log(run_id, "Run canceled while queued", level="warn")
                snapshot = await self.store.snapshot(run_id)
                self._publish_terminal(snapshot)
                return snapshot
            # Lost the race with the queue starting it; fall through to running
            run = await self.store.get_run(run_id)
            if run.status != RunStatus.RUNNING.value:
                raise RunStateError(f"Run {run_id} is {run.status} and cannot be canceled")

        self._cancel_requested.add(run_id)
        await self.run_log.log(run_id, "Cancellation requested, stopping at the next step boundary", level="warn")
        return await self.store.snapshot(run_id)

    async def verify(self, run_id: uuid.UUID) -> dict:
        """Re-check that every declared artifact exists and is non-empty."""
        run = await self.store.get_run(run_id)
        plan = await self.store.load_plan(run.plan_id, require_approved=False)
        paths = self.file_manager.run_paths(run_id)
        missing = finalize.find_missing(paths, plan)
        return {"run_id": str(run_id), "ok": not missing, "missing": missing}

    # ------------------------------------------------------------------
    # Execution (invoked by the render queue holding the slot)
    # ------------------------------------------------------------------

    async def start(self, run_id: uuid.UUID) -> None:
        """Execute a queued run from its first incomplete step."""
        run = await self.store.get_run(run_id)
        started = await self.store.transition(
            run_id,
            [RunStatus.QUEUED],
            status=RunStatus.RUNNING.value,
            started_at=_now(),
            finished_at=None,
        )
        if not started:
            logger.info(f"Run {run_id} is {run.status}, not starting")
            return

        current: Optional[Step] = None
        qa: Optional[QAResult] = None
        try:
            resume = get_resume_step(run.checkpoint or [])
            where = resume.display_name if resume else "QA"
            await self.run_log.log(run_id, f"Render started at {where} (attempt {run.attempt})")
            self._publish_state(await self.store.snapshot(run_id))

            plan = await self.store.load_plan(run.plan_id, require_approved=False)
            paths = self.file_manager.run_paths(run_id)
            done = set(run.checkpoint or [])

            for step in STEPS:
                if step.value in done:
                    continue
                current = step
                await self.caps.faults.before_step(step)
                if run_id in self._cancel_requested:
                    await self._mark_canceled(run_id, step)
                    return

                await self.store.update(run_id, current_step=step.value)
                self.broadcaster.publish(run_id, ProgressEvent(type="step", run_id=run_id, step=step.value))
                await self.run_log.log(run_id, f"{step.display_name} started", step=step.display_name)

                self.caps.faults.check(step)
                ctx = StepContext(
                    run_id=run_id,
                    step=step,
                    plan=plan,
                    paths=paths,
                    caps=self.caps,
                    settings=self.settings,
                    run_log=self.run_log,
                )
                result = await STEP_MODULES[step].run(ctx)

                if result.artifacts:
                    await self.run_log.merge_artifacts(run_id, result.artifacts)
                checkpoint = await self.run_log.append_checkpoint(run_id, step.value)
                progress = compute_progress(checkpoint)
                await self.store.update(run_id, progress=progress)
                self.broadcaster.publish(
                    run_id,
                    ProgressEvent(type="progress", run_id=run_id, progress=progress, step=step.value),
                )
                await self.run_log.log(run_id, f"{step.display_name} completed", step=step.display_name)
                if result.qa is not None:
                    qa = result.qa

            await self._complete(run_id, paths.final_video, qa)
        except Exception as e:
            await self._fail(run_id, current, e)
        finally:
            self._cancel_requested.discard(run_id)

    async def _complete(self, run_id: uuid.UUID, final_video, qa: Optional[QAResult]) -> None:
        if qa is None:
            # Every step was already checkpointed: only the gate is re-evaluated
            gate = QAGate(
                self.caps.inspector,
                self.settings.qa,
                self.settings.output,
                timeout=self.settings.render.capability_timeout_seconds,
            )
            qa = await gate.evaluate(final_video)
        await self.run_log.merge_artifacts(run_id, {"qa": qa.model_dump(mode="json")})

        if qa.passed:
            await self.store.update(
                run_id,
                status=RunStatus.DONE.value,
                progress=100,
                current_step=None,
                finished_at=_now(),
            )
            await self.run_log.log(run_id, "Render complete")
        else:
            details = qa.details or "QA checks failed"
            await self.store.update(
                run_id,
                status=RunStatus.QUALITY_FAILED.value,
                progress=100,
                current_step=None,
                error_message=f"QA failed: {details}",
                failed_step=Step.FINALIZE.value,
                finished_at=_now(),
            )
            await self.run_log.log(run_id, f"Render finished but failed QA: {details}", level="warn")
        snapshot = await self.store.snapshot(run_id)
        self._publish_terminal(snapshot, qa=qa)

    async def _fail(self, run_id: uuid.UUID, step: Optional[Step], error: Exception) -> None:
        message = _describe(error)
        label = step.display_name if step else "Startup"
        logger.error(f"Run {run_id}: {label} failed: {type(error).__name__}: {message}")
        await self.run_log.log(
            run_id,
            f"{label} failed: {message}",
            level="error",
            step=step.display_name if step else None,
        )
        # current_step is left pointing at the failing step
        await self.store.update(
            run_id,
            status=RunStatus.FAILED.value,
            error_message=message,
            failed_step=step.value if step else None,
            finished_at=_now(),
        )
        self._publish_terminal(await self.store.snapshot(run_id))

    async def _mark_canceled(self, run_id: uuid.UUID, next_step: Step) -> None:
        await self.store.update(
            run_id,
            status=RunStatus.CANCELED.value,
            current_step=None,
            finished_at=_now(),
        )
        await self.run_log.log(run_id, f"Run canceled before {next_step.display_name}", level="warn")
        self._publish_terminal(await self.store.snapshot(run_id))

    async def _record_crash(self, run_id: uuid.UUID, error: Exception) -> None:
        """Drive a run to failed after an error escaped step handling."""
        message = f"Internal error: {_describe(error)}"
        changed = await self.store.transition(
            run_id,
            [RunStatus.QUEUED, RunStatus.RUNNING],
            status=RunStatus.FAILED.value,
            error_message=message,
            finished_at=_now(),
        )
        if changed:
            await self.run_log.log(run_id, message, level="error")
            self._publish_terminal(await self.store.snapshot(run_id))

    async def _invalidate_from(self, run_id: uuid.UUID, plan_id: uuid.UUID, step: Step) -> None:
        plan = await self.store.load_plan(plan_id, require_approved=False)
        paths = self.file_manager.run_paths(run_id)
        dropped = steps_from(step)
        removed = 0
        for dropped_step in dropped:
            removed += self.file_manager.remove_outputs(step_outputs(dropped_step, paths, plan))
        keys = [key for s in dropped for key in STEP_ARTIFACT_KEYS[s]]
        await self.run_log.merge_artifacts(run_id, {}, remove=keys)
        logger.info(f"Run {run_id}: invalidated {removed} output file(s) from {step.display_name} onward")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _publish_state(self, snapshot: RunSnapshot) -> None:
        self.broadcaster.publish(snapshot.id, ProgressEvent(
            type="state",
            run_id=snapshot.id,
            status=snapshot.status,
            progress=snapshot.progress,
            step=snapshot.current_step,
            snapshot=snapshot,
        ))

    def _publish_terminal(self, snapshot: RunSnapshot, qa: Optional[QAResult] = None) -> None:
        self.broadcaster.publish(snapshot.id, ProgressEvent(
            type="terminal",
            run_id=snapshot.id,
            status=snapshot.status,
            progress=snapshot.progress,
            step=snapshot.current_step,
            error=snapshot.error_message,
            qa=qa,
        ))
