"""Persistent run state store.

Wraps the async session factory with the handful of queries the orchestrator,
queue and API need. Scalar fields (status, progress, current_step, ...) are
written with single UPDATE statements. The JSON fields (log, checkpoint,
artifacts) need a read-modify-write and must only be mutated through
renderpipe.services.run_log so concurrent writers never lose updates.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from renderpipe.db.models import Plan, PlanScene, Run
from renderpipe.errors import PlanNotFoundError, RunNotFoundError
from renderpipe.orchestrator.state import RunStatus, Step, compute_progress, truncate_checkpoint
from renderpipe.schemas.plan import CaptionStyle, PlanSpec, SceneSpec
from renderpipe.schemas.run import LogEntry, RunSnapshot

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunStore:
    """Run and plan persistence backed by SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def create_plan(self, plan: PlanSpec, approved: bool = True) -> uuid.UUID:
        """Store an approved plan and return its id."""
        async with self._session_factory() as session:
            record = Plan(
                id=plan.id or uuid.uuid4(),
                title=plan.title,
                voice=plan.voice,
                style_prompt=plan.style_prompt,
                caption_style=plan.caption_style.model_dump(),
                approved=approved,
            )
            for scene in plan.scenes:
                record.scenes.append(PlanScene(
                    idx=scene.idx,
                    narration_text=scene.narration_text,
                    visual_prompt=scene.visual_prompt,
                    on_screen_text=scene.on_screen_text,
                    effect=scene.effect,
                    duration_target_sec=scene.duration_target_sec,
                ))
            session.add(record)
            await session.commit()
            logger.info(f"Stored plan {record.id} with {len(plan.scenes)} scene(s)")
            return record.id

    async def load_plan(self, plan_id: uuid.UUID, require_approved: bool = True) -> PlanSpec:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Plan).options(selectinload(Plan.scenes)).where(Plan.id == plan_id)
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise PlanNotFoundError(f"Plan {plan_id} not found")
            if require_approved and not record.approved:
                raise PlanNotFoundError(f"Plan {plan_id} is not approved")
            return PlanSpec(
                id=record.id,
                title=record.title,
                voice=record.voice,
                style_prompt=record.style_prompt,
                caption_style=CaptionStyle(**(record.caption_style or {})),
                scenes=[
                    SceneSpec(
                        idx=s.idx,
                        narration_text=s.narration_text,
                        visual_prompt=s.visual_prompt,
                        on_screen_text=s.on_screen_text,
                        effect=s.effect,
                        duration_target_sec=s.duration_target_sec,
                    )
                    for s in sorted(record.scenes, key=lambda s: s.idx)
                ],
            )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def create_run(self, plan_id: uuid.UUID) -> Run:
        """Create a queued run for an approved plan."""
        # Validates existence and approval before any run row is written
        await self.load_plan(plan_id)
        async with self._session_factory() as session:
            run = Run(
                plan_id=plan_id,
                status=RunStatus.QUEUED.value,
                progress=0,
                current_step=None,
                log=[],
                checkpoint=[],
                artifacts={},
                attempt=1,
                queued_at=_now(),
            )
            session.add(run)
            await session.commit()
            await session.refresh(run)
            return run

    async def get_run(self, run_id: uuid.UUID) -> Run:
        async with self._session_factory() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            return run

    async def snapshot(self, run_id: uuid.UUID) -> RunSnapshot:
        run = await self.get_run(run_id)
        return to_snapshot(run)

    async def list_runs(self, status: Optional[str] = None, limit: int = 100) -> list[Run]:
        async with self._session_factory() as session:
            query = select(Run).order_by(Run.created_at.desc()).limit(limit)
            if status is not None:
                query = query.where(Run.status == status)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def run_ids_with_status(self, status: RunStatus) -> list[uuid.UUID]:
        """Run ids in the given status, oldest queue registration first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Run.id)
                .where(Run.status == status.value)
                .order_by(Run.queued_at, Run.created_at)
            )
            return list(result.scalars().all())

    async def update(self, run_id: uuid.UUID, **values: Any) -> None:
        """Write scalar fields with a single UPDATE statement."""
        values["updated_at"] = _now()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Run).where(Run.id == run_id).values(**values)
            )
            await session.commit()
            if result.rowcount == 0:
                raise RunNotFoundError(f"Run {run_id} not found")

    async def transition(
        self,
        run_id: uuid.UUID,
        from_statuses: Iterable[RunStatus],
        **values: Any,
    ) -> bool:
        """Atomic check-and-set on status.

        Returns:
            True if the run was in one of from_statuses and got updated
        """
        allowed = [s.value for s in from_statuses]
        values["updated_at"] = _now()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Run)
                .where(Run.id == run_id, Run.status.in_(allowed))
                .values(**values)
            )
            await session.commit()
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Read-modify-write fields (callers: renderpipe.services.run_log only)
    # ------------------------------------------------------------------

    async def append_log(self, run_id: uuid.UUID, entry: LogEntry) -> int:
        """Append one log entry; returns the new log length."""
        async with self._session_factory() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            log = list(run.log or [])
            log.append(entry.model_dump(mode="json", exclude_none=True))
            run.log = log
            await session.commit()
            return len(log)

    async def merge_artifacts(
        self,
        run_id: uuid.UUID,
        patch: dict[str, Any],
        remove: Iterable[str] = (),
    ) -> dict[str, Any]:
        async with self._session_factory() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            artifacts = dict(run.artifacts or {})
            for key in remove:
                artifacts.pop(key, None)
            artifacts.update(patch)
            run.artifacts = artifacts
            await session.commit()
            return artifacts

    async def append_checkpoint(self, run_id: uuid.UUID, step_name: str) -> list[str]:
        async with self._session_factory() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            checkpoint = list(run.checkpoint or [])
            if step_name not in checkpoint:
                checkpoint.append(step_name)
            run.checkpoint = checkpoint
            await session.commit()
            return checkpoint

    async def truncate_checkpoint(self, run_id: uuid.UUID, from_step: Step) -> list[str]:
        """Cut the checkpoint back to before from_step and recompute progress."""
        async with self._session_factory() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            checkpoint = truncate_checkpoint(run.checkpoint or [], from_step)
            run.checkpoint = checkpoint
            run.progress = compute_progress(checkpoint)
            run.current_step = None
            await session.commit()
            return checkpoint


def to_snapshot(run: Run) -> RunSnapshot:
    return RunSnapshot(
        id=run.id,
        plan_id=run.plan_id,
        status=run.status,
        progress=run.progress,
        current_step=run.current_step,
        log=[LogEntry(**entry) for entry in (run.log or [])],
        checkpoint=list(run.checkpoint or []),
        artifacts=dict(run.artifacts or {}),
        error_message=run.error_message,
        failed_step=run.failed_step,
        attempt=run.attempt,
        created_at=run.created_at,
        updated_at=run.updated_at,
    )
