"""Startup reconciliation of run state left behind by a crash or restart.

The execution slot and the queue live in memory only. Runs found
``running`` were interrupted mid-step and are demoted to ``failed`` (or
re-queued when ``recovery.resume_interrupted`` is set); ``queued`` runs are
restored to the queue in their queued_at order.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from renderpipe.orchestrator.pipeline import PipelineOrchestrator
from renderpipe.orchestrator.state import RunStatus

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by restart while running; use retry to resume"


@dataclass
class ReconcileReport:
    demoted: list[uuid.UUID] = field(default_factory=list)
    requeued: list[uuid.UUID] = field(default_factory=list)
    queued: list[uuid.UUID] = field(default_factory=list)
    partials_removed: int = 0


async def reconcile_on_startup(
    orchestrator: PipelineOrchestrator,
    resume_interrupted: bool = False,
    restore_queue: bool = True,
) -> ReconcileReport:
    """Repair persisted state, then rebuild the in-memory queue.

    Must run before any new run is submitted. With restore_queue=False only
    the persisted state is repaired (the CLI reconcile command).
    """
    store = orchestrator.store
    run_log = orchestrator.run_log
    report = ReconcileReport()

    for run_id in await store.run_ids_with_status(RunStatus.RUNNING):
        report.partials_removed += orchestrator.file_manager.clear_partials(run_id)
        if resume_interrupted:
            await store.transition(
                run_id,
                [RunStatus.RUNNING],
                status=RunStatus.QUEUED.value,
                started_at=None,
            )
            await run_log.log(run_id, "Interrupted by restart; re-queued to resume", level="warn")
            report.requeued.append(run_id)
        else:
            run = await store.get_run(run_id)
            await store.transition(
                run_id,
                [RunStatus.RUNNING],
                status=RunStatus.FAILED.value,
                error_message=INTERRUPTED_MESSAGE,
                failed_step=run.current_step,
                finished_at=datetime.now(timezone.utc),
            )
            await run_log.log(run_id, INTERRUPTED_MESSAGE, level="warn")
            report.demoted.append(run_id)

    queued = await store.run_ids_with_status(RunStatus.QUEUED)
    for run_id in queued:
        report.partials_removed += orchestrator.file_manager.clear_partials(run_id)
    if restore_queue:
        orchestrator.queue.restore(queued)
    report.queued = queued

    logger.info(
        f"Startup reconciliation: {len(report.demoted)} demoted, {len(report.requeued)} re-queued, "
        f"{len(queued)} queued, {report.partials_removed} partial file(s) removed"
    )
    return report
