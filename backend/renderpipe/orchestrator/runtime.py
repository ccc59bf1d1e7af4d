"""Composition root: wires store, log serializer, broadcaster, capabilities and orchestrator.

The API lifespan and the CLI both build one ``RenderRuntime`` per process.
Tests build one against a temporary database and artifacts directory.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from renderpipe.config import Settings
from renderpipe.orchestrator.pipeline import PipelineOrchestrator
from renderpipe.orchestrator.recovery import ReconcileReport, reconcile_on_startup
from renderpipe.providers.base import Capabilities
from renderpipe.providers.registry import get_capabilities
from renderpipe.services.file_manager import FileManager
from renderpipe.services.progress import ProgressBroadcaster
from renderpipe.services.run_log import RunLog
from renderpipe.services.run_store import RunStore

logger = logging.getLogger(__name__)


@dataclass
class RenderRuntime:
    settings: Settings
    store: RunStore
    run_log: RunLog
    broadcaster: ProgressBroadcaster
    file_manager: FileManager
    capabilities: Capabilities
    orchestrator: PipelineOrchestrator

    async def startup(self) -> ReconcileReport:
        """Reconcile persisted state, restore the queue and start keep-alives."""
        report = await reconcile_on_startup(
            self.orchestrator,
            resume_interrupted=self.settings.recovery.resume_interrupted,
        )
        self.broadcaster.start()
        return report

    async def shutdown(self) -> None:
        await self.orchestrator.queue.shutdown()
        await self.run_log.flush()
        await self.broadcaster.stop()
        await self.capabilities.aclose()


def build_runtime(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    capabilities: Optional[Capabilities] = None,
    file_manager: Optional[FileManager] = None,
) -> RenderRuntime:
    if session_factory is None:
        from renderpipe.db import async_session

        session_factory = async_session

    store = RunStore(session_factory)
    broadcaster = ProgressBroadcaster(
        store.snapshot,
        keepalive_seconds=settings.progress.keepalive_seconds,
        queue_size=settings.progress.subscriber_queue_size,
    )
    run_log = RunLog(store, broadcaster)
    file_manager = file_manager or FileManager(settings.storage.artifacts_dir)
    capabilities = capabilities or get_capabilities(settings)
    orchestrator = PipelineOrchestrator(
        store=store,
        run_log=run_log,
        broadcaster=broadcaster,
        file_manager=file_manager,
        capabilities=capabilities,
        settings=settings,
    )
    return RenderRuntime(
        settings=settings,
        store=store,
        run_log=run_log,
        broadcaster=broadcaster,
        file_manager=file_manager,
        capabilities=capabilities,
        orchestrator=orchestrator,
    )
