"""Shared step plumbing: the context each step runs with and what it returns.

Every step module exposes ``async def run(ctx: StepContext) -> StepResult``.
Steps are idempotent: outputs already present on disk are reused, so a
resumed or retried run only computes what is missing.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

from renderpipe.config import Settings
from renderpipe.errors import ArtifactMissingError, CapabilityTimeoutError
from renderpipe.orchestrator.state import Step
from renderpipe.providers.base import Capabilities
from renderpipe.schemas.plan import PlanSpec
from renderpipe.schemas.run import LogLevel, QAResult
from renderpipe.services.file_manager import RunPaths, is_present
from renderpipe.services.run_log import RunLog

T = TypeVar("T")


@dataclass
class StepResult:
    """Manifest entries produced by a step (paths relative to the artifacts root)."""

    artifacts: dict[str, Any] = field(default_factory=dict)
    qa: Optional[QAResult] = None


@dataclass
class StepContext:
    run_id: uuid.UUID
    step: Step
    plan: PlanSpec
    paths: RunPaths
    caps: Capabilities
    settings: Settings
    run_log: RunLog

    async def log(self, msg: str, level: LogLevel = "info") -> None:
        await self.run_log.log(self.run_id, msg, level=level, step=self.step.display_name)

    async def call(
        self,
        awaitable: Awaitable[T],
        capability: str,
        timeout: Optional[float] = None,
    ) -> T:
        """Await a capability call under a wall-clock timeout.

        Raises:
            CapabilityTimeoutError: If the call exceeds the timeout. The
                underlying task is cancelled (ffmpeg children are killed).
        """
        if timeout is None:
            timeout = self.settings.render.capability_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            raise CapabilityTimeoutError(
                f"{capability} call timed out after {timeout:g}s",
                capability=capability,
            ) from e

    def rel(self, path: Path) -> str:
        return self.paths.relative(path)


def require_present(paths: list[Path], base: RunPaths) -> None:
    """Raise ArtifactMissingError naming every absent or empty input."""
    missing = [base.relative(p) if p.is_relative_to(base.base_dir) else str(p) for p in paths if not is_present(p)]
    if missing:
        raise ArtifactMissingError(f"Missing or empty artifact(s): {', '.join(missing)}")


def step_outputs(step: Step, paths: RunPaths, plan: PlanSpec) -> list[Path]:
    """Files owned by a step; deleting them forces the step to recompute."""
    scene_ids = [scene.idx for scene in plan.scenes]
    if step is Step.SPEECH_SYNTHESIS:
        return [paths.scene_audio(i) for i in scene_ids] + [paths.timeline, paths.voice_over]
    if step is Step.TRANSCRIPTION_ALIGNMENT:
        return [paths.timestamps]
    if step is Step.IMAGE_SYNTHESIS:
        return [paths.scene_image(i) for i in scene_ids]
    if step is Step.CAPTIONS_BUILD:
        return [paths.captions]
    if step is Step.MUSIC_MIX:
        return [paths.mixed_audio]
    if step is Step.VIDEO_ENCODE:
        return sorted(paths.video_dir.glob("*.mp4")) + [paths.final_video]
    if step is Step.FINALIZE:
        return list(paths.thumbnails().values()) + [paths.export_json]
    return []


# Manifest keys written by each step
STEP_ARTIFACT_KEYS: dict[Step, tuple[str, ...]] = {
    Step.SPEECH_SYNTHESIS: ("scene_audio", "timeline", "voice_over"),
    Step.TRANSCRIPTION_ALIGNMENT: ("timestamps",),
    Step.IMAGE_SYNTHESIS: ("scene_images",),
    Step.CAPTIONS_BUILD: ("captions",),
    Step.MUSIC_MIX: ("mixed_audio", "music_track"),
    Step.VIDEO_ENCODE: ("final_video",),
    Step.FINALIZE: ("thumbnails", "export", "qa"),
}
