"""Finalize: verify artifacts, extract preview frames, write the export manifest, run QA."""

import json
from pathlib import Path

from renderpipe.errors import ArtifactMissingError
from renderpipe.pipeline.base import StepContext, StepResult, require_present
from renderpipe.schemas.media import Timeline
from renderpipe.schemas.plan import PlanSpec
from renderpipe.schemas.run import utcnow
from renderpipe.services.file_manager import RunPaths, atomic_write_text, is_present
from renderpipe.services.qa import QAGate


def declared_artifacts(paths: RunPaths, plan: PlanSpec) -> list[Path]:
    """Every file the first six steps must have published."""
    scene_ids = [scene.idx for scene in plan.scenes]
    return (
        [paths.scene_audio(i) for i in scene_ids]
        + [paths.timeline, paths.voice_over, paths.timestamps]
        + [paths.scene_image(i) for i in scene_ids]
        + [paths.captions, paths.mixed_audio, paths.final_video]
    )


def find_missing(paths: RunPaths, plan: PlanSpec) -> list[str]:
    return [paths.relative(p) for p in declared_artifacts(paths, plan) if not is_present(p)]


def thumbnail_offsets(duration: float) -> dict[str, float]:
    mid = max(duration, 0.0) / 2
    return {"start": 0.0, "early": min(3.0, mid), "mid": mid}


async def run(ctx: StepContext) -> StepResult:
    paths = ctx.paths
    missing = find_missing(paths, ctx.plan)
    if missing:
        raise ArtifactMissingError(f"Missing or empty artifact(s): {', '.join(missing)}")
    await ctx.log("All declared artifacts verified")

    timeline = Timeline.model_validate_json(paths.timeline.read_text())
    offsets = thumbnail_offsets(timeline.total_duration)
    thumbnails = paths.thumbnails()
    width = ctx.settings.output.thumbnail_width
    for key, thumb_path in thumbnails.items():
        if not is_present(thumb_path):
            await ctx.call(
                ctx.caps.encoder.extract_frame(paths.final_video, offsets[key], thumb_path, width),
                capability="encoder",
            )
    require_present(list(thumbnails.values()), paths)
    await ctx.log(f"Extracted {len(thumbnails)} preview frame(s)")

    thumbnail_manifest = {key: ctx.rel(p) for key, p in thumbnails.items()}
    export = {
        "run_id": str(ctx.run_id),
        "plan": {
            "id": str(ctx.plan.id) if ctx.plan.id else None,
            "title": ctx.plan.title,
            "voice": ctx.plan.voice,
            "scene_count": len(ctx.plan.scenes),
        },
        "duration": round(timeline.total_duration, 3),
        "dry_run": ctx.caps.dry_run,
        "artifacts": {
            "final_video": ctx.rel(paths.final_video),
            "captions": ctx.rel(paths.captions),
            "mixed_audio": ctx.rel(paths.mixed_audio),
            "thumbnails": thumbnail_manifest,
        },
        "exported_at": utcnow().isoformat(),
    }
    atomic_write_text(paths.export_json, json.dumps(export, indent=2))

    gate = QAGate(
        ctx.caps.inspector,
        ctx.settings.qa,
        ctx.settings.output,
        timeout=ctx.settings.render.capability_timeout_seconds,
    )
    qa = await gate.evaluate(paths.final_video)
    if qa.passed:
        await ctx.log("QA passed")
    else:
        await ctx.log(f"QA failed: {qa.details or 'checks failed'}", level="warn")

    return StepResult(
        artifacts={"thumbnails": thumbnail_manifest, "export": ctx.rel(paths.export_json)},
        qa=qa,
    )
