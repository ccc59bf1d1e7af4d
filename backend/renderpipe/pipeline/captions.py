"""Captions-Build: word timestamps to a styled ASS subtitle track."""

from renderpipe.pipeline.base import StepContext, StepResult, require_present
from renderpipe.schemas.media import Timeline, Transcript
from renderpipe.services.captions import build_ass, group_words, segments_from_scenes
from renderpipe.services.file_manager import atomic_write_text, is_present


async def run(ctx: StepContext) -> StepResult:
    paths = ctx.paths
    if is_present(paths.captions):
        await ctx.log("Captions present, skipping build")
        return StepResult(artifacts={"captions": ctx.rel(paths.captions)})

    require_present([paths.timestamps], paths)
    transcript = Transcript.model_validate_json(paths.timestamps.read_text())
    render = ctx.settings.render

    if transcript.words:
        segments = group_words(
            transcript.words,
            pause_gap=render.caption_pause_gap_seconds,
            max_words=render.caption_max_words,
        )
    else:
        require_present([paths.timeline], paths)
        timeline = Timeline.model_validate_json(paths.timeline.read_text())
        narrations = {scene.idx: scene.narration_text for scene in ctx.plan.scenes}
        segments = segments_from_scenes(timeline.scenes, narrations)
        await ctx.log("No word timings available, using one caption per scene", level="warn")

    document = build_ass(
        segments,
        ctx.plan.caption_style,
        width=ctx.settings.output.width,
        height=ctx.settings.output.height,
    )
    atomic_write_text(paths.captions, document)
    await ctx.log(f"Built {len(segments)} caption segment(s)")
    return StepResult(artifacts={"captions": ctx.rel(paths.captions)})
