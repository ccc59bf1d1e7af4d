"""Speech-Synthesis: per-scene narration, measured timeline, joined voice-over."""

import logging

from renderpipe.errors import CapabilityError
from renderpipe.pipeline.base import StepContext, StepResult
from renderpipe.schemas.media import SceneTiming, Timeline
from renderpipe.services.file_manager import atomic_write_bytes, atomic_write_text, is_present

logger = logging.getLogger(__name__)


async def run(ctx: StepContext) -> StepResult:
    """Synthesize narration for every scene without a clip on disk.

    Each clip is measured through the media inspector. When measurement is
    unavailable the scene's target duration is used. Measured timings go to
    the timeline artifact; the plan itself is left untouched.
    """
    paths = ctx.paths
    timings: list[SceneTiming] = []
    cursor = 0.0
    generated = 0

    for scene in ctx.plan.scenes:
        audio_path = paths.scene_audio(scene.idx)
        if is_present(audio_path):
            logger.debug(f"Run {ctx.run_id}: scene {scene.idx} narration present, skipping")
        else:
            await ctx.log(f"Synthesizing narration for scene {scene.idx}")
            audio = await ctx.call(
                ctx.caps.speech.synthesize(scene.narration_text, ctx.plan.voice),
                capability="speech",
            )
            atomic_write_bytes(audio_path, audio)
            generated += 1

        try:
            duration = await ctx.call(ctx.caps.inspector.media_duration(audio_path), capability="inspector")
        except CapabilityError as e:
            await ctx.log(f"Could not measure scene {scene.idx} audio ({e}), using target duration", level="warn")
            duration = None
        if not duration:
            duration = scene.duration_target_sec

        timings.append(SceneTiming(idx=scene.idx, start=cursor, end=cursor + duration, duration=duration))
        cursor += duration

    atomic_write_text(paths.timeline, Timeline(scenes=timings).model_dump_json(indent=2))

    scene_audio = [paths.scene_audio(scene.idx) for scene in ctx.plan.scenes]
    if generated or not is_present(paths.voice_over):
        await ctx.log(f"Joining {len(scene_audio)} narration clip(s) into voice-over")
        await ctx.call(
            ctx.caps.encoder.concat_audio(scene_audio, paths.voice_over),
            capability="encoder",
        )

    await ctx.log(f"Narration ready: {generated} generated, total {cursor:.1f}s")
    return StepResult(artifacts={
        "scene_audio": [ctx.rel(p) for p in scene_audio],
        "timeline": ctx.rel(paths.timeline),
        "voice_over": ctx.rel(paths.voice_over),
    })
