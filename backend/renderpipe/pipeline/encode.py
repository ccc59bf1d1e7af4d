"""Video-Encode: compose stills, motion, audio and captions into the final MP4."""

from renderpipe.pipeline.base import StepContext, StepResult, require_present
from renderpipe.schemas.media import CompositionSpec, SceneClip, Timeline
from renderpipe.services.file_manager import is_present


def build_composition(ctx: StepContext) -> CompositionSpec:
    paths = ctx.paths
    timeline = Timeline.model_validate_json(paths.timeline.read_text())
    durations = {t.idx: t.duration for t in timeline.scenes}
    output = ctx.settings.output
    return CompositionSpec(
        scenes=[
            SceneClip(
                idx=scene.idx,
                image_path=paths.scene_image(scene.idx),
                duration=durations.get(scene.idx, scene.duration_target_sec),
                effect=scene.effect,
            )
            for scene in ctx.plan.scenes
        ],
        audio_path=paths.mixed_audio,
        captions_path=paths.captions if is_present(paths.captions) else None,
        work_dir=paths.video_dir,
        width=output.width,
        height=output.height,
        fps=output.fps,
        video_bitrate=output.video_bitrate,
        max_bitrate=output.max_bitrate,
        buffer_size=output.buffer_size,
        audio_bitrate=output.audio_bitrate,
        loudness_target=output.loudness_target,
        true_peak=output.true_peak,
        loudness_range=output.loudness_range,
    )


async def run(ctx: StepContext) -> StepResult:
    paths = ctx.paths
    if is_present(paths.final_video):
        await ctx.log("Final video present, skipping encode")
        return StepResult(artifacts={"final_video": ctx.rel(paths.final_video)})

    require_present(
        [paths.timeline, paths.mixed_audio] + [paths.scene_image(s.idx) for s in ctx.plan.scenes],
        paths,
    )
    spec = build_composition(ctx)
    timeout = ctx.settings.render.encode_timeout_seconds
    await ctx.log(
        f"Encoding {len(spec.scenes)} scene(s) at {spec.width}x{spec.height}@{spec.fps} "
        f"(timeout {timeout:g}s)"
    )
    await ctx.call(ctx.caps.encoder.encode(spec, paths.final_video), capability="encoder", timeout=timeout)
    require_present([paths.final_video], paths)
    await ctx.log("Encode complete")
    return StepResult(artifacts={"final_video": ctx.rel(paths.final_video)})
