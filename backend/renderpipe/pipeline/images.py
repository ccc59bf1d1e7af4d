"""Image-Synthesis: one still per scene with bounded concurrency.

Only scenes without an image on disk are generated. All pending scenes are
attempted even when one fails, so every image that succeeded is kept for the
next attempt; the step then fails with the first error.
"""

import asyncio
import logging
from typing import Optional

from renderpipe.pipeline.base import StepContext, StepResult
from renderpipe.schemas.plan import SceneSpec
from renderpipe.services.file_manager import atomic_write_bytes, is_present

logger = logging.getLogger(__name__)

COMPOSITION_SUFFIX = (
    "vertical 9:16 portrait composition, subject centered in the safe area, "
    "no text, no watermark"
)


def build_prompt(style_prompt: Optional[str], visual_prompt: str) -> str:
    return ". ".join(part.strip() for part in (style_prompt, visual_prompt, COMPOSITION_SUFFIX) if part and part.strip())


async def run(ctx: StepContext) -> StepResult:
    paths = ctx.paths
    scenes = list(ctx.plan.scenes)
    pending = [s for s in scenes if not is_present(paths.scene_image(s.idx))]
    concurrency = ctx.settings.render.image_concurrency

    if not pending:
        await ctx.log("All scene images present, skipping generation")
    else:
        await ctx.log(
            f"Generating {len(pending)} of {len(scenes)} image(s), up to {concurrency} at a time"
        )
        semaphore = asyncio.Semaphore(concurrency)

        async def _generate(scene: SceneSpec) -> None:
            async with semaphore:
                await ctx.log(f"Generating image for scene {scene.idx}")
                prompt = build_prompt(ctx.plan.style_prompt, scene.visual_prompt)
                data = await ctx.call(
                    ctx.caps.images.generate(prompt, ctx.settings.render.image_size),
                    capability="image",
                )
                atomic_write_bytes(paths.scene_image(scene.idx), data)
                await ctx.log(f"Image for scene {scene.idx} ready")

        results = await asyncio.gather(*[_generate(s) for s in pending], return_exceptions=True)
        failures = [(s, r) for s, r in zip(pending, results) if isinstance(r, BaseException)]
        for scene, error in failures:
            await ctx.log(f"Image for scene {scene.idx} failed: {error}", level="error")
        if failures:
            raise failures[0][1]

    return StepResult(artifacts={
        "scene_images": [ctx.rel(paths.scene_image(s.idx)) for s in scenes],
    })
