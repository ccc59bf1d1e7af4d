"""Transcription-Alignment: word-level timestamps over the full voice-over."""

from renderpipe.pipeline.base import StepContext, StepResult, require_present
from renderpipe.services.file_manager import atomic_write_text, is_present


async def run(ctx: StepContext) -> StepResult:
    paths = ctx.paths
    if is_present(paths.timestamps):
        await ctx.log("Word timestamps present, skipping transcription")
    else:
        require_present([paths.voice_over], paths)
        await ctx.log("Transcribing voice-over for word timestamps")
        transcript = await ctx.call(
            ctx.caps.transcriber.transcribe(paths.voice_over),
            capability="transcription",
        )
        atomic_write_text(paths.timestamps, transcript.model_dump_json(indent=2))
        await ctx.log(f"Aligned {len(transcript.words)} word(s)")

    return StepResult(artifacts={"timestamps": ctx.rel(paths.timestamps)})
