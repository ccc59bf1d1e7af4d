"""Music-Mix: lay a background track under the narration."""

from pathlib import Path
from typing import Optional

from renderpipe.pipeline.base import StepContext, StepResult, require_present
from renderpipe.services.file_manager import is_present

MUSIC_EXTENSIONS = {".mp3", ".wav", ".m4a"}


def pick_track(library_dir: Path) -> Optional[Path]:
    """First audio file in the library by name, or None."""
    if not library_dir.is_dir():
        return None
    tracks = sorted(
        p for p in library_dir.iterdir()
        if p.is_file() and p.suffix.lower() in MUSIC_EXTENSIONS
    )
    return tracks[0] if tracks else None


async def run(ctx: StepContext) -> StepResult:
    paths = ctx.paths
    if is_present(paths.mixed_audio):
        await ctx.log("Mixed audio present, skipping mix")
        return StepResult(artifacts={"mixed_audio": ctx.rel(paths.mixed_audio)})

    require_present([paths.voice_over], paths)
    track = pick_track(ctx.settings.render.music_library_dir)
    if track is None:
        await ctx.log("No background music found, using narration only")
    else:
        await ctx.log(f"Mixing background music '{track.name}' at volume {ctx.settings.render.music_volume:g}")

    await ctx.call(
        ctx.caps.encoder.mix_audio(paths.voice_over, track, paths.mixed_audio, ctx.settings.render.music_volume),
        capability="encoder",
    )
    return StepResult(artifacts={
        "mixed_audio": ctx.rel(paths.mixed_audio),
        "music_track": track.name if track else None,
    })
