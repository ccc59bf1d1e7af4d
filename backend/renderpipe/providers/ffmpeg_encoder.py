"""ffmpeg-backed VideoEncoder and MediaInspector."""

import logging
from pathlib import Path
from typing import Optional

from renderpipe.config import OutputConfig
from renderpipe.providers.base import MediaInspector, VideoEncoder
from renderpipe.schemas.media import CompositionSpec, SilenceSpan, VideoProbe
from renderpipe.services import ffmpeg
from renderpipe.services.file_manager import is_present

logger = logging.getLogger(__name__)


class FFmpegEncoder(VideoEncoder):
    def __init__(self, output: OutputConfig):
        self.output = output

    async def concat_audio(self, inputs: list[Path], output: Path) -> Path:
        return await ffmpeg.concat(inputs, output)

    async def mix_audio(self, voice: Path, music: Optional[Path], output: Path, volume: float) -> Path:
        return await ffmpeg.mix_audio(voice, music, output, volume, self.output.audio_bitrate)

    async def encode(self, spec: CompositionSpec, output: Path) -> Path:
        """Render per-scene motion clips, join them, then mux the final container.

        Scene clips already present in the work dir are reused, so a retry
        after an encode timeout only renders what is missing.
        """
        spec.work_dir.mkdir(parents=True, exist_ok=True)
        clips = []
        for scene in spec.scenes:
            clip_path = spec.work_dir / f"scene_{scene.idx:02d}.mp4"
            if not is_present(clip_path):
                logger.info(f"Rendering scene {scene.idx} clip ({scene.effect}, {scene.duration:.2f}s)")
                await ffmpeg.render_scene_clip(
                    scene.image_path,
                    scene.duration,
                    scene.effect,
                    clip_path,
                    spec.width,
                    spec.height,
                    spec.fps,
                )
            clips.append(clip_path)

        visual_path = spec.work_dir / "visual.mp4"
        await ffmpeg.concat(clips, visual_path, reencode_video=True)
        await ffmpeg.final_composite(visual_path, spec, output)
        return output

    async def extract_frame(self, video: Path, at_seconds: float, output: Path, width: int) -> Path:
        return await ffmpeg.extract_frame(video, at_seconds, output, width)


class FFmpegInspector(MediaInspector):
    async def media_duration(self, path: Path) -> Optional[float]:
        return await ffmpeg.media_duration(path)

    async def probe_video(self, path: Path) -> VideoProbe:
        return await ffmpeg.probe_video(path)

    async def detect_silences(self, path: Path, noise_db: float, min_duration: float) -> list[SilenceSpan]:
        return await ffmpeg.detect_silences(path, noise_db, min_duration)
