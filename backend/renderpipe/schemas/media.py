"""Pydantic schemas exchanged with capability providers.

These are the request/response shapes behind the capability interfaces
in renderpipe.providers.base: transcripts, per-scene timing, the encoder
composition spec, and media probe results.
"""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


class WordTiming(BaseModel):
    """A single transcribed word with start/end offsets in seconds."""

    word: str
    start: float
    end: float


class Transcript(BaseModel):
    """Word-level transcription of the full narration track."""

    text: str
    words: list[WordTiming] = Field(default_factory=list)


class SceneTiming(BaseModel):
    """Measured placement of one scene's narration on the timeline."""

    idx: int
    start: float
    end: float
    duration: float


class Timeline(BaseModel):
    """Per-scene timings written by Speech-Synthesis."""

    scenes: list[SceneTiming]

    @property
    def total_duration(self) -> float:
        return self.scenes[-1].end if self.scenes else 0.0


class SceneClip(BaseModel):
    """One visual segment of the composition."""

    idx: int
    image_path: Path
    duration: float
    effect: str = "static"


class CompositionSpec(BaseModel):
    """Everything the video encoder needs to produce the final container."""

    scenes: list[SceneClip]
    audio_path: Path
    captions_path: Optional[Path] = None
    work_dir: Path
    width: int = 1080
    height: int = 1920
    fps: int = 30
    video_bitrate: str = "6M"
    max_bitrate: str = "8M"
    buffer_size: str = "12M"
    audio_bitrate: str = "192k"
    loudness_target: float = -14.0
    true_peak: float = -1.5
    loudness_range: float = 11.0


class VideoProbe(BaseModel):
    """Subset of ffprobe output needed by the QA gate."""

    width: Optional[int] = None
    height: Optional[int] = None
    duration: float = 0.0


class SilenceSpan(BaseModel):
    """A continuous silent audio segment reported by silence detection."""

    start: float
    end: float
    duration: float
