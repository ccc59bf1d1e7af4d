"""Deterministic, zero-cost capability stand-ins.

Used when ``dry_run.enabled`` is set and throughout the test suite. Outputs
are small but real files (placeholder audio bytes, solid-colour PNGs, a JSON
render report) so every step's presence checks and the artifact manifest
behave exactly as in a live render.
"""

import asyncio
import hashlib
import io
import json
import logging
import re
from pathlib import Path
from typing import Optional

from PIL import Image

from renderpipe.config import OutputConfig
from renderpipe.providers.base import (
    ImageSynthesizer,
    MediaInspector,
    SpeechSynthesizer,
    Transcriber,
    VideoEncoder,
)
from renderpipe.schemas.media import (
    CompositionSpec,
    SilenceSpan,
    Transcript,
    VideoProbe,
    WordTiming,
)
from renderpipe.services.file_manager import atomic_copy, atomic_write_bytes, atomic_write_text

logger = logging.getLogger(__name__)

AUDIO_MARKER = b"DRYRUN-AUDIO\n"

WORD_SECONDS = 0.4
SCENE_GAP_SECONDS = 0.6


class DryRunSpeech(SpeechSynthesizer):
    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        return AUDIO_MARKER + text.encode("utf-8") + b"\n"


class DryRunTranscriber(Transcriber):
    """Recovers the narration text from placeholder audio and times it evenly."""

    async def transcribe(self, audio_path: Path) -> Transcript:
        raw = audio_path.read_bytes()
        chunks = [c.decode("utf-8", errors="replace").strip() for c in raw.split(AUDIO_MARKER)]
        words: list[WordTiming] = []
        cursor = 0.0
        for chunk in filter(None, chunks):
            for token in re.findall(r"\S+", chunk):
                words.append(WordTiming(word=token, start=round(cursor, 3), end=round(cursor + WORD_SECONDS, 3)))
                cursor += WORD_SECONDS
            cursor += SCENE_GAP_SECONDS
        return Transcript(text=" ".join(w.word for w in words), words=words)


def _prompt_colour(prompt: str) -> tuple[int, int, int]:
    digest = hashlib.sha256(prompt.encode("utf-8")).digest()
    return digest[0], digest[1], digest[2]


def _png(size: tuple[int, int], colour: tuple[int, int, int]) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, colour).save(buffer, format="PNG")
    return buffer.getvalue()


class DryRunImages(ImageSynthesizer):
    """Solid-colour PNG derived from the prompt, so identical prompts match."""

    def __init__(self, size: tuple[int, int] = (108, 192)):
        self.size = size

    async def generate(self, prompt: str, size: str) -> bytes:
        return await asyncio.to_thread(_png, self.size, _prompt_colour(prompt))


class DryRunEncoder(VideoEncoder):
    """Writes a JSON render report in place of the encoded container."""

    def __init__(self, output: Optional[OutputConfig] = None):
        self.output = output or OutputConfig()

    async def concat_audio(self, inputs: list[Path], output: Path) -> Path:
        data = b"".join(p.read_bytes() for p in inputs)
        return atomic_write_bytes(output, data)

    async def mix_audio(self, voice: Path, music: Optional[Path], output: Path, volume: float) -> Path:
        if music is None:
            return atomic_copy(voice, output)
        header = f"DRYRUN-MIX music={music.name} volume={volume}\n".encode("utf-8")
        return atomic_write_bytes(output, header + voice.read_bytes())

    async def encode(self, spec: CompositionSpec, output: Path) -> Path:
        report = {
            "dry_run": True,
            "resolution": f"{spec.width}x{spec.height}",
            "fps": spec.fps,
            "duration": round(sum(s.duration for s in spec.scenes), 3),
            "scenes": [
                {
                    "idx": s.idx,
                    "image": s.image_path.name,
                    "effect": s.effect,
                    "duration": s.duration,
                }
                for s in spec.scenes
            ],
            "audio": spec.audio_path.name,
            "captions": spec.captions_path.name if spec.captions_path else None,
        }
        return atomic_write_text(output, json.dumps(report, indent=2))

    async def extract_frame(self, video: Path, at_seconds: float, output: Path, width: int) -> Path:
        height = width * 16 // 9
        shade = min(int(at_seconds * 20), 255)
        data = await asyncio.to_thread(_png, (width, height), (shade, shade, shade))
        return atomic_write_bytes(output, data)


class DryRunInspector(MediaInspector):
    """Reports a compliant video by default; tests override the fields."""

    def __init__(
        self,
        width: Optional[int] = 1080,
        height: Optional[int] = 1920,
        duration: float = 30.0,
        silences: Optional[list[SilenceSpan]] = None,
    ):
        self.width = width
        self.height = height
        self.duration = duration
        self.silences = silences or []

    async def media_duration(self, path: Path) -> Optional[float]:
        # Placeholder audio has no measurable length; steps fall back to targets
        return None

    async def probe_video(self, path: Path) -> VideoProbe:
        return VideoProbe(width=self.width, height=self.height, duration=self.duration)

    async def detect_silences(self, path: Path, noise_db: float, min_duration: float) -> list[SilenceSpan]:
        return [s for s in self.silences if s.duration >= min_duration]
