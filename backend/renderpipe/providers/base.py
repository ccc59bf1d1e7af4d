"""Abstract capability interfaces used by the pipeline steps.

Steps depend only on these interfaces. A concrete bundle (live or dry-run)
is selected once at startup by ``renderpipe.providers.registry``. Every
implementation signals failure by raising ``CapabilityError``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from renderpipe.errors import InjectedFailure
from renderpipe.orchestrator.state import Step
from renderpipe.schemas.media import CompositionSpec, SilenceSpan, Transcript, VideoProbe

logger = logging.getLogger(__name__)


class SpeechSynthesizer(ABC):
    @abstractmethod
    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        """Synthesize narration audio (MP3 bytes) for one scene."""
        ...


class Transcriber(ABC):
    @abstractmethod
    async def transcribe(self, audio_path: Path) -> Transcript:
        """Transcribe an audio file into word-level timestamps."""
        ...


class ImageSynthesizer(ABC):
    @abstractmethod
    async def generate(self, prompt: str, size: str) -> bytes:
        """Generate one image (PNG bytes) for a prompt.

        Args:
            prompt: Full image prompt (style, scene and composition suffix).
            size: Provider size string, e.g. "1024x1792".
        """
        ...


class VideoEncoder(ABC):
    """Audio assembly and final video composition."""

    @abstractmethod
    async def concat_audio(self, inputs: list[Path], output: Path) -> Path:
        ...

    @abstractmethod
    async def mix_audio(
        self,
        voice: Path,
        music: Optional[Path],
        output: Path,
        volume: float,
    ) -> Path:
        ...

    @abstractmethod
    async def encode(self, spec: CompositionSpec, output: Path) -> Path:
        """Render the composition to ``output``.

        Implementations must publish ``output`` atomically: on failure or
        cancellation nothing is left at that path.
        """
        ...

    @abstractmethod
    async def extract_frame(self, video: Path, at_seconds: float, output: Path, width: int) -> Path:
        ...


class MediaInspector(ABC):
    """Read-only media measurements for timing and QA."""

    @abstractmethod
    async def media_duration(self, path: Path) -> Optional[float]:
        """Duration in seconds, or None when it cannot be measured."""
        ...

    @abstractmethod
    async def probe_video(self, path: Path) -> VideoProbe:
        ...

    @abstractmethod
    async def detect_silences(self, path: Path, noise_db: float, min_duration: float) -> list[SilenceSpan]:
        ...


class FaultInjector:
    """Per-step delay and forced failure for dry-run testing.

    With no fail step and no delay this is a no-op, which is what live
    bundles use.
    """

    def __init__(self, fail_step: Optional[Step] = None, step_delay_ms: int = 0):
        self.fail_step = fail_step
        self.step_delay_ms = max(step_delay_ms, 0)

    async def before_step(self, step: Step) -> None:
        if self.step_delay_ms:
            await asyncio.sleep(self.step_delay_ms / 1000)

    def check(self, step: Step) -> None:
        """Raise InjectedFailure if this is the configured fail step."""
        if self.fail_step is not None and step == self.fail_step:
            logger.info(f"Injecting dry-run failure at {step.display_name}")
            raise InjectedFailure(
                f"Dry-run failure injected at {step.display_name}",
                capability=step.value,
            )


@dataclass
class Capabilities:
    """The capability bundle handed to every step."""

    speech: SpeechSynthesizer
    transcriber: Transcriber
    images: ImageSynthesizer
    encoder: VideoEncoder
    inspector: MediaInspector
    faults: FaultInjector
    dry_run: bool = False

    async def aclose(self) -> None:
        # One provider instance may back several capabilities
        closed = set()
        for provider in (self.speech, self.transcriber, self.images):
            close = getattr(provider, "aclose", None)
            if close is not None and id(provider) not in closed:
                closed.add(id(provider))
                await close()
