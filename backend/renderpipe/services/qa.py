"""Post-render quality gate.

Checks the final container against the short-form delivery constraints:
no long silent span, file size cap, exact portrait resolution. All checks
must pass. Probe failures and probe timeouts fail the affected check
instead of raising, so the gate always produces a result.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Optional, TypeVar

from renderpipe.config import OutputConfig, QAConfig
from renderpipe.errors import CapabilityError, CapabilityTimeoutError
from renderpipe.schemas.run import QAChecks, QAResult

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

T = TypeVar("T")


class QAGate:
    def __init__(
        self,
        inspector,
        qa_config: QAConfig,
        output_config: OutputConfig,
        timeout: Optional[float] = None,
    ):
        self.inspector = inspector
        self.qa = qa_config
        self.output = output_config
        self.timeout = timeout

    async def _inspect(self, awaitable: Awaitable[T], capability: str) -> T:
        if self.timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError as e:
            raise CapabilityTimeoutError(
                f"{capability} timed out after {self.timeout:g}s",
                capability=capability,
            ) from e

    async def evaluate(self, video_path: Path) -> QAResult:
        if not video_path.is_file():
            return QAResult(
                passed=False,
                checks=QAChecks(silence=False, file_size=False, resolution=False),
                details="File does not exist",
            )

        checks = QAChecks()
        details: list[str] = []

        size_mb = video_path.stat().st_size / MIB
        if size_mb > self.qa.max_file_size_mb:
            checks.file_size = False
            details.append(f"File size {size_mb:.1f} MB exceeds {self.qa.max_file_size_mb:g} MB")

        expected = (self.output.width, self.output.height)
        try:
            probe = await self._inspect(self.inspector.probe_video(video_path), "probe")
            if (probe.width, probe.height) != expected:
                checks.resolution = False
                if probe.width is None or probe.height is None:
                    details.append("No video stream found")
                else:
                    details.append(
                        f"Resolution {probe.width}x{probe.height} (expected {expected[0]}x{expected[1]})"
                    )
        except CapabilityError as e:
            checks.resolution = False
            details.append(f"Probe failed: {e}")

        try:
            silences = await self._inspect(
                self.inspector.detect_silences(
                    video_path,
                    self.qa.silence_noise_db,
                    self.qa.max_silence_seconds,
                ),
                "silence detection",
            )
            longest = max((s.duration for s in silences), default=0.0)
            if longest >= self.qa.max_silence_seconds:
                checks.silence = False
                details.append(
                    f"Detected silence >= {self.qa.max_silence_seconds:g}s ({longest:.1f}s)"
                )
        except CapabilityError as e:
            checks.silence = False
            details.append(f"Silence detection failed: {e}")

        passed = checks.silence and checks.file_size and checks.resolution
        result = QAResult(passed=passed, checks=checks, details="; ".join(details) or None)
        if passed:
            logger.info(f"QA passed for {video_path.name}")
        else:
            logger.warning(f"QA failed for {video_path.name}: {result.details}")
        return result
