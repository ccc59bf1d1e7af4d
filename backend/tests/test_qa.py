"""Post-render quality gate."""

import asyncio
from pathlib import Path

from renderpipe.config import OutputConfig, QAConfig
from renderpipe.errors import CapabilityError
from renderpipe.providers.dry_run import DryRunInspector
from renderpipe.schemas.media import SilenceSpan
from renderpipe.services.qa import QAGate


class BrokenProbe(DryRunInspector):
    async def probe_video(self, path: Path):
        raise CapabilityError("ffprobe exited with 1", capability="ffprobe")


class SlowProbe(DryRunInspector):
    async def probe_video(self, path: Path):
        await asyncio.sleep(3600)


def _video(tmp_path, size: int = 2048) -> Path:
    path = tmp_path / "final.mp4"
    path.write_bytes(b"\0" * size)
    return path


def _gate(inspector=None, **qa):
    return QAGate(inspector or DryRunInspector(), QAConfig(**qa), OutputConfig())


async def test_compliant_video_passes(tmp_path):
    result = await _gate().evaluate(_video(tmp_path))
    assert result.passed
    assert result.details is None


async def test_missing_file_fails_every_check(tmp_path):
    result = await _gate().evaluate(tmp_path / "missing.mp4")
    assert not result.passed
    assert result.checks.model_dump() == {"silence": False, "file_size": False, "resolution": False}
    assert result.details == "File does not exist"


async def test_resolution_must_match_exactly(tmp_path):
    result = await _gate(DryRunInspector(width=1080, height=1918)).evaluate(_video(tmp_path))
    assert not result.passed
    assert result.checks.resolution is False
    assert result.checks.silence and result.checks.file_size
    assert "1080x1918" in result.details


async def test_file_size_over_cap_fails(tmp_path):
    result = await _gate(max_file_size_mb=0.001).evaluate(_video(tmp_path))
    assert result.checks.file_size is False
    assert not result.passed


async def test_silence_at_threshold_fails(tmp_path):
    inspector = DryRunInspector(silences=[SilenceSpan(start=3.0, end=5.0, duration=2.0)])
    result = await _gate(inspector, max_silence_seconds=2.0).evaluate(_video(tmp_path))
    assert result.checks.silence is False


async def test_short_silence_passes(tmp_path):
    inspector = DryRunInspector(silences=[SilenceSpan(start=3.0, end=4.5, duration=1.5)])
    result = await _gate(inspector, max_silence_seconds=2.0).evaluate(_video(tmp_path))
    assert result.passed


async def test_probe_failure_only_fails_resolution(tmp_path):
    result = await _gate(BrokenProbe()).evaluate(_video(tmp_path))
    assert result.checks.resolution is False
    assert result.checks.silence is True
    assert result.checks.file_size is True
    assert "Probe failed" in result.details


async def test_probe_timeout_fails_only_resolution(tmp_path):
    gate = QAGate(SlowProbe(), QAConfig(), OutputConfig(), timeout=0.05)
    result = await gate.evaluate(_video(tmp_path))
    assert not result.passed
    assert result.checks.resolution is False
    assert result.checks.silence and result.checks.file_size
    assert "timed out" in result.details
