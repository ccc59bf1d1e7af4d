"""
File management service for renderpipe.

Handles structured filesystem artifact storage with path traversal protection
and atomic write-then-publish discipline. Creates per-run directories with
subdirectories for audio, captions, images, per-scene video and final output.
"""
import logging
import os
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from renderpipe.config import settings

logger = logging.getLogger(__name__)

RUN_SUBDIRS = ("audio", "captions", "images", "video", "final")

TMP_MARKER = ".tmp"


def is_present(path: Path) -> bool:
    """An output counts as present only once published and non-empty."""
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def _temp_sibling(path: Path) -> Path:
    # Keep the real suffix last so ffmpeg can infer the container format.
    return path.with_name(f".{path.stem}.{uuid.uuid4().hex[:8]}{TMP_MARKER}{path.suffix}")


@contextmanager
def atomic_output(path: Path) -> Iterator[Path]:
    """Yield a temporary sibling path and publish it to ``path`` on success.

    The temporary file is removed if the body raises (including task
    cancellation on timeout), so a partial write never lands at ``path``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _temp_sibling(path)
    try:
        yield tmp_path
        if not is_present(tmp_path):
            raise OSError(f"No output written for {path.name}")
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def atomic_write_bytes(path: Path, data: bytes) -> Path:
    """Write bytes to a temporary sibling, fsync, then rename into place."""
    with atomic_output(path) as tmp_path:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    return path


def atomic_write_text(path: Path, text: str) -> Path:
    return atomic_write_bytes(path, text.encode("utf-8"))


def atomic_copy(src: Path, dest: Path) -> Path:
    with atomic_output(dest) as tmp_path:
        shutil.copyfile(src, tmp_path)
    return dest


@dataclass(frozen=True)
class RunPaths:
    """Fixed artifact layout for one run."""

    root: Path
    base_dir: Path

    @property
    def audio_dir(self) -> Path:
        return self.root / "audio"

    @property
    def captions_dir(self) -> Path:
        return self.root / "captions"

    @property
    def images_dir(self) -> Path:
        return self.root / "images"

    @property
    def video_dir(self) -> Path:
        return self.root / "video"

    @property
    def final_dir(self) -> Path:
        return self.root / "final"

    def scene_audio(self, idx: int) -> Path:
        return self.audio_dir / f"scene_{idx:02d}.mp3"

    def scene_image(self, idx: int) -> Path:
        return self.images_dir / f"scene_{idx:02d}.png"

    @property
    def timeline(self) -> Path:
        return self.audio_dir / "timeline.json"

    @property
    def voice_over(self) -> Path:
        return self.audio_dir / "vo_full.mp3"

    @property
    def mixed_audio(self) -> Path:
        return self.audio_dir / "mixed.m4a"

    @property
    def timestamps(self) -> Path:
        return self.captions_dir / "timestamps.json"

    @property
    def captions(self) -> Path:
        return self.captions_dir / "captions.ass"

    @property
    def final_video(self) -> Path:
        return self.final_dir / "final.mp4"

    @property
    def export_json(self) -> Path:
        return self.final_dir / "export.json"

    def thumbnails(self) -> dict[str, Path]:
        return {
            "start": self.final_dir / "thumb_0.png",
            "early": self.final_dir / "thumb_3.png",
            "mid": self.final_dir / "thumb_mid.png",
        }

    def relative(self, path: Path) -> str:
        """Path relative to the artifacts root, as stored in the run manifest."""
        return path.resolve().relative_to(self.base_dir).as_posix()


class FileManager:
    """
    Manage filesystem artifacts for render runs.

    Creates structured directories:
    - {base_dir}/{run_id}/audio/ - Per-scene narration, voice-over, mix, timeline
    - {base_dir}/{run_id}/captions/ - Word timestamps and ASS subtitles
    - {base_dir}/{run_id}/images/ - Per-scene images
    - {base_dir}/{run_id}/video/ - Per-scene motion clips and intermediate renders
    - {base_dir}/{run_id}/final/ - Final video, thumbnails, export manifest

    Implements path traversal protection to prevent directory escape attacks.
    """

    def __init__(self, base_dir: str | Path | None = None):
        """
        Initialize FileManager with base directory.

        Args:
            base_dir: Root directory for all run artifacts.
                     If None, uses settings.storage.artifacts_dir
        """
        if base_dir is None:
            base_dir = settings.storage.artifacts_dir

        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def run_paths(self, run_id: uuid.UUID) -> RunPaths:
        """
        Get or create the run directory with subdirectories.

        Raises:
            ValueError: If run_id creates path outside base_dir (traversal attack)
        """
        run_dir = (self.base_dir / str(run_id)).resolve()

        # Path traversal protection
        if not run_dir.is_relative_to(self.base_dir):
            raise ValueError("Invalid run path")

        run_dir.mkdir(exist_ok=True)
        for sub in RUN_SUBDIRS:
            (run_dir / sub).mkdir(exist_ok=True)

        return RunPaths(root=run_dir, base_dir=self.base_dir)

    def resolve(self, relative_path: str) -> Path:
        """Resolve a manifest path back to an absolute path inside base_dir."""
        resolved = (self.base_dir / relative_path).resolve()
        if not resolved.is_relative_to(self.base_dir):
            raise ValueError("Invalid artifact path")
        return resolved

    def clear_partials(self, run_id: uuid.UUID) -> int:
        """Remove temporary files left behind by a crash mid-write."""
        run_dir = (self.base_dir / str(run_id)).resolve()
        if not run_dir.is_dir():
            return 0
        removed = 0
        for candidate in run_dir.rglob(f".*{TMP_MARKER}*"):
            if candidate.is_file():
                candidate.unlink()
                removed += 1
        if removed:
            logger.info(f"Run {run_id}: removed {removed} partial file(s)")
        return removed

    def remove_outputs(self, paths: list[Path]) -> int:
        """Delete published outputs so that the owning steps recompute them."""
        removed = 0
        for path in paths:
            if path.is_file():
                path.unlink()
                removed += 1
        return removed
