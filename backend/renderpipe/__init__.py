"""Render Pipeline - resumable, single-slot orchestration of narrated video renders.

Live renders shell out to ffmpeg/ffprobe; call validate_dependencies() at
startup so a missing binary fails before any run is accepted rather than
halfway through Video-Encode.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

REQUIRED_BINARIES = ("ffmpeg", "ffprobe")


def validate_dependencies() -> None:
    """Check that every binary in REQUIRED_BINARIES runs.

    Dry-run renders never touch ffmpeg, so callers skip this check when
    ``settings.dry_run.enabled`` is set.

    Raises:
        RuntimeError: Naming the first binary that is missing or broken.
    """
    for binary in REQUIRED_BINARIES:
        try:
            result = subprocess.run(
                [binary, "-version"],
                capture_output=True,
                check=True,
                text=True,
            )
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise RuntimeError(
                f"{binary} is required for live renders but could not be run.\n"
                "Install ffmpeg (it ships ffprobe), or render with --dry-run.\n"
                "  Debian/Ubuntu: apt-get install ffmpeg\n"
                "  macOS:         brew install ffmpeg"
            ) from e
        logger.info(f"{binary} validated: {result.stdout.splitlines()[0] if result.stdout else 'ok'}")
