"""Async ffmpeg/ffprobe helpers.

Every helper that produces a file writes it through ``atomic_output`` so a
killed or failed ffmpeg process never leaves a partial file at the final
path. Subprocesses are killed when the awaiting task is cancelled (which is
how ``asyncio.wait_for`` enforces the encode timeout).
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Optional

from renderpipe.errors import CapabilityError
from renderpipe.schemas.media import CompositionSpec, SilenceSpan, VideoProbe
from renderpipe.services.file_manager import atomic_output

logger = logging.getLogger(__name__)

_SILENCE_START = re.compile(r"silence_start:\s*(-?[\d.]+)")
_SILENCE_END = re.compile(r"silence_end:\s*(-?[\d.]+)\s*\|\s*silence_duration:\s*([\d.]+)")


async def _run(binary: str, args: list[str]) -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise CapabilityError(f"{binary} not found on PATH", capability=binary) from e

    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")


async def run_ffmpeg(args: list[str]) -> str:
    """Run ffmpeg and return its stderr.

    Raises:
        CapabilityError: On a non-zero exit status
    """
    logger.debug(f"Running: ffmpeg {' '.join(args)}")
    code, _, stderr = await _run("ffmpeg", ["-hide_banner", "-nostdin", *args])
    if code != 0:
        raise CapabilityError(
            f"ffmpeg exited with code {code}: {stderr[-500:]}",
            capability="ffmpeg",
        )
    return stderr


async def ffprobe_json(path: Path) -> dict:
    code, stdout, stderr = await _run("ffprobe", [
        "-v", "error",
        "-show_entries", "format=duration:stream=codec_type,width,height",
        "-of", "json",
        str(path),
    ])
    if code != 0:
        raise CapabilityError(f"ffprobe failed for {path.name}: {stderr[-300:]}", capability="ffprobe")
    try:
        return json.loads(stdout or "{}")
    except json.JSONDecodeError as e:
        raise CapabilityError(f"ffprobe returned invalid JSON for {path.name}", capability="ffprobe") from e


async def media_duration(path: Path) -> Optional[float]:
    data = await ffprobe_json(path)
    try:
        duration = float(data.get("format", {}).get("duration", ""))
    except ValueError:
        return None
    return duration if duration > 0 else None


async def probe_video(path: Path) -> VideoProbe:
    data = await ffprobe_json(path)
    stream = next(
        (s for s in data.get("streams", []) if s.get("width") and s.get("height")),
        {},
    )
    try:
        duration = float(data.get("format", {}).get("duration", 0) or 0)
    except ValueError:
        duration = 0.0
    return VideoProbe(width=stream.get("width"), height=stream.get("height"), duration=duration)


def parse_silences(stderr: str) -> list[SilenceSpan]:
    """Parse silencedetect output into spans.

    A trailing ``silence_start`` with no matching end (silence running to the
    end of the file) is not reported here; ffmpeg only emits a duration once
    the span closes or the stream ends.
    """
    spans = []
    starts = [float(m.group(1)) for m in _SILENCE_START.finditer(stderr)]
    for i, match in enumerate(_SILENCE_END.finditer(stderr)):
        end = float(match.group(1))
        duration = float(match.group(2))
        start = starts[i] if i < len(starts) else end - duration
        spans.append(SilenceSpan(start=start, end=end, duration=duration))
    return spans


async def detect_silences(path: Path, noise_db: float, min_duration: float) -> list[SilenceSpan]:
    stderr = await run_ffmpeg([
        "-i", str(path),
        "-af", f"silencedetect=n={noise_db}dB:d={min_duration}",
        "-f", "null",
        "-",
    ])
    return parse_silences(stderr)


def motion_filter(effect: str, duration: float, width: int, height: int, fps: int) -> str:
    """Scale/crop to the output frame and apply the scene's motion effect."""
    frames = max(int(round(duration * fps)), 1)
    size = f"{width}x{height}"
    scale = f"scale={width}:{height}:force_original_aspect_ratio=increase,crop={width}:{height}"
    pan = f"zoompan=z='1.1':d={frames}:s={size}:fps={fps}"
    centre_x = "iw/2-(iw/zoom/2)"
    centre_y = "ih/2-(ih/zoom/2)"
    travel = f"(1-on/{frames})"

    if effect == "slow_zoom_in":
        return f"{scale},zoompan=z='min(zoom+0.0005,1.1)':d={frames}:s={size}:fps={fps}"
    if effect == "slow_zoom_out":
        return f"{scale},zoompan=z='if(eq(on,1),1.1,max(zoom-0.0005,1))':d={frames}:s={size}:fps={fps}"
    if effect == "pan_left":
        return f"{scale},{pan}:x='{centre_x}+((iw/zoom)*{travel})':y='{centre_y}'"
    if effect == "pan_right":
        return f"{scale},{pan}:x='{centre_x}-((iw/zoom)*{travel})':y='{centre_y}'"
    if effect == "tilt_up":
        return f"{scale},{pan}:x='{centre_x}':y='{centre_y}+((ih/zoom)*{travel})'"
    if effect == "tilt_down":
        return f"{scale},{pan}:x='{centre_x}':y='{centre_y}-((ih/zoom)*{travel})'"
    if effect == "glitch":
        return f"{scale},noise=c0s=10:c0f=t+u"
    if effect == "flash_cut":
        return f"{scale},fade=in:0:5"
    if effect == "fade":
        return f"{scale},fade=in:0:15,fade=out:{max(frames - 15, 0)}:15"
    return scale


async def render_scene_clip(
    image_path: Path,
    duration: float,
    effect: str,
    output_path: Path,
    width: int,
    height: int,
    fps: int,
) -> Path:
    with atomic_output(output_path) as tmp_path:
        await run_ffmpeg([
            "-loop", "1",
            "-i", str(image_path),
            "-t", f"{duration:.3f}",
            "-vf", motion_filter(effect, duration, width, height, fps),
            "-r", str(fps),
            "-c:v", "libx264",
            "-pix_fmt", "yuv420p",
            "-y", str(tmp_path),
        ])
    return output_path


async def concat(inputs: list[Path], output_path: Path, reencode_video: bool = False) -> Path:
    """Concatenate media files with the concat demuxer."""
    if not inputs:
        raise CapabilityError("Nothing to concatenate", capability="ffmpeg")
    list_file = output_path.with_name(f".{output_path.stem}.tmp.list.txt")
    list_file.write_text("".join(f"file '{p.resolve().as_posix()}'\n" for p in inputs))
    codec = ["-c:v", "libx264", "-preset", "fast", "-crf", "23", "-pix_fmt", "yuv420p"] if reencode_video else ["-c", "copy"]
    try:
        with atomic_output(output_path) as tmp_path:
            await run_ffmpeg([
                "-f", "concat",
                "-safe", "0",
                "-i", str(list_file),
                *codec,
                "-y", str(tmp_path),
            ])
    finally:
        if list_file.exists():
            list_file.unlink()
    return output_path


async def mix_audio(
    voice_path: Path,
    music_path: Optional[Path],
    output_path: Path,
    music_volume: float,
    audio_bitrate: str,
) -> Path:
    """Duck a music bed under the narration, or transcode the narration alone."""
    if music_path is None:
        args = ["-i", str(voice_path), "-c:a", "aac", "-b:a", audio_bitrate]
    else:
        args = [
            "-i", str(voice_path),
            "-stream_loop", "-1",
            "-i", str(music_path),
            "-filter_complex",
            f"[1:a]volume={music_volume}[music];"
            "[0:a][music]amix=inputs=2:duration=first:dropout_transition=2",
            "-c:a", "aac",
            "-b:a", audio_bitrate,
        ]
    with atomic_output(output_path) as tmp_path:
        await run_ffmpeg([*args, "-y", str(tmp_path)])
    return output_path


def _subtitles_filter(captions_path: Path) -> str:
    escaped = captions_path.resolve().as_posix().replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")
    return f"subtitles='{escaped}'"


async def final_composite(
    video_path: Path,
    spec: CompositionSpec,
    output_path: Path,
) -> Path:
    """Mux visuals with audio, burn captions, normalise loudness, cap bitrate."""
    video_filters = []
    if spec.captions_path is not None and spec.captions_path.exists():
        video_filters.append(_subtitles_filter(spec.captions_path))
    filter_args = ["-vf", ",".join(video_filters)] if video_filters else []

    with atomic_output(output_path) as tmp_path:
        await run_ffmpeg([
            "-i", str(video_path),
            "-i", str(spec.audio_path),
            *filter_args,
            "-af", f"loudnorm=I={spec.loudness_target}:TP={spec.true_peak}:LRA={spec.loudness_range}",
            "-map", "0:v",
            "-map", "1:a",
            "-c:v", "libx264",
            "-preset", "fast",
            "-b:v", spec.video_bitrate,
            "-maxrate", spec.max_bitrate,
            "-bufsize", spec.buffer_size,
            "-pix_fmt", "yuv420p",
            "-r", str(spec.fps),
            "-c:a", "aac",
            "-b:a", spec.audio_bitrate,
            "-movflags", "+faststart",
            "-shortest",
            "-y", str(tmp_path),
        ])
    return output_path


async def extract_frame(video_path: Path, at_seconds: float, output_path: Path, width: int) -> Path:
    with atomic_output(output_path) as tmp_path:
        await run_ffmpeg([
            "-ss", f"{max(at_seconds, 0.0):.3f}",
            "-i", str(video_path),
            "-frames:v", "1",
            "-vf", f"scale={width}:-2",
            "-y", str(tmp_path),
        ])
    return output_path
