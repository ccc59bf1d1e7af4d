"""ASS subtitle generation from word-level timestamps.

Words are grouped into short on-screen segments and each segment is emitted
as a run of Dialogue events, one per spoken word, with the current word
drawn in the highlight colour (karaoke-style captions).
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from renderpipe.schemas.media import SceneTiming, WordTiming
from renderpipe.schemas.plan import CaptionStyle


@dataclass
class CaptionSegment:
    text: str
    start: float
    end: float
    words: list[WordTiming] = field(default_factory=list)


def format_ass_time(seconds: float) -> str:
    """Seconds to ASS ``H:MM:SS.cc`` (centiseconds, truncated)."""
    total_cs = int(max(seconds, 0.0) * 100 + 1e-6)
    hours, rem = divmod(total_cs, 360000)
    minutes, rem = divmod(rem, 6000)
    secs, cs = divmod(rem, 100)
    return f"{hours}:{minutes:02d}:{secs:02d}.{cs:02d}"


def hex_to_ass(hex_color: str) -> str:
    """``#RRGGBB`` to ASS ``&H00BBGGRR&``."""
    value = hex_color.lstrip("#")
    r, g, b = value[0:2], value[2:4], value[4:6]
    return f"&H00{b}{g}{r}&".upper()


def escape_ass_text(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace("\n", "\\N")
        .replace("{", "\\{")
        .replace("}", "\\}")
    )


def group_words(
    words: list[WordTiming],
    pause_gap: float = 0.5,
    max_words: int = 6,
) -> list[CaptionSegment]:
    """Split words into segments on long pauses or when a segment is full.

    A gap strictly greater than ``pause_gap`` between one word's end and the
    next word's start closes the current segment.
    """
    segments: list[CaptionSegment] = []
    current: list[WordTiming] = []
    for i, word in enumerate(words):
        current.append(word)
        is_last = i == len(words) - 1
        long_pause = not is_last and words[i + 1].start - word.end > pause_gap
        if long_pause or len(current) >= max_words or is_last:
            segments.append(CaptionSegment(
                text=" ".join(w.word for w in current),
                start=current[0].start,
                end=current[-1].end,
                words=current,
            ))
            current = []
    return segments


def segments_from_scenes(
    timings: Iterable[SceneTiming],
    narrations: dict[int, str],
) -> list[CaptionSegment]:
    """One plain segment per scene, used when no word timings exist."""
    return [
        CaptionSegment(text=narrations.get(t.idx, ""), start=t.start, end=t.end)
        for t in timings
        if narrations.get(t.idx)
    ]


def _header(style: CaptionStyle, width: int, height: int) -> str:
    primary = hex_to_ass(style.primary_color)
    outline = hex_to_ass(style.outline_color)
    highlight = hex_to_ass(style.highlight_color)
    common = (
        f"&H80000000&,1,0,0,0,100,100,0,0,1,{style.outline_width},0,2,"
        f"{style.margin_horizontal},{style.margin_horizontal},{style.margin_bottom},1"
    )
    return (
        "[Script Info]\n"
        "Title: renderpipe captions\n"
        "ScriptType: v4.00+\n"
        f"PlayResX: {width}\n"
        f"PlayResY: {height}\n"
        "WrapStyle: 0\n"
        "\n"
        "[V4+ Styles]\n"
        "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, "
        "BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, "
        "BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding\n"
        f"Style: Default,{style.font_family},{style.font_size},{primary},{highlight},{outline},{common}\n"
        f"Style: Highlight,{style.font_family},{style.font_size},{highlight},{primary},{outline},{common}\n"
        "\n"
        "[Events]\n"
        "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text\n"
    )


def _dialogue(start: float, end: float, text: str) -> str:
    return f"Dialogue: 0,{format_ass_time(start)},{format_ass_time(end)},Default,,0,0,0,,{text}\n"


def _highlight_events(segment: CaptionSegment, style: CaptionStyle) -> list[str]:
    colour = hex_to_ass(style.highlight_color)
    events = []
    for i, current in enumerate(segment.words):
        parts = [
            f"{{\\c{colour}}}{escape_ass_text(w.word)}{{\\c}}" if j == i else escape_ass_text(w.word)
            for j, w in enumerate(segment.words)
        ]
        events.append(_dialogue(current.start, current.end, " ".join(parts)))
    return events


def build_ass(
    segments: list[CaptionSegment],
    style: Optional[CaptionStyle] = None,
    width: int = 1080,
    height: int = 1920,
) -> str:
    """Render segments to a complete ASS document."""
    style = style or CaptionStyle()
    lines = [_header(style, width, height)]
    for segment in segments:
        if segment.words:
            lines.extend(_highlight_events(segment, style))
        else:
            lines.append(_dialogue(segment.start, segment.end, escape_ass_text(segment.text)))
    return "".join(lines)
