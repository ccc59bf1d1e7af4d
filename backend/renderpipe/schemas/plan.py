"""Pydantic schemas for the approved plan consumed by a render run.

A PlanSpec is loaded once when a run acquires the execution slot and is
frozen for the rest of the run; steps never mutate it. Measured audio
timings live in the run's timeline artifact instead.
"""

import uuid
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MotionEffect = Literal[
    "static",
    "slow_zoom_in",
    "slow_zoom_out",
    "pan_left",
    "pan_right",
    "tilt_up",
    "tilt_down",
    "glitch",
    "flash_cut",
    "fade",
]


class CaptionStyle(BaseModel):
    """Subtitle styling applied by the captions builder."""

    model_config = ConfigDict(frozen=True)

    font_family: str = "Arial"
    font_size: int = 72
    primary_color: str = Field(default="#FFFFFF", pattern=r"^#[0-9A-Fa-f]{6}$")
    outline_color: str = Field(default="#000000", pattern=r"^#[0-9A-Fa-f]{6}$")
    highlight_color: str = Field(default="#FFE400", pattern=r"^#[0-9A-Fa-f]{6}$")
    outline_width: int = 4
    margin_horizontal: int = 60
    margin_bottom: int = 320


class SceneSpec(BaseModel):
    """One scene of an approved plan."""

    model_config = ConfigDict(frozen=True)

    idx: int = Field(ge=0)
    narration_text: str = Field(min_length=1)
    visual_prompt: str = Field(min_length=1)
    on_screen_text: Optional[str] = None
    effect: MotionEffect = "static"
    duration_target_sec: float = Field(gt=0)


class PlanSpec(BaseModel):
    """An approved, immutable ordered list of scenes."""

    model_config = ConfigDict(frozen=True)

    id: Optional[uuid.UUID] = None
    title: str
    voice: Optional[str] = None
    style_prompt: Optional[str] = None
    caption_style: CaptionStyle = CaptionStyle()
    scenes: list[SceneSpec] = Field(min_length=1)
