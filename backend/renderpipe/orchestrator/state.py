"""State machine constants and transition logic for the render orchestrator.

Defines the fixed, totally ordered step sequence and the run status
lifecycle that governs resume, retry-from-step and progress computation.
"""

import enum
from typing import Iterable, Optional


class Step(str, enum.Enum):
    """The seven fixed pipeline stages, in execution order."""

    SPEECH_SYNTHESIS = "speech_synthesis"
    TRANSCRIPTION_ALIGNMENT = "transcription_alignment"
    IMAGE_SYNTHESIS = "image_synthesis"
    CAPTIONS_BUILD = "captions_build"
    MUSIC_MIX = "music_mix"
    VIDEO_ENCODE = "video_encode"
    FINALIZE = "finalize"

    @property
    def display_name(self) -> str:
        return "-".join(part.capitalize() for part in self.value.split("_"))

    @classmethod
    def parse(cls, name: str) -> "Step":
        """Accept "Video-Encode", "video_encode" or "VIDEO_ENCODE".

        Raises:
            ValueError: If the name matches no step.
        """
        normalized = name.strip().lower().replace("-", "_").replace(" ", "_")
        for step in cls:
            if step.value == normalized:
                return step
        raise ValueError(
            f"Unknown step '{name}'. Valid steps: {', '.join(s.display_name for s in cls)}"
        )


STEPS: tuple[Step, ...] = tuple(Step)


class RunStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"
    QUALITY_FAILED = "quality_failed"


TERMINAL_STATUSES = {
    RunStatus.DONE,
    RunStatus.FAILED,
    RunStatus.CANCELED,
    RunStatus.QUALITY_FAILED,
}

# States from which a run can be retried
RETRYABLE_STATUSES = {
    RunStatus.FAILED,
    RunStatus.CANCELED,
    RunStatus.QUALITY_FAILED,
}

# States in which a cancel command is meaningful
CANCELABLE_STATUSES = {
    RunStatus.QUEUED,
    RunStatus.RUNNING,
}


def is_terminal(status: str) -> bool:
    return RunStatus(status) in TERMINAL_STATUSES


def can_retry(status: str) -> bool:
    """Check if a run can re-enter the queue from the given status."""
    return RunStatus(status) in RETRYABLE_STATUSES


def can_cancel(status: str) -> bool:
    return RunStatus(status) in CANCELABLE_STATUSES


def normalize_checkpoint(checkpoint: Iterable[str]) -> list[Step]:
    """Return checkpoint entries as Steps in canonical order, dropping unknowns."""
    done = set()
    for name in checkpoint:
        try:
            done.add(Step.parse(name))
        except ValueError:
            continue
    return [step for step in STEPS if step in done]


def get_resume_step(checkpoint: Iterable[str]) -> Optional[Step]:
    """Determine which step to resume from.

    Args:
        checkpoint: Completed step names, as persisted on the run

    Returns:
        The first step not in the checkpoint, or None if all steps are done

    Examples:
        >>> get_resume_step([])
        <Step.SPEECH_SYNTHESIS: 'speech_synthesis'>
        >>> get_resume_step(["speech_synthesis", "transcription_alignment", "image_synthesis"])
        <Step.CAPTIONS_BUILD: 'captions_build'>
    """
    done = set(normalize_checkpoint(checkpoint))
    for step in STEPS:
        if step not in done:
            return step
    return None


def truncate_checkpoint(checkpoint: Iterable[str], from_step: Step) -> list[str]:
    """Drop from_step and everything after it; earlier history is preserved."""
    cutoff = STEPS.index(from_step)
    return [step.value for step in normalize_checkpoint(checkpoint) if STEPS.index(step) < cutoff]


def steps_from(from_step: Step) -> list[Step]:
    """Steps from from_step (inclusive) to the end of the pipeline."""
    return list(STEPS[STEPS.index(from_step):])


def compute_progress(checkpoint: Iterable[str]) -> int:
    """Progress as completed-steps/7, reaching exactly 100 once Finalize is done."""
    completed = len(normalize_checkpoint(checkpoint))
    if completed >= len(STEPS):
        return 100
    return completed * 100 // len(STEPS)
