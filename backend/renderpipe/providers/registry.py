"""Provider registry for capability bundles.

Picks the live or dry-run bundle once, from configuration, at startup.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from renderpipe.orchestrator.state import Step
from renderpipe.providers.base import Capabilities, FaultInjector

if TYPE_CHECKING:
    from renderpipe.config import Settings

logger = logging.getLogger(__name__)


def build_fault_injector(settings: "Settings") -> FaultInjector:
    """Fault injection only ever applies to dry-run bundles.

    Raises:
        ValueError: If dry_run.fail_step names no known step.
    """
    fail_step: Optional[Step] = None
    if settings.dry_run.fail_step:
        fail_step = Step.parse(settings.dry_run.fail_step)
    return FaultInjector(fail_step=fail_step, step_delay_ms=settings.dry_run.step_delay_ms)


def get_capabilities(settings: "Settings") -> Capabilities:
    """Return the capability bundle selected by configuration.

    Routing logic:
    - dry_run.enabled → deterministic stand-ins with fault injection
    - otherwise       → OpenAI-compatible HTTP provider + ffmpeg encoder/inspector

    Args:
        settings: Application settings.

    Returns:
        Capabilities bundle ready for use by the pipeline steps.
    """
    if settings.dry_run.enabled:
        from renderpipe.providers.dry_run import (
            DryRunEncoder,
            DryRunImages,
            DryRunInspector,
            DryRunSpeech,
            DryRunTranscriber,
        )

        faults = build_fault_injector(settings)
        logger.info(
            "Using dry-run capabilities (fail_step=%s, step_delay_ms=%d)",
            faults.fail_step.display_name if faults.fail_step else None,
            faults.step_delay_ms,
        )
        return Capabilities(
            speech=DryRunSpeech(),
            transcriber=DryRunTranscriber(),
            images=DryRunImages(),
            encoder=DryRunEncoder(settings.output),
            inspector=DryRunInspector(width=settings.output.width, height=settings.output.height),
            faults=faults,
            dry_run=True,
        )

    from renderpipe.providers.ffmpeg_encoder import FFmpegEncoder, FFmpegInspector
    from renderpipe.providers.openai_provider import OpenAIProvider

    provider = OpenAIProvider(settings.providers)
    logger.debug("Using live capabilities at %s", settings.providers.base_url)
    return Capabilities(
        speech=provider,
        transcriber=provider,
        images=provider,
        encoder=FFmpegEncoder(settings.output),
        inspector=FFmpegInspector(),
        faults=FaultInjector(),
        dry_run=False,
    )
