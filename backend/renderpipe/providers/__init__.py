"""Capability provider abstraction layer.

Steps talk to speech, transcription, image, encoder and inspector
capabilities through the interfaces in ``base``. A bundle is picked once
from configuration.

Usage:
    from renderpipe.providers import get_capabilities

    caps = get_capabilities(settings)
    audio = await caps.speech.synthesize(text, voice)
"""

from renderpipe.providers.base import Capabilities, FaultInjector
from renderpipe.providers.registry import get_capabilities

__all__ = ["Capabilities", "FaultInjector", "get_capabilities"]
