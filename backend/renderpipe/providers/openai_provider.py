"""OpenAI-compatible HTTP provider for speech, transcription and images.

Talks to any server exposing the OpenAI audio/images REST endpoints. Transient
failures (HTTP 429, 5xx, connection errors) are retried with exponential
backoff at this layer; anything that still fails is surfaced as a
CapabilityError and the orchestrator treats it as a plain step failure.
"""

import base64
import logging
from pathlib import Path
from typing import Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from renderpipe.config import ProvidersConfig
from renderpipe.errors import CapabilityError
from renderpipe.providers.base import ImageSynthesizer, SpeechSynthesizer, Transcriber
from renderpipe.schemas.media import Transcript, WordTiming

logger = logging.getLogger(__name__)


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying."""
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    # Connection resets, read timeouts, DNS hiccups
    if isinstance(exc, httpx.TransportError):
        return True
    return False


class OpenAIProvider(SpeechSynthesizer, Transcriber, ImageSynthesizer):
    """One HTTP client backing three capabilities."""

    def __init__(self, config: ProvidersConfig):
        if not config.api_key:
            raise CapabilityError(
                "providers.api_key is not set. Set RENDERPIPE_PROVIDERS__API_KEY "
                "or enable dry_run for cost-free renders.",
                capability="openai",
            )
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=httpx.Timeout(self.config.request_timeout_seconds, connect=30.0),
            )
        return self._client

    async def _post(self, capability: str, url: str, **kwargs) -> httpx.Response:
        @retry(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=1, min=2, max=30) + wait_random(0, 2),
            retry=retry_if_exception(_is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _call() -> httpx.Response:
            response = await self.client.post(url, **kwargs)
            logger.debug(f"POST {url} -> HTTP {response.status_code}")
            response.raise_for_status()
            return response

        try:
            return await _call()
        except httpx.HTTPStatusError as e:
            body = e.response.text[:300]
            raise CapabilityError(
                f"{capability} request failed: HTTP {e.response.status_code} {body}",
                capability=capability,
            ) from e
        except httpx.HTTPError as e:
            raise CapabilityError(f"{capability} request failed: {e}", capability=capability) from e

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        response = await self._post(
            "speech",
            "/audio/speech",
            json={
                "model": self.config.tts_model,
                "input": text,
                "voice": voice or self.config.default_voice,
                "response_format": "mp3",
            },
        )
        if not response.content:
            raise CapabilityError("speech returned an empty body", capability="speech")
        return response.content

    async def transcribe(self, audio_path: Path) -> Transcript:
        audio = audio_path.read_bytes()
        response = await self._post(
            "transcription",
            "/audio/transcriptions",
            data={
                "model": self.config.transcription_model,
                "response_format": "verbose_json",
                "timestamp_granularities[]": "word",
            },
            files={"file": (audio_path.name, audio, "audio/mpeg")},
        )
        try:
            data = response.json()
        except ValueError as e:
            raise CapabilityError("transcription returned invalid JSON", capability="transcription") from e
        words = [
            WordTiming(word=w["word"], start=float(w["start"]), end=float(w["end"]))
            for w in data.get("words") or []
        ]
        return Transcript(text=data.get("text", ""), words=words)

    async def generate(self, prompt: str, size: str) -> bytes:
        response = await self._post(
            "image",
            "/images/generations",
            json={
                "model": self.config.image_model,
                "prompt": prompt,
                "size": size,
                "n": 1,
                "response_format": "b64_json",
            },
        )
        try:
            b64 = response.json()["data"][0]["b64_json"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CapabilityError("image response had no image data", capability="image") from e
        return base64.b64decode(b64)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
