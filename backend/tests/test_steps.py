"""Individual step behaviour: reuse of present outputs, concurrency, partial failure."""

import asyncio

import pytest

from renderpipe.config import DEFAULT_IMAGE_CONCURRENCY, Settings
from renderpipe.errors import ArtifactMissingError, CapabilityError, CapabilityTimeoutError
from renderpipe.orchestrator.state import Step
from renderpipe.pipeline import captions, images, music, speech, transcription
from renderpipe.pipeline.base import StepContext
from renderpipe.providers.dry_run import DryRunImages
from renderpipe.schemas.media import Transcript

from conftest import build_plan


class CountingImages(DryRunImages):
    def __init__(self, fail_on: str = None, delay: float = 0.0):
        super().__init__()
        self.prompts: list[str] = []
        self.fail_on = fail_on
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def generate(self, prompt: str, size: str) -> bytes:
        self.prompts.append(prompt)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_on and self.fail_on in prompt:
                raise CapabilityError("content policy rejection", capability="image")
            return await super().generate(prompt, size)
        finally:
            self.active -= 1


async def _context(runtime, plan, step: Step, settings=None) -> StepContext:
    plan_id = await runtime.store.create_plan(plan)
    run = await runtime.store.create_run(plan_id)
    return StepContext(
        run_id=run.id,
        step=step,
        plan=plan,
        paths=runtime.file_manager.run_paths(run.id),
        caps=runtime.capabilities,
        settings=settings or runtime.settings,
        run_log=runtime.run_log,
    )


class TestImageSynthesis:
    async def test_only_missing_images_are_generated(self, runtime, plan):
        ctx = await _context(runtime, plan, Step.IMAGE_SYNTHESIS)
        for idx in (0, 2):
            ctx.paths.scene_image(idx).write_bytes(b"existing")
        provider = CountingImages()
        runtime.capabilities.images = provider

        result = await images.run(ctx)

        assert len(provider.prompts) == 1
        assert "octopus drawing number 1" in provider.prompts[0]
        assert ctx.paths.scene_image(0).read_bytes() == b"existing"
        assert len(result.artifacts["scene_images"]) == 3

    async def test_concurrency_is_capped(self, runtime, settings):
        capped = settings.model_copy(update={"render": settings.render.model_copy(update={"image_concurrency": 2})})
        ctx = await _context(runtime, build_plan(6), Step.IMAGE_SYNTHESIS, settings=capped)
        provider = CountingImages(delay=0.01)
        runtime.capabilities.images = provider

        await images.run(ctx)
        assert len(provider.prompts) == 6
        assert provider.max_active == 2

    async def test_failure_keeps_successful_images(self, runtime, plan):
        ctx = await _context(runtime, plan, Step.IMAGE_SYNTHESIS)
        runtime.capabilities.images = CountingImages(fail_on="number 1")

        with pytest.raises(CapabilityError, match="content policy"):
            await images.run(ctx)
        assert ctx.paths.scene_image(0).exists()
        assert ctx.paths.scene_image(2).exists()
        assert not ctx.paths.scene_image(1).exists()

    def test_prompt_composition(self):
        prompt = images.build_prompt("noir comic", "a detective in the rain")
        assert prompt.startswith("noir comic. a detective in the rain. vertical 9:16")
        assert images.build_prompt(None, "x").startswith("x. ")


class TestAudioSteps:
    async def test_speech_falls_back_to_target_durations(self, runtime, plan):
        ctx = await _context(runtime, plan, Step.SPEECH_SYNTHESIS)
        result = await speech.run(ctx)

        timeline = ctx.paths.timeline.read_text()
        assert '"end": 12.0' in timeline
        assert ctx.paths.voice_over.read_bytes().count(b"DRYRUN-AUDIO") == 3
        assert result.artifacts["voice_over"].endswith("audio/vo_full.mp3")

    async def test_transcription_requires_voice_over(self, runtime, plan):
        ctx = await _context(runtime, plan, Step.TRANSCRIPTION_ALIGNMENT)
        with pytest.raises(ArtifactMissingError, match="vo_full.mp3"):
            await transcription.run(ctx)

    async def test_captions_from_dry_run_transcript(self, runtime, plan):
        ctx = await _context(runtime, plan, Step.SPEECH_SYNTHESIS)
        await speech.run(ctx)
        await transcription.run(ctx)
        transcript = Transcript.model_validate_json(ctx.paths.timestamps.read_text())
        assert transcript.words[0].word == "Scene"

        await captions.run(ctx)
        document = ctx.paths.captions.read_text()
        assert "Dialogue:" in document
        assert "{\\c&H0000E4FF&}Scene{\\c}" in document

    async def test_music_mix_without_library_uses_narration(self, runtime, plan):
        ctx = await _context(runtime, plan, Step.SPEECH_SYNTHESIS)
        await speech.run(ctx)
        result = await music.run(ctx)
        assert result.artifacts["music_track"] is None
        assert ctx.paths.mixed_audio.read_bytes() == ctx.paths.voice_over.read_bytes()

    async def test_music_mix_picks_first_track(self, runtime, plan, settings):
        library = settings.render.music_library_dir
        library.mkdir(parents=True)
        (library / "b_theme.mp3").write_bytes(b"music")
        (library / "a_theme.wav").write_bytes(b"music")
        (library / "notes.txt").write_text("not audio")

        ctx = await _context(runtime, plan, Step.SPEECH_SYNTHESIS)
        await speech.run(ctx)
        result = await music.run(ctx)
        assert result.artifacts["music_track"] == "a_theme.wav"
        assert ctx.paths.mixed_audio.read_bytes().startswith(b"DRYRUN-MIX music=a_theme.wav")


class TestStepContext:
    async def test_call_times_out(self, runtime, plan):
        ctx = await _context(runtime, plan, Step.VIDEO_ENCODE)
        with pytest.raises(CapabilityTimeoutError, match="encoder call timed out"):
            await ctx.call(asyncio.sleep(1), capability="encoder", timeout=0.01)


def test_invalid_image_concurrency_falls_back():
    for value in (0, -2, "many"):
        assert Settings(render={"image_concurrency": value}).render.image_concurrency == DEFAULT_IMAGE_CONCURRENCY
    assert Settings(render={"image_concurrency": 5}).render.image_concurrency == 5
