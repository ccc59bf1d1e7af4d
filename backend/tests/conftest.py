"""Shared fixtures: a temporary database, dry-run settings and a wired runtime."""

import pytest

from renderpipe.config import Settings
from renderpipe.db import build_engine, build_session_factory, init_database
from renderpipe.orchestrator.runtime import build_runtime
from renderpipe.schemas.plan import PlanSpec, SceneSpec


def build_plan(scene_count: int = 3) -> PlanSpec:
    return PlanSpec(
        title="Why octopuses have three hearts",
        voice="alloy",
        style_prompt="flat pastel illustration",
        scenes=[
            SceneSpec(
                idx=i,
                narration_text=f"Scene {i} explains one surprising fact",
                visual_prompt=f"An octopus drawing number {i}",
                effect="slow_zoom_in",
                duration_target_sec=4.0,
            )
            for i in range(scene_count)
        ],
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        storage={
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'renderpipe.db'}",
            "artifacts_dir": tmp_path / "artifacts",
        },
        render={"music_library_dir": tmp_path / "music"},
        dry_run={"enabled": True},
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.storage.database_url)
    await init_database(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def runtime(settings, session_factory):
    runtime = build_runtime(settings, session_factory=session_factory)
    yield runtime
    await runtime.shutdown()


@pytest.fixture
def plan():
    return build_plan()


@pytest.fixture
async def plan_id(runtime, plan):
    return await runtime.store.create_plan(plan)
