"""CLI helpers and the in-process render path."""

import json

import pytest
import typer
from typer.testing import CliRunner

from renderpipe.cli.commands import (
    _get_status_color,
    _load_plan,
    _parse_uuid,
    _reconcile_interrupted,
    _with_dry_run,
    app,
)
from renderpipe.config import Settings
from renderpipe.orchestrator.state import RunStatus

PLAN = {
    "title": "Tiny plan",
    "scenes": [{"idx": 0, "narration_text": "Hello", "visual_prompt": "A wave", "duration_target_sec": 2}],
}


def test_load_plan_json_and_yaml(tmp_path):
    json_file = tmp_path / "plan.json"
    json_file.write_text(json.dumps(PLAN))
    yaml_file = tmp_path / "plan.yaml"
    yaml_file.write_text(
        "title: Tiny plan\n"
        "scenes:\n"
        "  - idx: 0\n"
        "    narration_text: Hello\n"
        "    visual_prompt: A wave\n"
        "    duration_target_sec: 2\n"
    )
    assert _load_plan(json_file) == _load_plan(yaml_file)


def test_dry_run_flags_override_settings():
    base = Settings()
    assert _with_dry_run(base, False, None, 0) is base

    overridden = _with_dry_run(base, False, "Video-Encode", 250)
    assert overridden.dry_run.enabled
    assert overridden.dry_run.fail_step == "Video-Encode"
    assert overridden.dry_run.step_delay_ms == 250
    assert not base.dry_run.enabled


def test_invalid_run_id_exits():
    with pytest.raises(typer.Exit):
        _parse_uuid("run-42")


def test_status_colors():
    assert _get_status_color("done") == "green"
    assert _get_status_color("quality_failed") == "red"
    assert _get_status_color("queued") == "dim"


def test_render_rejects_invalid_plan(tmp_path):
    plan_file = tmp_path / "plan.json"
    plan_file.write_text(json.dumps({"title": "No scenes", "scenes": []}))
    result = CliRunner().invoke(app, ["render", str(plan_file), "--dry-run"])
    assert result.exit_code == 1
    assert "Invalid plan file" in result.output


async def _stale_running_run(runtime, plan_id):
    run = await runtime.store.create_run(plan_id)
    await runtime.store.update(run.id, status="running", current_step="image_synthesis")
    return run


async def test_interrupted_run_is_settled_before_rendering(runtime, plan_id):
    stale = await _stale_running_run(runtime, plan_id)

    report = await _reconcile_interrupted(runtime)
    assert report.demoted == [stale.id]

    fresh = await runtime.orchestrator.submit(plan_id)
    assert runtime.orchestrator.queue.holder == fresh.id
    running = await runtime.store.run_ids_with_status(RunStatus.RUNNING)
    assert stale.id not in running
    await runtime.orchestrator.queue.join()

    assert (await runtime.store.snapshot(fresh.id)).status == "done"
    stale_final = await runtime.store.snapshot(stale.id)
    assert stale_final.status == "failed"
    assert stale_final.failed_step == "image_synthesis"


async def test_interrupted_run_is_requeued_when_configured(runtime, plan_id):
    runtime.settings.recovery.resume_interrupted = True
    stale = await _stale_running_run(runtime, plan_id)

    report = await _reconcile_interrupted(runtime)
    assert report.requeued == [stale.id]
    assert (await runtime.store.snapshot(stale.id)).status == "queued"
    # Left for the API server's queue, not started in-process
    assert runtime.orchestrator.queue.holder is None
