"""Startup reconciliation after a crash or restart."""

from renderpipe.orchestrator.recovery import INTERRUPTED_MESSAGE, reconcile_on_startup


async def _interrupted_run(runtime, plan_id, step="speech_synthesis", checkpoint=()):
    run = await runtime.store.create_run(plan_id)
    await runtime.store.update(
        run.id,
        status="running",
        current_step=step,
        checkpoint=list(checkpoint),
        progress=len(checkpoint) * 100 // 7,
    )
    paths = runtime.file_manager.run_paths(run.id)
    partial = paths.images_dir / ".scene_01.0badf00d.tmp.png"
    partial.write_bytes(b"half an image")
    return run, partial


async def test_running_run_is_demoted_to_failed(runtime, plan_id):
    run, partial = await _interrupted_run(
        runtime,
        plan_id,
        step="image_synthesis",
        checkpoint=["speech_synthesis", "transcription_alignment"],
    )

    report = await reconcile_on_startup(runtime.orchestrator)
    await runtime.run_log.flush()

    snapshot = await runtime.store.snapshot(run.id)
    assert report.demoted == [run.id]
    assert report.partials_removed == 1
    assert snapshot.status == "failed"
    assert snapshot.failed_step == "image_synthesis"
    assert snapshot.error_message == INTERRUPTED_MESSAGE
    assert snapshot.checkpoint == ["speech_synthesis", "transcription_alignment"]
    assert not partial.exists()
    assert runtime.orchestrator.queue.holder is None


async def test_demoted_run_resumes_on_retry(runtime, plan_id):
    run, _ = await _interrupted_run(runtime, plan_id)
    await reconcile_on_startup(runtime.orchestrator)

    await runtime.orchestrator.retry(run.id)
    await runtime.orchestrator.queue.join()

    snapshot = await runtime.store.snapshot(run.id)
    assert snapshot.status == "done"
    assert "Render started at Speech-Synthesis (attempt 2)" in [e.msg for e in snapshot.log]


async def test_resume_interrupted_requeues(runtime, plan_id):
    run, _ = await _interrupted_run(runtime, plan_id)

    report = await reconcile_on_startup(runtime.orchestrator, resume_interrupted=True)
    assert report.requeued == [run.id]
    assert report.queued == [run.id]

    await runtime.orchestrator.queue.join()
    assert (await runtime.store.snapshot(run.id)).status == "done"


async def test_queued_runs_restored_in_fifo_order(runtime, plan_id):
    runs = [await runtime.store.create_run(plan_id) for _ in range(3)]

    report = await reconcile_on_startup(runtime.orchestrator)
    assert report.queued == [r.id for r in runs]
    assert runtime.orchestrator.queue.holder == runs[0].id

    await runtime.orchestrator.queue.join()
    records = [await runtime.store.get_run(r.id) for r in runs]
    assert [r.status for r in records] == ["done", "done", "done"]
    for earlier, later in zip(records, records[1:]):
        assert earlier.finished_at <= later.started_at


async def test_restore_queue_disabled_only_repairs_state(runtime, plan_id):
    queued = await runtime.store.create_run(plan_id)
    run, _ = await _interrupted_run(runtime, plan_id)

    report = await reconcile_on_startup(runtime.orchestrator, restore_queue=False)
    assert report.demoted == [run.id]
    assert report.queued == [queued.id]
    assert runtime.orchestrator.queue.holder is None
    assert (await runtime.store.snapshot(queued.id)).status == "queued"
