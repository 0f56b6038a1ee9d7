"""Tests for the pipeline runner: terminal states, cancellation and lock release."""

import asyncio

import pytest

from orchestrator.src.errors import LockBusy, StepFailure
from orchestrator.src.models.pipeline import LockOperation, PipelineStatus, StepName, StepStatus, STEPS
from orchestrator.src.services.runner import PipelineRunner
from orchestrator.src.services.steps import SimulatedStepExecutor, StepExecutor
from orchestrator.tests.helpers import REPO_URL, event_names

class ScriptedExecutor(SimulatedStepExecutor):
    """Simulated executor with hooks to fail or pause on a given step."""

    def __init__(self, fail_on=None, error=None):
        self.fail_on = fail_on
        self.error = error or StepFailure("boom")
        self.on_step = None
        self.executed = []
        super().__init__(min_delay=0, max_delay=0)

    async def execute(self, step, pipeline):
        self.executed.append(step)
        if self.on_step is not None:
            await self.on_step(step)
        if step == self.fail_on:
            raise self.error
        return await super().execute(step, pipeline)

def make_runner(store, lock, events, executor=None, timeout=900):
    return PipelineRunner(store, executor or ScriptedExecutor(), lock, events, timeout=timeout)

@pytest.mark.asyncio
async def test_successful_run_executes_every_step(store, lock, events):
    runner = make_runner(store, lock, events)
    pipeline = await store.create_pipeline(REPO_URL, "master", "abc1234", "manual")

    status = await runner.run(pipeline.id)

    assert status == PipelineStatus.SUCCESS
    assert not lock.held
    assert runner.running_pipelines() == []

    loaded, steps = await runner.get_run(pipeline.id)
    assert loaded.status == PipelineStatus.SUCCESS
    assert loaded.started_at is not None
    assert loaded.sonar_quality_gate == "OK"
    assert loaded.pentest_status in ("critical", "warning", "passed")
    assert [s.step_name for s in steps] == [step.value for step in STEPS]
    assert all(s.status == StepStatus.SUCCESS for s in steps)

    deployments = await store.list_deployments()
    assert len(deployments) == 1
    assert deployments[0].docker_image == "bfb-management:abc1234"
    assert deployments[0].pipeline_id == pipeline.id

    names = event_names(events)
    assert names[0] == "pipeline_started"
    assert names[-1] == "pipeline_completed"
    assert names.count("step_started") == len(STEPS)
    assert names.count("step_completed") == len(STEPS)

@pytest.mark.asyncio
async def test_step_failure_stops_the_run(store, lock, events):
    executor = ScriptedExecutor(fail_on=StepName.BUILD, error=StepFailure("mvnw package failed"))
    runner = make_runner(store, lock, events, executor)
    pipeline = await store.create_pipeline(REPO_URL, "master", "abc1234", "manual")

    status = await runner.run(pipeline.id)

    assert status == PipelineStatus.FAILED
    assert executor.executed == [StepName.CLONE, StepName.TEST, StepName.BUILD]
    assert not lock.held

    loaded, steps = await runner.get_run(pipeline.id)
    assert loaded.error_message == "mvnw package failed"
    assert [(s.step_name, s.status) for s in steps] == [
        ("Clone Repository", StepStatus.SUCCESS),
        ("Run Tests", StepStatus.SUCCESS),
        ("Build Package", StepStatus.FAILED),
    ]
    assert steps[-1].output == "mvnw package failed"
    assert await store.list_deployments() == []

    names = event_names(events)
    assert "step_failed" in names
    assert names[-1] == "pipeline_failed"

@pytest.mark.asyncio
async def test_unexpected_exception_fails_and_releases_lock(store, lock, events):
    executor = ScriptedExecutor(fail_on=StepName.DEPLOY, error=RuntimeError("socket closed"))
    runner = make_runner(store, lock, events, executor)
    pipeline = await store.create_pipeline(REPO_URL, "master", None, "manual")

    status = await runner.run(pipeline.id)

    assert status == PipelineStatus.FAILED
    assert not lock.held
    assert (await store.get_pipeline(pipeline.id)).error_message == "socket closed"

@pytest.mark.asyncio
async def test_cancel_between_steps_prevents_next_step(store, lock, events):
    executor = ScriptedExecutor()
    runner = make_runner(store, lock, events, executor)
    pipeline = await store.create_pipeline(REPO_URL, "master", None, "manual")

    async def cancel_during_tests(step):
        if step == StepName.TEST:
            assert runner.cancel(pipeline.id)

    executor.on_step = cancel_during_tests
    status = await runner.run(pipeline.id)

    assert status == PipelineStatus.CANCELLED
    assert executor.executed == [StepName.CLONE, StepName.TEST]
    assert not lock.held

    loaded, steps = await runner.get_run(pipeline.id)
    assert loaded.error_message == "Pipeline cancelled by user"
    assert [s.status for s in steps] == [StepStatus.SUCCESS, StepStatus.SUCCESS]
    assert event_names(events)[-1] == "pipeline_cancelled"

@pytest.mark.asyncio
async def test_timeout_ends_cancelled_not_failed(store, lock, events):
    executor = ScriptedExecutor()
    runner = make_runner(store, lock, events, executor, timeout=0.05)
    pipeline = await store.create_pipeline(REPO_URL, "master", None, "manual")

    async def slow_clone(step):
        if step == StepName.CLONE:
            await asyncio.sleep(0.2)

    executor.on_step = slow_clone
    status = await runner.run(pipeline.id)

    assert status == PipelineStatus.CANCELLED
    assert executor.executed == [StepName.CLONE]
    assert not lock.held
    assert (await store.get_pipeline(pipeline.id)).error_message.startswith("Pipeline timeout: exceeded")

@pytest.mark.asyncio
async def test_lock_busy_fails_run_immediately(store, lock, events):
    runner = make_runner(store, lock, events)
    lock.acquire(LockOperation.ROLLBACK, "rollback-1")
    pipeline = await store.create_pipeline(REPO_URL, "master", None, "manual")

    with pytest.raises(LockBusy):
        await runner.start(pipeline.id)

    loaded = await store.get_pipeline(pipeline.id)
    assert loaded.status == PipelineStatus.FAILED
    assert "rollback" in loaded.error_message
    assert lock.status().operation == LockOperation.ROLLBACK
    assert lock.status().owner_id == "rollback-1"
    assert event_names(events) == ["pipeline_failed"]

@pytest.mark.asyncio
async def test_second_pipeline_rejected_while_first_runs(store, lock, events):
    runner = make_runner(store, lock, events)
    first = await store.create_pipeline(REPO_URL, "master", "aaa1111", "manual")
    second = await store.create_pipeline(REPO_URL, "master", "bbb2222", "manual")

    task = await runner.start(first.id)
    assert runner.is_running(first.id)
    with pytest.raises(LockBusy):
        await runner.start(second.id)

    assert await task == PipelineStatus.SUCCESS
    assert (await store.get_pipeline(second.id)).status == PipelineStatus.FAILED
    assert not lock.held

@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_runs(store, lock, events):
    executor = ScriptedExecutor()
    runner = make_runner(store, lock, events, executor)
    pipeline = await store.create_pipeline(REPO_URL, "master", None, "manual")

    async def hang(step):
        await asyncio.sleep(30)

    executor.on_step = hang
    await runner.start(pipeline.id)
    await asyncio.sleep(0.05)
    await runner.shutdown()

    assert not lock.held
    assert (await store.get_pipeline(pipeline.id)).status == PipelineStatus.CANCELLED

@pytest.mark.asyncio
async def test_get_run_unknown_pipeline(store, lock, events):
    runner = make_runner(store, lock, events)
    assert await runner.get_run(404) == (None, [])

def test_executor_must_cover_every_step():
    class Partial(StepExecutor):
        mode = "partial"

        def handlers(self):
            return {StepName.CLONE: None}

    with pytest.raises(TypeError) as exc:
        Partial()
    assert "Security Scan" in str(exc.value)

@pytest.mark.asyncio
async def test_cancel_before_first_step_releases_lock(store, lock, events):
    runner = make_runner(store, lock, events)
    pipeline = await store.create_pipeline(REPO_URL, "master", None, "manual")

    task = await runner.start(pipeline.id)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert not lock.held
    assert runner.running_pipelines() == []

    await runner.shutdown()
    loaded = await store.get_pipeline(pipeline.id)
    assert loaded.status == PipelineStatus.CANCELLED
    assert loaded.error_message == "Pipeline cancelled before it started"
    assert event_names(events)[-1] == "pipeline_cancelled"

@pytest.mark.asyncio
async def test_shutdown_right_after_start_releases_lock(store, lock, events):
    runner = make_runner(store, lock, events)
    pipeline = await store.create_pipeline(REPO_URL, "master", None, "manual")

    await runner.start(pipeline.id)
    await runner.shutdown()

    assert not lock.held
    assert (await store.get_pipeline(pipeline.id)).status == PipelineStatus.CANCELLED

    # A later trigger is not blocked
    second = await store.create_pipeline(REPO_URL, "master", None, "manual")
    assert await runner.run(second.id) == PipelineStatus.SUCCESS

@pytest.mark.asyncio
async def test_deployment_records_commit(store, lock, events):
    runner = make_runner(store, lock, events)
    pipeline = await store.create_pipeline(
        REPO_URL, "master", "abc1234", "poll:alice", commit_message="Fix login redirect"
    )

    await runner.run(pipeline.id)

    deployment = (await store.list_deployments())[0]
    assert deployment.commit_hash == "abc1234"
    assert deployment.commit_message == "Fix login redirect"
