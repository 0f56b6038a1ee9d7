"""
Pipeline runner - drives one run through the fixed step sequence.

pending -> running -> success | failed | cancelled

The deployment lock is taken before the run is scheduled and released on every
exit path before the terminal status is written. Cancellation (user request
or deadline) is checked between steps only.
"""

import asyncio
import logging
from typing import List, Optional, Set

from orchestrator.src.errors import (
    LockBusy,
    OrchestratorError,
    PipelineCancelled,
    PipelineTimeout,
)
from orchestrator.src.models.pipeline import (
    LockOperation,
    LockStatus,
    PipelineInfo,
    PipelineStatus,
    StepLog,
    StepName,
    StepStatus,
    STEPS,
)
from orchestrator.src.services.events import EventBus
from orchestrator.src.services.lock import DeploymentLock
from orchestrator.src.services.registry import CancelToken, RunRegistry
from orchestrator.src.services.steps import StepExecutor, image_for
from orchestrator.src.services.store import PipelineStore

logger = logging.getLogger(__name__)

class PipelineRunner:
    def __init__(
        self,
        store: PipelineStore,
        executor: StepExecutor,
        lock: DeploymentLock,
        events: EventBus,
        registry: RunRegistry = None,
        app_name: str = "bfb-management",
        timeout: float = 900,
    ):
        self.store = store
        self.executor = executor
        self.lock = lock
        self.events = events
        self.registry = registry or RunRegistry()
        self.app_name = app_name
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()
        self._cleanups: Set[asyncio.Task] = set()

    async def start(self, pipeline_id: int) -> asyncio.Task:
        """
        Take the deployment lock and schedule the run in the background.
        Raises LockBusy (after marking the pipeline failed) if the lock is held.
        """
        try:
            self.lock.acquire(LockOperation.PIPELINE, pipeline_id)
        except LockBusy as e:
            logger.warning(f"Pipeline {pipeline_id} rejected: {e}")
            await self.store.finish_pipeline(pipeline_id, PipelineStatus.FAILED, str(e))
            self.events.publish(
                "pipeline_failed",
                {"id": pipeline_id, "error": str(e), "status": PipelineStatus.FAILED.value},
                pipeline_id,
            )
            raise

        token = self.registry.register(pipeline_id)
        task = asyncio.create_task(self._execute(pipeline_id, token), name=f"pipeline-{pipeline_id}")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._reap(pipeline_id, t))
        return task

    async def run(self, pipeline_id: int) -> PipelineStatus:
        """Start a run and wait for its terminal status."""
        task = await self.start(pipeline_id)
        return await task

    def cancel(self, pipeline_id: int) -> bool:
        """Request cancellation; takes effect before the next step starts."""
        cancelled = self.registry.cancel(pipeline_id)
        if cancelled:
            logger.info(f"Cancellation requested for pipeline {pipeline_id}")
        return cancelled

    def is_running(self, pipeline_id: int) -> bool:
        return self.registry.is_running(pipeline_id)

    def running_pipelines(self) -> List[int]:
        return self.registry.running_ids()

    def lock_status(self) -> LockStatus:
        return self.lock.status()

    async def get_run(self, pipeline_id: int):
        """Return the pipeline and its step logs, or (None, [])."""
        pipeline = await self.store.get_pipeline(pipeline_id)
        if pipeline is None:
            return None, []
        steps: List[StepLog] = await self.store.get_steps(pipeline_id)
        return pipeline, steps

    async def shutdown(self):
        """Cancel in-flight runs and wait for them to release the lock."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.gather(*list(self._cleanups), return_exceptions=True)

    def _reap(self, pipeline_id: int, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() or not self.registry.is_running(pipeline_id):
            return

        # Cancelled before _execute entered its try block, so nothing released the lock
        self.registry.remove(pipeline_id)
        self.lock.release()
        logger.warning(f"Pipeline {pipeline_id} cancelled before it started")

        cleanup = asyncio.get_running_loop().create_task(self._finish_unstarted(pipeline_id))
        self._cleanups.add(cleanup)
        cleanup.add_done_callback(self._cleanups.discard)

    async def _finish_unstarted(self, pipeline_id: int):
        error = "Pipeline cancelled before it started"
        await self.store.finish_pipeline(pipeline_id, PipelineStatus.CANCELLED, error)
        self._publish_terminal(pipeline_id, PipelineStatus.CANCELLED, error)

    async def _execute(self, pipeline_id: int, token: CancelToken) -> PipelineStatus:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = loop.call_later(
            self.timeout,
            token.expire,
            f"Pipeline timeout: exceeded {self.timeout / 60:g} minutes",
        )

        status = PipelineStatus.FAILED
        error: Optional[str] = None
        interrupted = False

        try:
            pipeline = await self.store.get_pipeline(pipeline_id)
            if pipeline is None:
                raise OrchestratorError(f"Pipeline {pipeline_id} not found")

            await self.store.mark_running(pipeline_id)
            self.events.publish("pipeline_started", {"id": pipeline_id}, pipeline_id)
            logger.info(f"Pipeline {pipeline_id} started with {self.timeout:g}s timeout")

            for step in STEPS:
                if token.cancelled:
                    error_class = PipelineTimeout if token.timed_out else PipelineCancelled
                    raise error_class(token.reason)
                await self._run_step(pipeline, step)

            await self.store.record_deployment(
                pipeline_id,
                image_for(self.app_name, pipeline),
                commit_hash=pipeline.commit_hash,
                commit_message=pipeline.commit_message,
            )
            status = PipelineStatus.SUCCESS
        except PipelineCancelled as e:
            status, error = PipelineStatus.CANCELLED, str(e)
        except OrchestratorError as e:
            status, error = PipelineStatus.FAILED, str(e)
        except asyncio.CancelledError:
            interrupted = True
            status, error = PipelineStatus.CANCELLED, "Pipeline interrupted by shutdown"
        except Exception as e:
            logger.exception(f"Pipeline {pipeline_id} failed with exception")
            status, error = PipelineStatus.FAILED, str(e) or type(e).__name__
        finally:
            deadline.cancel()
            self.registry.remove(pipeline_id)
            self.lock.release()

        duration = round(loop.time() - started)
        if status == PipelineStatus.SUCCESS:
            logger.info(f"Pipeline {pipeline_id} completed in {duration}s")
        else:
            logger.error(f"Pipeline {pipeline_id} {status.value} after {duration}s: {error}")

        await self.store.finish_pipeline(pipeline_id, status, error)
        self._publish_terminal(pipeline_id, status, error)

        if interrupted:
            raise asyncio.CancelledError()
        return status

    async def _run_step(self, pipeline: PipelineInfo, step: StepName):
        logger.info(f"Executing step {step.value} of pipeline {pipeline.id}")
        self.events.publish("step_started", {"id": pipeline.id, "step": step.value}, pipeline.id)
        await self.store.start_step(pipeline.id, step.value)

        try:
            result = await self.executor.execute(step, pipeline)
        except Exception as e:
            message = str(e) or type(e).__name__
            await self.store.finish_step(pipeline.id, step.value, StepStatus.FAILED, message)
            self.events.publish(
                "step_failed",
                {"id": pipeline.id, "step": step.value, "error": message},
                pipeline.id,
            )
            logger.error(f"Step {step.value} of pipeline {pipeline.id} failed: {message}")
            raise

        if result.updates:
            await self.store.update_pipeline(pipeline.id, **result.updates)
        await self.store.finish_step(pipeline.id, step.value, StepStatus.SUCCESS, result.output)
        self.events.publish(
            "step_completed",
            {"id": pipeline.id, "step": step.value, "output": result.output},
            pipeline.id,
        )

    def _publish_terminal(self, pipeline_id: int, status: PipelineStatus, error: Optional[str]):
        if status == PipelineStatus.SUCCESS:
            self.events.publish("pipeline_completed", {"id": pipeline_id}, pipeline_id)
            return

        event = "pipeline_cancelled" if status == PipelineStatus.CANCELLED else "pipeline_failed"
        self.events.publish(
            event,
            {"id": pipeline_id, "error": error, "status": status.value},
            pipeline_id,
        )
