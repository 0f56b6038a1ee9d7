"""
Roll production back to the last validated forward deployment.
"""

import asyncio
import logging
import uuid
from typing import List, Optional, Tuple

from orchestrator.src.errors import HealthCheckExhausted, LockBusy, NoRollbackTarget, StepFailure
from orchestrator.src.models.pipeline import DeploymentInfo, LockOperation, RollbackResult
from orchestrator.src.services.events import EventBus
from orchestrator.src.services.health import wait_until_healthy
from orchestrator.src.services.lock import DeploymentLock
from orchestrator.src.services.remote import validate_image_reference
from orchestrator.src.services.store import PipelineStore

logger = logging.getLogger(__name__)

def select_rollback_target(
    deployments: List[DeploymentInfo],
) -> Tuple[Optional[DeploymentInfo], DeploymentInfo]:
    """
    Pick (current, target) from deployments ordered newest first.

    current: newest success that has not been rolled back.
    target: newest success other than current that is not itself a rollback.
    """
    successes = [d for d in deployments if d.status == "success"]
    current = next((d for d in successes if d.rolled_back_at is None), None)

    for deployment in successes:
        if current is not None and deployment.id == current.id:
            continue
        if deployment.is_rollback:
            continue
        return current, deployment

    raise NoRollbackTarget("No previous deployment to rollback to")

def container_intentionally_absent(status: str) -> bool:
    return status == "not running" or "stopped" in status.lower()

class RollbackCoordinator:
    def __init__(
        self,
        store: PipelineStore,
        deployer,
        lock: DeploymentLock,
        events: EventBus,
        health_attempts: int = 9,
        health_interval: float = 10.0,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.deployer = deployer
        self.lock = lock
        self.events = events
        self.health_attempts = health_attempts
        self.health_interval = health_interval
        self.sleep = sleep

    async def rollback(self, run_id=None) -> RollbackResult:
        """
        Switch production to the rollback target.
        Raises LockBusy, NoRollbackTarget or InvalidImageFormat before any
        remote action; StepFailure subclasses if the switch does not come up.
        """
        run_id = run_id or f"rollback-{uuid.uuid4().hex[:8]}"

        try:
            self.lock.acquire(LockOperation.ROLLBACK, run_id)
        except LockBusy as e:
            self.events.publish("rollback_failed", {"id": run_id, "error": str(e)}, self._channel(run_id))
            raise

        try:
            # Current and target are read while holding the lock
            deployments = await self.store.list_deployments()
            current, target = select_rollback_target(deployments)
            image = validate_image_reference(target.docker_image)

            self.events.publish("rollback_started", {"id": run_id, "version": image}, self._channel(run_id))
            logger.info(f"Rollback {run_id}: {current.docker_image if current else 'nothing'} -> {image}")

            output = await self._switch(image)
            deployment = await self.store.record_rollback(
                current_id=current.id if current else None,
                pipeline_id=target.pipeline_id,
                docker_image=image,
                commit_hash=target.commit_hash,
                commit_message=target.commit_message,
            )
        except Exception as e:
            logger.error(f"Rollback {run_id} failed: {e}")
            self.events.publish("rollback_failed", {"id": run_id, "error": str(e)}, self._channel(run_id))
            raise
        finally:
            self.lock.release()

        self.events.publish("rollback_completed", {"id": run_id, "version": image}, self._channel(run_id))
        return RollbackResult(
            success=True,
            image=image,
            deployment_id=deployment.id,
            rolled_back_from=deployment.rolled_back_from,
            output=output,
        )

    @staticmethod
    def _channel(run_id):
        # Rollbacks requested from a pipeline also notify that pipeline's subscribers
        return run_id if isinstance(run_id, int) else None

    async def _switch(self, image: str) -> str:
        if not await self.deployer.image_exists(image):
            raise StepFailure(f"Image {image} is not present on the production host")

        result = await self.deployer.rollback(image)

        outcome = await wait_until_healthy(
            self.deployer.health_check,
            attempts=self.health_attempts,
            interval=self.health_interval,
            sleep=self.sleep,
            label="Rollback health check",
        )
        if outcome.healthy:
            return result.stdout

        status = await self.deployer.get_container_status()
        if container_intentionally_absent(status):
            logger.info("Container stopped - rollback completed (no previous version)")
            return result.stdout

        raise HealthCheckExhausted(
            f"Health check failed after rollback to {image} ({outcome.attempts} attempts)",
            attempts=outcome.attempts,
        )
