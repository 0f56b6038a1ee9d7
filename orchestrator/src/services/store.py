"""
Persist pipeline, step and deployment state to the database.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from orchestrator.src.models.db import Pipeline, PipelineLog, Deployment
from orchestrator.src.models.pipeline import (
    PipelineInfo,
    PipelineStatus,
    StepLog,
    StepStatus,
    DeploymentInfo,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

class PipelineStore:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # Pipelines

    async def create_pipeline(
        self,
        repo_url: str,
        branch: str,
        commit_hash: Optional[str],
        trigger_type: str,
        commit_message: Optional[str] = None,
    ) -> PipelineInfo:
        async with self.session_factory() as session:
            pipeline = Pipeline(
                repo_url=repo_url,
                branch=branch,
                commit_hash=commit_hash,
                commit_message=commit_message,
                trigger_type=trigger_type,
                status=PipelineStatus.PENDING.value,
                created_at=datetime.now(timezone.utc),
            )
            session.add(pipeline)
            await session.commit()
            await session.refresh(pipeline)
            logger.info(f"Created pipeline {pipeline.id} for {repo_url}@{branch} ({trigger_type})")
            return PipelineInfo.model_validate(pipeline)

    async def get_pipeline(self, pipeline_id: int) -> Optional[PipelineInfo]:
        async with self.session_factory() as session:
            pipeline = await session.get(Pipeline, pipeline_id)
            return PipelineInfo.model_validate(pipeline) if pipeline else None

    async def list_pipelines(
        self,
        limit: int = 20,
        offset: int = 0,
        status: Optional[str] = None,
    ) -> List[PipelineInfo]:
        query = select(Pipeline).order_by(Pipeline.created_at.desc(), Pipeline.id.desc())
        if status:
            query = query.where(Pipeline.status == status)
        query = query.limit(limit).offset(offset)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [PipelineInfo.model_validate(p) for p in result.scalars().all()]

    async def get_pentest_result(self, pipeline_id: int) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            pipeline = await session.get(Pipeline, pipeline_id)
            return pipeline.pentest_result if pipeline else None

    async def update_pipeline(self, pipeline_id: int, **values):
        """Set arbitrary pipeline columns (analysis and security summaries)."""
        if not values:
            return
        async with self.session_factory() as session:
            await session.execute(
                update(Pipeline).where(Pipeline.id == pipeline_id).values(**values)
            )
            await session.commit()

    async def mark_running(self, pipeline_id: int):
        await self.update_pipeline(
            pipeline_id,
            status=PipelineStatus.RUNNING.value,
            started_at=datetime.now(timezone.utc),
        )
        logger.info(f"Updated pipeline {pipeline_id} status to running")

    async def finish_pipeline(
        self,
        pipeline_id: int,
        status: PipelineStatus,
        error_message: Optional[str] = None,
    ) -> bool:
        """Record a terminal status. Returns False if the run was already terminal."""
        terminal = [s.value for s in TERMINAL_STATUSES]
        async with self.session_factory() as session:
            result = await session.execute(
                update(Pipeline)
                .where(Pipeline.id == pipeline_id)
                .where(Pipeline.status.not_in(terminal))
                .values(
                    status=status.value,
                    error_message=error_message,
                    completed_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

        if result.rowcount == 0:
            logger.warning(f"Pipeline {pipeline_id} already terminal, ignoring {status.value}")
            return False
        logger.info(f"Updated pipeline {pipeline_id} status to {status.value}")
        return True

    # Step logs

    async def start_step(self, pipeline_id: int, step_name: str):
        async with self.session_factory() as session:
            session.add(PipelineLog(
                pipeline_id=pipeline_id,
                step_name=step_name,
                status=StepStatus.RUNNING.value,
                started_at=datetime.now(timezone.utc),
            ))
            await session.commit()

    async def finish_step(self, pipeline_id: int, step_name: str, status: StepStatus, output: str):
        async with self.session_factory() as session:
            await session.execute(
                update(PipelineLog)
                .where(PipelineLog.pipeline_id == pipeline_id)
                .where(PipelineLog.step_name == step_name)
                .where(PipelineLog.status == StepStatus.RUNNING.value)
                .values(status=status.value, output=output, completed_at=datetime.now(timezone.utc))
            )
            await session.commit()
        logger.debug(f"Updated step {step_name} of pipeline {pipeline_id} to {status.value}")

    async def get_steps(self, pipeline_id: int) -> List[StepLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PipelineLog)
                .where(PipelineLog.pipeline_id == pipeline_id)
                .order_by(PipelineLog.id)
            )
            return [StepLog.model_validate(s) for s in result.scalars().all()]

    # Deployments

    async def list_deployments(
        self,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[DeploymentInfo]:
        """Deployments newest first."""
        query = select(Deployment).order_by(Deployment.deployed_at.desc(), Deployment.id.desc())
        if status:
            query = query.where(Deployment.status == status)
        if limit:
            query = query.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [DeploymentInfo.model_validate(d) for d in result.scalars().all()]

    async def record_deployment(
        self,
        pipeline_id: int,
        docker_image: str,
        commit_hash: Optional[str] = None,
        commit_message: Optional[str] = None,
    ) -> DeploymentInfo:
        """Append a successful forward deployment, superseding the active one."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            await session.execute(
                update(Deployment)
                .where(Deployment.status == "success")
                .where(Deployment.rolled_back_at.is_(None))
                .values(rolled_back_at=now)
            )
            deployment = Deployment(
                pipeline_id=pipeline_id,
                docker_image=docker_image,
                commit_hash=commit_hash,
                commit_message=commit_message,
                status="success",
                is_rollback=False,
                deployed_at=now,
            )
            session.add(deployment)
            await session.commit()
            await session.refresh(deployment)
            logger.info(f"Recorded deployment {deployment.id} of {docker_image}")
            return DeploymentInfo.model_validate(deployment)

    async def record_rollback(
        self,
        current_id: Optional[int],
        pipeline_id: Optional[int],
        docker_image: str,
        commit_hash: Optional[str] = None,
        commit_message: Optional[str] = None,
    ) -> DeploymentInfo:
        """Stamp the current deployment as rolled back and append the rollback row."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            if current_id is not None:
                await session.execute(
                    update(Deployment)
                    .where(Deployment.id == current_id)
                    .values(rolled_back_at=now)
                )
            deployment = Deployment(
                pipeline_id=pipeline_id,
                docker_image=docker_image,
                commit_hash=commit_hash,
                commit_message=commit_message,
                status="success",
                is_rollback=True,
                rolled_back_from=current_id,
                deployed_at=now,
            )
            session.add(deployment)
            await session.commit()
            await session.refresh(deployment)
            logger.info(f"Recorded rollback deployment {deployment.id} to {docker_image}")
            return DeploymentInfo.model_validate(deployment)
