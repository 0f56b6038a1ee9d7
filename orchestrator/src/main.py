"""
PipelineX Orchestrator - Main entry point.

Wires the store, deployment lock, runner, rollback coordinator, trigger intake
and git poller, then forwards lifecycle events to Redis until interrupted.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Optional

from orchestrator.src.config import get_settings, Settings
from orchestrator.src.db.database import build_engine, build_sessionmaker, init_db
from orchestrator.src.services.analysis import SonarQubeClient
from orchestrator.src.services.events import EventBus, RedisBroadcaster
from orchestrator.src.services.github import GitHubClient
from orchestrator.src.services.lock import DeploymentLock
from orchestrator.src.services.poller import GitPoller
from orchestrator.src.services.registry import RunRegistry
from orchestrator.src.services.remote import RemoteDeployer, SimulatedRemoteDeployer
from orchestrator.src.services.rollback import RollbackCoordinator
from orchestrator.src.services.runner import PipelineRunner
from orchestrator.src.services.security import ScanServiceClient
from orchestrator.src.services.steps import RealStepExecutor, SimulatedStepExecutor
from orchestrator.src.services.store import PipelineStore
from orchestrator.src.services.triggers import TriggerService

logger = logging.getLogger(__name__)

@dataclass
class Orchestrator:
    settings: Settings
    store: PipelineStore
    lock: DeploymentLock
    events: EventBus
    runner: PipelineRunner
    rollbacks: RollbackCoordinator
    triggers: TriggerService
    poller: GitPoller
    broadcaster: Optional[RedisBroadcaster] = None

    async def shutdown(self):
        await self.poller.stop()
        await self.runner.shutdown()

def build_orchestrator(settings: Settings = None, session_factory=None) -> Orchestrator:
    """Assemble every component for the configured pipeline mode."""
    settings = settings or get_settings()
    if session_factory is None:
        session_factory = build_sessionmaker(build_engine(settings.database_url))

    store = PipelineStore(session_factory)
    lock = DeploymentLock()
    events = EventBus(maxsize=settings.event_queue_size)

    if settings.pipeline_mode == "real":
        deployer = RemoteDeployer(settings=settings)
        executor = RealStepExecutor(
            deployer,
            SonarQubeClient(settings),
            ScanServiceClient(settings),
            settings=settings,
        )
    else:
        deployer = SimulatedRemoteDeployer()
        executor = SimulatedStepExecutor(
            app_name=settings.app_name,
            sonar_external_url=settings.sonar_external_url,
        )

    runner = PipelineRunner(
        store,
        executor,
        lock,
        events,
        registry=RunRegistry(),
        app_name=settings.app_name,
        timeout=settings.pipeline_timeout,
    )
    rollbacks = RollbackCoordinator(
        store,
        deployer,
        lock,
        events,
        health_attempts=settings.rollback_health_attempts,
        health_interval=settings.rollback_health_interval,
    )
    triggers = TriggerService(store, runner, webhook_secret=settings.github_webhook_secret)
    poller = GitPoller.from_settings(settings, store, runner, GitHubClient(settings))

    return Orchestrator(
        settings=settings,
        store=store,
        lock=lock,
        events=events,
        runner=runner,
        rollbacks=rollbacks,
        triggers=triggers,
        poller=poller,
        broadcaster=RedisBroadcaster(events, redis_url=settings.redis_url),
    )

async def serve(settings: Settings = None):
    settings = settings or get_settings()

    logger.info("Starting PipelineX Orchestrator")
    logger.info(f"Pipeline mode: {settings.pipeline_mode}")
    logger.info(f"Redis URL: {settings.redis_url}")

    engine = build_engine(settings.database_url)
    await init_db(engine)
    orchestrator = build_orchestrator(settings, build_sessionmaker(engine))

    if settings.git_poll_enabled:
        await orchestrator.poller.start()
    else:
        logger.info("Git polling disabled (GIT_POLL_ENABLED=false)")

    try:
        await orchestrator.broadcaster.run()
    finally:
        logger.info("Shutting down PipelineX Orchestrator")
        await orchestrator.shutdown()
        await engine.dispose()

def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Orchestrator stopped")

if __name__ == "__main__":
    main()
