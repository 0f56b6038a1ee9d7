from orchestrator.src.services.events import EventBus, RedisBroadcaster
from orchestrator.src.services.github import (
    GitHubClient,
    verify_signature,
    clone_repository,
    parse_webhook_payload,
    parse_repo_url,
    cleanup_repo,
)
from orchestrator.src.services.lock import DeploymentLock
from orchestrator.src.services.poller import GitPoller, WatchedRepo
from orchestrator.src.services.registry import CancelToken, RunRegistry
from orchestrator.src.services.remote import (
    RemoteDeployer,
    SimulatedRemoteDeployer,
    SSHCommandChannel,
    validate_image_reference,
)
from orchestrator.src.services.rollback import RollbackCoordinator, select_rollback_target
from orchestrator.src.services.runner import PipelineRunner
from orchestrator.src.services.steps import (
    StepExecutor,
    SimulatedStepExecutor,
    RealStepExecutor,
)
from orchestrator.src.services.store import PipelineStore
from orchestrator.src.services.triggers import TriggerService

__all__ = [
    "EventBus",
    "RedisBroadcaster",
    "GitHubClient",
    "verify_signature",
    "clone_repository",
    "parse_webhook_payload",
    "parse_repo_url",
    "cleanup_repo",
    "DeploymentLock",
    "GitPoller",
    "WatchedRepo",
    "CancelToken",
    "RunRegistry",
    "RemoteDeployer",
    "SimulatedRemoteDeployer",
    "SSHCommandChannel",
    "validate_image_reference",
    "RollbackCoordinator",
    "select_rollback_target",
    "PipelineRunner",
    "StepExecutor",
    "SimulatedStepExecutor",
    "RealStepExecutor",
    "PipelineStore",
    "TriggerService",
]
