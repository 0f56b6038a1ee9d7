from orchestrator.src.models.pipeline import (
    StepName,
    STEPS,
    PipelineStatus,
    TERMINAL_STATUSES,
    StepStatus,
    LockOperation,
    PipelineInfo,
    StepLog,
    DeploymentInfo,
    StepResult,
    CommitInfo,
    LockStatus,
    RollbackResult,
)

__all__ = [
    "StepName",
    "STEPS",
    "PipelineStatus",
    "TERMINAL_STATUSES",
    "StepStatus",
    "LockOperation",
    "PipelineInfo",
    "StepLog",
    "DeploymentInfo",
    "StepResult",
    "CommitInfo",
    "LockStatus",
    "RollbackResult",
]
