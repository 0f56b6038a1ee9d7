"""
Pipeline, step and deployment models.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

class StepName(str, Enum):
    # Order is the execution order; dashboards key off the literal values.
    CLONE = "Clone Repository"
    TEST = "Run Tests"
    BUILD = "Build Package"
    ANALYSIS = "SonarQube Analysis"
    IMAGE_BUILD = "Build Docker Image"
    DEPLOY = "Deploy to VM"
    HEALTH_CHECK = "Health Check"
    SECURITY_SCAN = "Security Scan"

STEPS: List[StepName] = list(StepName)

class PipelineStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

TERMINAL_STATUSES = {
    PipelineStatus.SUCCESS,
    PipelineStatus.FAILED,
    PipelineStatus.CANCELLED,
}

class StepStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

class LockOperation(str, Enum):
    PIPELINE = "pipeline"
    ROLLBACK = "rollback"

class PipelineInfo(BaseModel):
    id: int
    repo_url: str
    branch: str
    commit_hash: Optional[str] = None
    commit_message: Optional[str] = None
    trigger_type: str
    status: PipelineStatus
    error_message: Optional[str] = None
    sonar_project_key: Optional[str] = None
    sonar_quality_gate: Optional[str] = None
    pentest_status: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class StepLog(BaseModel):
    step_name: str
    status: StepStatus
    output: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class DeploymentInfo(BaseModel):
    id: int
    pipeline_id: Optional[int] = None
    docker_image: str
    commit_hash: Optional[str] = None
    commit_message: Optional[str] = None
    status: str
    is_rollback: bool = False
    rolled_back_from: Optional[int] = None
    rolled_back_at: Optional[datetime] = None
    deployed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class StepResult(BaseModel):
    output: str
    # Pipeline columns to persist once the step succeeds
    updates: Dict[str, Any] = {}

class CommitInfo(BaseModel):
    sha: str
    author: str
    message: str = ""

class LockStatus(BaseModel):
    locked: bool
    operation: Optional[LockOperation] = None
    owner_id: Optional[str] = None
    elapsed_seconds: Optional[int] = None

class RollbackResult(BaseModel):
    success: bool
    image: str
    deployment_id: Optional[int] = None
    rolled_back_from: Optional[int] = None
    output: str = ""
