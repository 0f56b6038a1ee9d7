"""
Database models for pipelines, step logs and deployments.
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Boolean, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from orchestrator.src.db.database import Base

class Pipeline(Base):
    __tablename__ = "pipelines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_url = Column(String(500), nullable=False)
    branch = Column(String(255), nullable=False)
    commit_hash = Column(String(40))
    commit_message = Column(Text)
    status = Column(String(50), default="pending", nullable=False)
    trigger_type = Column(String(255), default="manual", nullable=False)
    error_message = Column(Text)
    sonar_project_key = Column(String(255))
    sonar_quality_gate = Column(String(50))
    pentest_status = Column(String(50))
    pentest_result = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    logs = relationship("PipelineLog", back_populates="pipeline", order_by="PipelineLog.id")

class PipelineLog(Base):
    __tablename__ = "pipeline_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False)
    step_name = Column(String(100), nullable=False)
    status = Column(String(50), nullable=False)
    output = Column(Text)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    pipeline = relationship("Pipeline", back_populates="logs")

class Deployment(Base):
    __tablename__ = "deployments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id", ondelete="SET NULL"))
    docker_image = Column(String(255), nullable=False)
    commit_hash = Column(String(40))
    commit_message = Column(Text)
    status = Column(String(50), nullable=False)
    is_rollback = Column(Boolean, default=False, nullable=False)
    rolled_back_from = Column(Integer, ForeignKey("deployments.id"))
    rolled_back_at = Column(DateTime(timezone=True))
    deployed_at = Column(DateTime(timezone=True), nullable=False)
