"""Shared fixtures: temporary database, store, lock and event bus."""

import pytest
import pytest_asyncio

from orchestrator.src.db.database import build_engine, build_sessionmaker, init_db
from orchestrator.src.services.events import EventBus
from orchestrator.src.services.lock import DeploymentLock
from orchestrator.src.services.store import PipelineStore

@pytest_asyncio.fixture
async def store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipelinex.db'}")
    await init_db(engine)
    yield PipelineStore(build_sessionmaker(engine))
    await engine.dispose()

@pytest.fixture
def lock():
    return DeploymentLock()

@pytest.fixture
def events():
    return EventBus()

