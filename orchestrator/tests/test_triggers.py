"""Tests for manual and webhook trigger intake."""

import hashlib
import hmac
import json

import pytest

from orchestrator.src.errors import LockBusy, ValidationError
from orchestrator.src.models.pipeline import PipelineStatus
from orchestrator.src.services.triggers import TriggerService
from orchestrator.tests.helpers import REPO_URL

PUSH = {
    "ref": "refs/heads/master",
    "after": "9f1c2ab3d4e5f60718293a4b5c6d7e8f90a1b2c3",
    "repository": {
        "full_name": "acme/bfb-management",
        "clone_url": REPO_URL,
    },
    "head_commit": {"id": "9f1c2ab3d4e5f60718293a4b5c6d7e8f90a1b2c3", "message": "Fix login"},
    "pusher": {"name": "octocat"},
}

class FakeRunner:
    def __init__(self, busy=False):
        self.busy = busy
        self.started = []

    async def start(self, pipeline_id):
        if self.busy:
            raise LockBusy("pipeline", "1", 40)
        self.started.append(pipeline_id)

def sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

@pytest.mark.asyncio
async def test_manual_trigger_starts_pipeline(store):
    runner = FakeRunner()
    pipeline = await TriggerService(store, runner).trigger_manual(REPO_URL, "dev")

    assert pipeline.trigger_type == "manual"
    assert pipeline.branch == "dev"
    assert pipeline.status == PipelineStatus.PENDING
    assert runner.started == [pipeline.id]

@pytest.mark.asyncio
async def test_manual_trigger_records_requester(store):
    pipeline = await TriggerService(store, FakeRunner()).trigger_manual(REPO_URL, requested_by="alice")
    assert pipeline.trigger_type == "manual:alice"

@pytest.mark.asyncio
async def test_manual_trigger_requires_repo(store):
    runner = FakeRunner()

    with pytest.raises(ValidationError):
        await TriggerService(store, runner).trigger_manual("  ")

    assert await store.list_pipelines() == []
    assert runner.started == []

@pytest.mark.asyncio
async def test_manual_trigger_lock_busy_propagates(store):
    with pytest.raises(LockBusy):
        await TriggerService(store, FakeRunner(busy=True)).trigger_manual(REPO_URL)

@pytest.mark.asyncio
async def test_webhook_push_triggers_pipeline(store):
    runner = FakeRunner()
    result = await TriggerService(store, runner).trigger_webhook("push", PUSH)

    assert result["status"] == "triggered"
    assert result["branch"] == "master"
    pipeline = await store.get_pipeline(result["pipeline_id"])
    assert pipeline.trigger_type == "webhook:github:octocat"
    assert pipeline.commit_hash == PUSH["after"]
    assert pipeline.commit_message == "Fix login"
    assert runner.started == [pipeline.id]

@pytest.mark.asyncio
async def test_webhook_ping(store):
    result = await TriggerService(store, FakeRunner()).trigger_webhook("ping", {"zen": "Keep it simple."})
    assert result["status"] == "pong"

@pytest.mark.asyncio
async def test_webhook_ignores_other_events(store):
    result = await TriggerService(store, FakeRunner()).trigger_webhook("issues", {})
    assert result == {"status": "ignored", "event": "issues"}

@pytest.mark.asyncio
async def test_webhook_ignores_branch_deletion(store):
    runner = FakeRunner()
    payload = dict(PUSH, after="0" * 40, deleted=True)

    result = await TriggerService(store, runner).trigger_webhook("push", payload)

    assert result["status"] == "ignored"
    assert runner.started == []

@pytest.mark.asyncio
async def test_webhook_missing_repository_rejected(store):
    payload = dict(PUSH, repository={})

    with pytest.raises(ValidationError):
        await TriggerService(store, FakeRunner()).trigger_webhook("push", payload)
    assert await store.list_pipelines() == []

@pytest.mark.asyncio
async def test_webhook_signature_checked_when_secret_set(store):
    body = json.dumps(PUSH).encode()
    service = TriggerService(store, FakeRunner(), webhook_secret="s3cret")

    with pytest.raises(ValidationError):
        await service.trigger_webhook("push", PUSH, body=body, signature="sha256=deadbeef")
    with pytest.raises(ValidationError):
        await service.trigger_webhook("push", PUSH, body=body, signature=None)

    result = await service.trigger_webhook("push", PUSH, body=body, signature=sign(body, "s3cret"))
    assert result["status"] == "triggered"
