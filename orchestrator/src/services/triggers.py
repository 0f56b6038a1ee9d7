"""
Manual and webhook trigger intake.

Validates the request, creates the pipeline record and hands it to the runner.
"""

import logging
from typing import Any, Dict, Optional

from orchestrator.src.errors import ValidationError
from orchestrator.src.models.pipeline import PipelineInfo
from orchestrator.src.services.github import parse_webhook_payload, verify_signature

logger = logging.getLogger(__name__)

class TriggerService:
    def __init__(self, store, runner, webhook_secret: str = ""):
        self.store = store
        self.runner = runner
        self.webhook_secret = webhook_secret

    async def trigger_manual(
        self,
        repo_url: str,
        branch: str = "master",
        commit_hash: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> PipelineInfo:
        """Create and start a pipeline. LockBusy propagates to the caller."""
        if not repo_url or not repo_url.strip():
            raise ValidationError("repo_url is required")
        if not branch or not branch.strip():
            raise ValidationError("branch is required")

        trigger_type = f"manual:{requested_by}" if requested_by else "manual"
        pipeline = await self.store.create_pipeline(
            repo_url=repo_url.strip(),
            branch=branch.strip(),
            commit_hash=commit_hash or None,
            trigger_type=trigger_type,
        )
        await self.runner.start(pipeline.id)
        return pipeline

    async def trigger_webhook(
        self,
        event: Optional[str],
        payload: Dict[str, Any],
        body: Optional[bytes] = None,
        signature: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Handle a GitHub webhook delivery."""
        if self.webhook_secret and not verify_signature(body or b"", signature, self.webhook_secret):
            raise ValidationError("Invalid webhook signature")

        if event == "ping":
            return {"status": "pong", "message": "Webhook configured successfully"}

        if event != "push":
            logger.info(f"Ignoring event: {event}")
            return {"status": "ignored", "event": event}

        data = parse_webhook_payload(payload)
        if data["deleted"]:
            logger.info("Ignoring branch/tag deletion")
            return {"status": "ignored", "reason": "Deletion event"}

        if not data["clone_url"]:
            raise ValidationError("Invalid payload: missing repository URL")
        if not data["branch"]:
            raise ValidationError("Invalid payload: missing ref")

        logger.info(
            f"Triggering pipeline for {data['repo_full_name']}@{data['branch']} "
            f"({data['commit_sha'][:7]}) pushed by {data['pusher']}"
        )
        pipeline = await self.store.create_pipeline(
            repo_url=data["clone_url"],
            branch=data["branch"],
            commit_hash=data["commit_sha"] or None,
            trigger_type=f"webhook:github:{data['pusher']}",
            commit_message=data["commit_message"] or None,
        )
        await self.runner.start(pipeline.id)

        return {
            "status": "triggered",
            "pipeline_id": pipeline.id,
            "repo": data["repo_full_name"],
            "branch": data["branch"],
            "commit": data["commit_sha"],
        }
