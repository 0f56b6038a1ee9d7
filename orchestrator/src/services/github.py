"""
GitHub service for webhook validation, commit lookups and repo checkout.
"""

import hmac
import hashlib
import logging
import os
import re
import shutil
from typing import Optional, Dict, Any, Tuple

import httpx

from orchestrator.src.config import get_settings, Settings
from orchestrator.src.errors import CommitNotFound, StepFailure
from orchestrator.src.models.pipeline import CommitInfo
from orchestrator.src.services.commands import CommandTimeout, run_command

logger = logging.getLogger(__name__)

REPO_URL_PATTERN = re.compile(r"github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")
DELETED_SHA = "0" * 40

def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Verify a GitHub webhook X-Hub-Signature-256 header."""
    if not secret:
        # Skip verification if no secret configured (development)
        return True
    if not signature:
        return False

    expected = "sha256=" + hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from GitHub push payload."""
    repo = payload.get("repository") or {}
    head_commit = payload.get("head_commit") or {}

    # Get branch from ref (refs/heads/main -> main)
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": payload.get("after") or head_commit.get("id", ""),
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": (payload.get("pusher") or {}).get("name", ""),
        "deleted": bool(payload.get("deleted")) or payload.get("after") == DELETED_SHA,
    }

def parse_repo_url(repo_url: str) -> Tuple[str, str]:
    """Return (owner, repo) for a GitHub URL."""
    match = REPO_URL_PATTERN.search(repo_url or "")
    if not match:
        raise ValueError(f"Not a GitHub repository URL: {repo_url!r}")
    return match.group(1), match.group(2)

class GitHubClient:
    """Commit source API."""

    def __init__(self, settings: Settings = None, transport: httpx.AsyncBaseTransport = None):
        settings = settings or get_settings()
        self.base_url = settings.github_api_url
        self.token = settings.github_token
        self.timeout = settings.http_timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "PipelineX-Poller",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def get_latest_commit(self, owner: str, repo: str, branch: str) -> CommitInfo:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            response = await client.get(f"/repos/{owner}/{repo}/commits/{branch}")

        if response.status_code in (404, 422):
            raise CommitNotFound(f"No commit found for {owner}/{repo}@{branch}")
        response.raise_for_status()

        data = response.json()
        commit = data.get("commit", {})
        return CommitInfo(
            sha=data["sha"],
            author=commit.get("author", {}).get("name", "unknown"),
            message=commit.get("message", ""),
        )

async def clone_repository(repo_url: str, branch: str, dest: str, timeout: int = 120) -> str:
    """
    Shallow clone one branch into `dest`, replacing anything already there.
    Returns the clone output.
    """
    cleanup_repo(dest)
    os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)

    try:
        result = await run_command(
            ["git", "clone", "--branch", branch, "--depth", "1", repo_url, dest],
            timeout=timeout,
        )
    except CommandTimeout:
        raise StepFailure("Repository clone timed out")

    if not result.ok:
        raise StepFailure(f"Failed to clone repository: {result.stderr.strip()}")

    # Maven wrapper loses its executable bit on some checkouts
    mvnw = os.path.join(dest, "mvnw")
    if os.path.exists(mvnw):
        os.chmod(mvnw, 0o755)

    return result.stdout + result.stderr

def cleanup_repo(repo_path: str):
    """Remove a workspace directory if it exists."""
    if repo_path and os.path.exists(repo_path):
        shutil.rmtree(repo_path, ignore_errors=True)
