"""
Git poller - periodically checks watched branches for new commits.

Alternative to webhooks when the platform is not reachable from GitHub. The
first observation of a branch only records a baseline; a run is triggered
for each later change of the branch head.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from orchestrator.src.config import Settings
from orchestrator.src.errors import CommitNotFound, LockBusy, ValidationError
from orchestrator.src.models.pipeline import CommitInfo, PipelineInfo
from orchestrator.src.services.github import parse_repo_url

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL = 10.0

@dataclass
class WatchedRepo:
    url: str
    owner: str
    name: str
    branches: List[str] = field(default_factory=lambda: ["master"])

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def from_url(cls, url: str, branches: List[str]) -> "WatchedRepo":
        owner, name = parse_repo_url(url)
        return cls(url=url, owner=owner, name=name, branches=list(branches))

class GitPoller:
    def __init__(self, store, runner, github, repos: List[WatchedRepo] = None, interval: float = 60.0):
        self._check_interval(interval)
        self.store = store
        self.runner = runner
        self.github = github
        self.repos = repos or []
        self.interval = interval
        self.is_running = False
        self.last_checked_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._watermarks: Dict[Tuple[str, str], str] = {}
        self._watermark_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, store, runner, github) -> "GitPoller":
        repos = []
        if not settings.app_repo_url:
            return cls(store, runner, github, repos=repos, interval=settings.git_poll_interval)
        try:
            repos.append(WatchedRepo.from_url(settings.app_repo_url, settings.poll_branches))
        except ValueError as e:
            logger.error(f"Invalid APP_REPO_URL: {e}")
        return cls(store, runner, github, repos=repos, interval=settings.git_poll_interval)

    @staticmethod
    def _check_interval(interval: float):
        if interval is None or interval < MIN_POLL_INTERVAL:
            raise ValidationError(f"Interval must be at least {MIN_POLL_INTERVAL:g} seconds")

    def watermark(self, repo_url: str, branch: str) -> Optional[str]:
        return self._watermarks.get((repo_url, branch))

    async def start(self):
        if self.is_running:
            logger.warning("Git poller already running")
            return

        logger.info(f"Starting Git poller (interval: {self.interval:g}s)")
        for repo in self.repos:
            logger.info(f"Watching {repo.full_name} branches: {', '.join(repo.branches)}")

        self.is_running = True
        self._task = asyncio.create_task(self._loop(), name="git-poller")

    async def stop(self):
        task, self._task = self._task, None
        self.is_running = False
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Git poller stopped")

    async def set_interval(self, interval: float):
        """Change the interval, restarting the timer if it is running."""
        self._check_interval(interval)
        was_running = self.is_running
        await self.stop()
        self.interval = interval
        if was_running:
            await self.start()
        logger.info(f"Poll interval updated to {interval:g}s")

    async def force_check(self) -> Dict[str, Any]:
        logger.info("Force checking for new commits...")
        triggered = await self.check_for_new_commits()
        return {
            "checked": True,
            "repos": [repo.full_name for repo in self.repos],
            "triggered": [p.id for p in triggered],
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "poll_interval": self.interval,
            "repos": [
                {"name": repo.full_name, "branches": repo.branches}
                for repo in self.repos
            ],
            "last_commits": {
                f"{url}@{branch}": sha for (url, branch), sha in self._watermarks.items()
            },
            "last_checked_at": self.last_checked_at,
        }

    async def _loop(self):
        while True:
            try:
                await self.check_for_new_commits()
            except Exception:
                logger.exception("Git poller tick failed")
            await asyncio.sleep(self.interval)

    async def check_for_new_commits(self) -> List[PipelineInfo]:
        """One poll tick over every watched repo/branch. Returns triggered pipelines."""
        triggered = []
        self.last_checked_at = datetime.now(timezone.utc)

        for repo in self.repos:
            for branch in repo.branches:
                try:
                    pipeline = await self.check_branch(repo, branch)
                except CommitNotFound as e:
                    logger.debug(str(e))
                    continue
                except Exception as e:
                    logger.error(f"Error checking {repo.full_name}@{branch}: {e}")
                    continue
                if pipeline is not None:
                    triggered.append(pipeline)

        return triggered

    async def check_branch(self, repo: WatchedRepo, branch: str) -> Optional[PipelineInfo]:
        commit = await self.github.get_latest_commit(repo.owner, repo.name, branch)
        key = (repo.url, branch)

        async with self._watermark_lock:
            last_known = self._watermarks.get(key)
            self._watermarks[key] = commit.sha

        if last_known is None:
            logger.info(f"Registered current commit for {repo.full_name}@{branch}: {commit.sha[:7]}")
            return None
        if last_known == commit.sha:
            return None

        logger.info(
            f"New commit on {repo.full_name}@{branch}: {last_known[:7]} -> {commit.sha[:7]} "
            f"by {commit.author}: {commit.message.splitlines()[0] if commit.message else ''}"
        )
        return await self.trigger_pipeline(repo, branch, commit)

    async def trigger_pipeline(self, repo: WatchedRepo, branch: str, commit: CommitInfo) -> PipelineInfo:
        pipeline = await self.store.create_pipeline(
            repo_url=repo.url,
            branch=branch,
            commit_hash=commit.sha,
            trigger_type=f"poll:{commit.author}",
            commit_message=commit.message,
        )

        try:
            await self.runner.start(pipeline.id)
        except LockBusy as e:
            logger.warning(f"Pipeline {pipeline.id} for {commit.sha[:7]} not started: {e}")

        return pipeline
