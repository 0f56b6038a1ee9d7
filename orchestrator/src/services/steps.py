"""
Step executors - one handler per pipeline step.

Two implementations share the StepExecutor interface: SimulatedStepExecutor for
demos and tests without infrastructure, RealStepExecutor for production.
"""

import asyncio
import logging
import os
import random
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List

from orchestrator.src.config import get_settings, Settings
from orchestrator.src.errors import (
    CollaboratorUnavailable,
    HealthCheckExhausted,
    StepFailure,
)
from orchestrator.src.models.pipeline import PipelineInfo, StepName, StepResult
from orchestrator.src.services.analysis import (
    format_analysis_output,
    project_key_for,
    simulate_analysis,
)
from orchestrator.src.services.commands import CommandTimeout, run_command
from orchestrator.src.services.github import clone_repository
from orchestrator.src.services.health import wait_until_healthy
from orchestrator.src.services.security import (
    classify_security_status,
    generate_report,
    simulate_pentest,
)

logger = logging.getLogger(__name__)

StepHandler = Callable[[PipelineInfo], Awaitable[StepResult]]

def image_for(app_name: str, pipeline: PipelineInfo) -> str:
    return f"{app_name}:{pipeline.commit_hash or 'latest'}"

class StepExecutor(ABC):
    mode: str

    def __init__(self):
        self._handlers = self.handlers()
        missing = [step.value for step in StepName if step not in self._handlers]
        if missing:
            raise TypeError(f"{type(self).__name__} has no handler for: {', '.join(missing)}")

    @abstractmethod
    def handlers(self) -> Dict[StepName, StepHandler]:
        """Map every StepName to its handler."""

    async def execute(self, step: StepName, pipeline: PipelineInfo) -> StepResult:
        return await self._handlers[StepName(step)](pipeline)

class SimulatedStepExecutor(StepExecutor):
    mode = "simulate"

    def __init__(
        self,
        app_name: str = "bfb-management",
        min_delay: float = 1.0,
        max_delay: float = 3.0,
        sonar_external_url: str = "http://localhost:9001",
        sleep=asyncio.sleep,
    ):
        self.app_name = app_name
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.sonar_external_url = sonar_external_url
        self.sleep = sleep
        super().__init__()

    def handlers(self) -> Dict[StepName, StepHandler]:
        return {
            StepName.CLONE: self.clone,
            StepName.TEST: self.test,
            StepName.BUILD: self.build,
            StepName.ANALYSIS: self.analyze,
            StepName.IMAGE_BUILD: self.build_image,
            StepName.DEPLOY: self.deploy,
            StepName.HEALTH_CHECK: self.health_check,
            StepName.SECURITY_SCAN: self.security_scan,
        }

    async def execute(self, step: StepName, pipeline: PipelineInfo) -> StepResult:
        await self.sleep(random.uniform(self.min_delay, self.max_delay))
        return await super().execute(step, pipeline)

    async def clone(self, pipeline: PipelineInfo) -> StepResult:
        return StepResult(output=f"Cloned {pipeline.repo_url} (branch: {pipeline.branch})")

    async def test(self, pipeline: PipelineInfo) -> StepResult:
        return StepResult(output="Tests passed: 117/117")

    async def build(self, pipeline: PipelineInfo) -> StepResult:
        return StepResult(output=f"BUILD SUCCESS - {self.app_name}-0.0.1-SNAPSHOT.jar")

    async def analyze(self, pipeline: PipelineInfo) -> StepResult:
        project_key = project_key_for(pipeline.repo_url, pipeline.branch)
        report = simulate_analysis(project_key, self.sonar_external_url)
        return StepResult(
            output=format_analysis_output(report),
            updates={
                "sonar_project_key": project_key,
                "sonar_quality_gate": report.quality_gate,
            },
        )

    async def build_image(self, pipeline: PipelineInfo) -> StepResult:
        return StepResult(output=f"Built image: {image_for(self.app_name, pipeline)}")

    async def deploy(self, pipeline: PipelineInfo) -> StepResult:
        return StepResult(output="Container deployed and running on VM")

    async def health_check(self, pipeline: PipelineInfo) -> StepResult:
        return StepResult(output="Health check passed: HTTP 200 OK")

    async def security_scan(self, pipeline: PipelineInfo) -> StepResult:
        result = simulate_pentest("http://localhost:8080")
        return StepResult(
            output=generate_report(result),
            updates={
                "pentest_result": result.model_dump(mode="json"),
                "pentest_status": classify_security_status(result),
            },
        )

class RealStepExecutor(StepExecutor):
    mode = "real"

    def __init__(
        self,
        deployer,
        analysis,
        scanner,
        settings: Settings = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.deployer = deployer
        self.analysis = analysis
        self.scanner = scanner
        self.sleep = sleep
        super().__init__()

    def handlers(self) -> Dict[StepName, StepHandler]:
        return {
            StepName.CLONE: self.clone,
            StepName.TEST: self.test,
            StepName.BUILD: self.build,
            StepName.ANALYSIS: self.analyze,
            StepName.IMAGE_BUILD: self.build_image,
            StepName.DEPLOY: self.deploy,
            StepName.HEALTH_CHECK: self.health_check,
            StepName.SECURITY_SCAN: self.security_scan,
        }

    def workdir(self, pipeline: PipelineInfo) -> str:
        return os.path.join(self.settings.workspace_dir, f"pipeline-{pipeline.id}")

    def image(self, pipeline: PipelineInfo) -> str:
        return image_for(self.settings.app_name, pipeline)

    async def _local(self, args: List[str], timeout: int, cwd: str = None) -> str:
        try:
            result = await run_command(args, cwd=cwd, timeout=timeout)
        except CommandTimeout as e:
            raise StepFailure(str(e))
        if not result.ok:
            raise StepFailure(
                f"{' '.join(args[:2])} failed with code {result.exit_code}: "
                f"{result.stderr.strip() or result.stdout[-2000:]}"
            )
        return result.stdout

    async def clone(self, pipeline: PipelineInfo) -> StepResult:
        output = await clone_repository(
            pipeline.repo_url,
            pipeline.branch,
            self.workdir(pipeline),
            timeout=self.settings.clone_timeout,
        )
        return StepResult(output=f"Cloned {pipeline.repo_url} (branch: {pipeline.branch})\n{output}")

    async def test(self, pipeline: PipelineInfo) -> StepResult:
        output = await self._local(
            ["./mvnw", "test", "-q"],
            timeout=self.settings.build_timeout,
            cwd=self.workdir(pipeline),
        )
        return StepResult(output=f"Tests completed\n{output}")

    async def build(self, pipeline: PipelineInfo) -> StepResult:
        output = await self._local(
            ["./mvnw", "package", "-DskipTests", "-q"],
            timeout=self.settings.build_timeout,
            cwd=self.workdir(pipeline),
        )
        return StepResult(output=f"BUILD SUCCESS\n{output}")

    async def analyze(self, pipeline: PipelineInfo) -> StepResult:
        # Analysis outages never fail the run
        skipped = StepResult(output="SonarQube skipped (server not available)")
        if not await self.analysis.is_available():
            return skipped

        repo_name = pipeline.repo_url.rstrip("/").split("/")[-1].replace(".git", "")
        project_key = project_key_for(pipeline.repo_url, pipeline.branch)
        try:
            await self.analysis.ensure_project(project_key, repo_name)
            await self.analysis.run_analysis(self.workdir(pipeline), project_key)
            report = await self.analysis.generate_report(project_key)
        except CollaboratorUnavailable as e:
            logger.warning(f"SonarQube became unavailable during pipeline {pipeline.id}: {e}")
            return skipped

        return StepResult(
            output=format_analysis_output(report),
            updates={
                "sonar_project_key": project_key,
                "sonar_quality_gate": report.quality_gate,
            },
        )

    async def build_image(self, pipeline: PipelineInfo) -> StepResult:
        image = self.image(pipeline)
        output = await self._local(
            ["docker", "build", "-t", image, "."],
            timeout=self.settings.image_build_timeout,
            cwd=self.workdir(pipeline),
        )
        return StepResult(output=f"Built image: {image}\n{output}")

    async def deploy(self, pipeline: PipelineInfo) -> StepResult:
        image = self.image(pipeline)
        archive = os.path.join(self.settings.workspace_dir, f"{image.replace(':', '-')}.tar")
        os.makedirs(self.settings.workspace_dir, exist_ok=True)

        try:
            await self._local(
                ["docker", "save", image, "-o", archive],
                timeout=self.settings.build_timeout,
            )
            remote_archive = await self.deployer.upload(archive)
            result = await self.deployer.deploy_with_image(image, remote_archive)
        finally:
            if os.path.exists(archive):
                os.remove(archive)

        return StepResult(output=f"Deployed {image}\n{result.stdout}")

    async def health_check(self, pipeline: PipelineInfo) -> StepResult:
        attempts = self.settings.health_check_attempts
        interval = self.settings.health_check_interval

        outcome = await wait_until_healthy(
            self.deployer.health_check,
            attempts=attempts,
            interval=interval,
            sleep=self.sleep,
        )
        if outcome.healthy:
            return StepResult(
                output=f"Health check passed after {outcome.elapsed_seconds:.0f} seconds: Application is UP"
            )

        logs = await self.deployer.get_logs(30)
        raise HealthCheckExhausted(
            f"Health check failed after {outcome.elapsed_seconds:.0f} seconds. Container logs:\n{logs}",
            attempts=outcome.attempts,
            logs=logs,
        )

    async def security_scan(self, pipeline: PipelineInfo) -> StepResult:
        target = self.settings.scan_target_url
        try:
            result = await self.scanner.run_full_pentest(target, use_zap=True, quick_scan=True)
        except CollaboratorUnavailable as e:
            # Unlike analysis, a scan that cannot run fails the step
            raise StepFailure(str(e))

        return StepResult(
            output=generate_report(result),
            updates={
                "pentest_result": result.model_dump(mode="json"),
                "pentest_status": classify_security_status(result),
            },
        )
