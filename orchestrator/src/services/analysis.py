"""
SonarQube client used by the SonarQube Analysis step.
"""

import logging
import os
import random
from typing import Optional

import httpx
from pydantic import BaseModel

from orchestrator.src.config import get_settings, Settings
from orchestrator.src.errors import CollaboratorUnavailable, StepFailure
from orchestrator.src.services.commands import CommandTimeout, run_command

logger = logging.getLogger(__name__)

METRIC_KEYS = "bugs,vulnerabilities,code_smells,coverage,duplicated_lines_density,ncloc"

class AnalysisSummary(BaseModel):
    bugs: int = 0
    vulnerabilities: int = 0
    code_smells: int = 0
    coverage: float = 0.0
    duplications: float = 0.0
    lines_of_code: int = 0
    maintainability_rating: str = "N/A"
    security_rating: str = "N/A"

class AnalysisReport(BaseModel):
    project_key: str
    quality_gate: str = "NONE"
    summary: AnalysisSummary = AnalysisSummary()
    dashboard_url: Optional[str] = None

def project_key_for(repo_url: str, branch: str) -> str:
    repo_name = repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    return f"cicd-{repo_name}-{branch}"

def format_analysis_output(report: AnalysisReport) -> str:
    s = report.summary
    return (
        "SonarQube Analysis completed\n"
        f"Quality Gate: {report.quality_gate}\n"
        f"Bugs: {s.bugs} | Vulnerabilities: {s.vulnerabilities}\n"
        f"Code Smells: {s.code_smells} | Coverage: {s.coverage}%\n"
        f"Maintainability: {s.maintainability_rating} | Security: {s.security_rating}\n"
        f"Dashboard: {report.dashboard_url or 'N/A'}"
    )

def simulate_analysis(project_key: str, external_url: str = "http://localhost:9001") -> AnalysisReport:
    return AnalysisReport(
        project_key=project_key,
        quality_gate="OK",
        summary=AnalysisSummary(
            bugs=random.randint(0, 4),
            vulnerabilities=random.randint(0, 2),
            code_smells=random.randint(10, 59),
            coverage=random.randint(65, 94),
            duplications=random.randint(2, 11),
            lines_of_code=random.randint(1000, 5999),
            maintainability_rating="A",
            security_rating="A",
        ),
        dashboard_url=f"{external_url}/dashboard?id={project_key}",
    )

class SonarQubeClient:
    def __init__(self, settings: Settings = None, transport: httpx.AsyncBaseTransport = None):
        settings = settings or get_settings()
        self.base_url = settings.sonar_url
        self.external_url = settings.sonar_external_url
        self.token = settings.sonar_token
        self.timeout = settings.http_timeout
        self.analysis_timeout = settings.build_timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        auth = (self.token, "") if self.token else None
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=auth,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _get(self, path: str, **params) -> dict:
        try:
            async with self._client() as client:
                response = await client.get(path, params=params)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            raise CollaboratorUnavailable(f"SonarQube request {path} failed: {e}")

    async def is_available(self) -> bool:
        try:
            data = await self._get("/api/system/status")
        except CollaboratorUnavailable as e:
            logger.warning(f"SonarQube not available: {e}")
            return False
        return data.get("status") == "UP"

    async def ensure_project(self, project_key: str, project_name: str):
        data = await self._get("/api/projects/search", projects=project_key)
        if data.get("components"):
            return

        try:
            async with self._client() as client:
                response = await client.post(
                    "/api/projects/create",
                    params={"project": project_key, "name": project_name},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise CollaboratorUnavailable(f"Failed to create SonarQube project {project_key}: {e}")
        logger.info(f"Created SonarQube project {project_key}")

    def _scanner_command(self, workdir: str, project_key: str):
        props = [
            f"-Dsonar.projectKey={project_key}",
            f"-Dsonar.host.url={self.base_url}",
        ]
        if self.token:
            props.append(f"-Dsonar.token={self.token}")

        if os.path.exists(os.path.join(workdir, "pom.xml")):
            return ["./mvnw", "sonar:sonar", "-q", *props]
        if os.path.exists(os.path.join(workdir, "build.gradle")):
            return ["./gradlew", "sonar", *props]
        return ["sonar-scanner", "-Dsonar.sources=.", *props]

    async def run_analysis(self, workdir: str, project_key: str) -> str:
        """Run the scanner matching the project's build tool."""
        args = self._scanner_command(workdir, project_key)
        try:
            result = await run_command(args, cwd=workdir, timeout=self.analysis_timeout)
        except CommandTimeout as e:
            raise StepFailure(f"SonarQube analysis failed: {e}")

        if not result.ok:
            raise StepFailure(f"SonarQube analysis failed: {result.stderr.strip() or result.stdout[-2000:]}")
        return result.stdout

    async def get_quality_gate_status(self, project_key: str) -> str:
        data = await self._get("/api/qualitygates/project_status", projectKey=project_key)
        return data.get("projectStatus", {}).get("status", "NONE")

    async def generate_report(self, project_key: str) -> AnalysisReport:
        data = await self._get(
            "/api/measures/component",
            component=project_key,
            metricKeys=METRIC_KEYS,
        )
        measures = {
            m["metric"]: m.get("value")
            for m in data.get("component", {}).get("measures", [])
        }

        summary = AnalysisSummary(
            bugs=int(measures.get("bugs") or 0),
            vulnerabilities=int(measures.get("vulnerabilities") or 0),
            code_smells=int(measures.get("code_smells") or 0),
            coverage=float(measures.get("coverage") or 0),
            duplications=float(measures.get("duplicated_lines_density") or 0),
            lines_of_code=int(measures.get("ncloc") or 0),
        )
        return AnalysisReport(
            project_key=project_key,
            quality_gate=await self.get_quality_gate_status(project_key),
            summary=summary,
            dashboard_url=f"{self.external_url}/dashboard?id={project_key}",
        )
