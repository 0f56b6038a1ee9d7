"""
Remote deployment over SSH to the single production host.

Container lifecycle, health checks, logs and image transfer. Every value
interpolated into a remote shell command is quoted, and image references are
validated against IMAGE_PATTERN first.
"""

import asyncio
import logging
import os
import re
import shlex

from orchestrator.src.config import get_settings, Settings
from orchestrator.src.errors import (
    InvalidImageFormat,
    OrchestratorError,
    RemoteCommandFailure,
    RemoteConnectionFailure,
)
from orchestrator.src.services.commands import CommandResult, CommandTimeout, run_command

logger = logging.getLogger(__name__)

IMAGE_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+:[A-Za-z0-9_.-]+$")

# ssh exits 255 when the connection itself fails
SSH_CONNECTION_ERROR = 255

def validate_image_reference(image: str) -> str:
    """Return the image if it is a plain name:tag reference, else raise InvalidImageFormat."""
    if not isinstance(image, str) or not IMAGE_PATTERN.match(image):
        raise InvalidImageFormat(image)
    return image

class SSHCommandChannel:
    """Executes commands on the production host through the OpenSSH client."""

    def __init__(self, settings: Settings = None):
        settings = settings or get_settings()
        self.host = settings.vm_host
        self.user = settings.vm_user
        self.port = settings.vm_ssh_port
        self.key_path = settings.ssh_key_path
        self.connect_timeout = settings.ssh_connect_timeout
        self.timeout = settings.remote_command_timeout

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def _options(self):
        return [
            "-i", self.key_path,
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=no",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]

    async def _run(self, args, description: str) -> CommandResult:
        if not self.host:
            raise RemoteConnectionFailure("SSH connection failed: VM_HOST is not configured")
        try:
            result = await run_command(args, timeout=self.timeout)
        except CommandTimeout as e:
            raise RemoteConnectionFailure(f"SSH connection failed: {e}")
        except OSError as e:
            raise RemoteConnectionFailure(f"SSH connection failed: {e}")

        if result.exit_code == SSH_CONNECTION_ERROR:
            raise RemoteConnectionFailure(f"SSH connection failed: {result.stderr.strip()}")
        if not result.ok:
            raise RemoteCommandFailure(description, result.exit_code, result.stderr)
        return result

    async def execute(self, command: str) -> CommandResult:
        logger.debug(f"Executing on {self.host}: {command}")
        args = ["ssh", "-p", str(self.port), *self._options(), self.target, command]
        return await self._run(args, command)

    async def upload(self, local_path: str, remote_dir: str = "/tmp") -> str:
        """Copy a file to the host with scp. Returns the remote path."""
        remote_path = f"{remote_dir}/{os.path.basename(local_path)}"
        args = [
            "scp", "-P", str(self.port), *self._options(),
            local_path, f"{self.target}:{remote_path}",
        ]
        await self._run(args, f"scp {local_path}")
        return remote_path

class RemoteDeployer:
    def __init__(self, channel=None, settings: Settings = None):
        settings = settings or get_settings()
        self.channel = channel or SSHCommandChannel(settings)
        self.container_name = settings.container_name
        self.app_port = settings.app_port
        self.health_url = settings.health_url

    def _run_container_command(self, image: str) -> str:
        name = shlex.quote(self.container_name)
        image = shlex.quote(validate_image_reference(image))
        port = int(self.app_port)
        return (
            f"docker stop {name} || true; "
            f"docker rm {name} || true; "
            f"docker run -d --name {name} -p {port}:{port} "
            f"--restart unless-stopped {image}"
        )

    async def deploy(self, image: str) -> CommandResult:
        """Replace the running container with one started from `image`."""
        logger.info(f"Deploying {image} to {self.container_name}")
        return await self.channel.execute(self._run_container_command(image))

    async def upload(self, archive_path: str) -> str:
        return await self.channel.upload(archive_path)

    async def deploy_with_image(self, image: str, archive_path: str) -> CommandResult:
        """Load an image archive already transferred to the host, then deploy it."""
        validate_image_reference(image)
        remote_archive = shlex.quote(archive_path)
        load = await self.channel.execute(
            f"docker load -i {remote_archive} && rm -f {remote_archive}"
        )
        run = await self.deploy(image)
        return CommandResult(
            stdout=load.stdout + run.stdout,
            stderr=load.stderr + run.stderr,
            exit_code=run.exit_code,
        )

    async def rollback(self, image: str) -> CommandResult:
        logger.info(f"Rolling back {self.container_name} to {image}")
        return await self.channel.execute(self._run_container_command(image))

    async def image_exists(self, image: str) -> bool:
        image = shlex.quote(validate_image_reference(image))
        result = await self.channel.execute(
            f"docker image inspect {image} > /dev/null 2>&1 && echo present || echo missing"
        )
        return result.stdout.strip() == "present"

    async def health_check(self) -> bool:
        """True when the health endpoint reports the application UP."""
        command = f"curl -sf {shlex.quote(self.health_url)} || echo unhealthy"
        try:
            result = await self.channel.execute(command)
        except OrchestratorError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return '"status":"UP"' in result.stdout

    async def get_container_status(self) -> str:
        name = shlex.quote(f"name={self.container_name}")
        try:
            result = await self.channel.execute(
                f"docker ps --filter {name} --format '{{{{.Status}}}}'"
            )
        except OrchestratorError as e:
            logger.error(f"Failed to get container status: {e}")
            return "error"
        return result.stdout.strip() or "not running"

    async def get_logs(self, lines: int = 50) -> str:
        name = shlex.quote(self.container_name)
        try:
            result = await self.channel.execute(f"docker logs {name} --tail {int(lines)} 2>&1")
        except OrchestratorError as e:
            return f"Error getting logs: {e}"
        return result.stdout

    async def test_connection(self) -> bool:
        try:
            result = await self.channel.execute('echo "OK"')
        except OrchestratorError as e:
            logger.error(f"SSH test failed: {e}")
            return False
        return result.stdout.strip() == "OK"

class SimulatedRemoteDeployer:
    """Stands in for the production host in simulate mode."""

    def __init__(self, delay: float = 0.5):
        self.delay = delay
        self.current_image = None

    async def _pause(self):
        await asyncio.sleep(self.delay)

    async def deploy(self, image: str) -> CommandResult:
        validate_image_reference(image)
        await self._pause()
        self.current_image = image
        return CommandResult(stdout=f"Container deployed and running: {image}\n")

    async def upload(self, archive_path: str) -> str:
        return f"/tmp/{os.path.basename(archive_path)}"

    async def deploy_with_image(self, image: str, archive_path: str) -> CommandResult:
        return await self.deploy(image)

    async def rollback(self, image: str) -> CommandResult:
        return await self.deploy(image)

    async def image_exists(self, image: str) -> bool:
        validate_image_reference(image)
        return True

    async def health_check(self) -> bool:
        return True

    async def get_container_status(self) -> str:
        return "Up (simulated)" if self.current_image else "not running"

    async def get_logs(self, lines: int = 50) -> str:
        return "Started Application (simulated)\n"

    async def test_connection(self) -> bool:
        return True
