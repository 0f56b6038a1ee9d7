"""Tests for image validation, remote command construction and the SSH channel."""

import pytest

from orchestrator.src.config import Settings
from orchestrator.src.errors import (
    InvalidImageFormat,
    RemoteCommandFailure,
    RemoteConnectionFailure,
    ValidationError,
)
from orchestrator.src.services import remote
from orchestrator.src.services.commands import CommandResult, CommandTimeout
from orchestrator.src.services.remote import RemoteDeployer, SSHCommandChannel, validate_image_reference

SETTINGS = Settings(vm_host="10.0.0.5", vm_user="deploy", container_name="bfb-app", app_port=8080)

class FakeChannel:
    def __init__(self, stdout="", error=None):
        self.stdout = stdout
        self.error = error
        self.commands = []

    async def execute(self, command):
        self.commands.append(command)
        if self.error is not None:
            raise self.error
        return CommandResult(stdout=self.stdout)

    async def upload(self, local_path, remote_dir="/tmp"):
        self.commands.append(f"upload {local_path}")
        return f"{remote_dir}/image.tar"

@pytest.mark.parametrize("image", ["myapp:v1.2.3", "bfb-management:abc1234", "my_app:latest"])
def test_valid_image_references(image):
    assert validate_image_reference(image) == image

@pytest.mark.parametrize("image", ["myapp; rm -rf /", "myapp", "repo/app:v1", "app:v1 && reboot", "", ":v1"])
def test_invalid_image_references(image):
    with pytest.raises(ValidationError):
        validate_image_reference(image)

@pytest.mark.asyncio
async def test_invalid_image_never_reaches_channel():
    channel = FakeChannel()
    deployer = RemoteDeployer(channel, SETTINGS)

    with pytest.raises(InvalidImageFormat):
        await deployer.deploy("myapp; rm -rf /")
    with pytest.raises(InvalidImageFormat):
        await deployer.rollback("myapp")
    with pytest.raises(InvalidImageFormat):
        await deployer.image_exists("$(reboot):v1")

    assert channel.commands == []

@pytest.mark.asyncio
async def test_deploy_replaces_container():
    channel = FakeChannel(stdout="3f2a\n")
    await RemoteDeployer(channel, SETTINGS).deploy("bfb-management:v2")

    assert channel.commands == [
        "docker stop bfb-app || true; "
        "docker rm bfb-app || true; "
        "docker run -d --name bfb-app -p 8080:8080 --restart unless-stopped bfb-management:v2"
    ]

@pytest.mark.asyncio
async def test_deploy_with_image_loads_archive_first():
    channel = FakeChannel()
    await RemoteDeployer(channel, SETTINGS).deploy_with_image("bfb-management:v2", "/tmp/bfb-management-v2.tar")

    assert channel.commands[0] == "docker load -i /tmp/bfb-management-v2.tar && rm -f /tmp/bfb-management-v2.tar"
    assert channel.commands[1].endswith("bfb-management:v2")

@pytest.mark.asyncio
async def test_image_exists():
    assert await RemoteDeployer(FakeChannel(stdout="present\n"), SETTINGS).image_exists("app:v1")
    assert not await RemoteDeployer(FakeChannel(stdout="missing\n"), SETTINGS).image_exists("app:v1")

@pytest.mark.asyncio
async def test_health_check_reads_status():
    up = FakeChannel(stdout='{"status":"UP","components":{}}')
    assert await RemoteDeployer(up, SETTINGS).health_check()
    assert up.commands == ["curl -sf http://localhost:8080/actuator/health || echo unhealthy"]

    assert not await RemoteDeployer(FakeChannel(stdout="unhealthy\n"), SETTINGS).health_check()
    down = FakeChannel(error=RemoteConnectionFailure("SSH connection failed"))
    assert not await RemoteDeployer(down, SETTINGS).health_check()

@pytest.mark.asyncio
async def test_container_status():
    assert await RemoteDeployer(FakeChannel(stdout=""), SETTINGS).get_container_status() == "not running"
    assert await RemoteDeployer(FakeChannel(stdout="Up 2 minutes\n"), SETTINGS).get_container_status() == "Up 2 minutes"
    failing = FakeChannel(error=RemoteConnectionFailure("SSH connection failed"))
    assert await RemoteDeployer(failing, SETTINGS).get_container_status() == "error"

@pytest.mark.asyncio
async def test_ssh_channel_builds_command(monkeypatch):
    calls = []

    async def fake_run(args, cwd=None, timeout=300):
        calls.append(args)
        return CommandResult(stdout="OK\n")

    monkeypatch.setattr(remote, "run_command", fake_run)
    result = await SSHCommandChannel(SETTINGS).execute('echo "OK"')

    assert result.stdout == "OK\n"
    args = calls[0]
    assert args[0] == "ssh"
    assert "BatchMode=yes" in args
    assert args[-2:] == ["deploy@10.0.0.5", 'echo "OK"']

@pytest.mark.asyncio
async def test_ssh_exit_255_is_connection_failure(monkeypatch):
    async def fake_run(args, cwd=None, timeout=300):
        return CommandResult(stderr="ssh: connect to host 10.0.0.5 port 22: Connection refused", exit_code=255)

    monkeypatch.setattr(remote, "run_command", fake_run)
    with pytest.raises(RemoteConnectionFailure) as exc:
        await SSHCommandChannel(SETTINGS).execute("docker ps")
    assert "Connection refused" in str(exc.value)

@pytest.mark.asyncio
async def test_ssh_nonzero_exit_is_command_failure(monkeypatch):
    async def fake_run(args, cwd=None, timeout=300):
        return CommandResult(stderr="No such container: bfb-app", exit_code=1)

    monkeypatch.setattr(remote, "run_command", fake_run)
    with pytest.raises(RemoteCommandFailure) as exc:
        await SSHCommandChannel(SETTINGS).execute("docker logs bfb-app")
    assert exc.value.exit_code == 1

@pytest.mark.asyncio
async def test_ssh_timeout_is_connection_failure(monkeypatch):
    async def fake_run(args, cwd=None, timeout=300):
        raise CommandTimeout("ssh timed out after 300s")

    monkeypatch.setattr(remote, "run_command", fake_run)
    with pytest.raises(RemoteConnectionFailure):
        await SSHCommandChannel(SETTINGS).execute("docker ps")

@pytest.mark.asyncio
async def test_ssh_without_host_fails_fast():
    with pytest.raises(RemoteConnectionFailure):
        await SSHCommandChannel(Settings(vm_host="")).execute("docker ps")
