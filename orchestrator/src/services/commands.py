"""
Run local commands (git, build tool, docker, ssh) without blocking the event loop.
"""

import asyncio
import logging
from typing import List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

class CommandResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

class CommandTimeout(Exception):
    """Raised when a command exceeds its timeout; the process is killed."""
    pass

async def run_command(
    args: List[str],
    cwd: Optional[str] = None,
    timeout: float = 300,
) -> CommandResult:
    """
    Run a command and capture its output.
    Raises CommandTimeout if it does not finish within `timeout` seconds.
    """
    logger.debug(f"Running {args[0]} in {cwd or '.'}")
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise CommandTimeout(f"{args[0]} timed out after {timeout}s")

    return CommandResult(
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
        exit_code=process.returncode,
    )
