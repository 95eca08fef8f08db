"""
Command Executor - run one shell command and always return a result.

Runner exceptions and timeouts are folded into the result, so callers treat
a crashed run and a failed run the same way.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from src.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass
class RawProcessResult:
    """What a process runner reports."""
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


@dataclass
class CommandResult:
    """Executor result for one command."""
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def combined_output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


class ProcessRunner(Protocol):
    """Raw process primitive."""

    async def run(
        self,
        command: str,
        cwd: Optional[str],
        env: Optional[dict[str, str]],
        timeout_ms: int,
    ) -> RawProcessResult:
        ...


class SubprocessRunner:
    """Run commands through ``<shell> -c`` with asyncio subprocesses."""

    def __init__(self, shell: str = "/bin/sh"):
        self.shell = shell

    async def run(
        self,
        command: str,
        cwd: Optional[str],
        env: Optional[dict[str, str]],
        timeout_ms: int,
    ) -> RawProcessResult:
        process_env = os.environ.copy()
        if env:
            process_env.update(env)

        process = await asyncio.create_subprocess_exec(
            self.shell,
            "-c",
            command,
            cwd=cwd,
            env=process_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            process.kill()
            stdout, stderr = await process.communicate()
            message = f"Command timed out after {timeout_ms}ms"
            return RawProcessResult(
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=(stderr.decode("utf-8", errors="replace") + "\n" + message).lstrip(),
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )

        return RawProcessResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode if process.returncode is not None else 1,
        )


class CommandExecutor:
    """Executes commands through a process runner with a default timeout."""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        default_timeout_ms: Optional[int] = None,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        self.runner = runner or SubprocessRunner(shell=config.COMMAND_SHELL)
        self.default_timeout_ms = default_timeout_ms or config.COMMAND_TIMEOUT_MS

    async def execute(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> CommandResult:
        """Run ``command``. Never raises for runner failures."""
        timeout_ms = timeout_ms or self.default_timeout_ms
        started = time.monotonic()
        try:
            raw = await self.runner.run(command, cwd, env, timeout_ms)
        except Exception as e:
            logger.warning(f"Runner failed for {command!r}: {e}")
            return CommandResult(
                stdout="",
                stderr=f"{type(e).__name__}: {e}",
                exit_code=1,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        return CommandResult(
            stdout=raw.stdout,
            stderr=raw.stderr,
            exit_code=raw.exit_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            timed_out=raw.timed_out,
        )
