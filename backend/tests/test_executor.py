"""
DeployForge - Command Executor Tests
====================================
"""

import sys

import pytest

from src.core.wizard.executor import (
    TIMEOUT_EXIT_CODE,
    CommandExecutor,
    CommandResult,
    RawProcessResult,
    SubprocessRunner,
)


class ExplodingRunner:
    async def run(self, command, cwd, env, timeout_ms):
        raise OSError("fork failed")


class RecordingRunner:
    def __init__(self):
        self.timeouts: list[int] = []

    async def run(self, command, cwd, env, timeout_ms):
        self.timeouts.append(timeout_ms)
        return RawProcessResult(stdout="done\n", stderr="", exit_code=0)


class TestCommandResult:

    def test_combined_output(self):
        result = CommandResult(stdout="out\n", stderr="err", exit_code=1, duration_ms=0)

        assert result.combined_output == "out\nerr"
        assert result.success is False

    def test_single_stream(self):
        assert CommandResult("", "only err", 2, 0).combined_output == "only err"
        assert CommandResult("only out", "", 0, 0).combined_output == "only out"


class TestCommandExecutor:

    async def test_runner_exception_becomes_failure(self, test_settings):
        executor = CommandExecutor(runner=ExplodingRunner(), config=test_settings)

        result = await executor.execute("terraform plan")

        assert result.exit_code == 1
        assert result.success is False
        assert "OSError: fork failed" in result.stderr

    async def test_default_timeout_applied(self, test_settings):
        runner = RecordingRunner()
        executor = CommandExecutor(runner=runner, default_timeout_ms=1234, config=test_settings)

        await executor.execute("ls")
        await executor.execute("ls", timeout_ms=99)

        assert runner.timeouts == [1234, 99]


@pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")
class TestSubprocessRunner:

    async def test_echo(self, tmp_path):
        executor = CommandExecutor(runner=SubprocessRunner())

        result = await executor.execute("echo hello && echo oops >&2", cwd=str(tmp_path))

        assert result.success is True
        assert result.stdout == "hello\n"
        assert result.stderr == "oops\n"

    async def test_env_and_exit_code(self):
        executor = CommandExecutor(runner=SubprocessRunner())

        result = await executor.execute('echo "$STAGE_NAME"; exit 3', env={"STAGE_NAME": "infra"})

        assert result.exit_code == 3
        assert result.stdout == "infra\n"

    async def test_timeout(self):
        executor = CommandExecutor(runner=SubprocessRunner())

        result = await executor.execute("sleep 2", timeout_ms=200)

        assert result.timed_out is True
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert "timed out after 200ms" in result.stderr
