"""
Unit tests for tool handlers.

Subprocess tests spawn real (short-lived) POSIX processes.
"""

import asyncio
import json
import os
import sys
import time

import pytest

from service_gateway.app.execution.handlers import (
    HandlerFailure,
    InProcessHandler,
    ResourceLimitExceeded,
    SubprocessHandler,
)


pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX-only")


def _pid_alive(pid: int) -> bool:
    try:
        with open(f"/proc/{pid}/stat") as fh:
            # Zombies still answer signal 0
            return fh.read().rsplit(")", 1)[-1].split()[0] != "Z"
    except FileNotFoundError:
        if os.path.isdir("/proc/self"):
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


async def _wait_for_file(path, timeout: float = 5.0) -> str:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists() and path.read_text().strip():
            return path.read_text().strip()
        await asyncio.sleep(0.02)
    raise AssertionError(f"{path} was never written")


async def shout(text: str) -> str:
    return text.upper()


def blocking(text: str) -> str:
    return text


class TestInProcessHandler:
    """Test cases for InProcessHandler."""

    @pytest.mark.asyncio
    async def test_run(self):
        handler = InProcessHandler(shout)

        output = await handler.run({"text": "hi"}, timeout_seconds=1)

        assert output.output == "HI"

    def test_rejects_blocking_functions(self):
        with pytest.raises(TypeError):
            InProcessHandler(blocking)

    def test_from_import_path(self):
        handler = InProcessHandler.from_import_path(f"{__name__}:shout")

        assert handler.func is shout
        assert handler.describe() == {"kind": "in_process", "callable": f"{__name__}:shout"}

    def test_from_import_path_requires_colon(self):
        with pytest.raises(ValueError):
            InProcessHandler.from_import_path("os.path.join")


class TestSubprocessHandler:
    """Test cases for SubprocessHandler."""

    def test_requires_exactly_one_command_form(self):
        with pytest.raises(ValueError):
            SubprocessHandler()
        with pytest.raises(ValueError):
            SubprocessHandler(["echo"], shell="echo")

    def test_render_argv_placeholders(self):
        handler = SubprocessHandler(["echo", "{{ greeting }}", "--n={{n}}"])

        assert handler.render({"greeting": "hello world", "n": 3}) == ["echo", "hello world", "--n=3"]

    def test_render_shell_placeholders_are_quoted(self):
        handler = SubprocessHandler(shell="echo {{text}}")

        assert handler.render({"text": "a; rm -rf /"}) == "echo 'a; rm -rf /'"

    def test_environment_is_minimal(self, monkeypatch):
        monkeypatch.setenv("GANTZ_ADMIN_TOKEN", "secret")
        handler = SubprocessHandler(["env"], env={"MODE": "test"})

        env = handler.build_env({"city": "Oslo", "days": 2}, timeout_seconds=1.5)

        assert "GANTZ_ADMIN_TOKEN" not in env
        assert env["MODE"] == "test"
        assert env["GANTZ_PARAM_CITY"] == "Oslo"
        assert env["GANTZ_PARAM_DAYS"] == "2"
        assert json.loads(env["GANTZ_PARAMS"]) == {"city": "Oslo", "days": 2}
        assert env["GANTZ_BUDGET_SECONDS"] == "1.500"

    @pytest.mark.asyncio
    async def test_text_output(self):
        handler = SubprocessHandler(["echo", "{{message}}"], output="text")

        output = await handler.run({"message": "done"}, timeout_seconds=5)

        assert output.output == "done"
        assert output.exit_code == 0

    @pytest.mark.asyncio
    async def test_auto_output_parses_json(self):
        handler = SubprocessHandler(shell='printf \'{"sum": %d}\' $(($GANTZ_PARAM_A + $GANTZ_PARAM_B))')

        output = await handler.run({"a": 2, "b": 3}, timeout_seconds=5)

        assert output.output == {"sum": 5}

    @pytest.mark.asyncio
    async def test_params_on_stdin(self):
        handler = SubprocessHandler(["cat"], output="json")

        output = await handler.run({"city": "Oslo"}, timeout_seconds=5)

        assert output.output == {"city": "Oslo"}

    @pytest.mark.asyncio
    async def test_json_mode_rejects_text(self):
        handler = SubprocessHandler(["echo", "not json"], output="json")

        with pytest.raises(HandlerFailure):
            await handler.run({}, timeout_seconds=5)

    @pytest.mark.asyncio
    async def test_non_zero_exit_carries_stderr(self):
        handler = SubprocessHandler(shell="echo boom >&2; exit 3")

        with pytest.raises(HandlerFailure) as exc_info:
            await handler.run({}, timeout_seconds=5)

        assert exc_info.value.exit_code == 3
        assert "boom" in exc_info.value.stderr

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        handler = SubprocessHandler(["/nonexistent/gantz-tool"])

        with pytest.raises(HandlerFailure):
            await handler.run({}, timeout_seconds=5)

    @pytest.mark.asyncio
    async def test_output_limit(self):
        handler = SubprocessHandler(shell="yes gantz", max_output_bytes=1024)

        with pytest.raises(ResourceLimitExceeded) as exc_info:
            await handler.run({}, timeout_seconds=5)

        assert exc_info.value.limit == 1024

    @pytest.mark.asyncio
    async def test_cancellation_kills_process_group(self, tmp_path):
        """Test cancelling the handler kills the shell and its children."""
        pid_file = tmp_path / "child.pid"
        handler = SubprocessHandler(shell=f"sleep 30 & echo $! > {pid_file}; wait")

        task = asyncio.ensure_future(handler.run({}, timeout_seconds=30))
        child_pid = int(await _wait_for_file(pid_file))
        assert _pid_alive(child_pid)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        for _ in range(50):
            if not _pid_alive(child_pid):
                break
            await asyncio.sleep(0.02)
        assert not _pid_alive(child_pid)

    @pytest.mark.asyncio
    async def test_background_jobs_killed_after_success(self, tmp_path):
        """Test a tool exiting normally does not leave its background jobs running."""
        pid_file = tmp_path / "child.pid"
        handler = SubprocessHandler(shell=f"sleep 30 >/dev/null 2>&1 & echo $! > {pid_file}; echo hi")

        output = await handler.run({}, timeout_seconds=5)

        assert output.output == "hi"
        child_pid = int(pid_file.read_text())
        for _ in range(50):
            if not _pid_alive(child_pid):
                break
            await asyncio.sleep(0.02)
        assert not _pid_alive(child_pid)
