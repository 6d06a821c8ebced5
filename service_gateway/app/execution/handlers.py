"""
Tool handlers.

A handler is the executable half of a tool definition. The executor only
knows the ``Handler`` interface; whether a tool runs as a coroutine inside
the gateway or as a child process is a manifest detail.

Both variants must honour cancellation: the executor enforces deadlines by
cancelling the task running ``Handler.run`` and waiting for it to finish.
"""

import asyncio
import errno
import hashlib
import importlib
import inspect
import json
import os
import re
import shlex
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from shared.logging import get_logger, get_request_id


PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
PASSTHROUGH_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "TZ")
OUTPUT_MODES = ("auto", "json", "text")
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024
STDERR_TAIL_BYTES = 4096
_READ_CHUNK = 64 * 1024
_EXHAUSTION_ERRNOS = {errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE}


@dataclass
class HandlerOutput:
    output: Any
    stderr: str = ""
    exit_code: Optional[int] = None


class HandlerFailure(Exception):
    """The tool itself failed (non-zero exit, missing executable...)."""

    def __init__(self, message: str, stderr: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.stderr = stderr
        self.exit_code = exit_code


class ResourceLimitExceeded(Exception):
    """A resource ceiling was hit (output size, process table, memory)."""

    def __init__(self, message: str, limit: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.limit = limit


class Handler(ABC):
    """Executable logic behind a tool."""

    kind = "handler"

    @abstractmethod
    async def run(self, params: Dict[str, Any], timeout_seconds: float) -> HandlerOutput:
        """Run with validated plain parameters. Must be cancellable."""

    @abstractmethod
    def describe(self) -> Dict[str, Any]:
        """JSON-serializable description (used for fingerprints and logs)."""


class InProcessHandler(Handler):
    """Runs a coroutine function inside the gateway's event loop.

    Only coroutine functions are accepted: a blocking function running on a
    worker thread cannot be stopped at its deadline. Blocking or CPU-heavy
    tools belong in a ``SubprocessHandler``.
    """

    kind = "in_process"

    def __init__(self, func: Callable[..., Awaitable[Any]], name: Optional[str] = None):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(
                f"In-process tool handlers must be coroutine functions, got {func!r}"
            )
        self.func = func
        self.name = name or f"{func.__module__}:{func.__qualname__}"

    @classmethod
    def from_import_path(cls, path: str) -> "InProcessHandler":
        """Load ``package.module:function``."""
        module_name, sep, attr = path.partition(":")
        if not sep or not module_name or not attr:
            raise ValueError(f"Callable must look like 'module:function', got {path!r}")
        module = importlib.import_module(module_name)
        target: Any = module
        for part in attr.split("."):
            target = getattr(target, part)
        return cls(target, name=path)

    async def run(self, params: Dict[str, Any], timeout_seconds: float) -> HandlerOutput:
        return HandlerOutput(output=await self.func(**params))

    def describe(self) -> Dict[str, Any]:
        return {"kind": self.kind, "callable": self.name}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _env_name(param: str) -> str:
    return "GANTZ_PARAM_" + re.sub(r"[^A-Za-z0-9]", "_", param).upper()


class SubprocessHandler(Handler):
    """Runs a command (argv list) or a shell snippet as a child process.

    ``{{param}}`` placeholders are rendered into the command; in shell
    snippets the rendered values are shell-quoted. Parameters are also
    provided as JSON on stdin and through ``GANTZ_PARAMS`` /
    ``GANTZ_PARAM_<NAME>`` environment variables.

    The child runs in its own session so the whole process group (e.g. a
    shell and the ``sleep`` it started) can be killed at the deadline.
    """

    kind = "subprocess"

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        *,
        shell: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        output: str = "auto",
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        inherit_env: bool = False,
    ):
        if (command is None) == (shell is None):
            raise ValueError("Exactly one of 'command' or 'shell' is required")
        if command is not None and not command:
            raise ValueError("'command' must not be empty")
        if output not in OUTPUT_MODES:
            raise ValueError(f"output must be one of {', '.join(OUTPUT_MODES)}")
        if max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be positive")

        self.command = [str(part) for part in command] if command is not None else None
        self.shell = shell
        self.env = {str(k): str(v) for k, v in (env or {}).items()}
        self.cwd = cwd
        self.output = output
        self.max_output_bytes = max_output_bytes
        self.inherit_env = inherit_env
        self.logger = get_logger("gateway.subprocess")

    def render(self, params: Mapping[str, Any]) -> Union[List[str], str]:
        """Substitute ``{{param}}`` placeholders."""
        if self.shell is not None:
            return PLACEHOLDER_PATTERN.sub(
                lambda m: shlex.quote(_as_text(params.get(m.group(1)))), self.shell
            )
        return [
            PLACEHOLDER_PATTERN.sub(lambda m: _as_text(params.get(m.group(1))), part)
            for part in self.command
        ]

    def build_env(self, params: Mapping[str, Any], timeout_seconds: float) -> Dict[str, str]:
        if self.inherit_env:
            env = dict(os.environ)
        else:
            env = {key: os.environ[key] for key in PASSTHROUGH_ENV if key in os.environ}
        env.update(self.env)
        env["GANTZ_PARAMS"] = json.dumps(params, sort_keys=True, default=str)
        for name, value in params.items():
            env[_env_name(name)] = _as_text(value)
        env["GANTZ_BUDGET_SECONDS"] = f"{timeout_seconds:.3f}"
        request_id = get_request_id()
        if request_id:
            env["GANTZ_REQUEST_ID"] = request_id
        return env

    async def run(self, params: Dict[str, Any], timeout_seconds: float) -> HandlerOutput:
        rendered = self.render(params)
        env = self.build_env(params, timeout_seconds)
        payload = json.dumps(params, default=str).encode("utf-8")

        proc = await self._spawn(rendered, env)
        completed = False
        try:
            stdout, stderr = await self._collect(proc, payload)
            completed = True
        finally:
            if not completed:
                # Deadline, cancellation or output overflow: take the group down
                await self._kill(proc)
            else:
                # Background jobs the tool left behind share its process group
                self._kill_leftovers(proc)

        stderr_text = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            if proc.returncode is not None and proc.returncode < 0:
                message = f"Command terminated by signal {-proc.returncode}"
            else:
                message = f"Command exited with status {proc.returncode}"
            raise HandlerFailure(message, stderr=stderr_text, exit_code=proc.returncode)

        return HandlerOutput(
            output=self._parse_output(stdout),
            stderr=stderr_text,
            exit_code=proc.returncode,
        )

    async def _spawn(self, rendered: Union[List[str], str], env: Dict[str, str]) -> asyncio.subprocess.Process:
        pipes = dict(
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=self.cwd,
            start_new_session=True,
        )
        try:
            if isinstance(rendered, str):
                return await asyncio.create_subprocess_shell(rendered, **pipes)
            return await asyncio.create_subprocess_exec(*rendered, **pipes)
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise HandlerFailure(f"Cannot start command: {exc}") from exc
        except OSError as exc:
            if exc.errno in _EXHAUSTION_ERRNOS:
                raise ResourceLimitExceeded(f"Cannot spawn process: {exc}") from exc
            raise HandlerFailure(f"Cannot start command: {exc}") from exc

    async def _collect(self, proc: asyncio.subprocess.Process, payload: bytes):
        if proc.stdin is not None:
            try:
                proc.stdin.write(payload)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                self.logger.debug("Tool closed stdin before reading parameters", pid=proc.pid)
            proc.stdin.close()

        readers = [
            asyncio.ensure_future(self._read_stdout(proc.stdout)),
            asyncio.ensure_future(self._read_stderr_tail(proc.stderr)),
        ]
        try:
            stdout, stderr = await asyncio.gather(*readers)
        finally:
            for reader in readers:
                reader.cancel()

        await proc.wait()
        return stdout, stderr

    async def _read_stdout(self, stream: asyncio.StreamReader) -> bytes:
        buffer = bytearray()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return bytes(buffer)
            buffer.extend(chunk)
            if len(buffer) > self.max_output_bytes:
                raise ResourceLimitExceeded(
                    f"Tool output exceeded {self.max_output_bytes} bytes",
                    limit=self.max_output_bytes,
                )

    async def _read_stderr_tail(self, stream: asyncio.StreamReader) -> bytes:
        buffer = bytearray()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return bytes(buffer)
            buffer.extend(chunk)
            if len(buffer) > STDERR_TAIL_BYTES:
                del buffer[:-STDERR_TAIL_BYTES]

    def _kill_leftovers(self, proc: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except PermissionError as exc:
            self.logger.warning("Cannot signal tool process group", pid=proc.pid, error=str(exc))
            return
        self.logger.info("Killed processes left behind by tool", pid=proc.pid)

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()
        await proc.wait()
        self.logger.info("Killed tool process group", pid=proc.pid, returncode=proc.returncode)

    def _parse_output(self, stdout: bytes) -> Any:
        text = stdout.decode("utf-8", errors="replace")
        if self.output == "text":
            return text.strip()
        if self.output == "json":
            try:
                return json.loads(text)
            except json.JSONDecodeError as exc:
                raise HandlerFailure(f"Tool output is not valid JSON: {exc}") from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text.strip()

    def describe(self) -> Dict[str, Any]:
        env_digest = hashlib.sha256(
            json.dumps(self.env, sort_keys=True).encode("utf-8")
        ).hexdigest()[:16]
        return {
            "kind": self.kind,
            "command": self.command,
            "shell": self.shell,
            "cwd": self.cwd,
            "output": self.output,
            "env_digest": env_digest,
        }
