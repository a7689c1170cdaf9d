"""Async runner for the tmux command line."""

from __future__ import annotations

import asyncio
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Mapping, Sequence

from .utils import sanitize_environment, shell_quote

SEND_KEYS_BASE_DELAY = 0.2
SEND_KEYS_MAX_DELAY = 1.0
SEND_KEYS_LONG_TEXT = 500
CLEAR_INPUT_DELAY = 0.075
WAIT_FOR_POLL_INTERVAL = 0.25
WAIT_FOR_DEFAULT_TIMEOUT = 10.0

SleepFn = Callable[[float], Awaitable[None]]


class TmuxError(RuntimeError):
    """Base class for tmux runner errors."""


class TmuxNotFoundError(TmuxError):
    """Raised when the tmux executable cannot be located."""


class TmuxCommandError(TmuxError):
    """Raised when a tmux command exits non-zero."""

    def __init__(self, result: "TmuxExecutionResult") -> None:
        detail = result.stderr.strip() or result.stdout.strip()
        command = " ".join(result.args[1:3]) if len(result.args) > 1 else " ".join(result.args)
        message = f"tmux {command} failed with exit code {result.returncode}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.result = result


@dataclass(slots=True)
class TmuxExecutionResult:
    """Holds the outcome of a tmux (or helper) invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def send_keys_delay(text: str) -> float:
    """Pause between typing text and pressing Enter, longer for large pastes."""

    delay = SEND_KEYS_BASE_DELAY
    if len(text) > SEND_KEYS_LONG_TEXT:
        delay += (len(text) // 100) / 1000
    return min(delay, SEND_KEYS_MAX_DELAY)


class TmuxRunner:
    """Execute tmux commands asynchronously."""

    def __init__(self, executable: Path | None = None, *, sleep: SleepFn | None = None) -> None:
        self._explicit_executable = executable
        self._executable_path: Path | None = None
        self._sleep = sleep or asyncio.sleep

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise TmuxNotFoundError(f"tmux executable not found at {candidate}")

        binary = shutil.which("tmux")
        if binary is None:
            raise TmuxNotFoundError("tmux executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        """The tmux binary, resolved on first use; raises ``TmuxNotFoundError`` when absent."""

        if self._executable_path is None:
            self._executable_path = self._resolve_executable(self._explicit_executable)
        return self._executable_path

    async def version(self) -> TmuxExecutionResult:
        return await self._invoke("-V")

    async def run(self, *args: str, env: Mapping[str, str] | None = None) -> TmuxExecutionResult:
        return await self._invoke(*args, env=env)

    async def check(self, *args: str, env: Mapping[str, str] | None = None) -> str:
        """Run a tmux command and return stdout, raising on a non-zero exit."""

        result = await self._invoke(*args, env=env)
        if not result.ok:
            raise TmuxCommandError(result)
        return result.stdout

    async def send_keys(self, target: str, text: str) -> None:
        """Type ``text`` literally into ``target`` and press Enter."""

        await self.check("send-keys", "-l", "-t", target, text)
        await self._sleep(send_keys_delay(text))
        await self.check("send-keys", "-t", target, "Enter")

    async def clear_input_line(self, target: str) -> None:
        """Dismiss transient prompt modes and clear any partially typed input."""

        await self.check("send-keys", "-t", target, "Escape")
        await self._sleep(CLEAR_INPUT_DELAY)
        await self.check("send-keys", "-t", target, "C-u")
        await self._sleep(CLEAR_INPUT_DELAY)

    async def capture_pane(self, target: str, lines: int = 0) -> str:
        """Capture the last ``lines`` lines of ``target``; full scrollback when ``lines <= 0``.

        Wrapped lines are joined so markers split across visual rows are reassembled.
        """

        start = f"-{lines}" if lines > 0 else "-"
        return await self.check("capture-pane", "-p", "-J", "-t", target, "-S", start)

    async def wait_for(
        self,
        target: str,
        pattern: str,
        *,
        timeout: float = WAIT_FOR_DEFAULT_TIMEOUT,
        lines: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ) -> tuple[str, bool]:
        """Poll ``target`` until ``pattern`` appears; returns the last capture and a found flag."""

        if not pattern.strip():
            raise ValueError("pattern is required")
        if timeout <= 0:
            timeout = WAIT_FOR_DEFAULT_TIMEOUT

        deadline = clock() + timeout
        while True:
            output = await self.capture_pane(target, lines)
            if pattern in output:
                return output, True
            if clock() >= deadline:
                return output, False
            await self._sleep(WAIT_FOR_POLL_INTERVAL)

    async def target_exists(self, target: str) -> bool:
        result = await self._invoke("display-message", "-t", target, "-p", "")
        return result.ok

    async def has_session(self, name: str) -> bool:
        result = await self._invoke("has-session", "-t", name)
        return result.ok

    async def list_sessions(self) -> list[str]:
        """Return the names of all tmux sessions; empty when no server is running."""

        result = await self._invoke("list-sessions", "-F", "#{session_name}")
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def attached_session(self) -> str | None:
        """Return the session of the most recently active attached client."""

        result = await self._invoke("list-clients", "-F", "#{session_name}")
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            if line.strip():
                return line.strip()
        return None

    async def display(self, target: str, fmt: str) -> str:
        output = await self.check("display-message", "-t", target, "-p", fmt)
        return output.strip()

    async def current_command(self, target: str) -> str:
        return await self.display(target, "#{pane_current_command}")

    async def has_child_processes(self, target: str) -> bool:
        """Return whether the pane's root process has children (the agent is busy)."""

        pid = await self.display(target, "#{pane_pid}")
        if not pid:
            raise TmuxError(f"tmux reported no pane pid for {target}")
        try:
            result = await self._execute("pgrep", "-P", pid)
        except OSError:
            # Without pgrep the pane is treated as having no children.
            return False
        return result.ok

    async def split_window(
        self,
        target: str,
        command: str,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> str:
        """Split ``target`` and run ``command`` in the new pane; returns its pane id."""

        args = ["split-window", "-t", target, "-P", "-F", "#{pane_id}"]
        if cwd:
            args.extend(["-c", cwd])
        args.append(command)
        output = await self.check(*args, env=env)
        pane_id = output.strip()
        if not pane_id:
            raise TmuxError("tmux did not return a pane id")
        return pane_id

    async def select_layout(self, target: str, layout: str = "tiled") -> TmuxExecutionResult:
        return await self._invoke("select-layout", "-t", target, layout)

    async def kill_session(self, name: str) -> None:
        await self.check("kill-session", "-t", name)

    async def kill_pane(self, target: str) -> None:
        await self.check("kill-pane", "-t", target)

    async def rename_session(self, old: str, new: str) -> None:
        await self.check("rename-session", "-t", old, new)

    async def start_pipe(self, target: str, path: Path | str) -> None:
        """Stream the raw pane output of ``target`` into ``path``."""

        await self.check("pipe-pane", "-o", "-t", target, f"cat >> {shell_quote(str(path))}")

    async def stop_pipe(self, target: str) -> None:
        await self.check("pipe-pane", "-t", target)

    async def launch(self, argv: Sequence[str], *, env: Mapping[str, str] | None = None) -> None:
        """Start a detached process (a terminal window) without waiting for it."""

        if not argv:
            raise TmuxError("launch command is empty")
        await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            env=sanitize_environment(env),
            start_new_session=True,
        )

    async def _invoke(self, *args: str, env: Mapping[str, str] | None = None) -> TmuxExecutionResult:
        return await self._execute(str(self.executable), *args, env=env)

    async def _execute(
        self, program: str, *args: str, env: Mapping[str, str] | None = None
    ) -> TmuxExecutionResult:
        cmd = [program, *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(env),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return TmuxExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


ResultHandler = Callable[[tuple[str, ...]], "TmuxExecutionResult | None"]


class FakeTmuxRunner(TmuxRunner):
    """Test double that records tmux invocations and returns scripted results.

    ``handler`` receives the argument tuple (``("pgrep", "-P", pid)`` for the
    child-process probe) and may return a result; queued ``responses`` are used
    otherwise, then a successful empty result.
    """

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[TmuxExecutionResult] | None = None,
        *,
        handler: ResultHandler | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._handler = handler
        self._invocations: list[tuple[str, ...]] = []
        self._launched: list[tuple[tuple[str, ...], dict[str, str]]] = []
        self._sleeps: list[float] = []
        self._executable_path = Path("/tmp/fake-tmux")

        async def _no_sleep(seconds: float) -> None:
            self._sleeps.append(seconds)

        self._sleep = _no_sleep

    async def _invoke(self, *args: str, env: Mapping[str, str] | None = None) -> TmuxExecutionResult:  # type: ignore[override]
        return self._respond(tuple(args))

    async def _execute(  # type: ignore[override]
        self, program: str, *args: str, env: Mapping[str, str] | None = None
    ) -> TmuxExecutionResult:
        return self._respond((program, *args))

    async def launch(self, argv: Sequence[str], *, env: Mapping[str, str] | None = None) -> None:  # type: ignore[override]
        self._launched.append((tuple(argv), dict(env or {})))

    def _respond(self, args: tuple[str, ...]) -> TmuxExecutionResult:
        self._invocations.append(args)
        if self._handler is not None:
            result = self._handler(args)
            if result is not None:
                return result
        if self._responses:
            return self._responses.pop(0)
        return TmuxExecutionResult(args=args, returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    @property
    def launched(self) -> list[tuple[tuple[str, ...], dict[str, str]]]:
        return self._launched

    @property
    def sleeps(self) -> list[float]:
        return self._sleeps


__all__ = [
    "FakeTmuxRunner",
    "TmuxCommandError",
    "TmuxError",
    "TmuxExecutionResult",
    "TmuxNotFoundError",
    "TmuxRunner",
    "send_keys_delay",
]
