"""Agent subprocess supervision.

One ProcessHandle wraps one `claude -p` invocation in stream-json mode:
the wire message goes in on stdin, events come out on stdout, and
stderr is drained into the log as diagnostics.
"""
from __future__ import annotations

import asyncio
import collections
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .config import AgentConfig
from .errors import AgentSpawnError
from .stream_decoder import READ_CHUNK_SIZE, LineBuffer

logger = logging.getLogger(__name__)

ExitCallback = Callable[["int | None"], None]

_STDERR_TAIL_LINES = 50
_EXIT_POLL_SECONDS = 0.1


def build_command(
    config: AgentConfig,
    resume_session_id: str | None = None,
) -> list[str]:
    """Build the argv for one agent turn."""
    cmd = [
        config.command,
        "-p",
        "--input-format", "stream-json",
        "--output-format", "stream-json",
        "--verbose",
    ]

    if resume_session_id:
        cmd.extend(["--resume", resume_session_id])

    if config.skip_permissions:
        cmd.append("--dangerously-skip-permissions")

    if config.append_system_prompt:
        cmd.extend(["--append-system-prompt", config.append_system_prompt])

    if config.allowed_tools:
        cmd.extend(["--allowed-tools", *config.allowed_tools])

    if config.model:
        cmd.extend(["--model", config.model])

    return cmd


class ProcessHandle:
    """A live agent subprocess and its three pipes."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: list[str],
        on_exit: ExitCallback | None = None,
    ) -> None:
        self._process = process
        self._command = command
        self._on_exit = on_exit
        self._exit_notified = False
        self._exit_code: int | None = None
        self._stderr_tail: collections.deque[str] = collections.deque(
            maxlen=_STDERR_TAIL_LINES,
        )
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._exit_task = asyncio.create_task(self._watch_exit())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self._process.stdout

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def exit_code(self) -> int | None:
        """Exit status once exited; None while running or if signalled."""
        return self._exit_code

    @property
    def exited(self) -> bool:
        return self._exit_task.done()

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def write_input(self, message: dict[str, Any]) -> None:
        """Send the wire message as one JSON line and close stdin."""
        stdin = self._process.stdin
        if stdin is None:
            return
        payload = json.dumps(message, ensure_ascii=False) + "\n"
        try:
            stdin.write(payload.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The agent already exited; the read loop will see EOF.
            logger.warning("Agent pid=%d closed stdin before input was written", self.pid)
        finally:
            if not stdin.is_closing():
                stdin.close()

    def kill(self) -> None:
        """Send SIGTERM. Safe to call repeatedly or after exit."""
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
            logger.info("Sent SIGTERM to agent pid=%d", self.pid)
        except ProcessLookupError:
            pass

    async def wait(self) -> int | None:
        """Wait for exit and the exit observer; returns exit_code."""
        await asyncio.shield(self._exit_task)
        return self._exit_code

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Terminate, then SIGKILL if the process ignores SIGTERM."""
        self.kill()
        try:
            await asyncio.wait_for(asyncio.shield(self._exit_task), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            await asyncio.shield(self._exit_task)

    async def _drain_stderr(self) -> None:
        stderr = self._process.stderr
        if stderr is None:
            return
        buffer = LineBuffer()
        try:
            while True:
                chunk = await stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    self._log_stderr(line)
            self._log_stderr(buffer.flush())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.debug("stderr reader for pid=%d stopped", self.pid, exc_info=True)

    def _log_stderr(self, line: str) -> None:
        line = line.rstrip()
        if not line:
            return
        self._stderr_tail.append(line)
        logger.info("[agent stderr pid=%d] %s", self.pid, line)

    async def _watch_exit(self) -> None:
        # Process.wait() also waits for the pipes to close, and a child of
        # the agent can hold them open long after the agent is gone.
        while self._process.returncode is None:
            await asyncio.sleep(_EXIT_POLL_SECONDS)
        returncode = self._process.returncode
        # Let the stderr tail settle before reporting the exit.
        try:
            await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
        except asyncio.TimeoutError:
            pass
        # A negative returncode means the process was killed by a signal.
        self._exit_code = returncode if returncode >= 0 else None
        if returncode == 0:
            logger.info("Agent pid=%d exited normally", self.pid)
        elif returncode < 0:
            logger.info("Agent pid=%d terminated by signal %d", self.pid, -returncode)
        else:
            logger.warning(
                "Agent pid=%d exited rc=%d stderr_tail=%s",
                self.pid, returncode, self.stderr_tail or "<empty>",
            )
        self._notify_exit()

    def _notify_exit(self) -> None:
        if self._exit_notified:
            return
        self._exit_notified = True
        if self._on_exit is None:
            return
        try:
            self._on_exit(self._exit_code)
        except Exception:
            logger.exception("Exit callback failed for agent pid=%d", self.pid)


# spawn() or a stand-in with the same signature
Spawner = Callable[..., Awaitable[ProcessHandle]]


async def spawn(
    config: AgentConfig,
    resume_session_id: str | None = None,
    on_exit: ExitCallback | None = None,
) -> ProcessHandle:
    """Start the agent subprocess.

    Raises AgentSpawnError when the executable is missing, not runnable,
    or the working directory is invalid.
    """
    cmd = build_command(config, resume_session_id)
    logger.info(
        "Spawning agent command=%s cwd=%s resume=%s",
        config.command, config.cwd, resume_session_id or "<none>",
    )
    try:
        # create_subprocess_exec passes args as an array, no shell
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=config.cwd,
        )
    except FileNotFoundError as exc:
        raise AgentSpawnError(
            config.command, f"executable or working directory not found ({exc})"
        ) from exc
    except PermissionError as exc:
        raise AgentSpawnError(config.command, f"permission denied ({exc})") from exc
    except OSError as exc:
        raise AgentSpawnError(config.command, str(exc)) from exc

    logger.info("Agent started pid=%d", proc.pid)
    return ProcessHandle(proc, cmd, on_exit=on_exit)
