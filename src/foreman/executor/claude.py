from __future__ import annotations

import asyncio
import codecs
import logging
import os
import time
from collections.abc import Callable
from typing import Any

from foreman.executor.base import (
    SPAWN_ERROR_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    TIMEOUT_MARKER,
    AgentExecutor,
    ExecuteOptions,
    ExecuteResult,
)

logger = logging.getLogger(__name__)

ExecutorEventHook = Callable[[dict[str, Any]], None]

READ_CHUNK_SIZE = 4096
SESSION_ENV_MARKER = "FOREMAN_AGENT_SESSION"


class ClaudeCodeExecutor(AgentExecutor):
    """Runs ``claude -p`` once per call with the prompt piped on stdin."""

    def __init__(
        self,
        binary: str = "claude",
        *,
        base_args: list[str] | None = None,
        env: dict[str, str] | None = None,
        event_hook: ExecutorEventHook | None = None,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self.binary = binary
        self.base_args = (
            list(base_args) if base_args is not None else ["-p", "--no-session-persistence"]
        )
        self.env = env
        self.event_hook = event_hook
        self.kill_grace_seconds = kill_grace_seconds
        self._process: asyncio.subprocess.Process | None = None
        self._aborted = False

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def build_command(self, options: ExecuteOptions) -> list[str]:
        command = [self.binary, *self.base_args]
        if options.model:
            command.extend(["--model", options.model])
        if options.permission_mode and options.permission_mode != "default":
            command.extend(["--permission-mode", options.permission_mode])
        if options.allowed_tools:
            command.extend(["--allowedTools", ",".join(options.allowed_tools)])
        if options.mcp_config:
            command.extend(["--mcp-config", options.mcp_config])
        return command

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        env[SESSION_ENV_MARKER] = "1"
        return env

    @staticmethod
    def _signal_terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        self._signal_terminate(process)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent closed stdin before the prompt was fully written")
        finally:
            process.stdin.close()

    @staticmethod
    async def _pump_output(
        process: asyncio.subprocess.Process,
        chunks: list[str],
        on_output: Callable[[str], None] | None,
    ) -> None:
        if process.stdout is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await process.stdout.read(READ_CHUNK_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                chunks.append(text)
                if on_output:
                    on_output(text)
            if not data:
                break

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        prompt: str,
        chunks: list[str],
        options: ExecuteOptions,
    ) -> int:
        await asyncio.gather(
            self._feed_stdin(process, prompt),
            self._pump_output(process, chunks, options.on_output),
        )
        return await process.wait()

    async def execute(self, prompt: str, options: ExecuteOptions) -> ExecuteResult:
        self._aborted = False
        start = time.monotonic()
        command = self.build_command(options)
        chunks: list[str] = []

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(options.cwd),
                env=self._build_env(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            logger.error("Failed to start agent %s: %s", self.binary, exc)
            self._emit({"event": "agent_spawn_error", "binary": self.binary, "error": str(exc)})
            return ExecuteResult(
                success=False,
                output=f"\n[SPAWN ERROR] {exc}\n",
                duration_ms=int((time.monotonic() - start) * 1000),
                exit_code=SPAWN_ERROR_EXIT_CODE,
                aborted=self._aborted,
            )

        self._process = process
        self._emit({"event": "agent_spawn", "binary": self.binary, "pid": process.pid})
        if self._aborted:
            self._signal_terminate(process)

        timeout_seconds = max(0.001, options.timeout_ms / 1000)
        try:
            exit_code = await asyncio.wait_for(
                self._communicate(process, prompt, chunks, options), timeout=timeout_seconds
            )
        except TimeoutError:
            await self._terminate(process)
            marker = f"\n{TIMEOUT_MARKER}\n"
            chunks.append(marker)
            if options.on_output:
                options.on_output(marker)
            exit_code = TIMEOUT_EXIT_CODE
            logger.warning(
                "Agent pid %s exceeded %d ms; terminated", process.pid, options.timeout_ms
            )
            self._emit({"event": "agent_timeout", "pid": process.pid})
        finally:
            self._process = None

        duration_ms = int((time.monotonic() - start) * 1000)
        aborted = self._aborted
        self._emit(
            {
                "event": "agent_exit",
                "pid": process.pid,
                "exit_code": exit_code,
                "aborted": aborted,
                "duration_ms": duration_ms,
            }
        )
        return ExecuteResult(
            success=exit_code == 0 and not aborted,
            output="".join(chunks),
            duration_ms=duration_ms,
            exit_code=exit_code,
            aborted=aborted,
        )

    def abort(self) -> None:
        self._aborted = True
        process = self._process
        if process is not None:
            logger.info("Aborting agent pid %s", process.pid)
            self._signal_terminate(process)
