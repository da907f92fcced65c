from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

TIMEOUT_EXIT_CODE = 124
SPAWN_ERROR_EXIT_CODE = 127
ABORTED_EXIT_CODE = 130
TIMEOUT_MARKER = "[TIMEOUT] Task exceeded time limit"

OutputCallback = Callable[[str], None]


@dataclass(slots=True)
class ExecuteOptions:
    cwd: Path
    timeout_ms: int = 900_000
    model: str | None = None
    permission_mode: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    mcp_config: str | None = None
    on_output: OutputCallback | None = None


@dataclass(slots=True)
class ExecuteResult:
    success: bool
    output: str
    duration_ms: int
    exit_code: int | None
    aborted: bool = False

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE


class AgentExecutor(ABC):
    @abstractmethod
    async def execute(self, prompt: str, options: ExecuteOptions) -> ExecuteResult:
        """Run one agent call with ``prompt`` on stdin and collect its output."""

    @abstractmethod
    def abort(self) -> None:
        """Cancel the in-flight call, if any. Safe to call repeatedly."""
