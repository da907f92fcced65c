from foreman.executor.base import (
    SPAWN_ERROR_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    TIMEOUT_MARKER,
    AgentExecutor,
    ExecuteOptions,
    ExecuteResult,
)
from foreman.executor.claude import ClaudeCodeExecutor
from foreman.executor.scripted import ExecutorCall, ScriptedExecutor, ScriptedResponse

__all__ = [
    "SPAWN_ERROR_EXIT_CODE",
    "TIMEOUT_EXIT_CODE",
    "TIMEOUT_MARKER",
    "AgentExecutor",
    "ClaudeCodeExecutor",
    "ExecuteOptions",
    "ExecuteResult",
    "ExecutorCall",
    "ScriptedExecutor",
    "ScriptedResponse",
]
