from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from foreman.executor.base import (
    ABORTED_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    TIMEOUT_MARKER,
    AgentExecutor,
    ExecuteOptions,
    ExecuteResult,
)


@dataclass(slots=True)
class ScriptedResponse:
    output: str = "done"
    exit_code: int = 0
    delay_seconds: float = 0.0
    timeout: bool = False


@dataclass(slots=True)
class ExecutorCall:
    prompt: str
    options: ExecuteOptions
    started_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None
    result: ExecuteResult | None = None


Responder = Callable[[str, int], ScriptedResponse]


class ScriptedExecutor(AgentExecutor):
    """Deterministic stand-in for an agent process.

    Responses come from a queue, or from ``responder(prompt, call_index)`` when
    given; once the queue is empty ``default`` is used. Several calls may be in
    flight at once and ``abort()`` ends all of them.
    """

    def __init__(
        self,
        responses: Iterable[ScriptedResponse] = (),
        *,
        responder: Responder | None = None,
        default: ScriptedResponse | None = None,
    ) -> None:
        self._queue = deque(responses)
        self.responder = responder
        self.default = default or ScriptedResponse()
        self.calls: list[ExecutorCall] = []
        self.abort_count = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._abort_events: set[asyncio.Event] = set()

    def _next_response(self, prompt: str) -> ScriptedResponse:
        if self.responder is not None:
            return self.responder(prompt, len(self.calls) - 1)
        if self._queue:
            return self._queue.popleft()
        return self.default

    async def execute(self, prompt: str, options: ExecuteOptions) -> ExecuteResult:
        call = ExecutorCall(prompt=prompt, options=options)
        self.calls.append(call)
        response = self._next_response(prompt)
        abort_event = asyncio.Event()
        self._abort_events.add(abort_event)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            output = response.output
            exit_code = response.exit_code
            if response.timeout:
                await self._sleep(abort_event, options.timeout_ms / 1000)
                output = f"{output}\n{TIMEOUT_MARKER}\n"
                exit_code = TIMEOUT_EXIT_CODE
            elif response.delay_seconds:
                await self._sleep(abort_event, response.delay_seconds)
            aborted = abort_event.is_set()
            if aborted and not response.timeout:
                exit_code = ABORTED_EXIT_CODE
            if options.on_output and output:
                options.on_output(output)
            result = ExecuteResult(
                success=exit_code == 0 and not aborted,
                output=output,
                duration_ms=int((time.monotonic() - call.started_at) * 1000),
                exit_code=exit_code,
                aborted=aborted,
            )
        finally:
            self.in_flight -= 1
            self._abort_events.discard(abort_event)
            call.ended_at = time.monotonic()
        call.result = result
        return result

    @staticmethod
    async def _sleep(abort_event: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(abort_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def abort(self) -> None:
        self.abort_count += 1
        for event in list(self._abort_events):
            event.set()
