from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import signal
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from foreman.errors import GateFailure
from foreman.models import DEFAULT_GATE_TIMEOUT_MS, GateResult, QualityGate

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
GATE_OUTPUT_LIMIT = 5000
TRUNCATED_PREFIX = "...(truncated)\n"
NPM_PLACEHOLDER_TEST = 'echo "Error: no test specified" && exit 1'

GateRunner = Callable[[list[QualityGate], Path], Awaitable[list[GateResult]]]


def tail_truncate(text: str, limit: int = GATE_OUTPUT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return TRUNCATED_PREFIX + text[-limit:]


async def _spawn(command: str, cwd: Path) -> asyncio.subprocess.Process:
    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command))
    argv: list[str] = []
    if not used_shell:
        try:
            argv = shlex.split(command)
        except ValueError:
            used_shell = True
    if used_shell or not argv:
        return await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    # the gate runs in its own session, so this also reaches its children
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


async def run_gate(gate: QualityGate, cwd: Path) -> GateResult:
    start = time.monotonic()
    command = gate.command.strip()

    def _result(passed: bool, output: str, exit_code: int | None) -> GateResult:
        return GateResult(
            type=gate.type,
            command=gate.command,
            passed=passed,
            output=tail_truncate(output),
            required=gate.required,
            duration_ms=int((time.monotonic() - start) * 1000),
            exit_code=exit_code,
        )

    if not command:
        return _result(False, "Command is empty.", None)

    try:
        process = await _spawn(command, cwd)
    except OSError as exc:
        logger.warning("Gate %s could not start: %s", gate.type, exc)
        return _result(False, f"Failed to start command: {exc}", None)

    timeout_seconds = max(0.001, (gate.timeout_ms or DEFAULT_GATE_TIMEOUT_MS) / 1000)
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        _kill_process_group(process)
        await process.wait()
        logger.warning("Gate %s timed out after %d ms", gate.type, gate.timeout_ms)
        return _result(False, f"Gate timed out after {gate.timeout_ms} ms", None)

    output = (stdout or b"").decode("utf-8", errors="replace")
    passed = process.returncode == 0
    logger.debug("Gate %s exited %s", gate.type, process.returncode)
    return _result(passed, output, process.returncode)


async def run_gates(gates: list[QualityGate], cwd: Path) -> list[GateResult]:
    """Run every gate in order; a failing gate never stops the rest."""
    results: list[GateResult] = []
    for gate in gates:
        results.append(await run_gate(gate, cwd))
    return results


def all_required_passed(results: list[GateResult]) -> bool:
    return all(result.passed or not result.required for result in results)


def raise_for_failures(results: list[GateResult]) -> None:
    failed = [result for result in results if result.required and not result.passed]
    if failed:
        names = ", ".join(result.type for result in failed)
        raise GateFailure(f"Quality gates failed: {names}", results=failed)


def format_gate_results(results: list[GateResult]) -> str:
    lines: list[str] = []
    for result in results:
        icon = "[+]" if result.passed else "[x]"
        optional = "" if result.required else " (optional)"
        lines.append(
            f"  {icon} {result.type}: {result.command}{optional} ({result.duration_ms}ms)"
        )
        if not result.passed and result.output:
            for line in result.output.splitlines()[-20:]:
                lines.append(f"      {line}")
    return "\n".join(lines)


def failure_report(results: list[GateResult]) -> str:
    """Output of failed gates, formatted for a retry prompt."""
    sections: list[str] = []
    for result in results:
        if result.passed:
            continue
        sections.append(f"[{result.type}] {result.command}\n{result.output.strip()}")
    return "\n\n".join(sections)


def detect_quality_gates(
    root: Path, *, timeout_ms: int = DEFAULT_GATE_TIMEOUT_MS
) -> list[QualityGate]:
    """Infer gates from the project files found at ``root``."""
    gates: list[QualityGate] = []

    def add(gate_type: str, command: str, required: bool = True) -> None:
        gates.append(
            QualityGate(type=gate_type, command=command, required=required, timeout_ms=timeout_ms)
        )

    if (root / "tsconfig.json").exists():
        add("typecheck", "npx tsc --noEmit")

    package_json = root / "package.json"
    if package_json.exists():
        try:
            scripts = json.loads(package_json.read_text(encoding="utf-8")).get("scripts") or {}
        except (json.JSONDecodeError, AttributeError):
            scripts = {}
            logger.warning("Ignoring unreadable %s", package_json)
        test_script = str(scripts.get("test") or "")
        if test_script and test_script != NPM_PLACEHOLDER_TEST:
            add("test", "npm test")

    if (root / "pyproject.toml").exists() or (root / "setup.py").exists():
        add("test", "pytest -q")

    if (root / "go.mod").exists():
        add("build", "go build ./...")
        add("test", "go test ./...")
        add("lint", "go vet ./...")

    if (root / "Cargo.toml").exists():
        add("build", "cargo build")
        add("test", "cargo test")

    return gates
