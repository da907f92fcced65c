import asyncio
import json
import shlex
import sys
import time
from pathlib import Path

import pytest

from foreman.errors import GateFailure
from foreman.gates import (
    GATE_OUTPUT_LIMIT,
    NPM_PLACEHOLDER_TEST,
    TRUNCATED_PREFIX,
    all_required_passed,
    detect_quality_gates,
    failure_report,
    format_gate_results,
    raise_for_failures,
    run_gate,
    run_gates,
    tail_truncate,
)
from foreman.models import GateResult, QualityGate

PYTHON = shlex.quote(sys.executable)


def _gate(command: str, gate_type: str = "test", **kwargs: object) -> QualityGate:
    return QualityGate(type=gate_type, command=command, **kwargs)  # type: ignore[arg-type]


def test_passing_gate_captures_output(tmp_path: Path) -> None:
    result = asyncio.run(run_gate(_gate(f"{PYTHON} -c \"print('gate ok')\""), tmp_path))

    assert result.passed
    assert result.exit_code == 0
    assert result.output.strip() == "gate ok"
    assert result.type == "test"


def test_failing_gate_reports_exit_code(tmp_path: Path) -> None:
    result = asyncio.run(run_gate(_gate(f'{PYTHON} -c "raise SystemExit(2)"'), tmp_path))

    assert not result.passed
    assert result.exit_code == 2


def test_shell_operators_run_through_the_shell(tmp_path: Path) -> None:
    result = asyncio.run(run_gate(_gate("echo one && echo two"), tmp_path))

    assert result.passed
    assert result.output.split() == ["one", "two"]


def test_gate_runs_in_the_given_directory(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("here\n", encoding="utf-8")

    result = asyncio.run(
        run_gate(_gate(f"{PYTHON} -c \"print(open('marker.txt').read())\""), tmp_path)
    )

    assert result.passed
    assert "here" in result.output


def test_timed_out_gate_fails(tmp_path: Path) -> None:
    gate = _gate(f"{PYTHON} -c \"__import__('time').sleep(30)\"", timeout_ms=300)

    result = asyncio.run(run_gate(gate, tmp_path))

    assert not result.passed
    assert "timed out after 300 ms" in result.output
    assert result.duration_ms < 20_000


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
def test_timed_out_gate_kills_child_processes(tmp_path: Path) -> None:
    marker = tmp_path / "child_finished.txt"
    (tmp_path / "child.py").write_text(
        "import pathlib, time\n"
        "time.sleep(2)\n"
        f"pathlib.Path({str(marker)!r}).write_text('late')\n",
        encoding="utf-8",
    )
    (tmp_path / "parent.py").write_text(
        "import subprocess, sys, time\n"
        "subprocess.Popen([sys.executable, 'child.py'])\n"
        "time.sleep(30)\n",
        encoding="utf-8",
    )
    gate = _gate(f"{PYTHON} parent.py && echo finished", timeout_ms=1_000)

    result = asyncio.run(run_gate(gate, tmp_path))
    time.sleep(2.5)

    assert not result.passed
    assert "timed out" in result.output
    assert not marker.exists()


def test_missing_binary_and_empty_command_fail(tmp_path: Path) -> None:
    missing = asyncio.run(run_gate(_gate("definitely-not-a-real-binary-xyz --check"), tmp_path))
    empty = asyncio.run(run_gate(_gate("   "), tmp_path))

    assert not missing.passed
    assert "Failed to start command" in missing.output
    assert not empty.passed
    assert empty.output == "Command is empty."


def test_run_gates_runs_every_gate_in_order(tmp_path: Path) -> None:
    gates = [
        _gate(f'{PYTHON} -c "raise SystemExit(1)"', "typecheck"),
        _gate(f"{PYTHON} -c \"print('lint')\"", "lint", required=False),
        _gate(f"{PYTHON} -c \"print('tests')\"", "test"),
    ]

    results = asyncio.run(run_gates(gates, tmp_path))

    assert [result.type for result in results] == ["typecheck", "lint", "test"]
    assert [result.passed for result in results] == [False, True, True]
    assert not all_required_passed(results)
    with pytest.raises(GateFailure) as excinfo:
        raise_for_failures(results)
    assert [result.type for result in excinfo.value.results] == ["typecheck"]


def test_optional_failures_do_not_block() -> None:
    results = [
        GateResult(type="test", command="pytest", passed=True, output=""),
        GateResult(type="lint", command="ruff", passed=False, output="E501", required=False),
    ]

    assert all_required_passed(results)
    raise_for_failures(results)
    assert all_required_passed([])


def test_tail_truncate_keeps_the_end() -> None:
    text = "a" * 100 + "b" * GATE_OUTPUT_LIMIT

    truncated = tail_truncate(text)

    assert truncated == TRUNCATED_PREFIX + "b" * GATE_OUTPUT_LIMIT
    assert tail_truncate("short") == "short"


def test_format_and_failure_report() -> None:
    long_output = "\n".join(f"line {index}" for index in range(30))
    results = [
        GateResult(type="test", command="pytest", passed=False, output=long_output, duration_ms=12),
        GateResult(type="lint", command="ruff", passed=True, output="clean", required=False),
    ]

    formatted = format_gate_results(results)

    assert "[x] test: pytest (12ms)" in formatted
    assert "[+] lint: ruff (optional)" in formatted
    assert "line 29" in formatted
    assert "line 9\n" not in formatted
    assert "clean" not in formatted

    report = failure_report(results)
    assert report.startswith("[test] pytest\nline 0")
    assert "[lint]" not in report


def test_detect_quality_gates(tmp_path: Path) -> None:
    assert detect_quality_gates(tmp_path) == []

    (tmp_path / "tsconfig.json").write_text("{}", encoding="utf-8")
    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"test": NPM_PLACEHOLDER_TEST}}), encoding="utf-8"
    )
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n", encoding="utf-8")

    gates = detect_quality_gates(tmp_path, timeout_ms=1_000)

    assert [(gate.type, gate.command) for gate in gates] == [
        ("typecheck", "npx tsc --noEmit"),
        ("test", "pytest -q"),
    ]
    assert all(gate.timeout_ms == 1_000 for gate in gates)

    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"test": "vitest run"}}), encoding="utf-8"
    )
    (tmp_path / "go.mod").write_text("module example.com/x\n", encoding="utf-8")

    commands = [gate.command for gate in detect_quality_gates(tmp_path)]
    assert commands == [
        "npx tsc --noEmit",
        "npm test",
        "pytest -q",
        "go build ./...",
        "go test ./...",
        "go vet ./...",
    ]
