from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, get_args

from foreman.errors import ValidationError
from foreman.models import DEFAULT_GATE_TIMEOUT_MS, QualityGate

ExecutionModeName = Literal["loop", "team"]
BranchPolicy = Literal["keep", "merge", "discard"]

CONFIG_FILENAME = "foreman.toml"
DEFAULT_ALLOWED_TOOLS = ["Read", "Edit", "Write", "Glob", "Grep", "Bash"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class ExecutorConfig:
    binary: str = "claude"
    model: str = ""
    permission_mode: str = "acceptEdits"
    allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    timeout_ms: int = 900_000
    mcp_config_file: str = ""


@dataclass(slots=True)
class RunSettings:
    mode: ExecutionModeName = "loop"
    concurrency: int = 3
    max_attempts: int = 3
    max_iterations: int = 0
    use_branch: bool = True
    branch_policy: BranchPolicy = "keep"
    reset_on_failure: bool = True


@dataclass(slots=True)
class GatesConfig:
    auto_detect: bool = True
    commands: list[str] = field(default_factory=list)
    gate_timeout_ms: int = DEFAULT_GATE_TIMEOUT_MS


@dataclass(slots=True)
class MemoryConfig:
    file: str = ".foreman/memories.jsonl"
    limit: int = 5
    threshold: float = 0.3


@dataclass(slots=True)
class StateConfig:
    dir: str = ".foreman"


@dataclass(slots=True)
class ForemanConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    run: RunSettings = field(default_factory=RunSettings)
    gates: GatesConfig = field(default_factory=GatesConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                executor=ExecutorConfig(**data.get("executor", {})),
                run=RunSettings(**data.get("run", {})),
                gates=GatesConfig(**data.get("gates", {})),
                memory=MemoryConfig(**data.get("memory", {})),
                state=StateConfig(**data.get("state", {})),
            )
        except TypeError as exc:
            raise ValidationError(f"Invalid configuration: {exc}") from exc
        if config.run.mode not in get_args(ExecutionModeName):
            raise ValidationError(f"Invalid configuration: unknown run.mode {config.run.mode!r}")
        if config.run.branch_policy not in get_args(BranchPolicy):
            raise ValidationError(
                f"Invalid configuration: unknown run.branch_policy {config.run.branch_policy!r}"
            )
        return config

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
            },
            "executor": {
                "binary": self.executor.binary,
                "model": self.executor.model,
                "permission_mode": self.executor.permission_mode,
                "allowed_tools": list(self.executor.allowed_tools),
                "timeout_ms": self.executor.timeout_ms,
                "mcp_config_file": self.executor.mcp_config_file,
            },
            "run": {
                "mode": self.run.mode,
                "concurrency": self.run.concurrency,
                "max_attempts": self.run.max_attempts,
                "max_iterations": self.run.max_iterations,
                "use_branch": self.run.use_branch,
                "branch_policy": self.run.branch_policy,
                "reset_on_failure": self.run.reset_on_failure,
            },
            "gates": {
                "auto_detect": self.gates.auto_detect,
                "commands": list(self.gates.commands),
                "gate_timeout_ms": self.gates.gate_timeout_ms,
            },
            "memory": {
                "file": self.memory.file,
                "limit": self.memory.limit,
                "threshold": self.memory.threshold,
            },
            "state": {
                "dir": self.state.dir,
            },
        }

    def quality_gates(self) -> list[QualityGate]:
        return [
            parse_gate_spec(spec, timeout_ms=self.gates.gate_timeout_ms)
            for spec in self.gates.commands
            if spec.strip()
        ]


def parse_gate_spec(spec: str, *, timeout_ms: int = DEFAULT_GATE_TIMEOUT_MS) -> QualityGate:
    """Parse ``type:command`` (or a bare command) into a gate.

    A ``?`` suffix on the type marks the gate optional, e.g. ``lint?:ruff check .``.
    """
    text = spec.strip()
    if not text:
        raise ValidationError("Quality gate spec is empty.")
    gate_type, separator, command = text.partition(":")
    if not separator or " " in gate_type.strip() or not gate_type.strip():
        return QualityGate(type="custom", command=text, timeout_ms=timeout_ms)
    gate_type = gate_type.strip()
    required = True
    if gate_type.endswith("?"):
        gate_type = gate_type[:-1]
        required = False
    command = command.strip()
    if not command:
        raise ValidationError(f"Quality gate '{gate_type}' has no command.")
    return QualityGate(type=gate_type, command=command, required=required, timeout_ms=timeout_ms)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "executor", "run", "gates", "memory", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"Cannot parse {path}: {exc}") from exc
    return ForemanConfig.from_dict(data)


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
