from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
TaskPriority = Literal["critical", "high", "medium", "low"]
AttemptStatus = Literal["success", "failure", "blocked", "timeout"]
DocumentStatus = Literal["draft", "ready", "in_progress", "completed", "failed", "archived"]
ExecutionMode = Literal["loop", "team"]
RunStatus = Literal["running", "completed", "failed", "aborted", "halted"]

TASK_STATUSES = ("pending", "in_progress", "completed", "failed", "skipped")
TASK_PRIORITIES = ("critical", "high", "medium", "low")
TERMINAL_TASK_STATUSES = frozenset({"completed", "failed", "skipped"})
SATISFIED_TASK_STATUSES = frozenset({"completed", "skipped"})

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_GATE_TIMEOUT_MS = 120_000
AGENT_OUTPUT_TAIL = 2000
GATE_OUTPUT_TAIL = 4000


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def task_id_for(sequence: int) -> str:
    return f"task_{sequence:03d}"


def new_document_id() -> str:
    return f"prd_{secrets.token_hex(4)}"


def tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[-limit:]


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


@dataclass(slots=True)
class QualityGate:
    type: str
    command: str
    required: bool = True
    timeout_ms: int = DEFAULT_GATE_TIMEOUT_MS

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "command": self.command,
            "required": self.required,
            "timeout_ms": self.timeout_ms,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QualityGate:
        return cls(
            type=str(payload.get("type") or "custom"),
            command=str(payload.get("command") or ""),
            required=bool(payload.get("required", True)),
            timeout_ms=int(payload.get("timeout_ms") or DEFAULT_GATE_TIMEOUT_MS),
        )


@dataclass(slots=True)
class GateResult:
    type: str
    command: str
    passed: bool
    output: str
    required: bool = True
    duration_ms: int = 0
    exit_code: int | None = None

    def summary(self) -> dict[str, Any]:
        return {"type": self.type, "command": self.command, "passed": self.passed}


@dataclass(slots=True)
class TaskAttempt:
    attempt_number: int
    status: AttemptStatus
    agent_output: str = ""
    gate_output: str = ""
    started_at: str = field(default_factory=utcnow_iso)
    duration_ms: int = 0
    exit_code: int | None = None
    error: str | None = None
    gate_results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "status": self.status,
            "agent_output": self.agent_output,
            "gate_output": self.gate_output,
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
            "exit_code": self.exit_code,
            "error": self.error,
            "gate_results": [dict(item) for item in self.gate_results],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskAttempt:
        return cls(
            attempt_number=int(payload["attempt_number"]),
            status=str(payload.get("status", "failure")),  # type: ignore[arg-type]
            agent_output=str(payload.get("agent_output", "")),
            gate_output=str(payload.get("gate_output", "")),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            duration_ms=int(payload.get("duration_ms", 0)),
            exit_code=payload.get("exit_code"),
            error=payload.get("error"),
            gate_results=[dict(item) for item in payload.get("gate_results", [])],
        )


@dataclass(slots=True)
class Task:
    id: str
    sequence: int
    title: str
    description: str = ""
    status: TaskStatus = "pending"
    priority: TaskPriority = "medium"
    depends_on: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    relevant_files: list[str] = field(default_factory=list)
    context_queries: list[str] = field(default_factory=list)
    attempts: list[TaskAttempt] = field(default_factory=list)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    document_id: str = ""
    failure_reason: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - len(self.attempts))

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "sequence": self.sequence,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "depends_on": list(self.depends_on),
            "acceptance_criteria": list(self.acceptance_criteria),
            "files_to_modify": list(self.files_to_modify),
            "relevant_files": list(self.relevant_files),
            "context_queries": list(self.context_queries),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "max_attempts": self.max_attempts,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        status = str(payload.get("status", "pending"))
        if status not in TASK_STATUSES:
            status = "pending"
        priority = str(payload.get("priority", "medium"))
        if priority not in TASK_PRIORITIES:
            priority = "medium"
        return cls(
            id=str(payload["id"]),
            sequence=int(payload.get("sequence", 0)),
            title=str(payload.get("title", "")),
            description=str(payload.get("description", "")),
            status=status,  # type: ignore[arg-type]
            priority=priority,  # type: ignore[arg-type]
            depends_on=list(dict.fromkeys(_string_list(payload.get("depends_on")))),
            acceptance_criteria=_string_list(payload.get("acceptance_criteria")),
            files_to_modify=_string_list(payload.get("files_to_modify")),
            relevant_files=_string_list(payload.get("relevant_files")),
            context_queries=_string_list(payload.get("context_queries")),
            attempts=[TaskAttempt.from_dict(item) for item in payload.get("attempts", [])],
            max_attempts=int(payload.get("max_attempts") or DEFAULT_MAX_ATTEMPTS),
            document_id=str(payload.get("document_id", "")),
            failure_reason=payload.get("failure_reason"),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class DocumentStats:
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    total_attempts: int = 0
    total_duration_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "skipped_tasks": self.skipped_tasks,
            "total_attempts": self.total_attempts,
            "total_duration_ms": self.total_duration_ms,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> DocumentStats:
        return cls(**{key: int(payload.get(key, 0)) for key in cls().to_dict()})


def compute_stats(tasks: list[Task]) -> DocumentStats:
    return DocumentStats(
        total_tasks=len(tasks),
        completed_tasks=sum(1 for task in tasks if task.status == "completed"),
        failed_tasks=sum(1 for task in tasks if task.status == "failed"),
        skipped_tasks=sum(1 for task in tasks if task.status == "skipped"),
        total_attempts=sum(len(task.attempts) for task in tasks),
        total_duration_ms=sum(
            attempt.duration_ms for task in tasks for attempt in task.attempts
        ),
    )


@dataclass(slots=True)
class FeatureDocument:
    id: str
    title: str
    description: str = ""
    status: DocumentStatus = "draft"
    execution_mode: ExecutionMode = "loop"
    goals: list[str] = field(default_factory=list)
    out_of_scope: list[str] = field(default_factory=list)
    quality_gates: list[QualityGate] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    stats: DocumentStats = field(default_factory=DocumentStats)

    @classmethod
    def create(
        cls,
        title: str,
        description: str = "",
        *,
        quality_gates: list[QualityGate] | None = None,
        execution_mode: ExecutionMode = "loop",
    ) -> FeatureDocument:
        return cls(
            id=new_document_id(),
            title=title,
            description=description,
            execution_mode=execution_mode,
            quality_gates=list(quality_gates or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "execution_mode": self.execution_mode,
            "goals": list(self.goals),
            "out_of_scope": list(self.out_of_scope),
            "quality_gates": [gate.to_dict() for gate in self.quality_gates],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FeatureDocument:
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            description=str(payload.get("description", "")),
            status=str(payload.get("status", "draft")),  # type: ignore[arg-type]
            execution_mode=str(payload.get("execution_mode", "loop")),  # type: ignore[arg-type]
            goals=_string_list(payload.get("goals")),
            out_of_scope=_string_list(payload.get("out_of_scope")),
            quality_gates=[
                QualityGate.from_dict(item) for item in payload.get("quality_gates", [])
            ],
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            stats=DocumentStats.from_dict(payload.get("stats") or {}),
        )


@dataclass(slots=True)
class RunRecord:
    document_id: str
    mode: ExecutionMode = "loop"
    status: RunStatus = "running"
    branch: str | None = None
    original_branch: str | None = None
    use_branch: bool = False
    stashed: bool = False
    started_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None
    active_task_ids: list[str] = field(default_factory=list)
    attempts_used: int = 0
    max_iterations: int | None = None
    concurrency: int = 1
    pid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "mode": self.mode,
            "status": self.status,
            "branch": self.branch,
            "original_branch": self.original_branch,
            "use_branch": self.use_branch,
            "stashed": self.stashed,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "active_task_ids": list(self.active_task_ids),
            "attempts_used": self.attempts_used,
            "max_iterations": self.max_iterations,
            "concurrency": self.concurrency,
            "pid": self.pid,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunRecord:
        return cls(
            document_id=str(payload["document_id"]),
            mode=str(payload.get("mode", "loop")),  # type: ignore[arg-type]
            status=str(payload.get("status", "running")),  # type: ignore[arg-type]
            branch=payload.get("branch"),
            original_branch=payload.get("original_branch"),
            use_branch=bool(payload.get("use_branch", False)),
            stashed=bool(payload.get("stashed", False)),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            ended_at=payload.get("ended_at"),
            active_task_ids=_string_list(payload.get("active_task_ids")),
            attempts_used=int(payload.get("attempts_used", 0)),
            max_iterations=payload.get("max_iterations"),
            concurrency=int(payload.get("concurrency", 1)),
            pid=payload.get("pid"),
        )


@dataclass(slots=True)
class RunConfig:
    mode: ExecutionMode = "loop"
    concurrency: int = 3
    resume: bool = False
    task_filter: str | None = None
    dry_run: bool = False
    max_iterations: int | None = None
    use_branch: bool = False
    model_override: str | None = None
    force: bool = False


@dataclass(slots=True)
class TaskOutcome:
    status: TaskStatus
    attempts: int
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "attempts": self.attempts,
            "failure_reason": self.failure_reason,
        }


@dataclass(slots=True)
class RunResult:
    document_id: str
    success: bool
    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)
    duration_ms: int = 0
    order: list[str] = field(default_factory=list)
    waves: list[list[str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    halted_reason: str | None = None
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "success": self.success,
            "outcomes": {task_id: item.to_dict() for task_id, item in self.outcomes.items()},
            "duration_ms": self.duration_ms,
            "order": list(self.order),
            "waves": [list(wave) for wave in self.waves],
            "warnings": list(self.warnings),
            "halted_reason": self.halted_reason,
            "dry_run": self.dry_run,
        }
