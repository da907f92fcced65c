from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from foreman.context import ContextAssembler
from foreman.errors import BlockedTask, StorageError, ValidationError, VersionControlError
from foreman.executor import AgentExecutor, ExecuteOptions, ExecuteResult
from foreman.gates import (
    GateRunner,
    all_required_passed,
    failure_report,
    format_gate_results,
    run_gates,
)
from foreman.graph import GraphValidation, conflict_map, dependencies_met, plan_waves
from foreman.graph import validate_task_graph
from foreman.models import (
    AGENT_OUTPUT_TAIL,
    GATE_OUTPUT_TAIL,
    FeatureDocument,
    GateResult,
    QualityGate,
    RunConfig,
    RunRecord,
    RunResult,
    Task,
    TaskAttempt,
    TaskOutcome,
    tail,
    utcnow_iso,
)
from foreman.prompts import PromptComposer, find_blocked_reason, with_failure_context
from foreman.state.store import RunStore, pid_alive
from foreman.state.vcs import GitBranchManager

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[], AgentExecutor]
OrchestratorEventHook = Callable[[dict[str, Any]], None]
OutputHook = Callable[[str, str], None]

SKIP_REASON_PREFIX = "Dependency failed:"
TERMINAL_DOCUMENT_STATUSES = frozenset({"completed", "failed", "archived"})


@dataclass(slots=True)
class OrchestratorSettings:
    repo_root: Path
    timeout_ms: int = 900_000
    model: str | None = None
    permission_mode: str | None = "acceptEdits"
    allowed_tools: list[str] = field(default_factory=list)
    mcp_config: str | None = None
    branch_prefix: str = "foreman/"
    branch_policy: str = "keep"
    reset_on_failure: bool = True
    output_hook: OutputHook | None = None


@dataclass(slots=True)
class AttemptReport:
    task_id: str
    attempt: TaskAttempt | None
    output: str = ""
    gate_results: list[GateResult] = field(default_factory=list)
    blocked: BlockedTask | None = None
    aborted: bool = False


def _pid_alive(pid: int | None) -> bool:
    if not pid or pid == os.getpid():
        return False
    return pid_alive(pid)


def _is_failure_skip(task: Task) -> bool:
    return task.status == "skipped" and (task.failure_reason or "").startswith(SKIP_REASON_PREFIX)


class Orchestrator:
    """Drives a document's tasks through context, prompt, agent and gates.

    The coroutine running ``run()`` is the only writer of task state. In team
    mode attempts run as separate asyncio tasks that return an
    ``AttemptReport``; the owner applies each report when it arrives.
    """

    def __init__(
        self,
        store: RunStore,
        executor_factory: ExecutorFactory,
        *,
        settings: OrchestratorSettings,
        assembler: ContextAssembler,
        composer: PromptComposer | None = None,
        gate_runner: GateRunner = run_gates,
        vcs: GitBranchManager | None = None,
        event_hook: OrchestratorEventHook | None = None,
    ) -> None:
        self.store = store
        self.executor_factory = executor_factory
        self.settings = settings
        self.assembler = assembler
        self.composer = composer or PromptComposer()
        self.gate_runner = gate_runner
        self.vcs = vcs
        self.event_hook = event_hook
        self._aborted = False
        self._active_executors: dict[str, AgentExecutor] = {}
        self._attempts_started = 0

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        """Stop dispatching and abort every in-flight agent call."""
        if not self._aborted:
            logger.info("Abort requested; stopping %d agent(s)", len(self._active_executors))
        self._aborted = True
        for executor in list(self._active_executors.values()):
            executor.abort()

    # Entry point

    async def run(self, document_id: str, config: RunConfig) -> RunResult:
        start = time.monotonic()
        self._aborted = False
        self._attempts_started = 0

        if config.mode not in ("loop", "team"):
            raise ValidationError(f"Unknown execution mode: {config.mode}")
        document = self.store.get_document(document_id)
        tasks = self.store.load_tasks(document_id)
        if not tasks:
            raise ValidationError(f"Document {document_id} has no tasks. Parse it first.")

        validation = validate_task_graph(tasks)
        validation.raise_for_errors()
        for warning in validation.warnings:
            logger.warning("%s", warning)

        by_id = {task.id: task for task in tasks}
        if config.task_filter and config.task_filter not in by_id:
            raise ValidationError(f"Unknown task id: {config.task_filter}")

        if config.dry_run:
            return self._dry_run(document, tasks, validation, config, start)

        record = self._prepare(document, tasks, config)
        halted_reason: str | None = None
        error: BaseException | None = None
        try:
            if config.mode == "team":
                halted_reason = await self._run_team(document, tasks, validation, record, config)
            else:
                halted_reason = await self._run_loop(document, tasks, validation, record, config)
        except BaseException as exc:
            error = exc
            raise
        finally:
            result = self._finish(
                document, tasks, validation, record, config, halted_reason, error, start
            )
        return result

    # Preparation

    def _dry_run(
        self,
        document: FeatureDocument,
        tasks: list[Task],
        validation: GraphValidation,
        config: RunConfig,
        start: float,
    ) -> RunResult:
        if config.task_filter:
            order = [config.task_filter]
            waves = [[config.task_filter]]
        else:
            order = validation.order_ids
            width = max(1, config.concurrency) if config.mode == "team" else 1
            waves = plan_waves(tasks, concurrency=width, conflicts=validation.conflicts)
        logger.info("Dry run for %s: %d task(s) planned", document.id, len(order))
        return RunResult(
            document_id=document.id,
            success=True,
            outcomes={
                task.id: TaskOutcome(task.status, len(task.attempts), task.failure_reason)
                for task in tasks
            },
            duration_ms=int((time.monotonic() - start) * 1000),
            order=order,
            waves=waves,
            warnings=list(validation.warnings),
            dry_run=True,
        )

    def _check_not_running(self, existing: RunRecord | None, config: RunConfig) -> None:
        if existing is None or existing.status != "running" or config.force:
            return
        if _pid_alive(existing.pid):
            raise ValidationError(
                f"Another run (PID {existing.pid}) may still be executing {existing.document_id}. "
                "Use --force to override, or stop that process first."
            )

    def _prepare(
        self, document: FeatureDocument, tasks: list[Task], config: RunConfig
    ) -> RunRecord:
        existing = self.store.load_run_record(document.id)
        self._check_not_running(existing, config)

        if config.resume:
            if existing is None:
                raise ValidationError(
                    f"No run state for {document.id}. Start a fresh run without --resume."
                )
            if document.status in TERMINAL_DOCUMENT_STATUSES and not config.force:
                raise ValidationError(
                    f"Document {document.id} is already {document.status}; nothing to resume. "
                    "Use --force to resume anyway."
                )
            for task in tasks:
                if task.status == "in_progress":
                    task.status = "pending"
                    task.touch()
                    self.store.save_task(task)
                    self.store.append_progress(
                        document.id, f"Reset {task.id} from in_progress to pending"
                    )
            record = existing
            record.mode = config.mode
            record.concurrency = max(1, config.concurrency)
            record.max_iterations = config.max_iterations or None
            if record.use_branch:
                self._checkout_run_branch(record)
        else:
            if document.status == "archived" and not config.force:
                raise ValidationError(f"Document {document.id} is archived.")
            stuck = [task.id for task in tasks if task.status == "in_progress"]
            if stuck:
                raise ValidationError(
                    f"Tasks {', '.join(stuck)} were left in progress by an earlier run. "
                    "Use --resume to continue it."
                )
            record = RunRecord(
                document_id=document.id,
                mode=config.mode,
                use_branch=config.use_branch,
                max_iterations=config.max_iterations or None,
                concurrency=max(1, config.concurrency),
            )
            if config.use_branch:
                self._create_run_branch(document, record)

        record.status = "running"
        record.pid = os.getpid()
        record.ended_at = None
        record.active_task_ids = []
        if not config.resume:
            record.started_at = utcnow_iso()

        by_id = {task.id: task for task in tasks}
        for task in tasks:
            if task.status == "pending" and task.attempts_left == 0:
                task.status = "failed"
                task.failure_reason = task.failure_reason or "Attempt budget exhausted"
                task.touch()
                self.store.save_task(task)
        self._propagate_skips(document, by_id, protected=config.task_filter)

        document.status = "in_progress"
        document.started_at = document.started_at or utcnow_iso()
        document.completed_at = None
        self.store.save_document(document)
        self.store.save_run_record(record)
        self.store.append_progress(
            document.id,
            ("Resumed" if config.resume else "Started")
            + f" run (mode: {config.mode}, branch: {record.branch or 'none'}, pid {record.pid})",
        )
        self._emit({"event": "run_started", "document_id": document.id, "mode": config.mode})
        return record

    def _require_vcs(self) -> GitBranchManager:
        if self.vcs is None or not self.vcs.git_enabled:
            raise ValidationError("Running on a branch needs a git repository; use --no-branch.")
        return self.vcs

    def _create_run_branch(self, document: FeatureDocument, record: RunRecord) -> None:
        vcs = self._require_vcs()
        branch = f"{self.settings.branch_prefix}{document.id}"
        record.original_branch = vcs.current_branch()
        if record.original_branch == branch:
            raise ValidationError(f"Already on the run branch {branch}; use --resume.")
        record.stashed = vcs.stash(f"foreman: auto-stash before {document.id}")
        if vcs.branch_exists(branch):
            vcs.checkout(branch)
        else:
            vcs.create_and_checkout(branch)
        record.branch = branch

    def _checkout_run_branch(self, record: RunRecord) -> None:
        vcs = self._require_vcs()
        if not record.branch or not vcs.branch_exists(record.branch):
            raise ValidationError(f"Run branch {record.branch} not found. Cannot resume.")
        if vcs.current_branch() != record.branch:
            vcs.checkout(record.branch)
        vcs.reset_worktree()

    # State transitions

    def _propagate_skips(
        self,
        document: FeatureDocument,
        by_id: dict[str, Task],
        *,
        protected: str | None = None,
    ) -> list[str]:
        """Skip every pending task that transitively depends on a failed task."""
        skipped: list[str] = []
        changed = True
        while changed:
            changed = False
            for task in by_id.values():
                if task.status != "pending" or task.id == protected:
                    continue
                blocker = next(
                    (
                        dep_id
                        for dep_id in task.depends_on
                        if dep_id in by_id
                        and (by_id[dep_id].status == "failed" or _is_failure_skip(by_id[dep_id]))
                    ),
                    None,
                )
                if blocker is None:
                    continue
                task.status = "skipped"
                task.failure_reason = f"{SKIP_REASON_PREFIX} {blocker}"
                task.touch()
                self.store.save_task(task)
                self.store.append_progress(
                    document.id, f"Skipped {task.id}: dependency {blocker} did not complete"
                )
                self._emit({"event": "task_skipped", "task_id": task.id, "blocker": blocker})
                skipped.append(task.id)
                changed = True
        return skipped

    def _begin_attempt(self, task: Task, record: RunRecord) -> int:
        self._attempts_started += 1
        record.attempts_used += 1
        task.status = "in_progress"
        task.touch()
        self.store.save_task(task)
        record.active_task_ids = sorted({*record.active_task_ids, task.id})
        self.store.save_run_record(record)
        attempt_number = len(task.attempts) + 1
        logger.info("Starting %s attempt %d/%d", task.id, attempt_number, task.max_attempts)
        self._emit(
            {
                "event": "task_started",
                "task_id": task.id,
                "title": task.title,
                "attempt": attempt_number,
                "max_attempts": task.max_attempts,
            }
        )
        return attempt_number

    def _apply_report(
        self,
        document: FeatureDocument,
        by_id: dict[str, Task],
        record: RunRecord,
        report: AttemptReport,
        config: RunConfig,
    ) -> None:
        task = by_id[report.task_id]
        record.active_task_ids = [item for item in record.active_task_ids if item != task.id]
        if report.aborted or report.attempt is None:
            logger.info("%s aborted; left in progress for resume", task.id)
            self.store.save_run_record(record)
            return

        attempt = report.attempt
        task.attempts.append(attempt)
        self.store.append_task_log(
            document.id,
            task.id,
            f"\n===== attempt {attempt.attempt_number} ({attempt.status}) "
            f"{attempt.started_at} =====\n{report.output}\n"
            + (
                f"\n----- gates -----\n{format_gate_results(report.gate_results)}\n"
                if report.gate_results
                else ""
            ),
        )

        if attempt.status == "success":
            task.status = "completed"
            task.failure_reason = None
            self.store.append_progress(
                document.id,
                f"Completed {task.id}: {task.title} (attempt {attempt.attempt_number})",
            )
        elif attempt.status == "blocked" and report.blocked is not None:
            task.status = "failed"
            task.failure_reason = f"Blocked: {report.blocked.reason}"
            self.store.append_progress(
                document.id, f"Failed {task.id}: blocked ({report.blocked.reason})"
            )
        elif len(task.attempts) >= task.max_attempts:
            task.status = "failed"
            task.failure_reason = attempt.error or "Attempt failed"
            self.store.append_progress(
                document.id,
                f"Failed {task.id} after {len(task.attempts)} attempt(s): {task.failure_reason}",
            )
        else:
            task.status = "pending"
        task.touch()
        self.store.save_task(task)
        self.store.save_run_record(record)

        logger.info("%s attempt %d: %s", task.id, attempt.attempt_number, attempt.status)
        self._emit(
            {
                "event": "task_attempt",
                "task_id": task.id,
                "attempt": attempt.attempt_number,
                "status": attempt.status,
                "task_status": task.status,
                "error": attempt.error,
            }
        )
        if task.status == "failed":
            self._propagate_skips(document, by_id, protected=config.task_filter)

    # Attempt worker

    def _execute_options(self, task_id: str, config: RunConfig) -> ExecuteOptions:
        output_hook = self.settings.output_hook

        def _on_output(chunk: str) -> None:
            if output_hook:
                output_hook(task_id, chunk)

        return ExecuteOptions(
            cwd=self.settings.repo_root,
            timeout_ms=self.settings.timeout_ms,
            model=config.model_override or self.settings.model,
            permission_mode=self.settings.permission_mode,
            allowed_tools=list(self.settings.allowed_tools),
            mcp_config=self.settings.mcp_config,
            on_output=_on_output,
        )

    async def _run_attempt(
        self,
        task: Task,
        attempt_number: int,
        gates: list[QualityGate],
        progress: str,
        config: RunConfig,
    ) -> AttemptReport:
        """One context, prompt, agent, gates cycle. Reads task state, never writes it."""
        started_at = utcnow_iso()
        start = time.monotonic()

        context = await asyncio.to_thread(self.assembler.assemble, task, progress)
        prompt = self.composer.compose(task, gates, context)
        if task.attempts:
            previous = task.attempts[-1]
            prompt = with_failure_context(
                prompt, previous.attempt_number, previous.gate_output, previous.agent_output
            )

        executor = self.executor_factory()
        self._active_executors[task.id] = executor
        try:
            if self._aborted:
                executor.abort()
                return AttemptReport(task_id=task.id, attempt=None, aborted=True)
            result: ExecuteResult = await executor.execute(
                prompt.render(), self._execute_options(task.id, config)
            )
        finally:
            self._active_executors.pop(task.id, None)

        if result.aborted:
            return AttemptReport(task_id=task.id, attempt=None, output=result.output, aborted=True)

        blocked_reason = find_blocked_reason(result.output)
        gate_results: list[GateResult] = []
        if result.success and blocked_reason is None:
            gate_results = await self.gate_runner(gates, self.settings.repo_root)
        gates_passed = all_required_passed(gate_results)

        if blocked_reason is not None:
            status, error = "blocked", f"Blocked: {blocked_reason}"
        elif result.timed_out:
            status, error = "timeout", f"Agent timed out after {self.settings.timeout_ms} ms"
        elif not result.success:
            status, error = "failure", f"Agent exited with code {result.exit_code}"
        elif not gates_passed:
            failed = [item.type for item in gate_results if item.required and not item.passed]
            status, error = "failure", f"Quality gates failed: {', '.join(failed)}"
        else:
            status, error = "success", None

        attempt = TaskAttempt(
            attempt_number=attempt_number,
            status=status,  # type: ignore[arg-type]
            agent_output=tail(result.output, AGENT_OUTPUT_TAIL),
            gate_output=tail(failure_report(gate_results), GATE_OUTPUT_TAIL),
            started_at=started_at,
            duration_ms=int((time.monotonic() - start) * 1000),
            exit_code=result.exit_code,
            error=error,
            gate_results=[item.summary() for item in gate_results],
        )
        return AttemptReport(
            task_id=task.id,
            attempt=attempt,
            output=result.output,
            gate_results=gate_results,
            blocked=None if blocked_reason is None else BlockedTask(task.id, blocked_reason),
        )

    # Scheduling

    def _iterations_exhausted(self, config: RunConfig) -> bool:
        return bool(config.max_iterations) and self._attempts_started >= int(
            config.max_iterations or 0
        )

    def _in_scope(self, task: Task, config: RunConfig) -> bool:
        return config.task_filter is None or task.id == config.task_filter

    def _ready(self, task: Task, by_id: dict[str, Task], config: RunConfig) -> bool:
        if task.status != "pending" or not self._in_scope(task, config):
            return False
        if config.task_filter:
            return True
        return dependencies_met(task, by_id)

    async def _run_loop(
        self,
        document: FeatureDocument,
        tasks: list[Task],
        validation: GraphValidation,
        record: RunRecord,
        config: RunConfig,
    ) -> str | None:
        by_id = {task.id: task for task in tasks}
        gates = list(document.quality_gates)
        for task in validation.order:
            while self._ready(task, by_id, config):
                if self._aborted:
                    return "aborted"
                if self._iterations_exhausted(config):
                    return "max_iterations"
                attempt_number = self._begin_attempt(task, record)
                report = await self._run_attempt(
                    task, attempt_number, gates, self.store.load_progress(document.id), config
                )
                self._apply_report(document, by_id, record, report, config)
                if report.aborted:
                    return "aborted"
                self._after_loop_attempt(document, task, record)
        return "aborted" if self._aborted else None

    def _after_loop_attempt(self, document: FeatureDocument, task: Task, record: RunRecord) -> None:
        if not record.use_branch or self.vcs is None:
            return
        try:
            if task.status == "completed":
                commit = self.vcs.commit_all(f"foreman({document.id}): {task.id} {task.title}")
                if commit:
                    logger.info("Committed %s as %s", task.id, commit[:12])
            elif self.settings.reset_on_failure:
                self.vcs.reset_worktree()
        except VersionControlError as exc:
            logger.error("Git step after %s failed: %s", task.id, exc)
            self.store.append_progress(document.id, f"Git step after {task.id} failed: {exc}")

    async def _run_team(
        self,
        document: FeatureDocument,
        tasks: list[Task],
        validation: GraphValidation,
        record: RunRecord,
        config: RunConfig,
    ) -> str | None:
        by_id = {task.id: task for task in tasks}
        gates = list(document.quality_gates)
        conflicts = conflict_map(validation.conflicts)
        width = max(1, config.concurrency)
        running: dict[asyncio.Task[AttemptReport], str] = {}
        halted_reason: str | None = None

        try:
            while True:
                if not self._aborted and halted_reason is None:
                    for task in validation.order:
                        if len(running) >= width:
                            break
                        if not self._ready(task, by_id, config):
                            continue
                        running_ids = set(running.values())
                        if conflicts.get(task.id, set()) & running_ids:
                            continue
                        if self._iterations_exhausted(config):
                            halted_reason = "max_iterations"
                            break
                        attempt_number = self._begin_attempt(task, record)
                        worker = asyncio.create_task(
                            self._run_attempt(
                                task,
                                attempt_number,
                                gates,
                                self.store.load_progress(document.id),
                                config,
                            ),
                            name=f"foreman-{task.id}",
                        )
                        running[worker] = task.id

                if not running:
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for worker in done:
                    running.pop(worker)
                    self._apply_report(document, by_id, record, worker.result(), config)
        finally:
            if running:
                self.abort()
                await asyncio.gather(*running, return_exceptions=True)

        if self._aborted:
            return "aborted"
        stuck = [
            task.id for task in tasks if task.status == "pending" and self._in_scope(task, config)
        ]
        if stuck and halted_reason is None:
            logger.warning("No task can be dispatched; still pending: %s", ", ".join(stuck))
            halted_reason = "unschedulable"
        return halted_reason

    # Completion

    def _finish(
        self,
        document: FeatureDocument,
        tasks: list[Task],
        validation: GraphValidation,
        record: RunRecord,
        config: RunConfig,
        halted_reason: str | None,
        error: BaseException | None,
        start: float,
    ) -> RunResult:
        if error is not None and halted_reason is None:
            halted_reason = "aborted" if isinstance(error, asyncio.CancelledError) else "error"
        scope = [task for task in tasks if self._in_scope(task, config)]
        any_failed = any(task.status == "failed" for task in scope)
        unfinished = any(task.status in {"pending", "in_progress"} for task in scope)
        success = not any_failed and not unfinished and halted_reason is None

        if halted_reason == "aborted":
            record.status = "aborted"
        elif halted_reason is not None:
            record.status = "halted" if error is None else "failed"
        else:
            record.status = "failed" if any_failed else "completed"
        record.ended_at = utcnow_iso()

        if all(task.is_terminal for task in tasks):
            document.status = (
                "failed" if any(task.status == "failed" for task in tasks) else "completed"
            )
            document.completed_at = utcnow_iso()
        else:
            document.status = "in_progress"

        if record.use_branch and self.vcs is not None and record.branch:
            self._apply_branch_policy(document, record, success)

        try:
            record.active_task_ids = [task.id for task in tasks if task.status == "in_progress"]
            self.store.save_run_record(record)
            self.store.refresh_stats(document, tasks)
            self.store.append_progress(
                document.id,
                f"Run {record.status}: {document.stats.completed_tasks}/"
                f"{document.stats.total_tasks} completed, {document.stats.failed_tasks} failed, "
                f"{document.stats.skipped_tasks} skipped",
            )
        except StorageError:
            if error is None:
                raise
            logger.exception("Could not persist final run state for %s", document.id)

        self._emit({"event": "run_finished", "document_id": document.id, "status": record.status})
        return RunResult(
            document_id=document.id,
            success=success,
            outcomes={
                task.id: TaskOutcome(task.status, len(task.attempts), task.failure_reason)
                for task in scope
            },
            duration_ms=int((time.monotonic() - start) * 1000),
            order=[task.id for task in validation.order if self._in_scope(task, config)],
            warnings=list(validation.warnings),
            halted_reason=halted_reason,
        )

    def _apply_branch_policy(
        self, document: FeatureDocument, record: RunRecord, success: bool
    ) -> None:
        vcs = self.vcs
        assert vcs is not None and record.branch is not None
        policy = self.settings.branch_policy
        try:
            label = "complete" if success else "checkpoint"
            vcs.commit_all(f"foreman({document.id}): run {label}")
            if record.original_branch:
                vcs.restore(record.original_branch)
            if policy == "merge" and success:
                vcs.merge(record.branch)
                self.store.append_progress(document.id, f"Merged {record.branch}")
            elif policy == "discard" and not success and record.status == "failed":
                vcs.delete_branch(record.branch)
                self.store.append_progress(document.id, f"Discarded {record.branch}")
            else:
                self.store.append_progress(
                    document.id,
                    f"Review: git diff {record.original_branch}...{record.branch}",
                )
            if record.stashed and vcs.stash_pop():
                record.stashed = False
        except VersionControlError as exc:
            logger.error("Branch handling for %s failed: %s", document.id, exc)
