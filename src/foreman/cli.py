from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from foreman.config import (
    CONFIG_FILENAME,
    ForemanConfig,
    load_config,
    parse_gate_spec,
    save_config,
)
from foreman.context import ContextAssembler, KeywordRecall
from foreman.decompose import (
    AgentCallSettings,
    AgentDocumentGenerator,
    AgentTaskDecomposer,
    extract_list_section,
    extract_title,
    generate_document,
    parse_document,
)
from foreman.errors import ForemanError
from foreman.executor import AgentExecutor, ClaudeCodeExecutor
from foreman.gates import detect_quality_gates, format_gate_results, raise_for_failures, run_gates
from foreman.models import FeatureDocument, QualityGate, RunConfig, RunResult, Task
from foreman.orchestrator import Orchestrator, OrchestratorSettings
from foreman.state import GitBranchManager, RunStore

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    "pending": "[ ]",
    "in_progress": "[~]",
    "completed": "[+]",
    "failed": "[x]",
    "skipped": "[-]",
}


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    store: RunStore
    vcs: GitBranchManager


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=RunStore(repo_root / config.state.dir),
        vcs=GitBranchManager(repo_root, state_dir=config.state.dir),
    )


def _runtime_from_option(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "task_started":
        click.echo(
            f"-> {event['task_id']}: {event['title']} "
            f"(attempt {event['attempt']}/{event['max_attempts']})"
        )
    elif name == "task_attempt":
        icon = STATUS_ICONS.get(str(event.get("task_status")), "[?]")
        detail = f" - {event['error']}" if event.get("error") else ""
        click.echo(
            f"{icon} {event['task_id']} attempt {event['attempt']}: {event['status']}{detail}"
        )
    elif name == "task_skipped":
        click.echo(f"[-] {event['task_id']} skipped (dependency {event['blocker']} failed)")
    else:
        logger.debug("event: %s", event)


def _build_executor(runtime: Runtime) -> AgentExecutor:
    return ClaudeCodeExecutor(
        runtime.config.executor.binary,
        event_hook=lambda event: logger.debug("executor event: %s", event),
    )


def _agent_settings(runtime: Runtime) -> AgentCallSettings:
    return AgentCallSettings(
        cwd=runtime.repo_root,
        model=runtime.config.executor.model or None,
    )


def _quality_gates(runtime: Runtime, gate_specs: tuple[str, ...]) -> list[QualityGate]:
    timeout_ms = runtime.config.gates.gate_timeout_ms
    gates = runtime.config.quality_gates()
    gates.extend(parse_gate_spec(spec, timeout_ms=timeout_ms) for spec in gate_specs)
    if not gates and runtime.config.gates.auto_detect:
        gates = detect_quality_gates(runtime.repo_root, timeout_ms=timeout_ms)
    return gates


def _resolve_document_id(store: RunStore, document_id: str | None) -> str:
    if document_id:
        return document_id
    latest = store.find_latest()
    if latest is None:
        raise click.ClickException("No documents found. Run `foreman generate` first.")
    return str(latest["id"])


def _build_orchestrator(runtime: Runtime) -> Orchestrator:
    config = runtime.config
    return Orchestrator(
        runtime.store,
        lambda: _build_executor(runtime),
        settings=OrchestratorSettings(
            repo_root=runtime.repo_root,
            timeout_ms=config.executor.timeout_ms,
            model=config.executor.model or None,
            permission_mode=config.executor.permission_mode or None,
            allowed_tools=list(config.executor.allowed_tools),
            mcp_config=config.executor.mcp_config_file or None,
            branch_policy=config.run.branch_policy,
            reset_on_failure=config.run.reset_on_failure,
        ),
        assembler=ContextAssembler(
            KeywordRecall(runtime.repo_root / config.memory.file),
            limit=config.memory.limit,
            threshold=config.memory.threshold,
        ),
        vcs=runtime.vcs,
        event_hook=_echo_event,
    )


async def _run_with_interrupts(
    orchestrator: Orchestrator, document_id: str, run_config: RunConfig
) -> RunResult:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.abort)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        installed = False
    try:
        return await orchestrator.run(document_id, run_config)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        click.echo(f"warning: {warning}", err=True)


def _print_tasks(tasks: list[Task]) -> None:
    for task in tasks:
        icon = STATUS_ICONS.get(task.status, "[?]")
        deps = f" (after {', '.join(task.depends_on)})" if task.depends_on else ""
        click.echo(f"  {icon} {task.id} [{task.priority}] {task.title}{deps}")
        if task.failure_reason and task.status in {"failed", "skipped"}:
            click.echo(f"        {task.failure_reason}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Foreman: dependency-ordered task runs for coding agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--name", default=None, help="Project name stored in the config.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(name: str | None, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    if name:
        runtime.config.project.name = name
    save_config(runtime.config_path, runtime.config)
    try:
        runtime.store.ensure_layout()
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc

    gitignore = runtime.repo_root / ".gitignore"
    entry = f"{runtime.config.state.dir.strip('/')}/"
    if runtime.vcs.git_enabled:
        existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        if entry not in existing.splitlines():
            prefix = "" if not existing or existing.endswith("\n") else "\n"
            gitignore.write_text(f"{existing}{prefix}{entry}\n", encoding="utf-8")

    click.echo(f"Initialized foreman in {runtime.repo_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"State: {runtime.store.root}")


@cli.command("generate")
@click.argument("description")
@click.option("--gate", "gate_specs", multiple=True, help="Quality gate as type:command.")
@click.option("--mode", type=click.Choice(["loop", "team"]), default=None)
@click.option("--parse", "then_parse", is_flag=True, default=False, help="Decompose right away.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def generate_command(
    description: str,
    gate_specs: tuple[str, ...],
    mode: str | None,
    then_parse: bool,
    config_value: str,
) -> None:
    runtime = _runtime_from_option(config_value)
    executor = _build_executor(runtime)
    try:
        gates = _quality_gates(runtime, gate_specs)
        document, markdown = asyncio.run(
            generate_document(
                runtime.store,
                AgentDocumentGenerator(executor, _agent_settings(runtime)),
                description,
                root=runtime.repo_root,
                quality_gates=gates,
                execution_mode=mode or runtime.config.run.mode,  # type: ignore[arg-type]
            )
        )
        click.echo(f"Created {document.id}: {document.title}")
        click.echo(f"Document: {runtime.store.document_dir(document.id) / 'prd.md'}")
        if then_parse:
            outcome = asyncio.run(
                parse_document(
                    runtime.store,
                    AgentTaskDecomposer(executor, _agent_settings(runtime)),
                    document,
                    markdown,
                    root=runtime.repo_root,
                    max_attempts=runtime.config.run.max_attempts,
                )
            )
            _print_warnings(outcome.warnings)
            click.echo(f"Parsed {len(outcome.tasks)} task(s)")
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("parse")
@click.argument("source")
@click.option("--gate", "gate_specs", multiple=True, help="Quality gate as type:command.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def parse_command(source: str, gate_specs: tuple[str, ...], config_value: str) -> None:
    """Decompose a stored document, or a markdown file, into tasks."""
    runtime = _runtime_from_option(config_value)
    store = runtime.store
    try:
        source_path = Path(source)
        if source_path.is_file():
            markdown = source_path.read_text(encoding="utf-8")
            document = FeatureDocument.create(
                extract_title(markdown, source_path.stem),
                quality_gates=_quality_gates(runtime, gate_specs),
                execution_mode=runtime.config.run.mode,
            )
            document.goals = extract_list_section(markdown, "Goals")
            document.out_of_scope = extract_list_section(markdown, "Out of Scope")
            store.save_document(document)
            store.save_markdown(document.id, markdown)
        else:
            document = store.get_document(source)
            markdown = store.load_markdown(document.id) or ""
            if not markdown.strip():
                raise click.ClickException(f"Document {document.id} has no markdown to parse.")

        outcome = asyncio.run(
            parse_document(
                store,
                AgentTaskDecomposer(_build_executor(runtime), _agent_settings(runtime)),
                document,
                markdown,
                root=runtime.repo_root,
                max_attempts=runtime.config.run.max_attempts,
            )
        )
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc

    _print_warnings(outcome.warnings)
    click.echo(f"{outcome.document.id}: {outcome.document.title}")
    _print_tasks(outcome.tasks)


@cli.command("run")
@click.argument("document_id", required=False)
@click.option("--mode", type=click.Choice(["loop", "team"]), default=None)
@click.option("--concurrency", type=click.IntRange(min=1), default=None)
@click.option("--resume", is_flag=True, default=False)
@click.option("--task", "task_filter", default=None, help="Run only this task id.")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--no-branch", is_flag=True, default=False, help="Work on the current branch.")
@click.option("--model", "model_override", default=None)
@click.option("--force", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(
    document_id: str | None,
    mode: str | None,
    concurrency: int | None,
    resume: bool,
    task_filter: str | None,
    dry_run: bool,
    max_iterations: int | None,
    no_branch: bool,
    model_override: str | None,
    force: bool,
    config_value: str,
) -> None:
    runtime = _runtime_from_option(config_value)
    settings = runtime.config.run
    try:
        resolved_id = _resolve_document_id(runtime.store, document_id)
        document = runtime.store.get_document(resolved_id)
        run_config = RunConfig(
            mode=mode or document.execution_mode or settings.mode,  # type: ignore[arg-type]
            concurrency=concurrency or settings.concurrency,
            resume=resume,
            task_filter=task_filter,
            dry_run=dry_run,
            max_iterations=max_iterations or settings.max_iterations or None,
            use_branch=settings.use_branch and not no_branch,
            model_override=model_override,
            force=force,
        )
        orchestrator = _build_orchestrator(runtime)
        result = asyncio.run(_run_with_interrupts(orchestrator, resolved_id, run_config))
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc

    _print_warnings(result.warnings)
    if result.dry_run:
        click.echo(f"Dry run for {resolved_id} ({run_config.mode} mode)")
        click.echo(f"Order: {' -> '.join(result.order)}")
        if run_config.mode == "team":
            for index, wave in enumerate(result.waves, start=1):
                click.echo(f"  wave {index}: {', '.join(wave)}")
        return

    completed = sum(1 for outcome in result.outcomes.values() if outcome.status == "completed")
    click.echo(
        f"Run {'succeeded' if result.success else 'did not succeed'}: "
        f"{completed}/{len(result.outcomes)} task(s) completed in {result.duration_ms / 1000:.1f}s"
    )
    if result.halted_reason:
        click.echo(f"Halted: {result.halted_reason}. Continue with `foreman run --resume`.")
    if not result.success:
        raise SystemExit(1)


@cli.command("list")
@click.option("--all", "include_all", is_flag=True, default=False, help="Include archived.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def list_command(include_all: bool, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        entries = runtime.store.load_index(include_archived=include_all)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    if not entries:
        click.echo("No documents found.")
        return
    for entry in sorted(entries, key=lambda item: str(item.get("created_at", ""))):
        stats = entry.get("stats") or {}
        click.echo(
            f"{entry['id']} {str(entry.get('status', '')):<11} "
            f"{stats.get('completed_tasks', 0)}/{stats.get('total_tasks', 0)} "
            f"{entry.get('title', '')}"
        )


@cli.command("status")
@click.argument("document_id", required=False)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(document_id: str | None, as_json: bool, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        resolved_id = _resolve_document_id(runtime.store, document_id)
        document = runtime.store.get_document(resolved_id)
        tasks = runtime.store.load_tasks(resolved_id)
        record = runtime.store.load_run_record(resolved_id)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        payload = {
            "document": document.to_dict(),
            "tasks": [task.to_dict() for task in tasks],
            "run": record.to_dict() if record else None,
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    click.echo(f"{document.id}: {document.title} [{document.status}]")
    if record:
        branch = f" on {record.branch}" if record.branch else ""
        click.echo(f"Last run: {record.status} ({record.mode}){branch}")
    if not tasks:
        click.echo("No tasks yet. Run `foreman parse` first.")
        return
    _print_tasks(tasks)
    stats = document.stats
    click.echo(
        f"{stats.completed_tasks}/{stats.total_tasks} completed, {stats.failed_tasks} failed, "
        f"{stats.skipped_tasks} skipped, {stats.total_attempts} attempt(s)"
    )


@cli.command("archive")
@click.argument("document_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def archive_command(document_id: str, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        document = runtime.store.get_document(document_id)
        if document.status == "in_progress":
            raise click.ClickException(f"Document {document_id} is in progress.")
        document.status = "archived"
        runtime.store.save_document(document)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Archived {document_id}")


def _markdown_report(document: FeatureDocument, tasks: list[Task], progress: str) -> str:
    lines = [f"# {document.title}", "", f"- id: {document.id}", f"- status: {document.status}"]
    stats = document.stats
    lines.append(
        f"- tasks: {stats.completed_tasks}/{stats.total_tasks} completed, "
        f"{stats.failed_tasks} failed, {stats.skipped_tasks} skipped"
    )
    lines.extend(["", "## Tasks", ""])
    for task in tasks:
        lines.append(f"- {STATUS_ICONS.get(task.status, '[?]')} {task.id}: {task.title}")
        for attempt in task.attempts:
            error = f" ({attempt.error})" if attempt.error else ""
            lines.append(f"  - attempt {attempt.attempt_number}: {attempt.status}{error}")
    if progress.strip():
        lines.extend(["", "## Progress", "", progress.rstrip()])
    return "\n".join(lines) + "\n"


@cli.command("export")
@click.argument("document_id", required=False)
@click.option("--format", "fmt", type=click.Choice(["json", "markdown"]), default="json")
@click.option("--output", "output_path", type=click.Path(dir_okay=False), default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def export_command(
    document_id: str | None, fmt: str, output_path: str | None, config_value: str
) -> None:
    runtime = _runtime_from_option(config_value)
    store = runtime.store
    try:
        resolved_id = _resolve_document_id(store, document_id)
        document = store.get_document(resolved_id)
        tasks = store.load_tasks(resolved_id)
        progress = store.load_progress(resolved_id)
        record = store.load_run_record(resolved_id)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc

    if fmt == "markdown":
        content = _markdown_report(document, tasks, progress)
    else:
        content = json.dumps(
            {
                "document": document.to_dict(),
                "markdown": store.load_markdown(resolved_id),
                "tasks": [task.to_dict() for task in tasks],
                "run": record.to_dict() if record else None,
                "progress": progress,
            },
            ensure_ascii=False,
            indent=2,
        )
    if output_path:
        Path(output_path).write_text(content, encoding="utf-8")
        click.echo(f"Exported {resolved_id} to {output_path}")
    else:
        click.echo(content)


@cli.command("check")
@click.option("--gate", "gate_specs", multiple=True, help="Quality gate as type:command.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def check_command(gate_specs: tuple[str, ...], config_value: str) -> None:
    """Run the configured quality gates against the working tree."""
    runtime = _runtime_from_option(config_value)
    try:
        gates = _quality_gates(runtime, gate_specs)
        if not gates:
            click.echo("No quality gates configured or detected.")
            return
        results = asyncio.run(run_gates(gates, runtime.repo_root))
        click.echo(format_gate_results(results))
        raise_for_failures(results)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("All required gates passed.")
