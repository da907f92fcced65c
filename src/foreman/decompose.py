from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from foreman.errors import ExecutionError, ValidationError
from foreman.executor import AgentExecutor, ExecuteOptions
from foreman.graph import validate_task_graph
from foreman.models import (
    DEFAULT_MAX_ATTEMPTS,
    TASK_PRIORITIES,
    ExecutionMode,
    FeatureDocument,
    QualityGate,
    Task,
    task_id_for,
)
from foreman.prompts import DECOMPOSE_PROMPT, GENERATE_PROMPT
from foreman.state.store import RunStore

logger = logging.getLogger(__name__)

FENCED_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
LINE_COMMENT_PATTERN = re.compile(r"^(\s*)//[^\n]*", re.MULTILINE)
TRAILING_COMMENT_PATTERN = re.compile(r",(\s*)//[^\n]*")
TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")
TITLE_PATTERN = re.compile(r"^#\s+(?:PRD:\s*)?(.+)$", re.MULTILINE)

TREE_IGNORE = {
    ".git",
    ".foreman",
    ".venv",
    "venv",
    "node_modules",
    "dist",
    "build",
    "__pycache__",
    ".pytest_cache",
    ".ruff_cache",
    ".mypy_cache",
    "coverage",
    ".cache",
}
TREE_CHAR_BUDGET = 8000


def _fix_malformed_json(text: str) -> str:
    fixed = LINE_COMMENT_PATTERN.sub("", text)
    fixed = TRAILING_COMMENT_PATTERN.sub(",", fixed)
    return TRAILING_COMMA_PATTERN.sub(r"\1", fixed)


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(_fix_malformed_json(text))
    except json.JSONDecodeError:
        return None


def _as_task_array(parsed: Any) -> list[Any] | None:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for value in parsed.values():
            if isinstance(value, list):
                return value
    return None


def extract_task_array(response: str) -> list[dict[str, Any]]:
    """Pull the raw task list out of a model response.

    Tried in order: the whole response, the first fenced code block, and the
    slice from the first ``[`` to the last ``]``. Object wrappers such as
    ``{"tasks": [...]}``, trailing commas and ``//`` comments are tolerated.
    """
    trimmed = response.strip()
    candidates: list[str] = [trimmed]
    block = FENCED_BLOCK_PATTERN.search(trimmed)
    if block:
        candidates.append(block.group(1).strip())
    first, last = trimmed.find("["), trimmed.rfind("]")
    if first >= 0 and last > first:
        candidates.append(trimmed[first : last + 1])

    for candidate in candidates:
        tasks = _as_task_array(_try_parse(candidate))
        if tasks is not None and all(isinstance(item, dict) for item in tasks):
            return tasks
    raise ValidationError(
        "Could not find a JSON task array in the decomposition output:\n" + trimmed[:500]
    )


def _normalize_dependency(dep: Any) -> str | None:
    if isinstance(dep, bool):
        return None
    if isinstance(dep, int):
        return task_id_for(dep)
    text = str(dep).strip()
    if not text:
        return None
    if text.startswith("task_"):
        return text
    if text.isdigit():
        return task_id_for(int(text))
    return text


def _string_items(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def normalize_tasks(
    raw_tasks: list[dict[str, Any]],
    document_id: str,
    warnings: list[str],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> list[Task]:
    tasks: list[Task] = []
    for index, raw in enumerate(raw_tasks):
        try:
            sequence = int(raw.get("sequence") or index + 1)
        except (TypeError, ValueError):
            sequence = index + 1
        title = str(raw.get("title") or "").strip()
        if not title:
            warnings.append(f"Task {sequence}: missing title")
            title = f"Task {sequence}"
        files = _string_items(raw.get("files_to_modify"))
        if not files:
            warnings.append(
                f'Task {sequence} "{title}": no files_to_modify; may conflict with other tasks'
            )
        depends_on: list[str] = []
        raw_deps = raw.get("depends_on") or []
        if not isinstance(raw_deps, list):
            raw_deps = [raw_deps]
        for dep in raw_deps:
            dep_id = _normalize_dependency(dep)
            if dep_id and dep_id not in depends_on:
                depends_on.append(dep_id)
        priority = str(raw.get("priority") or "medium").lower()
        if priority not in TASK_PRIORITIES:
            warnings.append(f"Task {sequence}: unknown priority {priority!r}, using medium")
            priority = "medium"
        tasks.append(
            Task(
                id=task_id_for(sequence),
                sequence=sequence,
                title=title,
                description=str(raw.get("description") or ""),
                priority=priority,  # type: ignore[arg-type]
                depends_on=depends_on,
                acceptance_criteria=_string_items(raw.get("acceptance_criteria")),
                files_to_modify=files,
                relevant_files=_string_items(raw.get("relevant_files")),
                context_queries=_string_items(raw.get("context_queries")),
                max_attempts=max_attempts,
                document_id=document_id,
            )
        )
    return tasks


def extract_title(markdown: str, fallback: str = "Untitled document") -> str:
    match = TITLE_PATTERN.search(markdown)
    if match:
        return match.group(1).strip()
    return fallback[:80] or "Untitled document"


def extract_list_section(markdown: str, section: str) -> list[str]:
    pattern = re.compile(rf"##\s+{re.escape(section)}\s*\n([\s\S]*?)(?=\n##\s|\Z)")
    match = pattern.search(markdown)
    if not match:
        return []
    items: list[str] = []
    for line in match.group(1).splitlines():
        stripped = line.strip()
        if stripped.startswith(("- ", "* ")):
            items.append(stripped[2:].strip())
    return [item for item in items if item]


def build_codebase_context(root: Path, *, char_budget: int = TREE_CHAR_BUDGET) -> str:
    """Top-level entries plus two levels under ``src/``."""
    lines: list[str] = []
    try:
        entries = sorted(root.iterdir(), key=lambda path: path.name)
    except OSError as exc:
        logger.warning("Cannot list %s: %s", root, exc)
        return "(Project structure unavailable)"
    for entry in entries:
        if entry.name in TREE_IGNORE or entry.name.startswith("."):
            continue
        lines.append(f"{entry.name}/" if entry.is_dir() else entry.name)

    src = root / "src"
    if src.is_dir():
        for path in sorted(src.rglob("*")):
            relative = path.relative_to(root)
            if len(relative.parts) > 3 or any(part in TREE_IGNORE for part in relative.parts):
                continue
            suffix = "/" if path.is_dir() else ""
            lines.append(f"{relative.as_posix()}{suffix}")

    tree = "\n".join(lines)
    if len(tree) > char_budget:
        tree = tree[:char_budget] + "\n... (truncated)"
    return f"## Project Structure\n\n{tree}" if tree else "(Empty project)"


@dataclass(slots=True)
class AgentCallSettings:
    cwd: Path
    timeout_ms: int = 300_000
    model: str | None = None


class AgentDocumentGenerator:
    def __init__(self, executor: AgentExecutor, settings: AgentCallSettings) -> None:
        self.executor = executor
        self.settings = settings

    async def _call(self, prompt: str) -> str:
        result = await self.executor.execute(
            prompt,
            ExecuteOptions(
                cwd=self.settings.cwd,
                timeout_ms=self.settings.timeout_ms,
                model=self.settings.model,
            ),
        )
        if not result.success:
            raise ExecutionError(
                f"Agent call failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
                output=result.output[-2000:],
            )
        return result.output

    async def generate(self, description: str, codebase_context: str) -> str:
        prompt = GENERATE_PROMPT.format(codebase_context=codebase_context, description=description)
        markdown = (await self._call(prompt)).strip()
        if not markdown:
            raise ExecutionError("Document generation returned no output", retriable=True)
        return markdown + "\n"


class AgentTaskDecomposer(AgentDocumentGenerator):
    async def decompose(self, document_text: str, codebase_context: str) -> list[dict[str, Any]]:
        prompt = DECOMPOSE_PROMPT.format(codebase_context=codebase_context, document=document_text)
        response = await self._call(prompt)
        try:
            return extract_task_array(response)
        except ValidationError:
            logger.warning("Decomposition output was not a JSON array; asking once more")
        retry_prompt = (
            "Your previous response was not valid JSON. Here is what you returned:\n\n"
            f"{response[:1000]}\n\n"
            "Return ONLY a valid JSON array starting with [ and ending with ]. No markdown, "
            "no prose. Each element must have: sequence, title, description, priority, "
            "depends_on, acceptance_criteria, files_to_modify, relevant_files."
        )
        return extract_task_array(await self._call(retry_prompt))


@dataclass(slots=True)
class ParseOutcome:
    document: FeatureDocument
    tasks: list[Task]
    warnings: list[str] = field(default_factory=list)


async def generate_document(
    store: RunStore,
    generator: AgentDocumentGenerator,
    description: str,
    *,
    root: Path,
    quality_gates: list[QualityGate],
    execution_mode: ExecutionMode = "loop",
) -> tuple[FeatureDocument, str]:
    markdown = await generator.generate(description, build_codebase_context(root))
    document = FeatureDocument.create(
        extract_title(markdown, description),
        description,
        quality_gates=quality_gates,
        execution_mode=execution_mode,
    )
    document.goals = extract_list_section(markdown, "Goals")
    document.out_of_scope = extract_list_section(markdown, "Out of Scope")
    store.save_document(document)
    store.save_markdown(document.id, markdown)
    logger.info("Generated document %s: %s", document.id, document.title)
    return document, markdown


async def parse_document(
    store: RunStore,
    decomposer: AgentTaskDecomposer,
    document: FeatureDocument,
    markdown: str,
    *,
    root: Path,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> ParseOutcome:
    if document.status in {"in_progress", "completed", "archived"}:
        raise ValidationError(
            f"Document {document.id} is {document.status}; its tasks can no longer be replaced."
        )
    raw_tasks = await decomposer.decompose(markdown, build_codebase_context(root))
    warnings: list[str] = []
    tasks = normalize_tasks(raw_tasks, document.id, warnings, max_attempts=max_attempts)
    if not tasks:
        raise ValidationError("Decomposition produced no tasks.")
    validation = validate_task_graph(tasks)
    warnings.extend(validation.warnings)
    validation.raise_for_errors()

    store.save_tasks(document.id, tasks)
    document.status = "ready"
    store.refresh_stats(document, tasks)
    logger.info("Parsed %d task(s) for %s", len(tasks), document.id)
    return ParseOutcome(document=document, tasks=tasks, warnings=warnings)
