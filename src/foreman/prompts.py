from __future__ import annotations

import re
from dataclasses import dataclass, replace

from foreman.context import TaskContext
from foreman.models import QualityGate, Task, tail

FAILURE_MARKER = "<!-- foreman:previous-attempt -->"
BLOCKED_PREFIX = "BLOCKED:"
BLOCKED_PATTERN = re.compile(re.escape(BLOCKED_PREFIX) + r"(.*)")
FAILURE_GATE_TAIL = 2000
FAILURE_AGENT_TAIL = 1000

NO_CRITERIA = "(No specific acceptance criteria; use your best judgment)"
NO_FILES = "(No specific files predicted; determine from context)"
NO_RELEVANT_FILES = "(None specified)"
NO_GATES = "(No quality gates configured)"

SYSTEM_PROMPT = """You are an AI coding agent executing one task from a dependency-ordered plan.
Other tasks of the same plan run before or after you; stay inside the scope of yours.

## Rules

1. Focus ONLY on this task. Do not modify files outside of "Files to Modify" unless the
   change cannot be made otherwise.
2. Follow the existing code conventions (imports, naming, patterns).
3. Run the listed quality gates after your changes and fix what they report.
4. Do not add comments that narrate what you changed.
5. Do not add features beyond what the acceptance criteria require.
6. If the task is impossible as specified, do not produce broken code. Reply with a line
   starting with "BLOCKED:" followed by the reason.
"""

TASK_TEMPLATE = """## Your Task

{task_title}

{task_description}

## Acceptance Criteria

{acceptance_criteria}

## Files to Modify

{files_to_modify}

## Context Files (read-only reference)

{relevant_files}

## Project Memories & Past Decisions

{recalled}

## Dead-End Warnings (DO NOT retry these approaches)

{dead_ends}

## Progress So Far

{progress}

## Quality Gates

{quality_gates}
"""

FAILURE_TEMPLATE = """{marker}
## Previous Attempt ({attempt_number}) Failed

### Gate Failures
{gate_output}

### Agent Output (last {agent_tail} chars)
{agent_output}

### Instructions for Retry
- Fix the issues identified above
- Do NOT repeat the same approach if it clearly failed
- If the task is impossible, reply with a line starting with "{blocked}" and explain why
"""

GENERATE_PROMPT = """You are a senior software architect writing a feature document for an AI
coding agent.

Given a feature description and the project's technical context, write a structured
Markdown document with EXACTLY these sections:

# PRD: <Feature Title>

## Summary
1-3 sentences describing what the feature does and why.

## Goals
- <goal>

## Out of Scope
- <what this document explicitly does NOT cover>

## Technical Context
| File | Purpose | Relevance |
|------|---------|-----------|

## Design Decisions
- <decision and rationale>

## Stories

### Story 1: <Title>
<what needs to be done>

**Acceptance Criteria:**
- [ ] <criterion>

**Files likely affected:** `path/to/file`

## Quality Gates
- Tests: `<command>`

Rules:
1. Use REAL file paths from the technical context; do not invent paths.
2. Keep each story small enough for one agent session (about 5 files at most).
3. Order stories by dependency.
4. Each story must be independently testable.
5. Write 3-15 stories; more means the scope is too large.
6. Acceptance criteria must be concrete and verifiable.
7. Quality gates must include at least one automated check.

Output ONLY the Markdown document.

## Technical Context (from codebase analysis)

{codebase_context}

## Feature Description

{description}
"""

DECOMPOSE_PROMPT = """You are a task decomposition engine. Parse the given document into a JSON
array of executable tasks.

Return ONLY a valid JSON array (no markdown, no explanation). Each element must match:

[
  {{
    "sequence": 1,
    "title": "Short task title",
    "description": "Detailed description of what to implement",
    "priority": "high",
    "depends_on": [],
    "acceptance_criteria": ["Criterion 1"],
    "files_to_modify": ["src/path/to/file.py"],
    "relevant_files": ["src/path/to/context.py"],
    "context_queries": ["keywords for project memory"]
  }}
]

Field rules:
- sequence: integer starting at 1; default execution order
- title: under 80 chars, imperative form
- priority: "critical", "high", "medium" or "low"
- depends_on: task ids in the form "task_001"
- files_to_modify: REAL paths the task will create or modify, at most 5
- relevant_files: files to READ but not modify
- context_queries: keywords for searching project memory

Conflict rules:
- Two tasks that modify the SAME file MUST be linked through depends_on.
- Shared index or entry-point files belong to the LAST task that needs them.

Validation: empty files_to_modify and fewer than 3 or more than 25 tasks produce
warnings; circular dependencies are rejected.

## Technical Context (from codebase analysis)

{codebase_context}

## Document

{document}
"""


@dataclass(slots=True)
class ComposedPrompt:
    system: str
    user: str

    def render(self) -> str:
        return f"{self.system.rstrip()}\n\n{self.user.lstrip()}"


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=1))


def _bulleted(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def format_gate_list(gates: list[QualityGate]) -> str:
    if not gates:
        return NO_GATES
    lines = []
    for gate in gates:
        suffix = "" if gate.required else " (optional)"
        lines.append(f"- {gate.type}: `{gate.command}`{suffix}")
    return "\n".join(lines)


def strip_failure_context(text: str) -> str:
    index = text.find(FAILURE_MARKER)
    if index < 0:
        return text
    return text[:index].rstrip() + "\n"


class PromptComposer:
    def __init__(self, system_prompt: str = SYSTEM_PROMPT) -> None:
        self.system_prompt = system_prompt

    def compose(self, task: Task, gates: list[QualityGate], context: TaskContext) -> ComposedPrompt:
        user = TASK_TEMPLATE.format(
            task_title=f"{task.id}: {task.title}",
            task_description=task.description.strip() or task.title,
            acceptance_criteria=(
                _numbered(task.acceptance_criteria) if task.acceptance_criteria else NO_CRITERIA
            ),
            files_to_modify=_bulleted(task.files_to_modify) if task.files_to_modify else NO_FILES,
            relevant_files=(
                _bulleted(task.relevant_files) if task.relevant_files else NO_RELEVANT_FILES
            ),
            recalled=context.recalled,
            dead_ends=context.dead_ends,
            progress=context.progress,
            quality_gates=format_gate_list(gates),
        )
        return ComposedPrompt(system=self.system_prompt, user=user)


def with_failure_context(
    prompt: ComposedPrompt,
    attempt_number: int,
    gate_output: str,
    agent_output: str,
) -> ComposedPrompt:
    """Replace any earlier failure block with one describing ``attempt_number``."""
    base = strip_failure_context(prompt.user).rstrip()
    block = FAILURE_TEMPLATE.format(
        marker=FAILURE_MARKER,
        attempt_number=attempt_number,
        gate_output=tail(gate_output.strip(), FAILURE_GATE_TAIL) or "(No gate output)",
        agent_tail=FAILURE_AGENT_TAIL,
        agent_output=tail(agent_output.strip(), FAILURE_AGENT_TAIL) or "(No output)",
        blocked=BLOCKED_PREFIX,
    )
    return replace(prompt, user=f"{base}\n\n{block}")


def find_blocked_reason(output: str) -> str | None:
    match = BLOCKED_PATTERN.search(output)
    if match is None:
        return None
    return match.group(1).strip(" \t\r*_`") or "agent declared the task blocked"
