from foreman.context import TaskContext
from foreman.models import QualityGate, Task
from foreman.prompts import (
    FAILURE_MARKER,
    NO_CRITERIA,
    NO_FILES,
    NO_GATES,
    SYSTEM_PROMPT,
    PromptComposer,
    find_blocked_reason,
    format_gate_list,
    strip_failure_context,
    with_failure_context,
)

CONTEXT = TaskContext(
    recalled="[decision] Keep handlers thin",
    dead_ends="[DEAD-END] Do not use global state",
    progress="[2024-05-01 10:00:00] Completed task_001",
)


def _task(**overrides: object) -> Task:
    payload: dict = {
        "id": "task_002",
        "sequence": 2,
        "title": "Add search endpoint",
        "description": "Expose GET /search backed by the index.",
        "acceptance_criteria": ["Returns 200 with results", "Empty query returns 400"],
        "files_to_modify": ["src/api/search.py"],
        "relevant_files": ["src/index.py"],
    }
    payload.update(overrides)
    return Task(**payload)


def test_compose_fills_every_section() -> None:
    gates = [
        QualityGate(type="test", command="pytest -q"),
        QualityGate(type="lint", command="ruff check .", required=False),
    ]

    prompt = PromptComposer().compose(_task(), gates, CONTEXT)
    rendered = prompt.render()

    assert prompt.system == SYSTEM_PROMPT
    assert "task_002: Add search endpoint" in rendered
    assert "1. Returns 200 with results\n2. Empty query returns 400" in rendered
    assert "- src/api/search.py" in rendered
    assert "- src/index.py" in rendered
    assert "[decision] Keep handlers thin" in rendered
    assert "[DEAD-END] Do not use global state" in rendered
    assert "Completed task_001" in rendered
    assert "- test: `pytest -q`" in rendered
    assert "- lint: `ruff check .` (optional)" in rendered
    assert FAILURE_MARKER not in rendered


def test_compose_uses_placeholders_for_empty_fields() -> None:
    task = _task(acceptance_criteria=[], files_to_modify=[], description="")

    rendered = PromptComposer().compose(task, [], CONTEXT).render()

    assert NO_CRITERIA in rendered
    assert NO_FILES in rendered
    assert NO_GATES in rendered
    assert format_gate_list([]) == NO_GATES


def test_failure_context_is_appended_once() -> None:
    base = PromptComposer().compose(_task(), [], CONTEXT)

    retried = with_failure_context(base, 1, "[test] pytest -q\nE   assert 1 == 2", "I edited it")

    assert retried.user.count(FAILURE_MARKER) == 1
    assert "Previous Attempt (1) Failed" in retried.user
    assert "assert 1 == 2" in retried.user
    assert "I edited it" in retried.user
    assert strip_failure_context(retried.user).rstrip() == base.user.rstrip()


def test_failure_context_growth_is_bounded_across_retries() -> None:
    base = PromptComposer().compose(_task(), [], CONTEXT)
    prompt = base
    lengths = []
    for attempt in range(1, 6):
        prompt = with_failure_context(prompt, attempt, "E" * 10_000, "x" * 10_000)
        lengths.append(len(prompt.user))

    assert prompt.user.count(FAILURE_MARKER) == 1
    assert "Previous Attempt (5) Failed" in prompt.user
    assert "Previous Attempt (4) Failed" not in prompt.user
    assert max(lengths) - min(lengths) <= 2
    assert len(prompt.user) < len(base.user) + 2000 + 1000 + 1000


def test_failure_context_placeholders_for_empty_output() -> None:
    base = PromptComposer().compose(_task(), [], CONTEXT)

    retried = with_failure_context(base, 2, "", "   ")

    assert "(No gate output)" in retried.user
    assert "(No output)" in retried.user


def test_find_blocked_reason() -> None:
    assert find_blocked_reason("Working...\nBLOCKED: the API key is missing\n") == (
        "the API key is missing"
    )
    assert find_blocked_reason("## BLOCKED: schema conflict") == "schema conflict"
    assert find_blocked_reason("> BLOCKED:") == "agent declared the task blocked"
    assert find_blocked_reason("Cannot proceed. BLOCKED: credentials missing") == (
        "credentials missing"
    )
    assert find_blocked_reason("**BLOCKED:** no write access") == "no write access"
    assert find_blocked_reason("Everything done, nothing blocked here") is None
    assert find_blocked_reason("") is None
