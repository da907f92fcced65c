import json
from pathlib import Path

from foreman.context import (
    MAX_QUERIES,
    NO_DEAD_ENDS,
    NO_MEMORIES,
    NO_PROGRESS,
    ContextAssembler,
    KeywordRecall,
    NullRecall,
    RecallHit,
    build_queries,
)
from foreman.models import Task


class FakeRecall:
    def __init__(self, hits: dict[str, list[RecallHit]], failing: set[str] | None = None) -> None:
        self.hits = hits
        self.failing = failing or set()
        self.queries: list[str] = []

    def recall(self, query: str, limit: int, threshold: float) -> list[RecallHit]:
        _ = limit, threshold
        self.queries.append(query)
        if query in self.failing:
            raise ConnectionError("memory service unavailable")
        return list(self.hits.get(query, []))


def _task(**overrides: object) -> Task:
    payload: dict = {
        "id": "task_001",
        "sequence": 1,
        "title": "Add login endpoint",
        "files_to_modify": ["src/auth/routes.py", "src/auth/models.py"],
        "context_queries": ["session tokens", "password hashing"],
    }
    payload.update(overrides)
    return Task(**payload)


def test_queries_combine_hints_title_and_file_names() -> None:
    queries = build_queries(_task())

    assert queries == [
        "session tokens",
        "password hashing",
        "Add login endpoint",
        "routes.py",
        "models.py",
    ]


def test_queries_are_capped_and_deduplicated() -> None:
    task = _task(
        context_queries=["a", "a", "b", "c", "d", "e", "f"],
        title="b",
    )

    queries = build_queries(task)

    assert len(queries) == MAX_QUERIES
    assert queries == ["a", "b", "c", "d", "e"]


def test_assembler_splits_dead_ends_and_deduplicates() -> None:
    shared = RecallHit(id="m1", content="Use bcrypt for hashes", type="decision", similarity=0.9)
    recall = FakeRecall(
        {
            "session tokens": [shared],
            "password hashing": [
                shared,
                RecallHit(id="m2", content="argon2 binding segfaults", type="dead_end"),
            ],
        }
    )

    context = ContextAssembler(recall).assemble(_task(), "[2024-01-01 00:00:00] Completed task_000")

    assert context.recalled == "[decision] Use bcrypt for hashes"
    assert context.dead_ends == "[DEAD-END] argon2 binding segfaults"
    assert "Completed task_000" in context.progress


def test_one_failing_query_does_not_abort_assembly() -> None:
    recall = FakeRecall(
        {"password hashing": [RecallHit(id="m1", content="Hash with bcrypt", type="pattern")]},
        failing={"session tokens"},
    )

    context = ContextAssembler(recall).assemble(_task(), "")

    assert recall.queries[0] == "session tokens"
    assert len(recall.queries) == 5
    assert context.recalled == "[pattern] Hash with bcrypt"


def test_empty_sections_use_placeholders() -> None:
    context = ContextAssembler(NullRecall()).assemble(_task(), "   \n")

    assert context.recalled == NO_MEMORIES
    assert context.dead_ends == NO_DEAD_ENDS
    assert context.progress == NO_PROGRESS


def test_keyword_recall_ranks_by_overlap_and_skips_bad_lines(tmp_path: Path) -> None:
    memory_file = tmp_path / "memories.jsonl"
    memory_file.write_text(
        "\n".join(
            [
                json.dumps({"id": "a", "content": "login endpoint returns a session token"}),
                "{not json",
                json.dumps({"id": "b", "content": "login form styling", "type": "pattern"}),
                json.dumps({"content": "unrelated billing note"}),
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    recall = KeywordRecall(memory_file)

    hits = recall.recall("login session", limit=5, threshold=0.3)

    assert [hit.id for hit in hits] == ["a", "b"]
    assert hits[0].similarity == 1.0
    assert hits[1].type == "pattern"
    assert recall.recall("login session", limit=1, threshold=0.3)[0].id == "a"
    assert recall.recall("login session", limit=5, threshold=0.9) == hits[:1]


def test_keyword_recall_without_file_is_empty(tmp_path: Path) -> None:
    assert KeywordRecall(tmp_path / "missing.jsonl").recall("anything", 5, 0.0) == []
