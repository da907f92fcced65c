from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol

from foreman.models import Task

logger = logging.getLogger(__name__)

MAX_QUERIES = 5
DEAD_END_TYPE = "dead_end"
NO_MEMORIES = "(No relevant memories found)"
NO_DEAD_ENDS = "(No dead-ends recorded for this area)"
NO_PROGRESS = "(No progress recorded yet)"

WORD_PATTERN = re.compile(r"[a-z0-9_]{2,}")


@dataclass(slots=True)
class RecallHit:
    id: str
    content: str
    type: str = "observation"
    similarity: float = 0.0


class RecallService(Protocol):
    def recall(self, query: str, limit: int, threshold: float) -> list[RecallHit]: ...


class NullRecall:
    def recall(self, query: str, limit: int, threshold: float) -> list[RecallHit]:
        _ = query, limit, threshold
        return []


class KeywordRecall:
    """Recall over a JSON-lines memory file by query word overlap.

    Each line is an object with ``id``, ``content`` and optional ``type``.
    Similarity is the fraction of query words found in the content.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> list[dict]:
        if not self.path.exists():
            return []
        records: list[dict] = []
        for number, line in enumerate(
            self.path.read_text(encoding="utf-8").splitlines(), start=1
        ):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed memory at %s:%d", self.path, number)
                continue
            if isinstance(payload, dict) and payload.get("content"):
                payload.setdefault("id", f"line-{number}")
                records.append(payload)
        return records

    def recall(self, query: str, limit: int, threshold: float) -> list[RecallHit]:
        words = set(WORD_PATTERN.findall(query.lower()))
        if not words:
            return []
        hits: list[RecallHit] = []
        for record in self._load():
            content = str(record["content"])
            content_words = set(WORD_PATTERN.findall(content.lower()))
            similarity = len(words & content_words) / len(words)
            if similarity <= 0 or similarity < threshold:
                continue
            hits.append(
                RecallHit(
                    id=str(record["id"]),
                    content=content,
                    type=str(record.get("type") or "observation"),
                    similarity=round(similarity, 3),
                )
            )
        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:limit]


@dataclass(slots=True)
class TaskContext:
    recalled: str
    dead_ends: str
    progress: str


def build_queries(task: Task) -> list[str]:
    candidates = [
        *task.context_queries,
        task.title,
        *(PurePosixPath(path.replace("\\", "/")).name for path in task.files_to_modify),
    ]
    queries: list[str] = []
    for candidate in candidates:
        text = candidate.strip()
        if text and text not in queries:
            queries.append(text)
        if len(queries) >= MAX_QUERIES:
            break
    return queries


class ContextAssembler:
    def __init__(self, recall: RecallService, *, limit: int = 5, threshold: float = 0.3) -> None:
        self.recall = recall
        self.limit = limit
        self.threshold = threshold

    def assemble(self, task: Task, progress: str) -> TaskContext:
        seen: set[str] = set()
        recalled: list[str] = []
        dead_ends: list[str] = []
        for query in build_queries(task):
            try:
                hits = self.recall.recall(query, self.limit, self.threshold)
            except Exception as exc:
                logger.warning("Recall failed for %s query %r: %s", task.id, query, exc)
                continue
            for hit in hits:
                if hit.id in seen:
                    continue
                seen.add(hit.id)
                if hit.type == DEAD_END_TYPE:
                    dead_ends.append(f"[DEAD-END] {hit.content}")
                else:
                    recalled.append(f"[{hit.type}] {hit.content}")

        return TaskContext(
            recalled="\n".join(recalled) if recalled else NO_MEMORIES,
            dead_ends="\n".join(dead_ends) if dead_ends else NO_DEAD_ENDS,
            progress=progress.strip() or NO_PROGRESS,
        )
