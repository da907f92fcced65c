from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from foreman.errors import StorageError
from foreman.models import FeatureDocument, RunRecord, Task, compute_stats, utcnow_iso

logger = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RunStore:
    """File-backed persistence for documents, tasks, run records and logs.

    Layout under ``root``::

        prds/index.json
        prds/<document id>/prd.json
        prds/<document id>/prd.md
        prds/<document id>/tasks/<task id>.json
        prds/<document id>/execution.json
        prds/<document id>/progress.md
        prds/<document id>/logs/<task id>.log

    JSON records are wrapped in a versioned envelope and every record is
    replaced atomically, so readers never see a partial write.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.documents_dir = self.root / "prds"
        self.index_file = self.documents_dir / "index.json"
        self.lock_file = self.documents_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return utcnow_iso()

    def document_dir(self, document_id: str) -> Path:
        return self.documents_dir / document_id

    def _tasks_dir(self, document_id: str) -> Path:
        return self.document_dir(document_id) / "tasks"

    def _logs_dir(self, document_id: str) -> Path:
        return self.document_dir(document_id) / "logs"

    def ensure_layout(self, document_id: str | None = None) -> None:
        try:
            self.documents_dir.mkdir(parents=True, exist_ok=True)
            if document_id:
                self._tasks_dir(document_id).mkdir(parents=True, exist_ok=True)
                self._logs_dir(document_id).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create state directory under {self.root}: {exc}") from exc

    def _break_stale_lock(self) -> bool:
        try:
            owner = int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        if pid_alive(owner):
            return False
        logger.warning("Removing stale index lock held by dead PID %d", owner)
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        return True

    @contextmanager
    def _index_lock(self, timeout_seconds: float = 3.0):
        self.ensure_layout()
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._break_stale_lock():
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise StorageError("Timed out waiting for index lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
                temp_path = Path(handle.name)
            os.replace(temp_path, path)
        except OSError as exc:
            raise StorageError(f"Cannot write {path}: {exc}") from exc

    @staticmethod
    def _append(path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(content)
        except OSError as exc:
            raise StorageError(f"Cannot append to {path}: {exc}") from exc

    @staticmethod
    def _read_text(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Cannot read {path}: {exc}") from exc

    def _write_json(self, path: Path, data: Any) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "updated_at": self._utcnow_iso(),
            "data": data,
        }
        self._atomic_write(path, json.dumps(envelope, ensure_ascii=False, indent=2) + "\n")

    def _read_json(self, path: Path) -> Any:
        content = self._read_text(path)
        if content is None:
            return None
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt state file {path}: {exc}") from exc
        if isinstance(payload, dict) and "schema_version" in payload and "data" in payload:
            return payload["data"]
        return payload

    # Index

    def load_index(self, *, include_archived: bool = False) -> list[dict[str, Any]]:
        entries = self._read_json(self.index_file) or []
        if not isinstance(entries, list):
            raise StorageError(f"Corrupt index file {self.index_file}")
        if include_archived:
            return entries
        return [entry for entry in entries if entry.get("status") != "archived"]

    def _update_index(self, document_id: str, entry: dict[str, Any] | None) -> None:
        with self._index_lock():
            entries = [
                item
                for item in self.load_index(include_archived=True)
                if item.get("id") != document_id
            ]
            if entry is not None:
                entries.append(entry)
            self._write_json(self.index_file, entries)

    @staticmethod
    def _index_entry(document: FeatureDocument) -> dict[str, Any]:
        return {
            "id": document.id,
            "title": document.title,
            "status": document.status,
            "execution_mode": document.execution_mode,
            "created_at": document.created_at,
            "updated_at": document.updated_at,
            "stats": document.stats.to_dict(),
        }

    def find_latest(self) -> dict[str, Any] | None:
        entries = self.load_index()
        if not entries:
            return None
        return max(entries, key=lambda entry: str(entry.get("updated_at", "")))

    # Documents

    def save_document(self, document: FeatureDocument) -> None:
        self.ensure_layout(document.id)
        document.updated_at = self._utcnow_iso()
        self._write_json(self.document_dir(document.id) / "prd.json", document.to_dict())
        self._update_index(document.id, self._index_entry(document))

    def load_document(self, document_id: str) -> FeatureDocument | None:
        payload = self._read_json(self.document_dir(document_id) / "prd.json")
        if payload is None:
            return None
        try:
            return FeatureDocument.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Invalid document record {document_id}: {exc}") from exc

    def get_document(self, document_id: str) -> FeatureDocument:
        document = self.load_document(document_id)
        if document is None:
            raise StorageError(f"Document not found: {document_id}")
        return document

    def delete_document(self, document_id: str) -> None:
        directory = self.document_dir(document_id)
        try:
            if directory.exists():
                shutil.rmtree(directory)
        except OSError as exc:
            raise StorageError(f"Cannot delete {directory}: {exc}") from exc
        self._update_index(document_id, None)

    def refresh_stats(self, document: FeatureDocument, tasks: list[Task]) -> None:
        document.stats = compute_stats(tasks)
        self.save_document(document)

    def save_markdown(self, document_id: str, content: str) -> None:
        self.ensure_layout(document_id)
        self._atomic_write(self.document_dir(document_id) / "prd.md", content)

    def load_markdown(self, document_id: str) -> str | None:
        return self._read_text(self.document_dir(document_id) / "prd.md")

    # Tasks

    def save_task(self, task: Task) -> None:
        if not task.document_id:
            raise StorageError(f"Task {task.id} has no document id")
        self._write_json(self._tasks_dir(task.document_id) / f"{task.id}.json", task.to_dict())

    def save_tasks(self, document_id: str, tasks: list[Task]) -> None:
        self.ensure_layout(document_id)
        keep = set()
        for task in tasks:
            task.document_id = document_id
            self.save_task(task)
            keep.add(f"{task.id}.json")
        for stale in self._tasks_dir(document_id).glob("*.json"):
            if stale.name not in keep:
                try:
                    stale.unlink()
                except OSError as exc:
                    raise StorageError(f"Cannot remove {stale}: {exc}") from exc

    def load_tasks(self, document_id: str) -> list[Task]:
        tasks_dir = self._tasks_dir(document_id)
        if not tasks_dir.exists():
            return []
        tasks: list[Task] = []
        for path in sorted(tasks_dir.glob("*.json")):
            payload = self._read_json(path)
            try:
                task = Task.from_dict(payload)
            except (KeyError, TypeError, ValueError) as exc:
                raise StorageError(f"Invalid task record {path}: {exc}") from exc
            task.document_id = document_id
            tasks.append(task)
        tasks.sort(key=lambda task: (task.sequence, task.id))
        return tasks

    # Run record

    def save_run_record(self, record: RunRecord) -> None:
        self.ensure_layout(record.document_id)
        self._write_json(self.document_dir(record.document_id) / "execution.json", record.to_dict())

    def load_run_record(self, document_id: str) -> RunRecord | None:
        payload = self._read_json(self.document_dir(document_id) / "execution.json")
        if payload is None:
            return None
        try:
            return RunRecord.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Invalid run record for {document_id}: {exc}") from exc

    # Progress and logs

    def append_progress(self, document_id: str, line: str) -> None:
        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        self._append(self.document_dir(document_id) / "progress.md", f"[{timestamp}] {line}\n")

    def load_progress(self, document_id: str) -> str:
        return self._read_text(self.document_dir(document_id) / "progress.md") or ""

    def task_log_path(self, document_id: str, task_id: str) -> Path:
        return self._logs_dir(document_id) / f"{task_id}.log"

    def append_task_log(self, document_id: str, task_id: str, content: str) -> None:
        self._append(self.task_log_path(document_id, task_id), content)
