import json
import os
import re
import subprocess
import sys
from pathlib import Path

import pytest

from foreman.errors import StorageError
from foreman.models import FeatureDocument, QualityGate, RunRecord, Task, TaskAttempt
from foreman.state import RunStore


def _document(title: str = "Search feature") -> FeatureDocument:
    return FeatureDocument.create(
        title,
        "Add search",
        quality_gates=[QualityGate(type="test", command="pytest -q", required=False)],
    )


def _tasks(document_id: str) -> list[Task]:
    return [
        Task(
            id=f"task_{sequence:03d}",
            sequence=sequence,
            title=f"Step {sequence}",
            document_id=document_id,
            files_to_modify=[f"src/step_{sequence}.py"],
        )
        for sequence in (2, 1, 10)
    ]


def test_document_roundtrip_and_index(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".foreman")
    document = _document()
    document.goals = ["Fast search"]

    store.save_document(document)
    loaded = store.get_document(document.id)

    assert loaded.title == "Search feature"
    assert loaded.goals == ["Fast search"]
    assert loaded.quality_gates[0].required is False
    assert re.fullmatch(r"prd_[0-9a-f]{8}", document.id)
    index = store.load_index()
    assert [entry["id"] for entry in index] == [document.id]
    assert store.find_latest()["id"] == document.id

    raw = json.loads((store.document_dir(document.id) / "prd.json").read_text(encoding="utf-8"))
    assert raw["schema_version"] == RunStore.SCHEMA_VERSION
    assert raw["data"]["id"] == document.id


def test_archived_documents_are_hidden_by_default(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".foreman")
    active = _document("Active")
    archived = _document("Old")
    archived.status = "archived"
    store.save_document(active)
    store.save_document(archived)

    assert [entry["id"] for entry in store.load_index()] == [active.id]
    assert {entry["id"] for entry in store.load_index(include_archived=True)} == {
        active.id,
        archived.id,
    }


def test_missing_document_raises(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".foreman")

    assert store.load_document("prd_missing") is None
    with pytest.raises(StorageError, match="Document not found"):
        store.get_document("prd_missing")
    assert store.find_latest() is None


def test_tasks_roundtrip_sorted_by_sequence(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".foreman")
    document = _document()
    store.save_document(document)
    tasks = _tasks(document.id)
    tasks[0].attempts.append(
        TaskAttempt(attempt_number=1, status="failure", gate_output="E1", error="gates")
    )

    store.save_tasks(document.id, tasks)
    loaded = store.load_tasks(document.id)

    assert [task.id for task in loaded] == ["task_001", "task_002", "task_010"]
    assert loaded[1].attempts[0].gate_output == "E1"
    assert loaded[1].attempts[0].error == "gates"


def test_save_tasks_removes_stale_task_files(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".foreman")
    document = _document()
    store.save_document(document)
    store.save_tasks(document.id, _tasks(document.id))

    store.save_tasks(document.id, _tasks(document.id)[:1])

    assert [task.id for task in store.load_tasks(document.id)] == ["task_002"]


def test_corrupt_task_file_is_a_storage_error(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".foreman")
    document = _document()
    store.save_document(document)
    store.save_tasks(document.id, _tasks(document.id))
    (store.document_dir(document.id) / "tasks" / "task_001.json").write_text(
        "{broken", encoding="utf-8"
    )

    with pytest.raises(StorageError, match="Corrupt state file"):
        store.load_tasks(document.id)


def test_run_record_progress_and_logs(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".foreman")
    document = _document()
    store.save_document(document)
    record = RunRecord(
        document_id=document.id,
        mode="team",
        branch=f"foreman/{document.id}",
        use_branch=True,
        stashed=True,
        active_task_ids=["task_001"],
        pid=4242,
    )

    store.save_run_record(record)
    store.append_progress(document.id, "Started run")
    store.append_progress(document.id, "Completed task_001")
    store.append_task_log(document.id, "task_001", "first\n")
    store.append_task_log(document.id, "task_001", "second\n")

    loaded = store.load_run_record(document.id)
    assert loaded is not None
    assert loaded.to_dict() == record.to_dict()
    progress_lines = store.load_progress(document.id).splitlines()
    assert len(progress_lines) == 2
    assert re.fullmatch(r"\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] Started run", progress_lines[0])
    log_path = store.task_log_path(document.id, "task_001")
    assert log_path.read_text(encoding="utf-8") == "first\nsecond\n"


def test_refresh_stats_and_delete(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".foreman")
    document = _document()
    store.save_document(document)
    tasks = _tasks(document.id)
    tasks[0].status = "completed"
    tasks[1].status = "failed"
    tasks[1].attempts.append(TaskAttempt(attempt_number=1, status="failure", duration_ms=40))

    store.refresh_stats(document, tasks)

    stats = store.get_document(document.id).stats
    assert (stats.total_tasks, stats.completed_tasks, stats.failed_tasks) == (3, 1, 1)
    assert stats.total_attempts == 1
    assert stats.total_duration_ms == 40
    assert store.load_index()[0]["stats"]["completed_tasks"] == 1

    store.delete_document(document.id)
    assert store.load_document(document.id) is None
    assert store.load_index(include_archived=True) == []


def test_index_lock_of_dead_process_is_broken(tmp_path: Path) -> None:
    finished = subprocess.Popen([sys.executable, "-c", "pass"])
    finished.wait()
    store = RunStore(tmp_path / ".foreman")
    store.ensure_layout()
    store.lock_file.write_text(str(finished.pid), encoding="utf-8")
    document = _document()

    store.save_document(document)

    assert store.get_document(document.id).title == document.title
    assert not store.lock_file.exists()


def test_index_lock_of_live_process_times_out(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".foreman")
    store.ensure_layout()
    store.lock_file.write_text(str(os.getpid()), encoding="utf-8")

    with pytest.raises(StorageError, match="index lock"):
        store.save_document(_document())
