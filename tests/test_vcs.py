import subprocess
from pathlib import Path

import pytest

from foreman.errors import VersionControlError
from foreman.state import GitBranchManager


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "seed.txt"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _git(repo_path: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=repo_path, check=True, text=True, capture_output=True
    )
    return proc.stdout.strip()


def _repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    return repo


def test_non_repository_is_detected(tmp_path: Path) -> None:
    manager = GitBranchManager(tmp_path)

    assert not manager.git_enabled
    with pytest.raises(VersionControlError, match="No git repository"):
        manager.current_branch()


def test_create_commit_and_restore(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    manager = GitBranchManager(repo)
    original = manager.current_branch()

    manager.create_and_checkout("foreman/prd_00000001")
    (repo / "feature.py").write_text("VALUE = 1\n", encoding="utf-8")
    commit = manager.commit_all("foreman: task_001")

    assert commit is not None
    assert _git(repo, "log", "-1", "--format=%s") == "foreman: task_001"
    assert manager.commit_all("nothing to do") is None

    manager.restore(original)
    assert manager.current_branch() == original
    assert not (repo / "feature.py").exists()
    assert manager.branch_exists("foreman/prd_00000001")
    with pytest.raises(VersionControlError, match="already exists"):
        manager.create_and_checkout("foreman/prd_00000001")


def test_state_directory_is_ignored(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    manager = GitBranchManager(repo)
    (repo / ".foreman").mkdir()
    (repo / ".foreman" / "progress.md").write_text("log\n", encoding="utf-8")

    assert not manager.has_uncommitted_changes()
    assert manager.commit_all("state only") is None

    (repo / "seed.txt").write_text("changed\n", encoding="utf-8")
    manager.commit_all("real change")
    tracked = _git(repo, "ls-files")
    assert ".foreman/progress.md" not in tracked.splitlines()


def test_reset_worktree_discards_changes_but_keeps_state(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    manager = GitBranchManager(repo)
    (repo / ".foreman").mkdir()
    (repo / ".foreman" / "execution.json").write_text("{}", encoding="utf-8")
    (repo / "seed.txt").write_text("broken\n", encoding="utf-8")
    (repo / "scratch.py").write_text("junk\n", encoding="utf-8")

    manager.reset_worktree()

    assert (repo / "seed.txt").read_text(encoding="utf-8") == "seed\n"
    assert not (repo / "scratch.py").exists()
    assert (repo / ".foreman" / "execution.json").exists()


def test_stash_and_pop_round_trip(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    manager = GitBranchManager(repo)

    assert manager.stash("nothing") is False

    (repo / "seed.txt").write_text("work in progress\n", encoding="utf-8")
    (repo / "notes.txt").write_text("untracked\n", encoding="utf-8")
    assert manager.stash("foreman: auto-stash") is True
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "seed\n"
    assert not (repo / "notes.txt").exists()

    assert manager.stash_pop() is True
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "work in progress\n"
    assert (repo / "notes.txt").exists()


def test_merge_and_delete_branch(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    manager = GitBranchManager(repo)
    original = manager.current_branch()
    manager.create_and_checkout("foreman/merge-me")
    (repo / "merged.txt").write_text("done\n", encoding="utf-8")
    manager.commit_all("work")
    manager.restore(original)

    manager.merge("foreman/merge-me")
    assert (repo / "merged.txt").exists()

    manager.create_and_checkout("foreman/throwaway")
    manager.restore(original)
    manager.delete_branch("foreman/throwaway")
    assert not manager.branch_exists("foreman/throwaway")


def test_commit_and_stash_with_gitignored_state_dir(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    (repo / ".gitignore").write_text(".foreman/\n", encoding="utf-8")
    _git(repo, "add", ".gitignore")
    _git(repo, "commit", "-m", "ignore state")
    (repo / ".foreman").mkdir()
    (repo / ".foreman" / "index.json").write_text("[]", encoding="utf-8")
    manager = GitBranchManager(repo)

    (repo / "feature.py").write_text("VALUE = 1\n", encoding="utf-8")
    assert manager.commit_all("add feature") is not None
    assert "feature.py" in _git(repo, "ls-files").splitlines()

    (repo / "seed.txt").write_text("dirty\n", encoding="utf-8")
    assert manager.stash("foreman: auto-stash") is True
    assert (repo / ".foreman" / "index.json").exists()
    assert manager.stash_pop() is True
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "dirty\n"
