from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from foreman.errors import VersionControlError

logger = logging.getLogger(__name__)


class GitBranchManager:
    """Branch choreography for a run: isolate, commit, reset, and hand back."""

    def __init__(self, repo_root: Path, *, state_dir: str = ".foreman") -> None:
        self.repo_root = repo_root.resolve()
        self.state_dir = state_dir.strip("/") or ".foreman"
        self._git_enabled = self._is_git_repo()

    @property
    def git_enabled(self) -> bool:
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except OSError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self.git_enabled:
            raise VersionControlError(
                f"No git repository found at {self.repo_root}. Run without a branch instead."
            )
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise VersionControlError(
                f"git {' '.join(args)} failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def _is_state_path(self, status_line: str) -> bool:
        path = status_line[3:].strip().strip('"')
        return path == self.state_dir or path.startswith(f"{self.state_dir}/")

    def _state_pathspec(self) -> list[str]:
        # git rejects an explicit pathspec that names an ignored path
        proc = self._run_git(["check-ignore", "-q", self.state_dir], check=False)
        if proc.returncode == 0:
            return []
        return ["--", ".", f":(exclude){self.state_dir}"]

    def current_branch(self) -> str:
        proc = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"])
        return proc.stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def has_uncommitted_changes(self) -> bool:
        proc = self._run_git(["status", "--porcelain"])
        return any(
            line.strip() and not self._is_state_path(line) for line in proc.stdout.splitlines()
        )

    def stash(self, message: str) -> bool:
        if not self.has_uncommitted_changes():
            return False
        self._run_git(
            ["stash", "push", "--include-untracked", "-m", message, *self._state_pathspec()]
        )
        logger.info("Stashed uncommitted changes: %s", message)
        return True

    def stash_pop(self) -> bool:
        proc = self._run_git(["stash", "pop"], check=False)
        if proc.returncode != 0:
            logger.warning("Could not restore stashed changes: %s", proc.stderr.strip())
            return False
        return True

    def create_and_checkout(self, branch: str) -> None:
        if self.branch_exists(branch):
            raise VersionControlError(f"Branch {branch} already exists.")
        self._run_git(["checkout", "-b", branch])
        logger.info("Created branch %s", branch)

    def checkout(self, branch: str) -> None:
        self._run_git(["checkout", branch])

    def restore(self, original_branch: str) -> None:
        if self.current_branch() != original_branch:
            self._run_git(["checkout", original_branch])
            logger.info("Restored branch %s", original_branch)

    def commit_all(self, message: str) -> str | None:
        if not self.has_uncommitted_changes():
            return None
        self._run_git(["add", "-A", *self._state_pathspec()])
        proc = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if proc.returncode == 0:
            return None
        self._run_git(["commit", "-m", message])
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def reset_worktree(self) -> None:
        self._run_git(["checkout", "--", "."])
        self._run_git(["clean", "-fd", "-e", self.state_dir])

    def merge(self, branch: str) -> None:
        self._run_git(["merge", "--no-ff", "--no-edit", branch])
        logger.info("Merged %s into %s", branch, self.current_branch())

    def delete_branch(self, branch: str) -> None:
        self._run_git(["branch", "-D", branch])
        logger.info("Deleted branch %s", branch)
