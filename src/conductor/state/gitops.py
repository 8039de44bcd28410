from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

MAIN_BRANCHES = frozenset({"main", "master"})
# Workflow bookkeeping files live in the working tree but never belong to a task.
INTERNAL_PREFIX = ".conductor-"
SHA_PATTERN = re.compile(r"^[0-9a-fA-F]{4,40}$")


class GitCommandError(RuntimeError):
    """Raised when a git invocation exits non-zero."""


@dataclass(slots=True)
class SquashResult:
    success: bool
    sha: str = ""
    error: str | None = None


@dataclass(slots=True)
class GitPreflightResult:
    clean: bool
    branch: str
    is_main_branch: bool
    sha: str
    uncommitted_files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _split_lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    return candidate


class GitWorkspace:
    """Git snapshot, rollback and squash helpers scoped to one working tree.

    Every public method degrades to an empty value or a failed result outside
    a repository; none of them raise on git errors.
    """

    def __init__(self, repo_root: Path, *, timeout_seconds: float = 30.0) -> None:
        self.repo_root = repo_root.resolve()
        self.timeout_seconds = timeout_seconds
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
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self.git_enabled:
            raise GitCommandError(f"Not a git repository: {self.repo_root}")
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitCommandError(f"git {args[0]} timed out") from exc
        if check and proc.returncode != 0:
            raise GitCommandError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def current_sha(self) -> str:
        try:
            return self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        except GitCommandError:
            return ""

    def current_branch(self) -> str:
        try:
            return self._run_git(["branch", "--show-current"]).stdout.strip()
        except GitCommandError:
            return ""

    def tracked_files(self) -> list[str]:
        try:
            return _split_lines(self._run_git(["ls-files"]).stdout)
        except GitCommandError:
            return []

    def uncommitted_files(self) -> list[str]:
        try:
            proc = self._run_git(["status", "--porcelain"])
        except GitCommandError:
            return []
        paths = [_status_line_path(line) for line in proc.stdout.splitlines() if line.strip()]
        return [path for path in paths if not path.startswith(INTERNAL_PREFIX)]

    def changed_files(self, base_sha: str | None = None) -> list[str]:
        """Files committed since ``base_sha`` plus anything still uncommitted."""
        try:
            if base_sha:
                committed = _split_lines(
                    self._run_git(["diff", "--name-only", base_sha, "HEAD"]).stdout
                )
            else:
                committed = _split_lines(self._run_git(["diff", "--name-only"]).stdout)
        except GitCommandError as exc:
            logger.debug("git diff failed: %s", exc)
            return []
        seen = set(committed)
        merged = list(committed)
        for path in self.uncommitted_files():
            if path not in seen:
                seen.add(path)
                merged.append(path)
        return merged

    def reset_to_sha(self, sha: str | None) -> bool:
        if not sha or not SHA_PATTERN.match(sha.strip()):
            return False
        try:
            self._run_git(["reset", "--hard", sha.strip()])
        except GitCommandError as exc:
            logger.warning("git reset --hard %s failed: %s", sha[:7], exc)
            return False
        logger.info("reset working tree to %s", sha[:7])
        return True

    def _has_staged_changes(self) -> bool:
        proc = self._run_git(["diff", "--cached", "--quiet"], check=False)
        return proc.returncode != 0

    def squash_commits_since(self, base_sha: str, message: str) -> SquashResult:
        if not self.git_enabled:
            return SquashResult(success=False, error="Not a git repository")
        head = self.current_sha()
        if not base_sha or not head:
            return SquashResult(success=False, error="Cannot resolve commits to squash")
        if head == base_sha:
            return SquashResult(success=True, sha=base_sha)
        try:
            self._run_git(["reset", "--soft", base_sha])
            if not self._has_staged_changes():
                return SquashResult(success=True, sha=base_sha)
            self._run_git(["commit", "-m", message])
        except GitCommandError as exc:
            logger.warning("squash since %s failed: %s", base_sha[:7], exc)
            return SquashResult(success=False, error=str(exc))
        return SquashResult(success=True, sha=self.current_sha())

    def squash_task_commits(self, base_sha: str, task_id: int, task_title: str) -> SquashResult:
        if not self.git_enabled:
            return SquashResult(success=False, error="Not a git repository")
        message = f"task {task_id}: {task_title}"
        try:
            self._run_git(["add", "-A", "--", ".", f":(exclude){INTERNAL_PREFIX}*"])
            if self._has_staged_changes():
                self._run_git(["commit", "-m", message])
        except GitCommandError as exc:
            return SquashResult(success=False, error=str(exc))
        return self.squash_commits_since(base_sha, message)

    def preflight(self) -> GitPreflightResult:
        uncommitted = self.uncommitted_files()
        branch = self.current_branch()
        is_main = branch in MAIN_BRANCHES
        warnings: list[str] = []
        if not self.git_enabled:
            warnings.append("Not a git repository")
        if is_main:
            warnings.append("On main branch")
        return GitPreflightResult(
            clean=not uncommitted,
            branch=branch,
            is_main_branch=is_main,
            sha=self.current_sha(),
            uncommitted_files=uncommitted,
            warnings=warnings,
        )
