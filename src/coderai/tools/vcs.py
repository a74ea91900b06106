"""Git checkpoints around apply operations.

Every apply is bracketed by a commit checkpoint so a bad change can be undone
with a hard reset. The helpers shell out to ``git`` with an explicit working
directory and decode output as UTF-8 with replacement.
"""

from __future__ import annotations

import os
import re
import subprocess
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Sequence

CHECKPOINT_PREFIX = "[CoderAI]"
# Applier backups stay untracked so a reset never deletes them.
CHECKPOINT_EXCLUDES = (":(exclude)*.coderai-backup-*",)
_HASH_RE = re.compile(r"^[a-f0-9]{7,40}$")


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(slots=True)
class CheckpointInfo:
    """Result of :meth:`GitRepository.create_checkpoint`."""

    hash: str | None
    message: str
    created: bool

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(slots=True)
class RollbackInfo:
    success: bool
    previous_head: str | None
    current_head: str | None
    rolled_back_to: str

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(slots=True)
class CommitInfo:
    hash: str
    message: str
    date: str
    author: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@contextmanager
def working_directory(path: Path | str) -> Iterator[Path]:
    """Temporarily change the process directory, always restoring it."""

    original = os.getcwd()
    target = Path(path)
    os.chdir(target)
    try:
        yield target
    finally:
        os.chdir(original)


class GitRepository:
    """Lightweight wrapper around ``git`` commands for one repository."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise GitError(f"Repository path does not exist: {self.root}")
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def init_repo(cls, root: Path | str) -> "GitRepository":
        """Initialise a repository at ``root`` and record an initial checkpoint.

        An existing repository is returned untouched.
        """

        path = Path(root).resolve()
        if (path / ".git").exists():
            return cls(path)
        path.mkdir(parents=True, exist_ok=True)
        _run_git(path, ["init"])
        _run_git(path, ["config", "user.email", "coderai@localhost"])
        _run_git(path, ["config", "user.name", "CoderAI"])
        _run_git(path, ["add", "-A", "--", ".", *CHECKPOINT_EXCLUDES])
        _run_git(path, ["commit", "--allow-empty", "-m", "Initial CoderAI checkpoint"])
        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run_git(self.root, args, check=check)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # ------------------------------------------------------------- repo state
    def current_head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    def has_uncommitted_changes(self) -> bool:
        result = self._run_git(["status", "--porcelain"])
        return bool(result.stdout.strip())

    def recent_commits(self, limit: int = 10) -> List[CommitInfo]:
        """Return up to ``limit`` commits, newest first."""

        if self.current_head() is None:
            return []
        result = self._run_git(["log", f"-{max(1, int(limit))}", "--format=%H|%s|%ai|%an"])
        commits: List[CommitInfo] = []
        for line in result.stdout.splitlines():
            parts = line.split("|", 3)
            if len(parts) != 4:
                continue
            commits.append(CommitInfo(hash=parts[0], message=parts[1], date=parts[2], author=parts[3]))
        return commits

    # ------------------------------------------------------------- checkpoints
    def create_checkpoint(self, message: str) -> CheckpointInfo:
        """Stage everything except applier backups and commit it as a checkpoint.

        When nothing is staged the current ``HEAD`` is returned with
        ``created=False``.
        """

        self._run_git(["add", "-A", "--", ".", *CHECKPOINT_EXCLUDES])
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            return CheckpointInfo(hash=self.current_head(), message="No changes to checkpoint", created=False)

        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        full_message = f"{CHECKPOINT_PREFIX} {message} - {stamp}"
        self._run_git(["commit", "-m", full_message])
        return CheckpointInfo(hash=self.current_head(), message=full_message, created=True)

    def rollback(self, checkpoint_hash: str) -> RollbackInfo:
        """Hard-reset the working tree to ``checkpoint_hash``."""

        candidate = (checkpoint_hash or "").strip()
        if not _HASH_RE.match(candidate):
            raise GitError(f"Invalid commit hash format: {checkpoint_hash!r}")
        probe = self._run_git(["cat-file", "-t", candidate], check=False)
        if probe.returncode != 0 or probe.stdout.strip() != "commit":
            raise GitError(f"Commit not found: {candidate}")

        previous = self.current_head()
        self._run_git(["reset", "--hard", candidate])
        return RollbackInfo(
            success=True,
            previous_head=previous,
            current_head=self.current_head(),
            rolled_back_to=candidate,
        )


def _run_git(cwd: Path, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    with working_directory(cwd):
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


def create_checkpoint(repo_root: Path | str, message: str) -> CheckpointInfo:
    return GitRepository(repo_root).create_checkpoint(message)


def rollback(repo_root: Path | str, checkpoint_hash: str) -> RollbackInfo:
    return GitRepository(repo_root).rollback(checkpoint_hash)


__all__ = [
    "CheckpointInfo",
    "CommitInfo",
    "GitError",
    "GitRepository",
    "RollbackInfo",
    "create_checkpoint",
    "rollback",
    "working_directory",
]
