"""Apply reviewed diffs to a repository on disk.

The applier is the only component that mutates a target repository. Each run
is gated on the repository status before the diff is even parsed; after that
every file is processed in its own failure domain so one rejected file does
not stop the rest of the change from landing.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence

from .diff import DiffError, FileChange, MalformedDiff, apply_hunks, extract_created_content, parse_diff
from .paths import CompiledPolicy, PathGuard, PathPolicyError, resolve_and_check

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("coderai.telemetry")

BACKUP_MARKER = ".coderai-backup-"
DEFAULT_BACKUP_MAX_AGE_HOURS = 24


class RepoGateError(RuntimeError):
    """Base error for runs refused before any file is touched."""


class RepoNotFound(RepoGateError):
    """Raised when the repository identity is unknown to the status provider."""


class RepoBlocked(RepoGateError):
    """Raised when a repository is inactive, locked, or read-only."""


class NoValidChanges(MalformedDiff):
    """Raised when a diff yields no file changes to apply."""


class FileApplyError(RuntimeError):
    """Base error for a single file that could not be applied."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class FileSizeExceeded(FileApplyError):
    """Raised when new content would exceed the configured size limit."""


class FileSystemError(FileApplyError):
    """Raised when the target cannot be read, written, or is in the wrong state."""


@dataclass(slots=True, frozen=True)
class RepoStatus:
    read_only: bool = False
    maintenance_lock: bool = False
    is_active: bool = True

    def to_dict(self) -> Dict[str, bool]:
        return {
            "read_only": self.read_only,
            "maintenance_lock": self.maintenance_lock,
            "is_active": self.is_active,
        }


class RepoStatusProvider(Protocol):
    def get_repo_status(self, repo_id: int) -> RepoStatus:
        ...


class BackupRegistry(Protocol):
    def record_backup(
        self,
        repo_root: str,
        path: str,
        backup_path: str,
        *,
        run_id: int | None = None,
    ) -> Any:
        ...

    def list_backups(self, *, repo_root: str | None = None) -> Sequence[Any]:
        ...

    def expired_backups(self, older_than: datetime, *, repo_root: str | None = None) -> Sequence[Any]:
        ...

    def delete_backup(self, backup_id: int) -> None:
        ...


@dataclass(slots=True)
class ApplyResult:
    """Aggregate outcome of one apply call, successes and failures itemised."""

    applied: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def total_files(self) -> int:
        return len(self.applied) + len(self.errors)

    @property
    def successful(self) -> int:
        return len(self.applied)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "applied": list(self.applied),
            "errors": list(self.errors),
            "total_files": self.total_files,
            "successful": self.successful,
            "failed": self.failed,
        }


def _serialise_event_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_apply_event(event: str, **fields: Any) -> None:
    """Log a compact JSON telemetry event."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def check_repo_status(provider: RepoStatusProvider | None, repo_id: int) -> RepoStatus:
    """Return the status for ``repo_id`` or raise when it may not be modified."""

    if provider is None:
        raise RepoNotFound("Repository not found")
    status = provider.get_repo_status(repo_id)
    if not status.is_active:
        raise RepoBlocked("Repository has been deleted")
    if status.maintenance_lock:
        raise RepoBlocked("Repository is under maintenance lock. All operations blocked.")
    if status.read_only:
        raise RepoBlocked("Repository is read-only. Modifications not allowed.")
    return status


class FileApplier:
    """Execute an approved diff against a repository root."""

    def __init__(
        self,
        rules: Any,
        status_provider: RepoStatusProvider | None = None,
        backups: BackupRegistry | None = None,
        *,
        workspace: str = "coder",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rules = rules
        self.status_provider = status_provider
        self.backups = backups
        self.workspace = workspace
        self._clock = clock

    def _policy(self, allowed_sub_paths: Sequence[str]) -> CompiledPolicy:
        if isinstance(self.rules, CompiledPolicy):
            return self.rules
        return self.rules.compiled_policy(self.workspace, allowed_sub_paths)

    def apply(
        self,
        diff: str,
        repo_root: Path | str,
        *,
        repo_id: int | None = None,
        allowed_sub_paths: Sequence[str] = (),
        run_id: int | None = None,
    ) -> ApplyResult:
        """Apply ``diff`` under ``repo_root`` and return the itemised result.

        Repository status is checked before the diff is parsed. Policy, hunk
        and filesystem failures (``OSError`` included) are recorded per file
        and never stop the remaining files.
        """

        if repo_id is not None:
            check_repo_status(self.status_provider, repo_id)

        try:
            changes = parse_diff(diff)
        except MalformedDiff as error:
            raise NoValidChanges(f"No valid file changes found in diff: {error}") from error

        policy = self._policy(allowed_sub_paths)
        guard = PathGuard(Path(repo_root), policy)
        result = ApplyResult()

        for change in changes:
            action = change.action
            try:
                target = guard.validate(change.file)
                details = self._dispatch(change, action, target, guard.root, policy, run_id)
            except (PathPolicyError, FileApplyError, DiffError, OSError) as error:
                LOGGER.warning("Failed to apply %s (%s): %s", change.file, action, error)
                _emit_apply_event("apply_file_failed", file=change.file, action=action, error=str(error))
                result.errors.append({"file": change.file, "error": str(error)})
                continue
            result.applied.append({"file": change.file, "action": action, "success": True, "details": details})

        _emit_apply_event(
            "apply_completed",
            repo_root=guard.root,
            run_id=run_id,
            successful=result.successful,
            failed=result.failed,
        )
        return result

    def _dispatch(
        self,
        change: FileChange,
        action: str,
        target: Path,
        root: Path,
        policy: CompiledPolicy,
        run_id: int | None,
    ) -> Dict[str, Any]:
        if action == "create":
            return self._create(change, target, policy)
        if action == "delete":
            return self._delete(change, target, root, run_id)
        return self._modify(change, target, root, policy, run_id)

    # ---------------------------------------------------------------- handlers
    def _create(self, change: FileChange, target: Path, policy: CompiledPolicy) -> Dict[str, Any]:
        content = extract_created_content(change.diff)
        size = len(content.encode("utf-8"))
        if size > policy.max_file_size_bytes:
            raise FileSizeExceeded(
                f"File size exceeds limit ({size} > {policy.max_file_size_bytes} bytes)",
                path=change.file,
            )
        if target.exists() or target.is_symlink():
            raise FileSystemError("File already exists (expected new file)", path=change.file)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("x", encoding="utf-8", newline="") as handle:
                handle.write(content)
        except FileExistsError as error:
            raise FileSystemError("File already exists (expected new file)", path=change.file) from error
        except OSError as error:
            raise FileSystemError(f"Failed to create file: {error}", path=change.file) from error
        return {"created": True, "size": size, "lines": content.count("\n") + 1 if content else 0}

    def _delete(self, change: FileChange, target: Path, root: Path, run_id: int | None) -> Dict[str, Any]:
        if not target.exists():
            return {"deleted": True, "note": "File did not exist"}
        backup = self._backup(change, target, root, run_id)
        try:
            target.unlink()
        except OSError as error:
            raise FileSystemError(f"Failed to delete file: {error}", path=change.file) from error
        return {"deleted": True, "backup": backup.name}

    def _modify(
        self,
        change: FileChange,
        target: Path,
        root: Path,
        policy: CompiledPolicy,
        run_id: int | None,
    ) -> Dict[str, Any]:
        if not target.is_file():
            raise FileSystemError("File does not exist for modification", path=change.file)
        if not (os.access(target, os.R_OK) and os.access(target, os.W_OK)):
            raise FileSystemError("File is not readable/writable", path=change.file)
        try:
            with target.open("r", encoding="utf-8", newline="") as handle:
                original = handle.read()
        except (OSError, UnicodeDecodeError) as error:
            raise FileSystemError(f"Failed to read file: {error}", path=change.file) from error

        updated = apply_hunks(original, change.diff)
        new_size = len(updated.encode("utf-8"))
        if new_size > policy.max_file_size_bytes:
            raise FileSizeExceeded(
                f"Modified file would exceed size limit ({new_size} > {policy.max_file_size_bytes} bytes)",
                path=change.file,
            )

        backup = self._backup(change, target, root, run_id)
        try:
            with target.open("w", encoding="utf-8", newline="") as handle:
                handle.write(updated)
        except OSError as error:
            try:
                shutil.copy2(backup, target)
            except OSError as restore_error:
                LOGGER.error("Write to %s failed and restore from %s failed: %s", change.file, backup.name, restore_error)
                raise FileSystemError(
                    f"Failed to write file: {error}; restore failed, original kept in {backup.name}",
                    path=change.file,
                ) from error
            LOGGER.error("Write to %s failed; restored from %s", change.file, backup.name)
            raise FileSystemError(f"Failed to write file (restored from backup): {error}", path=change.file) from error

        return {
            "modified": True,
            "original_size": len(original.encode("utf-8")),
            "new_size": new_size,
            "backup": backup.name,
        }

    def _backup(self, change: FileChange, target: Path, root: Path, run_id: int | None) -> Path:
        # Bump the stamp until the name is free so an earlier backup is never overwritten.
        stamp = int(self._clock())
        backup = target.with_name(f"{target.name}{BACKUP_MARKER}{stamp}")
        try:
            while backup.exists() or backup.is_symlink():
                stamp += 1
                backup = target.with_name(f"{target.name}{BACKUP_MARKER}{stamp}")
            shutil.copy2(target, backup)
        except OSError as error:
            raise FileSystemError(f"Failed to create backup: {error}", path=change.file) from error
        if self.backups is not None:
            try:
                self.backups.record_backup(str(root), change.file, str(backup), run_id=run_id)
            except (sqlite3.Error, RuntimeError) as error:
                # The file is still swept by the timestamp in its name.
                LOGGER.warning("Unable to register backup %s: %s", backup.name, error)
        _emit_apply_event("backup_created", file=change.file, backup=backup, run_id=run_id)
        return backup

    def discard_created(self, result: ApplyResult, repo_root: Path | str) -> List[str]:
        """Remove the files ``result`` records as created.

        A hard reset leaves untracked files alone, so undoing a failed apply
        also needs this. Directories emptied by the removal are pruned up to
        the repository root.
        """

        root = Path(os.path.realpath(repo_root))
        removed: List[str] = []
        for entry in result.applied:
            if entry.get("action") != "create":
                continue
            try:
                target = resolve_and_check(root, entry["file"])
                target.unlink(missing_ok=True)
            except (PathPolicyError, OSError) as error:
                LOGGER.warning("Unable to discard created file %s: %s", entry["file"], error)
                continue
            removed.append(entry["file"])
            parent = target.parent
            while root in parent.parents:
                try:
                    parent.rmdir()
                except OSError:
                    break
                parent = parent.parent

        if removed:
            _emit_apply_event("created_files_discarded", repo_root=root, files=removed)
        return removed

    # ------------------------------------------------------------ inspection
    def preview(self, diff: str, repo_root: Path | str, repo_id: int | None = None) -> Dict[str, Any]:
        """Describe what ``apply`` would do without touching the filesystem."""

        repo_status: Dict[str, Any] | None = None
        if repo_id is not None and self.status_provider is not None:
            try:
                repo_status = self.status_provider.get_repo_status(repo_id).to_dict()
            except RepoNotFound as error:
                repo_status = {"error": str(error)}

        try:
            changes = parse_diff(diff)
        except MalformedDiff as error:
            raise NoValidChanges(f"No valid file changes found in diff: {error}") from error

        preview_changes = []
        for change in changes:
            entry: Dict[str, Any] = {
                "file": change.file,
                "action": change.action,
                "exists": False,
                "diff_lines": change.line_count,
            }
            try:
                target = resolve_and_check(repo_root, change.file)
                entry["exists"] = target.exists()
            except (PathPolicyError, OSError) as error:
                entry["error"] = str(error)
            preview_changes.append(entry)
        return {"repo_status": repo_status, "changes": preview_changes}

    def cleanup_backups(
        self,
        repo_root: Path | str,
        max_age_hours: float = DEFAULT_BACKUP_MAX_AGE_HOURS,
    ) -> Dict[str, int]:
        """Delete backups older than ``max_age_hours``.

        Registered backups are swept through the registry; backup files the
        registry does not know about are aged by the timestamp in their name.
        """

        root = Path(repo_root).resolve()
        now = self._clock()
        cutoff = datetime.fromtimestamp(now, tz=timezone.utc) - timedelta(hours=max_age_hours)
        deleted = 0
        known: set[str] = set()

        if self.backups is not None:
            known = {str(Path(record.backup_path)) for record in self.backups.list_backups(repo_root=str(root))}
            for record in self.backups.expired_backups(cutoff, repo_root=str(root)):
                backup_path = Path(record.backup_path)
                try:
                    backup_path.unlink(missing_ok=True)
                except OSError as error:
                    LOGGER.warning("Unable to delete backup %s: %s", backup_path, error)
                    continue
                self.backups.delete_backup(record.id)
                deleted += 1

        threshold = now - max_age_hours * 3600
        for candidate in root.rglob(f"*{BACKUP_MARKER}*"):
            if ".git" in candidate.relative_to(root).parts or str(candidate) in known:
                continue
            try:
                if candidate.is_file() and _backup_timestamp(candidate) < threshold:
                    candidate.unlink()
                    deleted += 1
            except OSError as error:
                LOGGER.warning("Unable to delete backup %s: %s", candidate, error)

        if deleted:
            _emit_apply_event("backups_cleaned", repo_root=root, deleted=deleted)
        return {"deleted": deleted}


def _backup_timestamp(path: Path) -> float:
    """Return the creation time encoded in a backup name, else its mtime."""
    suffix = path.name.rsplit(BACKUP_MARKER, 1)[-1]
    if suffix.isdigit():
        return float(suffix)
    return path.stat().st_mtime


__all__ = [
    "ApplyResult",
    "BACKUP_MARKER",
    "BackupRegistry",
    "FileApplier",
    "FileApplyError",
    "FileSizeExceeded",
    "FileSystemError",
    "NoValidChanges",
    "RepoBlocked",
    "RepoGateError",
    "RepoNotFound",
    "RepoStatus",
    "RepoStatusProvider",
    "check_repo_status",
]
