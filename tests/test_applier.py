from __future__ import annotations

import errno
import json
import logging
import shutil
import time
from pathlib import Path

import pytest

from coderai.memory import Repo, RunStore
from coderai.rules import RulesService
from coderai.tools.applier import (
    BACKUP_MARKER,
    FileApplier,
    NoValidChanges,
    RepoBlocked,
    RepoNotFound,
)
from coderai.tools.paths import compile_policy

from conftest import APP_SOURCE

MODIFY_APP = """--- a/app.py
+++ b/app.py
@@ -1,2 +1,2 @@
 def add(left, right):
-    return left + right
+    return right + left
"""


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _backups(root: Path) -> list[Path]:
    return sorted(path for path in root.rglob(f"*{BACKUP_MARKER}*") if ".git" not in path.parts)


def _snapshot(root: Path) -> dict[str, str]:
    return {
        str(path.relative_to(root)): path.read_text(encoding="utf-8")
        for path in root.rglob("*")
        if path.is_file() and ".git" not in path.relative_to(root).parts
    }


@pytest.fixture()
def applier(rules: RulesService, store: RunStore) -> FileApplier:
    return FileApplier(rules, status_provider=store, backups=store)


def test_create_writes_new_file(applier: FileApplier, git_repo: Path) -> None:
    diff = "--- /dev/null\n+++ b/new.txt\n@@ -0,0 +1,2 @@\n+hello\n+world"

    result = applier.apply(diff, git_repo)

    assert result.success
    assert result.applied[0]["action"] == "create"
    assert result.applied[0]["details"] == {"created": True, "size": 11, "lines": 2}
    assert (git_repo / "new.txt").read_text(encoding="utf-8") == "hello\nworld"


def test_create_makes_missing_parent_directories(applier: FileApplier, git_repo: Path) -> None:
    diff = "--- /dev/null\n+++ b/pkg/sub/mod.py\n@@ -0,0 +1 @@\n+VALUE = 1"

    result = applier.apply(diff, git_repo)

    assert result.success
    assert (git_repo / "pkg" / "sub" / "mod.py").read_text(encoding="utf-8") == "VALUE = 1"


def test_create_never_overwrites_existing_file(applier: FileApplier, git_repo: Path) -> None:
    diff = "--- /dev/null\n+++ b/app.py\n@@ -0,0 +1 @@\n+print('clobbered')"

    result = applier.apply(diff, git_repo)

    assert result.failed == 1
    assert result.errors == [{"file": "app.py", "error": "File already exists (expected new file)"}]
    assert (git_repo / "app.py").read_text(encoding="utf-8") == APP_SOURCE


def test_delete_missing_file_succeeds_without_backup(applier: FileApplier, git_repo: Path) -> None:
    diff = "--- a/ghost.txt\n+++ /dev/null\n@@ -1 +0,0 @@\n-boo"

    result = applier.apply(diff, git_repo)

    assert result.success
    assert result.applied[0]["details"] == {"deleted": True, "note": "File did not exist"}
    assert _backups(git_repo) == []


def test_delete_creates_registered_backup(applier: FileApplier, store: RunStore, git_repo: Path) -> None:
    (git_repo / "old.txt").write_text("legacy\n", encoding="utf-8")
    diff = "---  a/old.txt\n+++ /dev/null\n@@ -1 +0,0 @@\n-legacy"

    result = applier.apply(diff, git_repo, run_id=7)

    assert result.success
    assert result.applied[0]["action"] == "delete"
    assert not (git_repo / "old.txt").exists()
    (backup,) = _backups(git_repo)
    assert backup.name.startswith("old.txt" + BACKUP_MARKER)
    assert backup.name.rsplit(BACKUP_MARKER, 1)[1].isdigit()
    assert backup.read_text(encoding="utf-8") == "legacy\n"
    (record,) = store.list_backups()
    assert record.path == "old.txt"
    assert record.run_id == 7
    assert Path(record.backup_path) == backup.resolve()


def test_modify_applies_hunks_and_backs_up(applier: FileApplier, git_repo: Path) -> None:
    result = applier.apply(MODIFY_APP, git_repo)

    assert result.success
    details = result.applied[0]["details"]
    assert details["modified"] is True
    assert (git_repo / "app.py").read_text(encoding="utf-8") == "def add(left, right):\n    return right + left\n"
    (backup,) = _backups(git_repo)
    assert details["backup"] == backup.name
    assert backup.read_text(encoding="utf-8") == APP_SOURCE


def test_modify_with_mismatched_context_leaves_file_untouched(applier: FileApplier, git_repo: Path) -> None:
    diff = "--- a/app.py\n+++ b/app.py\n@@ -1,2 +1,2 @@\n def add(a, b):\n-    return a + b\n+    return b + a\n"

    result = applier.apply(diff, git_repo)

    assert result.failed == 1
    assert "does not match line 1" in result.errors[0]["error"]
    assert (git_repo / "app.py").read_text(encoding="utf-8") == APP_SOURCE
    assert _backups(git_repo) == []


def test_modify_missing_file_fails(applier: FileApplier, git_repo: Path) -> None:
    diff = "--- a/missing.py\n+++ b/missing.py\n@@ -1 +1 @@\n-a\n+b\n"

    result = applier.apply(diff, git_repo)

    assert result.errors == [{"file": "missing.py", "error": "File does not exist for modification"}]


def test_partial_failure_keeps_successful_files(applier: FileApplier, git_repo: Path) -> None:
    diff = "--- /dev/null\n+++ b/.env\n@@ -0,0 +1 @@\n+SECRET=1\n" + MODIFY_APP

    result = applier.apply(diff, git_repo)

    assert result.successful == 1
    assert result.failed == 1
    assert result.total_files == 2
    assert not result.success
    assert result.errors[0]["file"] == ".env"
    assert result.errors[0]["error"] == "Access to blocked path: .env"
    assert not (git_repo / ".env").exists()
    assert "right + left" in (git_repo / "app.py").read_text(encoding="utf-8")


def test_traversal_is_reported_per_file(applier: FileApplier, git_repo: Path) -> None:
    diff = "--- /dev/null\n+++ b/../../etc/passwd\n@@ -0,0 +1 @@\n+root::0:0"

    result = applier.apply(diff, git_repo)

    assert result.failed == 1
    assert "Path traversal attempt detected" in result.errors[0]["error"]


def test_os_errors_stay_isolated_to_their_file(applier: FileApplier, git_repo: Path) -> None:
    long_name = "x" * 300 + ".txt"
    diff = "".join(
        f"--- /dev/null\n+++ b/{name}\n@@ -0,0 +1 @@\n+{name}\n" for name in ("ok.txt", long_name, "later.txt")
    )

    result = applier.apply(diff, git_repo)

    assert [entry["file"] for entry in result.applied] == ["ok.txt", "later.txt"]
    assert [entry["file"] for entry in result.errors] == [long_name]
    assert (git_repo / "ok.txt").exists()
    assert (git_repo / "later.txt").exists()


def test_failed_restore_is_reported_per_file(
    applier: FileApplier,
    git_repo: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    real_open = Path.open
    real_copy = shutil.copy2

    def _open(self: Path, mode: str = "r", *args, **kwargs):
        if mode == "w" and self.name == "app.py":
            raise OSError(errno.ENOSPC, "No space left on device")
        return real_open(self, mode, *args, **kwargs)

    def _copy(src, dst, *args, **kwargs):
        if Path(dst).name == "app.py":
            raise OSError(errno.EIO, "Input/output error")
        return real_copy(src, dst, *args, **kwargs)

    monkeypatch.setattr(Path, "open", _open)
    monkeypatch.setattr(shutil, "copy2", _copy)
    diff = MODIFY_APP + "--- /dev/null\n+++ b/later.txt\n@@ -0,0 +1 @@\n+ok\n"

    result = applier.apply(diff, git_repo)

    assert [entry["file"] for entry in result.errors] == ["app.py"]
    assert "restore failed" in result.errors[0]["error"]
    (backup,) = _backups(git_repo)
    assert backup.read_text(encoding="utf-8") == APP_SOURCE
    assert (git_repo / "later.txt").exists()


def test_unusable_backup_registry_does_not_fail_the_file(
    rules: RulesService,
    store: RunStore,
    git_repo: Path,
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    registry = RunStore(tmp_path / "registry.sqlite")
    registry.close()
    applier = FileApplier(rules, status_provider=store, backups=registry)
    caplog.set_level(logging.WARNING, logger="coderai.tools.applier")

    result = applier.apply(MODIFY_APP, git_repo)

    assert result.success
    assert len(_backups(git_repo)) == 1
    assert "Unable to register backup" in caplog.text


def test_allowed_sub_paths_restrict_writes(applier: FileApplier, git_repo: Path) -> None:
    diff = "--- /dev/null\n+++ b/docs/guide.md\n@@ -0,0 +1 @@\n+guide"

    result = applier.apply(diff, git_repo, allowed_sub_paths=["src"])

    assert result.errors == [{"file": "docs/guide.md", "error": "File path not in allowed paths: docs/guide.md"}]


def test_size_limit_rejects_large_files(git_repo: Path) -> None:
    applier = FileApplier(compile_policy({"max_file_size_bytes": 8}))
    diff = "--- /dev/null\n+++ b/big.txt\n@@ -0,0 +1 @@\n+0123456789"

    result = applier.apply(diff, git_repo)

    assert result.errors[0]["error"] == "File size exceeds limit (10 > 8 bytes)"
    assert not (git_repo / "big.txt").exists()


@pytest.mark.parametrize(
    "flags, message",
    [
        ({"read_only": True}, "Repository is read-only. Modifications not allowed."),
        ({"maintenance_lock": True}, "Repository is under maintenance lock. All operations blocked."),
        ({"is_active": False}, "Repository has been deleted"),
    ],
)
def test_repo_status_gates_block_before_any_write(
    applier: FileApplier,
    store: RunStore,
    registered_repo: Repo,
    git_repo: Path,
    flags: dict,
    message: str,
) -> None:
    store.update_repo_flags(registered_repo.id, **flags)
    before = _snapshot(git_repo)

    with pytest.raises(RepoBlocked, match=message):
        applier.apply(MODIFY_APP, git_repo, repo_id=registered_repo.id)

    assert _snapshot(git_repo) == before


def test_unknown_repo_is_rejected(applier: FileApplier, git_repo: Path) -> None:
    with pytest.raises(RepoNotFound):
        applier.apply(MODIFY_APP, git_repo, repo_id=999)


def test_repo_id_without_status_provider_is_rejected(rules: RulesService, git_repo: Path) -> None:
    with pytest.raises(RepoNotFound):
        FileApplier(rules).apply(MODIFY_APP, git_repo, repo_id=1)


def test_prose_diff_raises_no_valid_changes(applier: FileApplier, git_repo: Path) -> None:
    with pytest.raises(NoValidChanges):
        applier.apply("I could not produce a diff, sorry.", git_repo)


def test_apply_emits_telemetry(applier: FileApplier, git_repo: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="coderai.telemetry")

    applier.apply(MODIFY_APP, git_repo, run_id=3)

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "coderai.telemetry"]
    names = [event["event"] for event in events]
    assert "backup_created" in names
    completed = events[names.index("apply_completed")]
    assert completed["successful"] == 1
    assert completed["failed"] == 0
    assert completed["run_id"] == 3


def test_preview_describes_changes_without_writing(
    applier: FileApplier,
    registered_repo: Repo,
    git_repo: Path,
) -> None:
    diff = "--- /dev/null\n+++ b/new.txt\n@@ -0,0 +1 @@\n+hi\n" + MODIFY_APP
    before = _snapshot(git_repo)

    summary = applier.preview(diff, git_repo, repo_id=registered_repo.id)

    assert summary["repo_status"] == {"read_only": False, "maintenance_lock": False, "is_active": True}
    assert [(c["file"], c["action"], c["exists"]) for c in summary["changes"]] == [
        ("new.txt", "create", False),
        ("app.py", "modify", True),
    ]
    assert _snapshot(git_repo) == before


def test_preview_reports_unknown_repo(applier: FileApplier, git_repo: Path) -> None:
    summary = applier.preview(MODIFY_APP, git_repo, repo_id=404)

    assert summary["repo_status"] == {"error": "Repository not found"}


def test_preview_does_not_look_outside_the_repo(applier: FileApplier, git_repo: Path) -> None:
    (git_repo.parent / "outside.txt").write_text("a\n", encoding="utf-8")
    diff = "--- a/../outside.txt\n+++ b/../outside.txt\n@@ -1 +1 @@\n-a\n+b\n"

    (change,) = applier.preview(diff, git_repo)["changes"]

    assert change["file"] == "../outside.txt"
    assert change["exists"] is False
    assert "Path traversal attempt detected" in change["error"]


def test_backups_within_one_second_get_distinct_names(rules: RulesService, store: RunStore, git_repo: Path) -> None:
    applier = FileApplier(rules, backups=store, clock=FakeClock(1_700_000_000))
    revert = (
        "--- a/app.py\n+++ b/app.py\n@@ -1,2 +1,2 @@\n"
        " def add(left, right):\n-    return right + left\n+    return left + right\n"
    )

    assert applier.apply(MODIFY_APP, git_repo).success
    assert applier.apply(revert, git_repo).success

    first, second = _backups(git_repo)
    assert first.name == f"app.py{BACKUP_MARKER}1700000000"
    assert second.name == f"app.py{BACKUP_MARKER}1700000001"
    assert first.read_text(encoding="utf-8") == APP_SOURCE
    assert "right + left" in second.read_text(encoding="utf-8")
    assert sorted(Path(record.backup_path).name for record in store.list_backups()) == [first.name, second.name]


def test_cleanup_removes_expired_registered_backups(rules: RulesService, store: RunStore, git_repo: Path) -> None:
    clock = FakeClock(time.time())
    applier = FileApplier(rules, backups=store, clock=clock)
    applier.apply(MODIFY_APP, git_repo)
    assert len(_backups(git_repo)) == 1

    clock.now += 3600
    assert applier.cleanup_backups(git_repo, max_age_hours=24) == {"deleted": 0}
    assert len(_backups(git_repo)) == 1

    clock.now += 24 * 3600
    assert applier.cleanup_backups(git_repo, max_age_hours=24) == {"deleted": 1}
    assert _backups(git_repo) == []
    assert store.list_backups() == []


def test_cleanup_sweeps_unregistered_backups_by_name(rules: RulesService, git_repo: Path) -> None:
    now = time.time()
    applier = FileApplier(rules, clock=FakeClock(now))
    stale = git_repo / f"app.py{BACKUP_MARKER}{int(now - 48 * 3600)}"
    fresh = git_repo / f"README.md{BACKUP_MARKER}{int(now - 60)}"
    stale.write_text("old", encoding="utf-8")
    fresh.write_text("new", encoding="utf-8")

    assert applier.cleanup_backups(git_repo) == {"deleted": 1}
    assert not stale.exists()
    assert fresh.exists()
