"""Durable storage for repositories, runs, run steps, and backups."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional

from ..tools.applier import RepoNotFound, RepoStatus
from .schema import BackupRecord, Repo, Run, RunStatus, RunStep, StepStatus, utc_now

DEFAULT_DB_PATH = Path("data/coderai.sqlite")
LOGGER = logging.getLogger(__name__)

_RUN_JSON_FIELDS = ("plan", "review", "apply_result")


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    return json.dumps(default if data is None else data)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class RunStore:
    """SQLite-backed persistence for the pipeline runtime.

    Also acts as the repository status provider and backup registry consumed
    by :class:`~coderai.tools.applier.FileApplier`.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path = self.db_path.resolve()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = self._open_connection()
        self._bootstrap()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, base_dir: Path | None = None) -> "RunStore":
        paths = config.get("paths") or {}
        raw = paths.get("db_path") or Path(paths.get("data") or "data") / "coderai.sqlite"
        db_path = Path(raw)
        if not db_path.is_absolute() and base_dir is not None:
            db_path = base_dir / db_path
        return cls(db_path)

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "RunStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("RunStore is closed.")
        return self._conn

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _bootstrap(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS repos (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                label TEXT NOT NULL,
                base_path TEXT NOT NULL,
                allowed_paths TEXT NOT NULL,
                read_only INTEGER NOT NULL DEFAULT 0,
                maintenance_lock INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                repo_id INTEGER NOT NULL,
                request TEXT NOT NULL,
                status TEXT NOT NULL,
                plan TEXT,
                diff TEXT,
                review TEXT,
                apply_result TEXT,
                checkpoint TEXT,
                post_checkpoint TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT,
                FOREIGN KEY(repo_id) REFERENCES repos(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_runs_repo_status
                ON runs(repo_id, status);

            CREATE TABLE IF NOT EXISTS run_steps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                phase TEXT NOT NULL,
                status TEXT NOT NULL,
                model TEXT,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                output TEXT NOT NULL,
                error_message TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                FOREIGN KEY(run_id) REFERENCES runs(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS backups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                repo_root TEXT NOT NULL,
                path TEXT NOT NULL,
                backup_path TEXT NOT NULL,
                run_id INTEGER,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_backups_repo
                ON backups(repo_root, created_at);
            """
        )
        self.conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self.conn
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    # Repo operations ------------------------------------------------------------------
    def add_repo(self, repo: Repo) -> Repo:
        with self._transaction():
            cursor = self.conn.execute(
                """
                INSERT INTO repos (
                    label, base_path, allowed_paths, read_only, maintenance_lock,
                    is_active, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    repo.label,
                    repo.base_path,
                    _dump_json(repo.allowed_paths, default=[]),
                    int(repo.read_only),
                    int(repo.maintenance_lock),
                    int(repo.is_active),
                    _as_iso(repo.created_at),
                    _as_iso(repo.updated_at),
                ),
            )
        return repo.model_copy(update={"id": cursor.lastrowid})

    def get_repo(self, repo_id: int) -> Optional[Repo]:
        row = self.conn.execute("SELECT * FROM repos WHERE id = ?", (repo_id,)).fetchone()
        if not row:
            return None
        return self._row_to_repo(row)

    def list_repos(self) -> List[Repo]:
        cursor = self.conn.execute("SELECT * FROM repos ORDER BY id ASC")
        return [self._row_to_repo(row) for row in cursor.fetchall()]

    def update_repo_flags(
        self,
        repo_id: int,
        *,
        read_only: Optional[bool] = None,
        maintenance_lock: Optional[bool] = None,
        is_active: Optional[bool] = None,
    ) -> Repo:
        repo = self.get_repo(repo_id)
        if repo is None:
            raise RepoNotFound("Repository not found")
        updates = {
            key: value
            for key, value in (
                ("read_only", read_only),
                ("maintenance_lock", maintenance_lock),
                ("is_active", is_active),
            )
            if value is not None
        }
        record = repo.model_copy(update={**updates, "updated_at": utc_now()})
        with self._transaction():
            self.conn.execute(
                """
                UPDATE repos
                SET read_only = ?, maintenance_lock = ?, is_active = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    int(record.read_only),
                    int(record.maintenance_lock),
                    int(record.is_active),
                    _as_iso(record.updated_at),
                    repo_id,
                ),
            )
        return record

    def get_repo_status(self, repo_id: int) -> RepoStatus:
        """Return the mutation gates for ``repo_id``; raise when it is unknown."""
        repo = self.get_repo(repo_id)
        if repo is None:
            raise RepoNotFound("Repository not found")
        return repo.status()

    @staticmethod
    def _row_to_repo(row: sqlite3.Row) -> Repo:
        return Repo(
            id=row["id"],
            label=row["label"],
            base_path=row["base_path"],
            allowed_paths=_load_json(row["allowed_paths"], default=[]),
            read_only=bool(row["read_only"]),
            maintenance_lock=bool(row["maintenance_lock"]),
            is_active=bool(row["is_active"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    # Run operations -------------------------------------------------------------------
    def create_run(self, run: Run) -> Run:
        with self._transaction():
            cursor = self.conn.execute(
                """
                INSERT INTO runs (repo_id, request, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    run.repo_id,
                    run.request,
                    run.status.value,
                    _as_iso(run.created_at),
                    _as_iso(run.updated_at),
                ),
            )
        return run.model_copy(update={"id": cursor.lastrowid})

    def save_run(self, run: Run) -> Run:
        if run.id is None:
            raise ValueError("Run must be created before it can be saved.")
        record = run.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self.conn.execute(
                """
                UPDATE runs SET
                    status = ?, plan = ?, diff = ?, review = ?, apply_result = ?,
                    checkpoint = ?, post_checkpoint = ?, error_message = ?,
                    updated_at = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    record.status.value,
                    None if record.plan is None else _dump_json(record.plan, default={}),
                    record.diff,
                    None if record.review is None else _dump_json(record.review, default={}),
                    None if record.apply_result is None else _dump_json(record.apply_result, default={}),
                    record.checkpoint,
                    record.post_checkpoint,
                    record.error_message,
                    _as_iso(record.updated_at),
                    _as_iso(record.completed_at) if record.completed_at else None,
                    record.id,
                ),
            )
        return record

    def get_run(self, run_id: int) -> Optional[Run]:
        row = self.conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if not row:
            return None
        return self._row_to_run(row)

    def list_runs(self, *, repo_id: Optional[int] = None, limit: int = 50) -> List[Run]:
        query = "SELECT * FROM runs"
        params: List[Any] = []
        if repo_id is not None:
            query += " WHERE repo_id = ?"
            params.append(repo_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(int(limit))
        return [self._row_to_run(row) for row in self.conn.execute(query, params).fetchall()]

    def claim_apply(self, run_id: int, repo_id: int) -> bool:
        """Move a ready run to ``applying`` unless another run of the repo is applying.

        The check and the update happen in one statement, so two callers can
        never both claim the same repository.
        """
        with self._transaction():
            cursor = self.conn.execute(
                """
                UPDATE runs SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM runs WHERE repo_id = ? AND status = ?
                  )
                """,
                (
                    RunStatus.APPLYING.value,
                    _as_iso(utc_now()),
                    run_id,
                    RunStatus.READY.value,
                    repo_id,
                    RunStatus.APPLYING.value,
                ),
            )
        return cursor.rowcount == 1

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        payload = {field: _load_json(row[field], default=None) for field in _RUN_JSON_FIELDS}
        return Run(
            id=row["id"],
            repo_id=row["repo_id"],
            request=row["request"],
            status=RunStatus(row["status"]),
            diff=row["diff"],
            checkpoint=row["checkpoint"],
            post_checkpoint=row["post_checkpoint"],
            error_message=row["error_message"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
            completed_at=_from_iso(row["completed_at"]),
            **payload,
        )

    # Step operations ------------------------------------------------------------------
    def start_step(self, run_id: int, phase: str, *, model: Optional[str] = None) -> RunStep:
        step = RunStep(run_id=run_id, phase=phase, model=model)
        with self._transaction():
            cursor = self.conn.execute(
                """
                INSERT INTO run_steps (run_id, phase, status, model, tokens_used, output, started_at)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (run_id, phase, step.status.value, model, _dump_json({}, default={}), _as_iso(step.started_at)),
            )
        return step.model_copy(update={"id": cursor.lastrowid})

    def finish_step(
        self,
        step: RunStep,
        *,
        status: StepStatus,
        tokens_used: int = 0,
        output: Optional[Mapping[str, Any]] = None,
        error_message: Optional[str] = None,
        model: Optional[str] = None,
    ) -> RunStep:
        record = step.model_copy(
            update={
                "status": status,
                "tokens_used": tokens_used,
                "output": dict(output or {}),
                "error_message": error_message,
                "model": model or step.model,
                "completed_at": utc_now(),
            }
        )
        with self._transaction():
            self.conn.execute(
                """
                UPDATE run_steps
                SET status = ?, model = ?, tokens_used = ?, output = ?, error_message = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    record.status.value,
                    record.model,
                    record.tokens_used,
                    _dump_json(record.output, default={}),
                    record.error_message,
                    _as_iso(record.completed_at),
                    record.id,
                ),
            )
        return record

    def list_steps(self, run_id: int) -> List[RunStep]:
        cursor = self.conn.execute("SELECT * FROM run_steps WHERE run_id = ? ORDER BY id ASC", (run_id,))
        return [
            RunStep(
                id=row["id"],
                run_id=row["run_id"],
                phase=row["phase"],
                status=StepStatus(row["status"]),
                model=row["model"],
                tokens_used=row["tokens_used"],
                output=_load_json(row["output"], default={}),
                error_message=row["error_message"],
                started_at=_from_iso(row["started_at"]),
                completed_at=_from_iso(row["completed_at"]),
            )
            for row in cursor.fetchall()
        ]

    # Backup registry ------------------------------------------------------------------
    def record_backup(
        self,
        repo_root: str,
        path: str,
        backup_path: str,
        *,
        run_id: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> BackupRecord:
        record = BackupRecord(
            repo_root=str(repo_root),
            path=path,
            backup_path=str(backup_path),
            run_id=run_id,
            created_at=created_at or utc_now(),
        )
        with self._transaction():
            cursor = self.conn.execute(
                """
                INSERT INTO backups (repo_root, path, backup_path, run_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (record.repo_root, record.path, record.backup_path, record.run_id, _as_iso(record.created_at)),
            )
        return record.model_copy(update={"id": cursor.lastrowid})

    def list_backups(self, *, repo_root: Optional[str] = None, run_id: Optional[int] = None) -> List[BackupRecord]:
        query = "SELECT * FROM backups"
        clauses = []
        params: List[Any] = []
        if repo_root is not None:
            clauses.append("repo_root = ?")
            params.append(str(repo_root))
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id ASC"
        return [self._row_to_backup(row) for row in self.conn.execute(query, params).fetchall()]

    def expired_backups(self, older_than: datetime, *, repo_root: Optional[str] = None) -> List[BackupRecord]:
        """Return registered backups created before ``older_than``."""
        if older_than.tzinfo is None:
            older_than = older_than.replace(tzinfo=timezone.utc)
        return [record for record in self.list_backups(repo_root=repo_root) if record.created_at < older_than]

    def delete_backup(self, backup_id: int) -> None:
        with self._transaction():
            self.conn.execute("DELETE FROM backups WHERE id = ?", (backup_id,))

    @staticmethod
    def _row_to_backup(row: sqlite3.Row) -> BackupRecord:
        return BackupRecord(
            id=row["id"],
            repo_root=row["repo_root"],
            path=row["path"],
            backup_path=row["backup_path"],
            run_id=row["run_id"],
            created_at=_from_iso(row["created_at"]),
        )


__all__ = ["DEFAULT_DB_PATH", "RunStore"]
