"""Typed records tracked by the CoderAI run store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..tools.applier import RepoStatus


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class RunStatus(str, Enum):
    """Lifecycle states for a pipeline run."""

    PENDING = "pending"
    PLANNING = "planning"
    CODING = "coding"
    REVIEWING = "reviewing"
    READY = "ready"
    FAILED = "failed"
    APPLYING = "applying"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RepoMeta(RecordModel):
    """What the phases need to know about a target repository."""

    id: Optional[int] = None
    base_path: str
    label: str = ""
    allowed_paths: List[str] = Field(default_factory=list)


class Repo(RecordModel):
    """Registered target repository and its mutation gates."""

    id: Optional[int] = None
    label: str
    base_path: str
    allowed_paths: List[str] = Field(default_factory=list)
    read_only: bool = False
    maintenance_lock: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def status(self) -> RepoStatus:
        return RepoStatus(
            read_only=self.read_only,
            maintenance_lock=self.maintenance_lock,
            is_active=self.is_active,
        )

    def meta(self) -> RepoMeta:
        return RepoMeta(
            id=self.id,
            base_path=self.base_path,
            label=self.label,
            allowed_paths=list(self.allowed_paths),
        )


class Run(RecordModel):
    """One Plan → Code → Review → Apply pass over a repository."""

    id: Optional[int] = None
    repo_id: int
    request: str
    status: RunStatus = RunStatus.PENDING
    plan: Optional[Dict[str, Any]] = None
    diff: Optional[str] = None
    review: Optional[Dict[str, Any]] = None
    apply_result: Optional[Dict[str, Any]] = None
    checkpoint: Optional[str] = None
    post_checkpoint: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class RunStep(RecordModel):
    """Audit record for a single phase invocation."""

    id: Optional[int] = None
    run_id: int
    phase: str
    status: StepStatus = StepStatus.RUNNING
    model: Optional[str] = None
    tokens_used: int = 0
    output: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class BackupRecord(RecordModel):
    """Registry entry for a backup file written before a destructive change."""

    id: Optional[int] = None
    repo_root: str
    path: str
    backup_path: str
    run_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "BackupRecord",
    "RecordModel",
    "Repo",
    "RepoMeta",
    "Run",
    "RunStatus",
    "RunStep",
    "StepStatus",
    "utc_now",
]
