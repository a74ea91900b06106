"""Persistence for repositories, runs, and the backup registry."""

from .schema import BackupRecord, Repo, RepoMeta, Run, RunStatus, RunStep, StepStatus
from .store import RunStore

__all__ = [
    "BackupRecord",
    "Repo",
    "RepoMeta",
    "Run",
    "RunStatus",
    "RunStep",
    "RunStore",
    "StepStatus",
]
