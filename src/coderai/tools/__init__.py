"""Filesystem, diff, and version-control tools used by the pipeline."""

from .applier import ApplyResult, FileApplier, NoValidChanges, RepoBlocked, RepoNotFound, RepoStatus
from .diff import FileChange, HunkMismatch, MalformedDiff, apply_hunks, extract_created_content, parse_diff, serialize_diff
from .paths import PathGuard, PathPolicyError, RepoPolicy, compile_policy
from .vcs import CheckpointInfo, GitError, GitRepository, RollbackInfo

__all__ = [
    "ApplyResult",
    "CheckpointInfo",
    "FileApplier",
    "FileChange",
    "GitError",
    "GitRepository",
    "HunkMismatch",
    "MalformedDiff",
    "NoValidChanges",
    "PathGuard",
    "PathPolicyError",
    "RepoBlocked",
    "RepoNotFound",
    "RepoPolicy",
    "RepoStatus",
    "RollbackInfo",
    "apply_hunks",
    "compile_policy",
    "extract_created_content",
    "parse_diff",
    "serialize_diff",
]
