"""Path traversal and repository policy guards for file mutations."""

from __future__ import annotations

import fnmatch
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, Mapping, Sequence, Tuple

DEFAULT_MAX_FILE_SIZE_BYTES = 1_048_576


class PathPolicyError(RuntimeError):
    """Base error for file operations rejected by repository policy."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class PathTraversal(PathPolicyError):
    """Raised when a path resolves outside of the repository root."""


class BlockedPath(PathPolicyError):
    """Raised when a path matches a blocked pattern."""

    def __init__(self, message: str, *, path: str | None = None, pattern: str | None = None) -> None:
        super().__init__(message, path=path)
        self.pattern = pattern


class ExtensionNotAllowed(PathPolicyError):
    """Raised when a file extension is outside the allow-list."""


class PathNotAllowed(PathPolicyError):
    """Raised when a path is outside the repository's allowed sub-paths."""


@dataclass(slots=True)
class RepoPolicy:
    """Externally supplied restrictions for one repository run."""

    blocked_paths: Tuple[str, ...] = ()
    allowed_extensions: Tuple[str, ...] = ()
    allowed_sub_paths: Tuple[str, ...] = ()
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES

    @classmethod
    def from_mapping(cls, data: Mapping[str, object] | None) -> "RepoPolicy":
        payload = dict(data or {})
        max_size = payload.get("max_file_size_bytes")
        try:
            size = int(max_size) if max_size is not None else DEFAULT_MAX_FILE_SIZE_BYTES
        except (TypeError, ValueError):
            size = DEFAULT_MAX_FILE_SIZE_BYTES
        return cls(
            blocked_paths=_string_tuple(payload.get("blocked_paths")),
            allowed_extensions=_string_tuple(payload.get("allowed_extensions")),
            allowed_sub_paths=_string_tuple(payload.get("allowed_sub_paths") or payload.get("allowed_paths")),
            max_file_size_bytes=size if size > 0 else DEFAULT_MAX_FILE_SIZE_BYTES,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "blocked_paths": list(self.blocked_paths),
            "allowed_extensions": list(self.allowed_extensions),
            "allowed_sub_paths": list(self.allowed_sub_paths),
            "max_file_size_bytes": self.max_file_size_bytes,
        }


@dataclass(slots=True, frozen=True)
class BlockedPattern:
    """A blocked-path entry compiled once at policy load time."""

    source: str
    expanded: str
    regex: re.Pattern[str]

    def matches(self, candidate: str) -> bool:
        return self.expanded in candidate or self.regex.match(candidate) is not None


@dataclass(slots=True, frozen=True)
class CompiledPolicy:
    """RepoPolicy with patterns pre-compiled for repeated checks."""

    policy: RepoPolicy
    blocked: Tuple[BlockedPattern, ...] = ()
    allowed_extensions: Tuple[str, ...] = ()
    allowed_sub_paths: Tuple[str, ...] = ()

    @property
    def max_file_size_bytes(self) -> int:
        return self.policy.max_file_size_bytes

    def first_blocked_match(self, candidate: str) -> BlockedPattern | None:
        for pattern in self.blocked:
            if pattern.matches(candidate):
                return pattern
        return None


def _string_tuple(value: object) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Iterable):
        return ()
    return tuple(str(item).strip() for item in value if str(item).strip())


def _expand_home(pattern: str, home: str) -> str:
    return pattern.replace("~", home)


def compile_policy(policy: RepoPolicy | Mapping[str, object], *, home: str | None = None) -> CompiledPolicy:
    """Compile ``policy`` into matchers used by every subsequent check."""

    if not isinstance(policy, RepoPolicy):
        policy = RepoPolicy.from_mapping(policy)
    home_dir = home or os.environ.get("HOME") or str(Path.home())
    blocked: list[BlockedPattern] = []
    for raw in policy.blocked_paths:
        expanded = _expand_home(raw, home_dir)
        regex = re.compile(fnmatch.translate(f"*{expanded}*"))
        blocked.append(BlockedPattern(source=raw, expanded=expanded, regex=regex))
    extensions = tuple(
        ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in policy.allowed_extensions
    )
    sub_paths = tuple(entry.strip("/") for entry in policy.allowed_sub_paths if entry.strip("/"))
    return CompiledPolicy(
        policy=policy,
        blocked=tuple(blocked),
        allowed_extensions=extensions,
        allowed_sub_paths=sub_paths,
    )


def _canonical(path: Path) -> Path:
    return Path(os.path.realpath(path))


def _nearest_existing(path: Path) -> Path:
    candidate = path
    while not candidate.exists() and not candidate.is_symlink():
        parent = candidate.parent
        if parent == candidate:
            break
        candidate = parent
    return candidate


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def resolve_and_check(repo_root: Path | str, relative_path: str) -> Path:
    """Resolve ``relative_path`` under ``repo_root`` using canonical paths.

    Symlinks and ``..`` segments are resolved before the containment check.
    When the target does not exist yet, its nearest existing ancestor is
    resolved instead and the remaining segments are re-attached.
    """

    root = _canonical(Path(repo_root))
    cleaned = str(relative_path or "").strip()
    if not cleaned:
        raise PathTraversal("Empty path is not allowed.", path=relative_path)
    if "\0" in cleaned:
        raise PathTraversal("Path contains a null byte.", path=relative_path)
    candidate = root / cleaned.lstrip("/")

    try:
        if candidate.exists() or candidate.is_symlink():
            resolved = _canonical(candidate)
        else:
            anchor = _nearest_existing(candidate)
            anchor_resolved = _canonical(anchor)
            remainder = os.path.relpath(candidate, anchor)
            resolved = Path(os.path.normpath(anchor_resolved / remainder))
    except OSError as error:
        raise PathTraversal(
            f"Invalid path {relative_path!r}: {error.strerror or error}",
            path=relative_path,
        ) from error

    if resolved != root and not _is_within(resolved, root):
        raise PathTraversal(
            f"Path traversal attempt detected: {relative_path}",
            path=relative_path,
        )
    return resolved


def check_blocked(absolute_path: Path | str, policy: CompiledPolicy) -> None:
    """Raise :class:`BlockedPath` when ``absolute_path`` matches a blocked pattern."""

    candidate = Path(absolute_path).as_posix()
    match = policy.first_blocked_match(candidate)
    if match is not None:
        raise BlockedPath(
            f"Access to blocked path: {match.source}",
            path=candidate,
            pattern=match.source,
        )


def check_extension(relative_path: str, allowed_extensions: Sequence[str]) -> None:
    """Raise :class:`ExtensionNotAllowed` unless the extension is permitted."""

    if not allowed_extensions:
        return
    basename = PurePosixPath(relative_path).name
    if basename.startswith("."):
        extension = basename.lower()
    else:
        extension = PurePosixPath(basename).suffix.lower() or "."
    allowed = {entry.lower() for entry in allowed_extensions}
    if extension not in allowed:
        raise ExtensionNotAllowed(f"File extension not allowed: {extension}", path=relative_path)


def check_allowed_sub_paths(relative_path: str, allowed_sub_paths: Sequence[str]) -> None:
    """Raise :class:`PathNotAllowed` unless the path sits within an allowed entry."""

    if not allowed_sub_paths:
        return
    target = PurePosixPath(relative_path.lstrip("/"))
    parent = target.parent
    for raw in allowed_sub_paths:
        allowed = PurePosixPath(raw.strip("/"))
        if target == allowed or allowed in target.parents:
            return
        # Files in a directory that leads towards an allowed entry.
        if parent != PurePosixPath(".") and (parent == allowed or parent in allowed.parents):
            return
    raise PathNotAllowed(f"File path not in allowed paths: {relative_path}", path=relative_path)


@dataclass(slots=True)
class PathGuard:
    """Run every policy check for a repository before a file is touched."""

    repo_root: Path
    policy: CompiledPolicy
    _root: Path = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.repo_root = Path(self.repo_root)
        self._root = _canonical(self.repo_root)
        if not self._root.is_dir():
            raise PathTraversal(f"Repository path does not exist: {self.repo_root}")

    @property
    def root(self) -> Path:
        return self._root

    def validate(self, relative_path: str) -> Path:
        """Return the canonical target for ``relative_path`` or raise."""

        resolved = resolve_and_check(self._root, relative_path)
        check_blocked(resolved, self.policy)
        check_extension(relative_path, self.policy.allowed_extensions)
        check_allowed_sub_paths(relative_path, self.policy.allowed_sub_paths)
        return resolved


__all__ = [
    "BlockedPath",
    "BlockedPattern",
    "CompiledPolicy",
    "DEFAULT_MAX_FILE_SIZE_BYTES",
    "ExtensionNotAllowed",
    "PathGuard",
    "PathNotAllowed",
    "PathPolicyError",
    "PathTraversal",
    "RepoPolicy",
    "check_allowed_sub_paths",
    "check_blocked",
    "check_extension",
    "compile_policy",
    "resolve_and_check",
]
