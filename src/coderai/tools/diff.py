"""Unified diff parsing and a line-oriented hunk patcher.

The helpers below split model-generated unified diffs into per-file changes
and apply a single file's hunks to an in-memory buffer. Nothing in this module
touches the filesystem.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Literal, Sequence

DEV_NULL = "/dev/null"

FileAction = Literal["create", "delete", "modify"]

_OLD_FILE_RE = re.compile(r"^---\s+(?:a/)?(.+)$")
_NEW_FILE_RE = re.compile(r"^\+\+\+\s+(?:b/)?(.+)$")
_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_CREATE_RE = re.compile(r"^---\s+/dev/null", re.MULTILINE)
_DELETE_RE = re.compile(r"^\+\+\+\s+/dev/null", re.MULTILINE)


class DiffError(RuntimeError):
    """Base error raised for diffs that cannot be interpreted."""


class MalformedDiff(DiffError):
    """Raised when a diff contains no recognisable file markers."""


class HunkMismatch(DiffError):
    """Raised when a hunk does not line up with the buffer it targets."""

    def __init__(self, message: str, *, hunk: int, line: int | None = None) -> None:
        super().__init__(message)
        self.hunk = hunk
        self.line = line


@dataclass(slots=True)
class FileChange:
    """Raw unified-diff text for a single file."""

    file: str
    diff: str
    old_path: str | None = None
    new_path: str | None = None

    @property
    def action(self) -> FileAction:
        return determine_action(self.diff)

    @property
    def line_count(self) -> int:
        return self.diff.count("\n") + 1

    def to_dict(self) -> dict[str, str]:
        return {"file": self.file, "diff": self.diff, "action": self.action}


@dataclass(slots=True)
class Hunk:
    """A contiguous block of changes anchored to original line numbers."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: List[str] = field(default_factory=list)


def _strip_marker_path(raw: str) -> str:
    # git appends a tab plus timestamp to headers produced by `diff -u`
    return raw.split("\t", 1)[0].strip()


def parse_diff(diff_text: str) -> List[FileChange]:
    """Split ``diff_text`` into ordered :class:`FileChange` entries.

    A file boundary is any ``---`` line. The file identity comes from the
    following ``+++`` line unless that side is ``/dev/null`` (a deletion), in
    which case the ``---`` side names it. Everything up to the next boundary,
    hunk headers included, belongs to the current file verbatim.
    """

    changes: List[FileChange] = []
    current_file: str | None = None
    old_path: str | None = None
    new_path: str | None = None
    buffer: list[str] = []
    seen_marker = False

    def _flush() -> None:
        if current_file is None or not buffer:
            return
        lines = list(buffer)
        # Only empty trailing lines go; a final " " is a blank context line.
        while lines and not lines[-1].rstrip("\r"):
            lines.pop()
        changes.append(
            FileChange(
                file=current_file,
                diff="\n".join(lines),
                old_path=old_path,
                new_path=new_path,
            )
        )

    for line in (diff_text or "").split("\n"):
        old_match = _OLD_FILE_RE.match(line)
        if old_match:
            _flush()
            seen_marker = True
            target = _strip_marker_path(old_match.group(1))
            old_path = None if target == DEV_NULL else target
            new_path = None
            current_file = old_path
            buffer = [line]
            continue

        new_match = _NEW_FILE_RE.match(line)
        if new_match and buffer and buffer[-1].startswith("---"):
            target = _strip_marker_path(new_match.group(1))
            new_path = None if target == DEV_NULL else target
            if new_path is not None:
                current_file = new_path
            buffer.append(line)
            continue

        if buffer:
            buffer.append(line)

    _flush()

    if not seen_marker or not changes:
        raise MalformedDiff("Diff does not contain any valid file markers.")
    return changes


def serialize_diff(changes: Iterable[FileChange]) -> str:
    """Render ``changes`` back into a single unified diff."""

    blocks = [change.diff.rstrip("\n") for change in changes if change.diff.strip()]
    if not blocks:
        return ""
    return "\n".join(blocks) + "\n"


def determine_action(diff_text: str) -> FileAction:
    """Classify a single-file diff as create, delete, or modify."""

    if _CREATE_RE.search(diff_text):
        return "create"
    if _DELETE_RE.search(diff_text):
        return "delete"
    return "modify"


def parse_hunks(diff_text: str) -> List[Hunk]:
    """Return the hunks contained in a single-file diff."""

    hunks: List[Hunk] = []
    current: Hunk | None = None
    for line in diff_text.split("\n"):
        match = _HUNK_HEADER_RE.match(line)
        if match:
            current = Hunk(
                old_start=int(match.group(1)),
                old_count=_default_count(match.group(2)),
                new_start=int(match.group(3)),
                new_count=_default_count(match.group(4)),
            )
            hunks.append(current)
            continue
        if current is None:
            continue
        if line.startswith(("---", "+++")) and not current.lines:
            continue
        if line.startswith(("+", "-", " ")) or line.startswith("\\"):
            current.lines.append(line)
        elif line == "":
            # Models frequently drop the leading space on blank context lines.
            current.lines.append(" ")
    for hunk in hunks:
        while hunk.lines and hunk.lines[-1] == " " and _body_overflows(hunk):
            hunk.lines.pop()
    return hunks


def _default_count(value: str | None) -> int:
    if value is None:
        return 1
    return int(value)


def _body_overflows(hunk: Hunk) -> bool:
    old_lines = sum(1 for line in hunk.lines if line.startswith((" ", "-")))
    return old_lines > hunk.old_count


def _same_line(original: str, expected: str) -> bool:
    return original.rstrip("\r \t") == expected.rstrip("\r \t")


def apply_hunks(original_text: str, diff_text: str, *, strict: bool = True) -> str:
    """Apply the hunks of a single-file diff to ``original_text``.

    Unchanged lines before each hunk are copied from the original, ``-`` lines
    consume one original line, ``+`` lines are emitted, and context lines emit
    the original buffer's copy of the line. Hunks must appear in increasing
    line order.

    With ``strict`` enabled, a context or removal line that does not match the
    original raises :class:`HunkMismatch` before anything is returned. With
    ``strict`` disabled the patcher trusts line numbers blindly.
    """

    lines = original_text.split("\n")
    result: list[str] = []
    cursor = 0

    for index, hunk in enumerate(parse_hunks(diff_text), start=1):
        start = max(hunk.old_start - 1, 0)
        if hunk.old_count == 0 and hunk.old_start > 0:
            # Pure insertions anchor after the referenced line.
            start = hunk.old_start
        if start < cursor:
            if strict:
                raise HunkMismatch(
                    f"Hunk #{index} starts at line {hunk.old_start}, before the end of the previous hunk.",
                    hunk=index,
                    line=hunk.old_start,
                )
            start = cursor
        if strict and start > len(lines):
            raise HunkMismatch(
                f"Hunk #{index} starts at line {hunk.old_start}, past the end of the file.",
                hunk=index,
                line=hunk.old_start,
            )

        while cursor < start and cursor < len(lines):
            result.append(lines[cursor])
            cursor += 1

        for diff_line in hunk.lines:
            if diff_line.startswith("\\"):
                continue
            marker, body = diff_line[:1], diff_line[1:]
            if marker == "+":
                result.append(body)
                continue
            if strict:
                if cursor >= len(lines) or not _same_line(lines[cursor], body):
                    found = lines[cursor] if cursor < len(lines) else "<end of file>"
                    raise HunkMismatch(
                        f"Hunk #{index} does not match line {cursor + 1}: expected {body!r}, found {found!r}.",
                        hunk=index,
                        line=cursor + 1,
                    )
            if marker == "-":
                cursor += 1
            else:
                result.append(lines[cursor] if cursor < len(lines) else body)
                cursor += 1

    while cursor < len(lines):
        result.append(lines[cursor])
        cursor += 1

    return "\n".join(result)


def extract_created_content(diff_text: str) -> str:
    """Return the file body described by a new-file diff."""

    content: list[str] = []
    for line in diff_text.split("\n"):
        if line.startswith(("---", "+++", "@@")):
            continue
        if line.startswith("+"):
            content.append(line[1:])
    return "\n".join(content)


def touched_paths(changes: Sequence[FileChange]) -> List[str]:
    """Return the unique file identities in ``changes`` preserving order."""

    seen: dict[str, None] = {}
    for change in changes:
        seen.setdefault(change.file, None)
    return list(seen)


__all__ = [
    "DEV_NULL",
    "DiffError",
    "FileAction",
    "FileChange",
    "Hunk",
    "HunkMismatch",
    "MalformedDiff",
    "apply_hunks",
    "determine_action",
    "extract_created_content",
    "parse_diff",
    "parse_hunks",
    "serialize_diff",
    "touched_paths",
]
