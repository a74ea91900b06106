"""Planning phase: turn a change request into a structured execution plan."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..memory.schema import RepoMeta
from ..models.llm_client import ChatClient, ChatMessage, ChatResponseFormatError, TokenUsage, parse_json_payload
from ..prompts import render_file_block, render_planning_prompt
from ..rules import RulesService
from ..tools.paths import PathTraversal, resolve_and_check
from . import PhaseName
from .base import PhaseLogSettings, invoke_phase

LOGGER = logging.getLogger(__name__)

SNAPSHOT_IGNORE_DIRS = frozenset({".git", "node_modules", "vendor", ".idea", "__pycache__", "cache", "logs", ".venv"})
SNAPSHOT_IGNORE_FILES = frozenset({".DS_Store", "Thumbs.db", ".gitkeep"})
UNREADABLE_SNAPSHOT = "(Unable to read repository)"
CONTEXT_FILE_MAX_BYTES = 102_400
REQUIRED_PLAN_FIELDS = ("summary", "files_to_modify", "steps")


class PlanParseError(RuntimeError):
    """Raised when the planner response is not valid JSON."""


class PlanSchemaError(RuntimeError):
    """Raised when the planner JSON lacks required fields or has the wrong shape."""


class FileToModify(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    path: str = Field(min_length=1)
    action: Literal["modify", "create", "delete"] = "modify"
    description: str = ""

    @field_validator("action", mode="before")
    @classmethod
    def _normalise_action(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class Plan(BaseModel):
    """Immutable execution plan produced once per run."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    summary: str
    files_to_modify: List[FileToModify]
    steps: List[str]
    files_to_read: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    estimated_complexity: Literal["low", "medium", "high"] = "medium"
    requires_backup: bool = True

    @field_validator("estimated_complexity", mode="before")
    @classmethod
    def _normalise_complexity(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("low", "medium", "high"):
            return value.strip().lower()
        return "medium"

    @field_validator("steps", "files_to_read", "risks", mode="before")
    @classmethod
    def _stringify_items(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [item if isinstance(item, str) else json.dumps(item) for item in value]
        return value

    def unknown_paths(self, repo_root: Path | str) -> List[str]:
        """Return planned paths that neither exist nor are marked ``create``."""
        missing: List[str] = []
        for entry in self.files_to_modify:
            if entry.action == "create":
                continue
            try:
                resolved = resolve_and_check(repo_root, entry.path)
            except PathTraversal:
                missing.append(entry.path)
                continue
            if not resolved.exists():
                missing.append(entry.path)
        return missing


@dataclass(slots=True)
class PlanResult:
    plan: Plan
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw_response: str = ""


def parse_plan(content: str) -> Plan:
    """Decode and validate the planner's JSON output."""
    try:
        payload = parse_json_payload(content)
    except ChatResponseFormatError as error:
        raise PlanParseError(f"Failed to parse plan: {error}") from error
    if not isinstance(payload, dict):
        raise PlanSchemaError("Plan must be a JSON object.")
    for name in REQUIRED_PLAN_FIELDS:
        if name not in payload or payload[name] is None:
            raise PlanSchemaError(f"Plan missing required field: {name}")
    try:
        return Plan.model_validate(payload)
    except ValidationError as error:
        raise PlanSchemaError(f"Plan has an invalid structure: {error}") from error


def build_repo_snapshot(base_path: Path | str, max_depth: int = 2) -> str:
    """Render a sorted directory tree, directories first, down to ``max_depth``."""
    root = Path(os.path.realpath(base_path))
    if not root.is_dir():
        return UNREADABLE_SNAPSHOT
    lines: List[str] = []
    _walk_tree(root, lines, 0, max_depth)
    return "\n".join(lines)


def _walk_tree(current: Path, lines: List[str], depth: int, max_depth: int) -> None:
    if depth > max_depth:
        return
    try:
        entries = list(os.scandir(current))
    except OSError:
        return

    dirs: List[str] = []
    files: List[str] = []
    for entry in entries:
        try:
            is_dir = entry.is_dir()
        except OSError:
            continue
        if is_dir:
            if entry.name not in SNAPSHOT_IGNORE_DIRS:
                dirs.append(entry.name)
        elif entry.name not in SNAPSHOT_IGNORE_FILES:
            files.append(entry.name)

    indent = "  " * depth
    for name in sorted(dirs):
        lines.append(f"{indent}📁 {name}/")
        _walk_tree(current / name, lines, depth + 1, max_depth)
    for name in sorted(files):
        lines.append(f"{indent}📄 {name}")


def read_files_for_context(
    repo: RepoMeta,
    paths: Sequence[str],
    max_bytes: int = CONTEXT_FILE_MAX_BYTES,
) -> Dict[str, str]:
    """Read ``paths`` under the repository root for prompt context.

    Missing files, paths escaping the root, and oversized files are logged
    and skipped; the rest of the batch is still returned.
    """
    files: Dict[str, str] = {}
    root = Path(repo.base_path)
    if not root.is_dir():
        LOGGER.warning("Invalid repository base path: %s", repo.base_path)
        return files

    for path in paths:
        try:
            resolved = resolve_and_check(root, path)
        except PathTraversal:
            LOGGER.warning("Path traversal blocked while reading context: %s", path)
            continue
        if not resolved.exists():
            LOGGER.info("Context path does not exist: %s", path)
            continue
        if not resolved.is_file() or not os.access(resolved, os.R_OK):
            continue
        size = resolved.stat().st_size
        if size > max_bytes:
            LOGGER.info("Context file too large: %s (%d bytes)", path, size)
            continue
        try:
            files[path] = resolved.read_text(encoding="utf-8", errors="replace")
        except OSError as error:
            LOGGER.warning("Unable to read context file %s: %s", path, error)
    return files


class Planner:
    """Prompt the model for a plan grounded on the repository tree."""

    def __init__(
        self,
        client: ChatClient,
        rules: RulesService,
        *,
        workspace: str = "coder",
        log_settings: Optional[PhaseLogSettings] = None,
        snapshot_depth: int = 2,
    ) -> None:
        self.client = client
        self.rules = rules
        self.workspace = workspace
        self.log_settings = log_settings
        self.snapshot_depth = snapshot_depth

    def build_messages(
        self,
        request: str,
        repo: RepoMeta,
        file_context: Optional[Mapping[str, str]] = None,
    ) -> List[ChatMessage]:
        snapshot = build_repo_snapshot(repo.base_path, self.snapshot_depth)
        system_prompt = (
            self.rules.build_system_prompt(self.workspace)
            + "\n\n"
            + render_planning_prompt(repo.label, repo.base_path, snapshot)
        )
        messages = [
            ChatMessage(role="system", content=system_prompt),
            ChatMessage(role="user", content=request),
        ]
        if file_context:
            messages.append(
                ChatMessage(
                    role="user",
                    content=render_file_block(file_context, heading="EXISTING FILE CONTENTS:", marker="---"),
                )
            )
        return messages

    def plan(
        self,
        request: str,
        repo: RepoMeta,
        file_context: Optional[Mapping[str, str]] = None,
        *,
        run_id: Optional[int] = None,
    ) -> PlanResult:
        """Ask the model for a plan. No retry; the caller decides whether to re-prompt."""
        settings = self.rules.phase_settings(self.workspace, PhaseName.PLAN.value)
        response = invoke_phase(
            PhaseName.PLAN.value,
            self.build_messages(request, repo, file_context),
            client=self.client,
            model=settings["model"],
            temperature=settings["temperature"] if settings["temperature"] is not None else 0.3,
            max_tokens=settings["max_tokens"] or 8192,
            log_settings=self.log_settings,
            run_id=run_id,
        )
        plan = parse_plan(response.content)
        unknown = plan.unknown_paths(repo.base_path)
        if unknown:
            LOGGER.warning("Plan references paths missing from the repository: %s", ", ".join(unknown))
        return PlanResult(plan=plan, model=response.model, usage=response.usage, raw_response=response.content)


__all__ = [
    "FileToModify",
    "Plan",
    "PlanParseError",
    "PlanResult",
    "PlanSchemaError",
    "Planner",
    "build_repo_snapshot",
    "parse_plan",
    "read_files_for_context",
]
