"""Review phase: approve or reject a diff before anything touches disk.

Two deterministic checks run ahead of the model: a regex scan of added lines
and a blocked-path check over the diff headers. A model response that cannot
be decoded is always turned into a rejection.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..memory.schema import RepoMeta
from ..models.llm_client import ChatClient, ChatMessage, ChatResponseFormatError, TokenUsage, parse_json_payload
from ..prompts import render_review_prompt
from ..rules import RulesService
from ..tools.diff import DEV_NULL
from ..tools.paths import CompiledPolicy, compile_policy
from . import PhaseName
from .base import PhaseLogSettings, invoke_phase
from .plan import Plan

LOGGER = logging.getLogger(__name__)

QUICK_SCAN_MODEL = "quick_scan"
GATE_FAILURE_SUMMARY = "Automatic security scan failed. Changes not safe to apply."

RiskLevel = Literal["low", "medium", "high", "critical"]

_HEADER_RE = re.compile(r"^(?:---|\+\+\+)\s+(?:[ab]/)?(.+)$")
_NEW_FILE_RE = re.compile(r"^\+\+\+\s+(?:b/)?(.+)$")

DANGEROUS_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern), message)
    for pattern, message in (
        (r"\beval\s*\(", "Dangerous eval() usage detected"),
        (r"\bexec\s*\(", "Shell execution detected"),
        (r"\bsystem\s*\(", "System command execution detected"),
        (r"\bpassthru\s*\(", "Passthru command detected"),
        (r"\bshell_exec\s*\(", "Shell execution detected"),
        (r"\bproc_open\s*\(", "Process execution detected"),
        (r"\bpopen\s*\(", "Process execution detected"),
        (r"\bshell\s*=\s*True\b", "Shell execution detected"),
        (r"\$_(GET|POST|REQUEST|COOKIE)\s*\[.*\]\s*\)", "Unsanitized user input in function call"),
        (r"password\s*=\s*[\"'][^\"']+[\"']", "Hardcoded password detected"),
        (r"api[_-]?key\s*=\s*[\"'][^\"']+[\"']", "Hardcoded API key detected"),
        (r"\bmd5\s*\(", "Weak MD5 hashing (use password_hash instead)"),
        (r"\bsha1\s*\(", "Weak SHA1 hashing (use password_hash instead)"),
        (r"\bmysql_query\s*\(", "Deprecated mysql_* functions"),
        (r"\.\s*\$_(GET|POST|REQUEST)", "Direct string concatenation with user input"),
        (r"file_get_contents\s*\(\s*\$", "Potential SSRF vulnerability"),
        (r"include\s*\(\s*\$", "Potential LFI vulnerability"),
        (r"require\s*\(\s*\$", "Potential LFI vulnerability"),
    )
)


class ReviewUnparseable(RuntimeError):
    """Raised when the reviewer's response cannot be decoded into a verdict."""


class ReviewIssue(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    severity: str = "info"
    file: Optional[str] = None
    line: Optional[int] = None
    message: str = ""
    suggestion: str = ""

    @field_validator("line", mode="before")
    @classmethod
    def _coerce_line(cls, value: Any) -> Any:
        if isinstance(value, str):
            return int(value) if value.strip().isdigit() else None
        return value


class ReviewVerdict(BaseModel):
    """Reviewer judgment. ``approved`` and ``safe_to_apply`` are independent."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    approved: bool = False
    risk_level: RiskLevel = "high"
    issues: List[ReviewIssue] = Field(default_factory=list)
    summary: str = ""
    safe_to_apply: bool = False

    @field_validator("risk_level", mode="before")
    @classmethod
    def _normalise_risk(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("low", "medium", "high", "critical"):
            return value.strip().lower()
        return "high"

    @field_validator("approved", "safe_to_apply", mode="before")
    @classmethod
    def _strict_flag(cls, value: Any) -> bool:
        # Only a literal JSON true counts.
        return value is True


def safe_default_verdict(reason: str) -> ReviewVerdict:
    """Rejection used whenever the model's verdict cannot be trusted."""
    return ReviewVerdict(
        approved=False,
        risk_level="high",
        issues=[ReviewIssue(severity="error", message=f"Failed to parse review response: {reason}")],
        summary="Review could not be completed due to parsing error",
        safe_to_apply=False,
    )


def parse_verdict(content: str) -> ReviewVerdict:
    try:
        payload = parse_json_payload(content)
    except ChatResponseFormatError as error:
        raise ReviewUnparseable(str(error)) from error
    if not isinstance(payload, dict):
        raise ReviewUnparseable("Review response must be a JSON object.")
    issues = payload.get("issues")
    if not isinstance(issues, list):
        payload["issues"] = []
    else:
        payload["issues"] = [issue for issue in issues if isinstance(issue, dict)]
    try:
        return ReviewVerdict.model_validate(payload)
    except ValidationError as error:
        raise ReviewUnparseable(f"Review response has an invalid structure: {error}") from error


@dataclass(slots=True)
class ScanResult:
    passed: bool
    issues: List[Dict[str, Any]] = field(default_factory=list)
    scan_type: str = "quick"

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "issues": list(self.issues), "scan_type": self.scan_type}


@dataclass(slots=True)
class PathCheckResult:
    passed: bool
    violations: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "violations": list(self.violations)}


def quick_security_scan(diff: str) -> ScanResult:
    """Regex-scan added lines for dangerous constructs.

    ``line`` counts added lines within the current file, not file line numbers.
    """
    issues: List[Dict[str, Any]] = []
    current_file: Optional[str] = None
    line_number = 0
    for line in (diff or "").split("\n"):
        header = _NEW_FILE_RE.match(line)
        if header:
            current_file = header.group(1).strip()
            line_number = 0
            continue
        if not line.startswith("+"):
            continue
        line_number += 1
        code = line[1:]
        for pattern, message in DANGEROUS_PATTERNS:
            if pattern.search(code):
                issues.append(
                    {
                        "severity": "warning",
                        "file": current_file,
                        "line": line_number,
                        "message": message,
                        "code": code.strip(),
                    }
                )
    return ScanResult(passed=not issues, issues=issues)


def check_blocked_paths(
    diff: str,
    blocked_paths: Sequence[str] | CompiledPolicy,
    *,
    home: Optional[str] = None,
) -> PathCheckResult:
    """Match both header sides of every file in ``diff`` against the blocked list."""
    if isinstance(blocked_paths, CompiledPolicy):
        policy = blocked_paths
    else:
        policy = compile_policy({"blocked_paths": list(blocked_paths)}, home=home)

    violations: List[Dict[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for line in (diff or "").split("\n"):
        match = _HEADER_RE.match(line)
        if not match:
            continue
        file_path = match.group(1).split("\t", 1)[0].strip()
        if file_path == DEV_NULL:
            continue
        for pattern in policy.blocked:
            if not pattern.matches(file_path):
                continue
            key = (file_path, pattern.source)
            if key in seen:
                continue
            seen.add(key)
            violations.append({"file": file_path, "blocked_pattern": pattern.source})
    return PathCheckResult(passed=not violations, violations=violations)


@dataclass(slots=True)
class ReviewResult:
    verdict: ReviewVerdict
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    quick_scan: Optional[ScanResult] = None
    path_check: Optional[PathCheckResult] = None


class Reviewer:
    def __init__(
        self,
        client: ChatClient,
        rules: RulesService,
        *,
        workspace: str = "coder",
        log_settings: Optional[PhaseLogSettings] = None,
        scan_blocks: bool = True,
    ) -> None:
        self.client = client
        self.rules = rules
        self.workspace = workspace
        self.log_settings = log_settings
        self.scan_blocks = scan_blocks

    def build_messages(self, diff: str, plan: Plan) -> List[ChatMessage]:
        system_prompt = (
            self.rules.build_system_prompt(self.workspace)
            + "\n\n"
            + render_review_prompt(self.rules.blocked_paths(self.workspace))
        )
        plan_json = json.dumps(plan.model_dump(mode="json"), indent=4)
        return [
            ChatMessage(role="system", content=system_prompt),
            ChatMessage(role="user", content=f"PLAN:\n{plan_json}"),
            ChatMessage(role="user", content=f"DIFF:\n{diff}"),
            ChatMessage(role="user", content="Review now. Output JSON only."),
        ]

    def review(
        self,
        diff: str,
        plan: Plan,
        repo: Optional[RepoMeta] = None,
        *,
        run_id: Optional[int] = None,
    ) -> ReviewResult:
        """Ask the model for a verdict; undecodable answers become rejections."""
        settings = self.rules.phase_settings(self.workspace, PhaseName.REVIEW.value)
        response = invoke_phase(
            PhaseName.REVIEW.value,
            self.build_messages(diff, plan),
            client=self.client,
            model=settings["model"],
            temperature=0.1,
            max_tokens=settings["max_tokens"] or 8192,
            log_settings=self.log_settings,
            run_id=run_id,
        )
        try:
            verdict = parse_verdict(response.content)
        except ReviewUnparseable as error:
            LOGGER.warning("Review response could not be parsed: %s", error)
            verdict = safe_default_verdict(str(error))
        return ReviewResult(verdict=verdict, model=response.model, usage=response.usage)

    def gate(
        self,
        diff: str,
        plan: Plan,
        repo: Optional[RepoMeta] = None,
        *,
        run_id: Optional[int] = None,
    ) -> ReviewResult:
        """Run the deterministic checks, then the model review when they pass."""
        allowed = tuple(repo.allowed_paths) if repo is not None else ()
        scan = quick_security_scan(diff)
        path_check = check_blocked_paths(diff, self.rules.compiled_policy(self.workspace, allowed))

        if not path_check.passed or (self.scan_blocks and not scan.passed):
            issues = [ReviewIssue.model_validate(issue) for issue in scan.issues]
            issues.extend(
                ReviewIssue(
                    severity="critical",
                    file=violation["file"],
                    message=f"Blocked path violation: {violation['blocked_pattern']}",
                )
                for violation in path_check.violations
            )
            verdict = ReviewVerdict(
                approved=False,
                risk_level="critical",
                issues=issues,
                summary=GATE_FAILURE_SUMMARY,
                safe_to_apply=False,
            )
            return ReviewResult(verdict=verdict, model=QUICK_SCAN_MODEL, quick_scan=scan, path_check=path_check)

        result = self.review(diff, plan, repo, run_id=run_id)
        result.quick_scan = scan
        result.path_check = path_check
        return result


__all__ = [
    "PathCheckResult",
    "ReviewIssue",
    "ReviewResult",
    "ReviewUnparseable",
    "ReviewVerdict",
    "Reviewer",
    "ScanResult",
    "check_blocked_paths",
    "parse_verdict",
    "quick_security_scan",
    "safe_default_verdict",
]
