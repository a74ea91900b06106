"""Prompt templates shared across the pipeline phases."""

from __future__ import annotations

from typing import Mapping, Sequence

JSON_RESPONSE_INSTRUCTION = "OUTPUT FORMAT (JSON only, no markdown):"

PLAN_OUTPUT_SCHEMA = """{
    "summary": "Brief description of what needs to be done",
    "files_to_modify": [
        {
            "path": "relative/path/to/file.php",
            "action": "modify|create|delete",
            "description": "What changes to make"
        }
    ],
    "files_to_read": ["paths to read for context before coding"],
    "risks": ["potential risks or concerns"],
    "estimated_complexity": "low|medium|high",
    "requires_backup": true,
    "steps": [
        "Step 1: ...",
        "Step 2: ..."
    ]
}"""

REVIEW_OUTPUT_SCHEMA = """{
    "approved": true|false,
    "risk_level": "low|medium|high|critical",
    "issues": [
        {
            "severity": "info|warning|error|critical",
            "file": "path/to/file",
            "line": 123,
            "message": "Issue description",
            "suggestion": "How to fix"
        }
    ],
    "summary": "One sentence assessment",
    "safe_to_apply": true|false
}"""

DIFF_FORMAT_RULES = """DIFF FORMAT RULES:
--- a/path/to/file
+++ b/path/to/file
@@ -start,count +start,count @@
 context line
-removed line
+added line

For new files:
--- /dev/null
+++ b/path/to/new/file
@@ -0,0 +1,N @@
+new content

For deleted files:
--- a/path/to/file
+++ /dev/null"""


def render_phase_header(phase: str, brief: str) -> str:
    return f"CURRENT PHASE: {phase.upper()}\n\n{brief}"


def render_rules(rules: Sequence[str], *, heading: str = "RULES") -> str:
    body = "\n".join(f"- {line.strip()}" for line in rules if line.strip())
    if not body:
        return ""
    return f"{heading}:\n{body}"


def render_planning_prompt(repo_label: str, base_path: str, snapshot: str) -> str:
    """Phase instructions for the planner, grounded on the repository tree."""
    sections = [
        render_phase_header(
            "planning",
            "You are analyzing a code change request. Your job is to create a precise execution plan.",
        ),
        f"REPOSITORY INFO:\n- Base path: {base_path}\n- Label: {repo_label}",
        f"REPOSITORY STRUCTURE:\n{snapshot}",
        f"{JSON_RESPONSE_INSTRUCTION}\n{PLAN_OUTPUT_SCHEMA}",
        render_rules(
            [
                "Only reference files that exist in the repository structure above",
                'If you need files that don\'t exist, mark action as "create"',
                "If you cannot find required files, say so in risks",
                "Never invent database tables or columns - ask for schema if needed",
                "Keep changes minimal and surgical",
            ]
        ),
    ]
    return "\n\n".join(sections)


def render_coding_prompt() -> str:
    sections = [
        render_phase_header(
            "coding",
            "You are generating code changes based on an approved plan. Output ONLY unified diff format.",
        ),
        DIFF_FORMAT_RULES,
        render_rules(
            [
                "Output diff ONLY, no explanations before or after",
                "Follow existing code style exactly",
                "Include 3 lines of context around changes",
                "Never add commentary outside the diff",
                "One diff block per file",
            ],
            heading="STRICT RULES",
        ),
    ]
    return "\n\n".join(sections)


def render_review_prompt(blocked_paths: Sequence[str]) -> str:
    """Phase instructions for the reviewer with the blocked-path list inlined."""
    checks = "\n".join(
        [
            "CHECK FOR:",
            "1. Security: SQL injection, XSS, command injection, path traversal, hardcoded secrets",
            "2. Logic: errors, missing error handling, resource leaks",
            f"3. Blocked paths: {', '.join(blocked_paths) or '(none)'}",
            "4. Code quality: follows existing patterns, proper validation",
        ]
    )
    sections = [
        render_phase_header(
            "review",
            "You are reviewing code changes for safety and correctness. Output JSON ONLY.",
        ),
        checks,
        f"{JSON_RESPONSE_INSTRUCTION}\n{REVIEW_OUTPUT_SCHEMA}",
        render_rules(
            [
                "approved=false if ANY critical or security issues",
                "safe_to_apply=false if blocked paths touched or critical issues",
                "Be concise, no verbose explanations",
            ]
        ),
    ]
    return "\n\n".join(sections)


def render_file_block(contents: Mapping[str, str], *, heading: str, marker: str) -> str:
    """Render ``{path: content}`` as one labelled block per file."""
    parts = [heading]
    for path, content in contents.items():
        parts.append(f"\n{marker} {path} {marker}\n{content}")
    return "\n".join(parts)


__all__ = [
    "render_coding_prompt",
    "render_file_block",
    "render_planning_prompt",
    "render_review_prompt",
]
