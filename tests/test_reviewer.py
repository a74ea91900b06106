from __future__ import annotations

import json

import pytest

from coderai.phases.plan import Plan
from coderai.phases.review import (
    GATE_FAILURE_SUMMARY,
    QUICK_SCAN_MODEL,
    Reviewer,
    ReviewUnparseable,
    check_blocked_paths,
    parse_verdict,
    quick_security_scan,
)
from coderai.rules import RulesService

from conftest import FakeChatClient

PLAN = Plan(summary="Swap operands", files_to_modify=[{"path": "app.py"}], steps=["edit"])

CLEAN_DIFF = "--- a/app.py\n+++ b/app.py\n@@ -1,2 +1,2 @@\n def add(left, right):\n-    return left + right\n+    return right + left\n"

APPROVAL = {
    "approved": True,
    "risk_level": "low",
    "issues": [],
    "summary": "Operand swap is harmless.",
    "safe_to_apply": True,
}


def test_parse_verdict_accepts_well_formed_json() -> None:
    verdict = parse_verdict(json.dumps(APPROVAL))

    assert verdict.approved is True
    assert verdict.safe_to_apply is True
    assert verdict.risk_level == "low"


def test_parse_verdict_only_trusts_literal_true() -> None:
    payload = dict(APPROVAL, approved="true", safe_to_apply=1, risk_level="apocalyptic")

    verdict = parse_verdict(json.dumps(payload))

    assert verdict.approved is False
    assert verdict.safe_to_apply is False
    assert verdict.risk_level == "high"


def test_parse_verdict_drops_malformed_issues() -> None:
    payload = dict(APPROVAL, issues=["oops", {"severity": "warning", "line": "12", "message": "check"}])

    verdict = parse_verdict(json.dumps(payload))

    assert len(verdict.issues) == 1
    assert verdict.issues[0].line == 12


@pytest.mark.parametrize("content", ["", "absolutely fine", "[true]"])
def test_parse_verdict_rejects_garbage(content: str) -> None:
    with pytest.raises(ReviewUnparseable):
        parse_verdict(content)


@pytest.mark.parametrize("content", ["", "LGTM!", "{\"approved\": tru", "[1]"])
def test_unparseable_review_is_never_safe(rules: RulesService, content: str) -> None:
    client = FakeChatClient([content])

    result = Reviewer(client, rules).review(CLEAN_DIFF, PLAN)

    assert result.verdict.approved is False
    assert result.verdict.safe_to_apply is False
    assert result.verdict.risk_level == "high"
    assert result.verdict.summary == "Review could not be completed due to parsing error"


def test_quick_scan_flags_added_lines_only() -> None:
    diff = (
        "--- a/app.py\n+++ b/app.py\n@@ -1,3 +1,3 @@\n"
        "-result = eval(payload)\n"
        "+result = json.loads(payload)\n"
        "+subprocess.run(command, shell=True)\n"
        '+password = "hunter2"\n'
    )

    scan = quick_security_scan(diff)

    assert not scan.passed
    assert [(issue["line"], issue["message"]) for issue in scan.issues] == [
        (2, "Shell execution detected"),
        (3, "Hardcoded password detected"),
    ]
    assert {issue["file"] for issue in scan.issues} == {"app.py"}
    assert scan.to_dict()["scan_type"] == "quick"


def test_quick_scan_passes_clean_diff() -> None:
    assert quick_security_scan(CLEAN_DIFF).passed


def test_check_blocked_paths_reports_each_pair_once(rules: RulesService) -> None:
    diff = "--- /dev/null\n+++ b/.env\n@@ -0,0 +1 @@\n+A=1\n--- a/.env\n+++ b/.env\n@@ -1 +1 @@\n-A=1\n+A=2\n" + CLEAN_DIFF

    check = check_blocked_paths(diff, rules.compiled_policy("coder"))

    assert not check.passed
    assert check.violations == [{"file": ".env", "blocked_pattern": ".env"}]


def test_check_blocked_paths_accepts_plain_lists() -> None:
    check = check_blocked_paths("--- a/keys/server.pem\n+++ b/keys/server.pem\n", ["*.pem"])

    assert check.violations == [{"file": "keys/server.pem", "blocked_pattern": "*.pem"}]


def test_gate_blocks_blocked_paths_without_calling_model(rules: RulesService) -> None:
    client = FakeChatClient()
    diff = "--- /dev/null\n+++ b/config/database.php\n@@ -0,0 +1 @@\n+<?php return [];\n"

    result = Reviewer(client, rules).gate(diff, PLAN)

    assert client.payloads == []
    assert result.model == QUICK_SCAN_MODEL
    assert result.usage.total_tokens == 0
    assert result.verdict.safe_to_apply is False
    assert result.verdict.risk_level == "critical"
    assert result.verdict.summary == GATE_FAILURE_SUMMARY
    assert result.verdict.issues[-1].message == "Blocked path violation: config/database.php"
    assert result.path_check is not None and not result.path_check.passed


def test_gate_blocks_dangerous_code(rules: RulesService) -> None:
    client = FakeChatClient()
    diff = "--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-x = 1\n+x = eval(user_input)\n"

    result = Reviewer(client, rules).gate(diff, PLAN)

    assert client.payloads == []
    assert result.verdict.issues[0].message == "Dangerous eval() usage detected"
    assert result.verdict.issues[0].line == 1


def test_gate_can_defer_scan_findings_to_model(rules: RulesService) -> None:
    client = FakeChatClient([json.dumps(APPROVAL)])
    diff = "--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-x = 1\n+x = eval(user_input)\n"

    result = Reviewer(client, rules, scan_blocks=False).gate(diff, PLAN)

    assert len(client.payloads) == 1
    assert result.quick_scan is not None and not result.quick_scan.passed
    assert result.verdict.safe_to_apply is True


def test_gate_runs_model_review_for_clean_diff(rules: RulesService) -> None:
    client = FakeChatClient(["```json\n" + json.dumps(APPROVAL) + "\n```"])

    result = Reviewer(client, rules).gate(CLEAN_DIFF, PLAN)

    (payload,) = client.payloads
    assert payload["model"] == "qwen2.5-coder:7b"
    assert payload["temperature"] == 0.1
    contents = [message["content"] for message in payload["messages"]]
    assert "CURRENT PHASE: REVIEW" in contents[0]
    assert "3. Blocked paths: .env, .git/" in contents[0]
    assert contents[1].startswith("PLAN:\n")
    assert contents[2] == "DIFF:\n" + CLEAN_DIFF
    assert contents[3] == "Review now. Output JSON only."
    assert result.verdict.approved is True
    assert result.quick_scan is not None and result.quick_scan.passed
    assert result.path_check is not None and result.path_check.passed
