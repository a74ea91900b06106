from __future__ import annotations

import logging
from pathlib import Path

import pytest

from coderai.rules import DEFAULT_RULES, RulesService


def test_defaults_without_rules_dir() -> None:
    service = RulesService()

    rules = service.workspace_rules("coder")

    assert rules["_workspace"] == "coder"
    assert ".env" in rules["restrictions"]["blocked_paths"]
    assert service.blocked_paths("coder")[:2] == [".env", ".git/"]


def test_invalid_workspace_falls_back_to_normal(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="coderai.rules")

    rules = RulesService().workspace_rules("hacker")

    assert rules["_workspace"] == "normal"
    assert "Invalid workspace 'hacker'" in caplog.text


def test_yaml_override_is_deep_merged(tmp_path: Path) -> None:
    (tmp_path / "coder.yaml").write_text(
        "restrictions:\n"
        "  allowed_extensions: ['.py']\n"
        "phases:\n"
        "  review:\n"
        "    model: qwen2.5-coder:14b\n",
        encoding="utf-8",
    )
    service = RulesService(tmp_path)

    rules = service.workspace_rules("coder")

    assert rules["restrictions"]["allowed_extensions"] == [".py"]
    assert rules["restrictions"]["blocked_paths"] == DEFAULT_RULES["coder"]["restrictions"]["blocked_paths"]
    assert service.phase_settings("coder", "review") == {
        "model": "qwen2.5-coder:14b",
        "temperature": 0.1,
        "max_tokens": 8192,
    }
    assert DEFAULT_RULES["coder"]["phases"]["review"]["model"] == "qwen2.5-coder:7b"


def test_yml_suffix_is_accepted(tmp_path: Path) -> None:
    (tmp_path / "normal.yml").write_text("system_prompt: Be brief.\n", encoding="utf-8")

    assert RulesService(tmp_path).workspace_rules("normal")["system_prompt"] == "Be brief."


@pytest.mark.parametrize("content", ["restrictions: [unclosed\n", "- just\n- a list\n"])
def test_broken_rules_file_uses_defaults(tmp_path: Path, content: str, caplog: pytest.LogCaptureFixture) -> None:
    (tmp_path / "coder.yaml").write_text(content, encoding="utf-8")
    caplog.set_level(logging.ERROR, logger="coderai.rules")

    rules = RulesService(tmp_path).workspace_rules("coder")

    assert rules["system_prompt"] == DEFAULT_RULES["coder"]["system_prompt"]
    assert caplog.records


def test_rules_are_cached_until_cleared(tmp_path: Path) -> None:
    path = tmp_path / "normal.yaml"
    path.write_text("system_prompt: first\n", encoding="utf-8")
    service = RulesService(tmp_path)
    assert service.workspace_rules("normal")["system_prompt"] == "first"

    path.write_text("system_prompt: second\n", encoding="utf-8")
    assert service.workspace_rules("normal")["system_prompt"] == "first"

    service.clear_cache()
    assert service.workspace_rules("normal")["system_prompt"] == "second"


def test_phase_settings_fall_back_to_preferences() -> None:
    service = RulesService()

    assert service.phase_settings("coder", "plan")["temperature"] == 0.3
    assert service.phase_settings("normal", "plan") == {
        "model": "qwen2.5-coder:7b",
        "temperature": 0.7,
        "max_tokens": 4096,
    }
    assert service.model_for_phase("coder", "code") == "qwen2.5-coder:14b"


def test_build_system_prompt_for_coder() -> None:
    prompt = RulesService().build_system_prompt("coder", {"instructions": "Use tabs."})

    assert prompt.startswith("You are a senior software engineer")
    assert "BEHAVIOR: Tone: direct. Verbosity: minimal." in prompt
    assert "BLOCKED PATHS: .env, .git/" in prompt
    assert "PROJECT INSTRUCTIONS: Use tabs." in prompt
    assert prompt.endswith("Never modify credentials.")


def test_build_system_prompt_lists_disabled_capabilities() -> None:
    prompt = RulesService().build_system_prompt("church")

    assert "DISABLED: code execution." in prompt
    assert "ALLOWED BIBLE VERSIONS: AFR53, AFR83 only." in prompt


def test_compiled_policy_is_cached_per_sub_paths() -> None:
    service = RulesService(home="/home/tester")

    first = service.compiled_policy("coder")
    assert service.compiled_policy("coder") is first

    scoped = service.compiled_policy("coder", ["src/"])
    assert scoped is not first
    assert scoped.allowed_sub_paths == ("src",)
    assert first.first_blocked_match("/home/tester/.ssh/config").source == "~/.ssh"


def test_from_config_resolves_relative_rules_dir(tmp_path: Path) -> None:
    service = RulesService.from_config({"rules": {"path": "rules"}}, base_dir=tmp_path)

    assert service.rules_dir == tmp_path / "rules"
    assert RulesService.from_config({}).rules_dir is None
