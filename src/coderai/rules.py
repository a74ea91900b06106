"""Workspace rules: system prompts, model selection, and repository policy.

Rules are layered. Built-in defaults for each workspace are overridden by a
``<workspace>.yaml`` file from the configured rules directory, which in turn
can be overridden per project. The merged mapping drives prompt assembly for
every phase and the :class:`~coderai.tools.paths.RepoPolicy` applied to file
mutations.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence

import yaml

from .tools.paths import CompiledPolicy, DEFAULT_MAX_FILE_SIZE_BYTES, RepoPolicy, compile_policy

LOGGER = logging.getLogger(__name__)

VALID_WORKSPACES = ("normal", "church", "coder")
DEFAULT_WORKSPACE = "normal"

_BASE_PREFERENCES: Dict[str, Any] = {
    "default": "qwen2.5-coder:7b",
    "temperature": 0.7,
    "max_tokens": 4096,
    "context_budget_tokens": 24000,
    "output_reserve_tokens": 4000,
}

DEFAULT_RULES: Dict[str, Dict[str, Any]] = {
    "normal": {
        "name": "General assistant",
        "system_prompt": "You are a helpful AI assistant.",
        "behavior": {"tone": "friendly", "verbosity": "balanced"},
        "capabilities": {},
        "restrictions": {},
        "model_preferences": dict(_BASE_PREFERENCES),
    },
    "church": {
        "name": "Church assistant",
        "system_prompt": "You are a careful assistant for church study groups. Ground every answer in Scripture.",
        "behavior": {"tone": "warm", "verbosity": "concise"},
        "capabilities": {"code_execution": False},
        "restrictions": {
            "require_scripture_for_claims": True,
            "allowed_sources": ["AFR53", "AFR83"],
        },
        "model_preferences": dict(_BASE_PREFERENCES),
    },
    "coder": {
        "name": "Coding assistant",
        "system_prompt": (
            "You are a senior software engineer working inside an existing repository. "
            "Make minimal, surgical changes that follow the code style already present."
        ),
        "behavior": {"tone": "direct", "verbosity": "minimal"},
        "capabilities": {},
        "restrictions": {
            "blocked_paths": [".env", ".git/", "~/.ssh", "*.pem", "*.key", "id_rsa", "config/database.php"],
            "allowed_extensions": [],
            "max_file_size_bytes": DEFAULT_MAX_FILE_SIZE_BYTES,
        },
        "model_preferences": {
            **_BASE_PREFERENCES,
            "default": "qwen2.5-coder:14b",
            "temperature": 0.2,
            "max_tokens": 8192,
        },
        "phases": {
            "plan": {"model": "qwen2.5-coder:14b", "temperature": 0.3},
            "code": {"model": "qwen2.5-coder:14b", "temperature": 0.2},
            "review": {"model": "qwen2.5-coder:7b", "temperature": 0.1},
        },
    },
}


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class RulesService:
    """Load and merge workspace rules from YAML files."""

    def __init__(self, rules_dir: Path | str | None = None, *, home: str | None = None) -> None:
        self.rules_dir = Path(rules_dir) if rules_dir is not None else None
        self._home = home
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._policy_cache: Dict[tuple[str, tuple[str, ...]], CompiledPolicy] = {}

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, base_dir: Path | None = None) -> "RulesService":
        rules_cfg = config.get("rules") or {}
        raw_path = rules_cfg.get("path") if isinstance(rules_cfg, Mapping) else None
        if not raw_path:
            return cls()
        path = Path(raw_path)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        return cls(path)

    def clear_cache(self) -> None:
        self._cache.clear()
        self._policy_cache.clear()

    def workspace_rules(self, workspace: str) -> Dict[str, Any]:
        """Return the rules for ``workspace`` (unknown names fall back to ``normal``)."""
        if workspace not in VALID_WORKSPACES:
            LOGGER.warning("Invalid workspace '%s', defaulting to '%s'", workspace, DEFAULT_WORKSPACE)
            workspace = DEFAULT_WORKSPACE

        cached = self._cache.get(workspace)
        if cached is not None:
            return cached

        rules = copy.deepcopy(DEFAULT_RULES[workspace])
        overrides = self._load_file(workspace)
        if overrides:
            rules = _deep_merge(rules, overrides)
        rules["_workspace"] = workspace
        self._cache[workspace] = rules
        return rules

    def _load_file(self, workspace: str) -> Dict[str, Any]:
        if self.rules_dir is None:
            return {}
        for suffix in (".yaml", ".yml"):
            candidate = self.rules_dir / f"{workspace}{suffix}"
            if not candidate.exists():
                continue
            try:
                with candidate.open("r", encoding="utf-8") as handle:
                    loaded = yaml.safe_load(handle) or {}
            except (OSError, yaml.YAMLError) as error:
                LOGGER.error("Failed to load rules for %s from %s: %s", workspace, candidate, error)
                return {}
            if not isinstance(loaded, Mapping):
                LOGGER.error("Rules file %s must contain a mapping; ignoring it.", candidate)
                return {}
            return dict(loaded)
        LOGGER.info("Rules file not found for workspace %s in %s; using defaults.", workspace, self.rules_dir)
        return {}

    def merged_rules(self, workspace: str, project_rules: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        rules = self.workspace_rules(workspace)
        if not project_rules:
            return rules
        return _deep_merge(rules, project_rules)

    def build_system_prompt(self, workspace: str, project_rules: Mapping[str, Any] | None = None) -> str:
        """Assemble the plain-text system prompt for ``workspace``."""
        rules = self.merged_rules(workspace, project_rules)
        workspace = rules.get("_workspace", workspace)
        prompt = str(rules.get("system_prompt") or "")

        behavior = rules.get("behavior") or {}
        behavior_lines = []
        if behavior.get("tone"):
            behavior_lines.append(f"Tone: {behavior['tone']}")
        if behavior.get("verbosity"):
            behavior_lines.append(f"Verbosity: {behavior['verbosity']}")
        if behavior_lines:
            prompt += "\n\nBEHAVIOR: " + ". ".join(behavior_lines) + "."

        disabled = [
            str(name).replace("_", " ")
            for name, enabled in (rules.get("capabilities") or {}).items()
            if not enabled
        ]
        if disabled:
            prompt += "\n\nDISABLED: " + ", ".join(disabled) + "."

        restrictions = rules.get("restrictions") or {}
        if restrictions.get("blocked_topics"):
            prompt += (
                "\n\nBLOCKED TOPICS: "
                + ", ".join(restrictions["blocked_topics"])
                + ". Decline politely if asked."
            )
        if restrictions.get("blocked_paths"):
            prompt += "\n\nBLOCKED PATHS: " + ", ".join(restrictions["blocked_paths"]) + ". Never read or modify these."
        if restrictions.get("allowed_extensions"):
            prompt += "\n\nALLOWED FILE TYPES: " + ", ".join(restrictions["allowed_extensions"]) + " only."

        if workspace == "church":
            if restrictions.get("require_scripture_for_claims"):
                prompt += (
                    "\n\nSCRIPTURE REQUIREMENT: Every spiritual claim must include a direct Scripture quotation "
                    "with context (1 verse before and after). If unavailable, say 'Onvoldoende bronteks'."
                )
            if restrictions.get("allowed_sources"):
                prompt += "\n\nALLOWED BIBLE VERSIONS: " + ", ".join(restrictions["allowed_sources"]) + " only."

        if project_rules and project_rules.get("instructions"):
            prompt += f"\n\nPROJECT INSTRUCTIONS: {project_rules['instructions']}"

        if workspace == "coder":
            prompt += "\n\nSAFETY: Require confirmation for deletions. Create backups. Never modify credentials."

        return prompt.strip()

    def model_preferences(self, workspace: str) -> Dict[str, Any]:
        rules = self.workspace_rules(workspace)
        preferences = rules.get("model_preferences")
        if not isinstance(preferences, Mapping):
            return dict(_BASE_PREFERENCES)
        return {**_BASE_PREFERENCES, **preferences}

    def phase_settings(self, workspace: str, phase: str) -> Dict[str, Any]:
        """Return model/temperature/max_tokens for one pipeline phase."""
        rules = self.workspace_rules(workspace)
        preferences = self.model_preferences(workspace)
        phase_cfg = (rules.get("phases") or {}).get(phase) or {}
        return {
            "model": phase_cfg.get("model") or preferences.get("default"),
            "temperature": phase_cfg.get("temperature", preferences.get("temperature")),
            "max_tokens": phase_cfg.get("max_tokens", preferences.get("max_tokens")),
        }

    def model_for_phase(self, workspace: str, phase: str) -> str:
        return str(self.phase_settings(workspace, phase)["model"])

    def blocked_paths(self, workspace: str) -> list[str]:
        restrictions = self.workspace_rules(workspace).get("restrictions") or {}
        return [str(item) for item in restrictions.get("blocked_paths") or []]

    def repo_policy(self, workspace: str, allowed_sub_paths: Sequence[str] = ()) -> RepoPolicy:
        restrictions = dict(self.workspace_rules(workspace).get("restrictions") or {})
        restrictions["allowed_sub_paths"] = list(allowed_sub_paths)
        return RepoPolicy.from_mapping(restrictions)

    def compiled_policy(self, workspace: str, allowed_sub_paths: Sequence[str] = ()) -> CompiledPolicy:
        """Return the compiled policy, compiling once per workspace/sub-path set."""
        key = (workspace, tuple(allowed_sub_paths))
        cached = self._policy_cache.get(key)
        if cached is None:
            cached = compile_policy(self.repo_policy(workspace, allowed_sub_paths), home=self._home)
            self._policy_cache[key] = cached
        return cached


__all__ = ["DEFAULT_RULES", "RulesService", "VALID_WORKSPACES"]
