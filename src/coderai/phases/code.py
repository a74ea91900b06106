"""Coding phase: ask the model for a unified diff that implements a plan."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from ..memory.schema import RepoMeta
from ..models.llm_client import ChatClient, ChatMessage, TokenUsage, strip_code_fence
from ..prompts import render_coding_prompt, render_file_block
from ..rules import RulesService
from . import PhaseName
from .base import PhaseLogSettings, invoke_phase
from .plan import Plan

_DIFF_START_RE = re.compile(r"^---\s+", re.MULTILINE)


@dataclass(slots=True)
class CodeResult:
    diff: str
    raw_response: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)


def _trim(text: str) -> str:
    # A trailing " " is a blank context line, so only line breaks are cut at the end.
    return text.lstrip().rstrip("\r\n")


def extract_diff(content: str) -> str:
    """Pull the diff out of a model response.

    Fenced blocks win; otherwise a response containing a ``---`` line is
    returned without its surrounding blank lines. Anything else comes back
    untouched for the diff parser to reject later.
    """
    fenced = strip_code_fence(content or "", languages=("diff", "patch", "udiff"))
    if fenced is not None:
        return _trim(fenced)
    if _DIFF_START_RE.search(content or ""):
        return _trim(content)
    return content


class Coder:
    def __init__(
        self,
        client: ChatClient,
        rules: RulesService,
        *,
        workspace: str = "coder",
        log_settings: Optional[PhaseLogSettings] = None,
    ) -> None:
        self.client = client
        self.rules = rules
        self.workspace = workspace
        self.log_settings = log_settings

    def build_messages(self, plan: Plan, file_contents: Optional[Mapping[str, str]] = None) -> List[ChatMessage]:
        system_prompt = self.rules.build_system_prompt(self.workspace) + "\n\n" + render_coding_prompt()
        plan_json = json.dumps(plan.model_dump(mode="json"), indent=4)
        messages = [
            ChatMessage(role="system", content=system_prompt),
            ChatMessage(role="user", content=f"PLAN:\n{plan_json}"),
        ]
        if file_contents:
            messages.append(
                ChatMessage(
                    role="user",
                    content=render_file_block(file_contents, heading="CURRENT FILE CONTENTS:", marker="==="),
                )
            )
        messages.append(ChatMessage(role="user", content="Generate the unified diff now."))
        return messages

    def generate_code(
        self,
        plan: Plan,
        repo: Optional[RepoMeta] = None,
        file_contents: Optional[Mapping[str, str]] = None,
        *,
        run_id: Optional[int] = None,
    ) -> CodeResult:
        """Generate a diff for ``plan``. Well-formedness is checked at apply time."""
        settings = self.rules.phase_settings(self.workspace, PhaseName.CODE.value)
        response = invoke_phase(
            PhaseName.CODE.value,
            self.build_messages(plan, file_contents),
            client=self.client,
            model=settings["model"],
            temperature=settings["temperature"] if settings["temperature"] is not None else 0.2,
            max_tokens=settings["max_tokens"] or 8192,
            log_settings=self.log_settings,
            run_id=run_id,
        )
        return CodeResult(
            diff=extract_diff(response.content),
            raw_response=response.content,
            model=response.model,
            usage=response.usage,
        )


__all__ = ["CodeResult", "Coder", "extract_diff"]
