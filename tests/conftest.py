from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from coderai.memory import Repo, RunStore  # noqa: E402
from coderai.models.llm_client import ChatClient  # noqa: E402
from coderai.rules import RulesService  # noqa: E402

APP_SOURCE = "def add(left, right):\n    return left + right\n"
README_SOURCE = "# Demo\n\nA tiny repository used by the tests.\n"


class FakeChatClient(ChatClient):
    """Chat client that replays scripted responses and records every payload."""

    provider_name = "fake"

    def __init__(self, responses: Sequence[Any] = (), *, model: str = "qwen2.5-coder:14b") -> None:
        super().__init__(model=model)
        self.responses: List[Any] = list(responses)
        self.payloads: List[Dict[str, Any]] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def _raw_invoke(self, payload: Dict[str, Any]) -> Mapping[str, Any]:
        self.payloads.append(payload)
        if not self.responses:
            raise AssertionError("FakeChatClient ran out of scripted responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, Mapping):
            return response
        return {"message": {"content": response}, "prompt_eval_count": 12, "eval_count": 8}


def run_git(repo_root: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=repo_root,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def _prepare_repo(repo_root: Path) -> Path:
    repo_root.mkdir(parents=True, exist_ok=True)
    run_git(repo_root, "init")
    run_git(repo_root, "config", "user.email", "tester@example.com")
    run_git(repo_root, "config", "user.name", "CoderAI Tests")
    (repo_root / "app.py").write_text(APP_SOURCE, encoding="utf-8")
    (repo_root / "README.md").write_text(README_SOURCE, encoding="utf-8")
    run_git(repo_root, "add", "-A")
    run_git(repo_root, "commit", "-m", "Initial state")
    return repo_root


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """A committed git repository containing ``app.py`` and ``README.md``."""
    return _prepare_repo(tmp_path / "repo")


@pytest.fixture()
def plain_repo(tmp_path: Path) -> Path:
    """A repository directory without git history."""
    root = tmp_path / "plain"
    root.mkdir()
    (root / "app.py").write_text(APP_SOURCE, encoding="utf-8")
    return root


@pytest.fixture()
def rules() -> RulesService:
    return RulesService(home="/home/tester")


@pytest.fixture()
def store() -> RunStore:
    run_store = RunStore(":memory:")
    yield run_store
    run_store.close()


@pytest.fixture()
def registered_repo(store: RunStore, git_repo: Path) -> Repo:
    return store.add_repo(Repo(label="demo", base_path=str(git_repo)))


@pytest.fixture()
def fake_client() -> FakeChatClient:
    return FakeChatClient()
