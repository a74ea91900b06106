"""CLI commands for driving CoderAI runs against registered repositories."""

from __future__ import annotations

import copy
import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer
import yaml

from .memory.schema import Repo, Run
from .memory.store import RunStore
from .models import ChatClient, ChatClientError, GatewayClient
from .models.catalog import ModelCatalog
from .orchestrator import ApplyFailed, RunOrchestrator, RunStateError
from .phases.base import PhaseLogSettings
from .phases.plan import PlanParseError, PlanSchemaError
from .rules import RulesService
from .tools.applier import DEFAULT_BACKUP_MAX_AGE_HOURS, FileApplier, RepoGateError, check_repo_status
from .tools.diff import DiffError
from .tools.vcs import GitError, GitRepository

APP_HELP = "CoderAI: plan, code, review, and apply AI-generated changes safely."
DEFAULT_CONFIG_NAME = "coderai.yaml"
LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "workspace": "coder",
    },
    "gateway": {
        "url": "http://localhost:11434/chat",
        "api_key_env": "AI_GATEWAY_KEY",
        "timeout": 120,
        "model": "qwen2.5-coder:14b",
        "allowed_models": ["qwen2.5-coder:7b", "qwen2.5-coder:14b"],
    },
    "rules": {
        "path": "rules",
    },
    "paths": {
        "data": "data",
        "db_path": "data/coderai.sqlite",
        "logs": "data/logs",
    },
    "backups": {
        "max_age_hours": DEFAULT_BACKUP_MAX_AGE_HOURS,
    },
}

_HANDLED_ERRORS = (
    ApplyFailed,
    ChatClientError,
    DiffError,
    GitError,
    PlanParseError,
    PlanSchemaError,
    RepoGateError,
    RunStateError,
)

app = typer.Typer(help=APP_HELP)
repo_app = typer.Typer(help="Register and gate target repositories.")
run_app = typer.Typer(help="Create runs and drive them through each phase.")
app.add_typer(repo_app, name="repo")
app.add_typer(run_app, name="run")

ConfigOption = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the CoderAI configuration file.")


def _copy_config_template() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return data


def _workspace(config: Dict[str, Any]) -> str:
    project_cfg = config.get("project") or {}
    return str(project_cfg.get("workspace") or "coder")


def _build_client(config: Dict[str, Any]) -> ChatClient:
    """Construct the gateway client described by the ``gateway`` section."""
    gateway_cfg = config.get("gateway") or {}
    key_env = gateway_cfg.get("api_key_env") or "AI_GATEWAY_KEY"
    catalog = ModelCatalog.from_config(gateway_cfg.get("allowed_models"), gateway_cfg.get("aliases"))
    timeout = gateway_cfg.get("timeout")
    try:
        return GatewayClient(
            api_key=os.getenv(key_env),
            base_url=gateway_cfg.get("url"),
            model=gateway_cfg.get("model"),
            catalog=catalog,
            timeout=float(timeout) if timeout else None,
        )
    except ValueError as error:
        typer.echo(f"Failed to initialise gateway client: {error}")
        raise typer.Exit(code=1) from error


@contextmanager
def _open_store(config: Dict[str, Any], config_path: Path) -> Iterator[RunStore]:
    store = RunStore.from_config(config, base_dir=config_path.parent)
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Report domain errors on stdout and exit non-zero."""
    try:
        yield
    except _HANDLED_ERRORS as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error


def _build_orchestrator(config: Dict[str, Any], config_path: Path, store: RunStore) -> RunOrchestrator:
    return RunOrchestrator(
        _build_client(config),
        RulesService.from_config(config, base_dir=config_path.parent),
        store,
        workspace=_workspace(config),
        log_settings=PhaseLogSettings.from_config(config, base_dir=config_path.parent),
    )


def _require_repo(store: RunStore, repo_id: int) -> Repo:
    repo = store.get_repo(repo_id)
    if repo is None:
        typer.echo(f"Repository #{repo_id} not found.")
        raise typer.Exit(code=1)
    return repo


def _render_repo(repo: Repo) -> None:
    flags = [
        name
        for name, enabled in (
            ("read-only", repo.read_only),
            ("locked", repo.maintenance_lock),
            ("inactive", not repo.is_active),
        )
        if enabled
    ]
    suffix = f" [{', '.join(flags)}]" if flags else ""
    typer.echo(f"#{repo.id} {repo.label} -> {repo.base_path}{suffix}")
    if repo.allowed_paths:
        typer.echo(f"  allowed: {', '.join(repo.allowed_paths)}")


def _render_run(run: Run) -> None:
    typer.echo(f"Run #{run.id} [{run.status.value}]")
    if run.plan:
        typer.echo(f"- Plan: {run.plan.get('summary', '')}")
        for entry in run.plan.get("files_to_modify") or []:
            typer.echo(f"    {entry.get('action', 'modify')}: {entry.get('path')}")
    if run.review:
        typer.echo(
            f"- Review: risk={run.review.get('risk_level')} "
            f"safe_to_apply={run.review.get('safe_to_apply')} :: {run.review.get('summary', '')}"
        )
    if run.checkpoint:
        typer.echo(f"- Checkpoint: {run.checkpoint[:7]}")
    if run.post_checkpoint:
        typer.echo(f"- Post checkpoint: {run.post_checkpoint[:7]}")
    if run.error_message:
        typer.echo(f"- Error: {run.error_message}")


@app.command("init-config")
def init_config(
    config: str = ConfigOption,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    config_data = _copy_config_template()
    config_data["project"]["name"] = config_path.resolve().parent.name
    _write_config(config_path, config_data)
    typer.echo(f"Wrote configuration to {config_path}.")


# Repository commands ----------------------------------------------------------------
@repo_app.command("add")
def repo_add(
    base_path: str = typer.Argument(..., help="Absolute path to the repository root."),
    label: str = typer.Option("", "--label", "-l", help="Human-readable repository label."),
    allowed_path: List[str] = typer.Option(
        None,
        "--allowed-path",
        "-a",
        help="Restrict writes to this sub-path (repeatable).",
    ),
    init_git: bool = typer.Option(
        True,
        "--init-git/--no-init-git",
        help="Initialise git history when the directory is not a repository yet.",
    ),
    config: str = ConfigOption,
) -> None:
    """Register a repository."""
    config_path = Path(config)
    config_data = load_config(config_path)
    root = Path(base_path).expanduser().resolve()
    if not root.is_dir():
        typer.echo(f"Repository path is not a directory: {root}")
        raise typer.Exit(code=1)
    if init_git and not (root / ".git").exists():
        with _handle_errors():
            GitRepository.init_repo(root)
        typer.echo(f"Initialized git history at {root}.")

    with _open_store(config_data, config_path) as store:
        repo = store.add_repo(
            Repo(label=label or root.name, base_path=str(root), allowed_paths=list(allowed_path or []))
        )
        _render_repo(repo)


@repo_app.command("list")
def repo_list(config: str = ConfigOption) -> None:
    """List registered repositories."""
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        repos = store.list_repos()
        if not repos:
            typer.echo("No repositories registered.")
        for repo in repos:
            _render_repo(repo)


@repo_app.command("status")
def repo_status(
    repo_id: int = typer.Argument(..., help="Repository id."),
    config: str = ConfigOption,
) -> None:
    """Show repository gates and recent commits."""
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        repo = _require_repo(store, repo_id)
        _render_repo(repo)
        with _handle_errors():
            git = GitRepository(repo.base_path)
            typer.echo(f"HEAD: {git.current_head()}")
            typer.echo(f"Uncommitted changes: {'yes' if git.has_uncommitted_changes() else 'no'}")
            for commit in git.recent_commits(limit=5):
                typer.echo(f"  {commit.hash[:7]} {commit.message}")


def _set_lock(config: str, repo_id: int, *, locked: bool) -> None:
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        with _handle_errors():
            repo = store.update_repo_flags(repo_id, maintenance_lock=locked)
        _render_repo(repo)


@repo_app.command("lock")
def repo_lock(repo_id: int = typer.Argument(..., help="Repository id."), config: str = ConfigOption) -> None:
    """Put a repository under maintenance lock."""
    _set_lock(config, repo_id, locked=True)


@repo_app.command("unlock")
def repo_unlock(repo_id: int = typer.Argument(..., help="Repository id."), config: str = ConfigOption) -> None:
    """Release a repository's maintenance lock."""
    _set_lock(config, repo_id, locked=False)


# Run commands -----------------------------------------------------------------------
@run_app.command("create")
def run_create(
    repo_id: int = typer.Argument(..., help="Repository id."),
    request: str = typer.Argument(..., help="Natural-language change request."),
    config: str = ConfigOption,
) -> None:
    """Create a pending run for a repository."""
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        with _handle_errors():
            orchestrator = _build_orchestrator(config_data, config_path, store)
            run = orchestrator.create_run(repo_id, request)
        _render_run(run)


def _drive(config: str, run_id: int, action: str) -> None:
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        orchestrator = _build_orchestrator(config_data, config_path, store)
        with _handle_errors():
            run = getattr(orchestrator, action)(run_id)
        _render_run(run)
        if action == "apply" and run.apply_result:
            for entry in run.apply_result.get("applied") or []:
                typer.echo(f"    {entry.get('action')}: {entry.get('file')}")


@run_app.command("plan")
def run_plan(run_id: int = typer.Argument(..., help="Run id."), config: str = ConfigOption) -> None:
    """Generate the execution plan."""
    _drive(config, run_id, "plan")


@run_app.command("code")
def run_code(run_id: int = typer.Argument(..., help="Run id."), config: str = ConfigOption) -> None:
    """Generate the unified diff for the plan."""
    _drive(config, run_id, "code")


@run_app.command("review")
def run_review(run_id: int = typer.Argument(..., help="Run id."), config: str = ConfigOption) -> None:
    """Review the diff and mark the run ready or failed."""
    _drive(config, run_id, "review")


@run_app.command("apply")
def run_apply(run_id: int = typer.Argument(..., help="Run id."), config: str = ConfigOption) -> None:
    """Apply a ready run between checkpoints."""
    _drive(config, run_id, "apply")


@run_app.command("rollback")
def run_rollback(run_id: int = typer.Argument(..., help="Run id."), config: str = ConfigOption) -> None:
    """Restore the repository to the run's pre-apply checkpoint."""
    _drive(config, run_id, "rollback")


@run_app.command("cancel")
def run_cancel(run_id: int = typer.Argument(..., help="Run id."), config: str = ConfigOption) -> None:
    """Cancel a run that has not been applied."""
    _drive(config, run_id, "cancel")


@run_app.command("show")
def run_show(
    run_id: int = typer.Argument(..., help="Run id."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw run record as JSON."),
    config: str = ConfigOption,
) -> None:
    """Show a run and its recorded steps."""
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        run = store.get_run(run_id)
        if run is None:
            typer.echo(f"Run #{run_id} not found.")
            raise typer.Exit(code=1)
        steps = store.list_steps(run_id)
        if as_json:
            payload = {
                "run": run.model_dump(mode="json"),
                "steps": [step.model_dump(mode="json") for step in steps],
            }
            typer.echo(json.dumps(payload, indent=2))
            return
        _render_run(run)
        if steps:
            typer.echo("Steps:")
        for step in steps:
            model = f" ({step.model})" if step.model else ""
            typer.echo(f"  - {step.phase}: {step.status.value}{model} tokens={step.tokens_used}")
            if step.error_message:
                typer.echo(f"      ! {step.error_message}")
        if run.diff:
            typer.echo("Diff:")
            typer.echo(run.diff)


# Standalone operations --------------------------------------------------------------
@app.command()
def preview(
    repo_id: int = typer.Argument(..., help="Repository id."),
    diff_file: Path = typer.Argument(..., help="Path to a unified diff file."),
    config: str = ConfigOption,
) -> None:
    """Show what a diff would do to a repository without touching disk."""
    config_path = Path(config)
    config_data = load_config(config_path)
    if not diff_file.is_file():
        raise typer.BadParameter(f"Diff file not found: {diff_file}")
    diff_text = diff_file.read_text(encoding="utf-8")
    with _open_store(config_data, config_path) as store:
        repo = _require_repo(store, repo_id)
        rules = RulesService.from_config(config_data, base_dir=config_path.parent)
        applier = FileApplier(rules, status_provider=store, backups=store, workspace=_workspace(config_data))
        with _handle_errors():
            summary = applier.preview(diff_text, repo.base_path, repo_id=repo.id)
        typer.echo(json.dumps(summary, indent=2))


@app.command()
def checkpoint(
    repo_id: int = typer.Argument(..., help="Repository id."),
    message: str = typer.Option("Manual checkpoint", "--message", "-m", help="Checkpoint description."),
    config: str = ConfigOption,
) -> None:
    """Commit the current working tree as a checkpoint."""
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        repo = _require_repo(store, repo_id)
        with _handle_errors():
            check_repo_status(store, repo_id)
            info = GitRepository(repo.base_path).create_checkpoint(message)
        label = "Created checkpoint" if info.created else "No changes; current HEAD"
        typer.echo(f"{label}: {info.hash}")


@app.command()
def rollback(
    repo_id: int = typer.Argument(..., help="Repository id."),
    checkpoint_hash: str = typer.Argument(..., help="Commit hash to restore."),
    config: str = ConfigOption,
) -> None:
    """Hard-reset a repository to a checkpoint commit."""
    config_path = Path(config)
    config_data = load_config(config_path)
    with _open_store(config_data, config_path) as store:
        repo = _require_repo(store, repo_id)
        if repo.maintenance_lock:
            typer.echo("Error: Repository is under maintenance lock. All operations blocked.")
            raise typer.Exit(code=1)
        with _handle_errors():
            info = GitRepository(repo.base_path).rollback(checkpoint_hash)
        typer.echo(f"Rolled back {info.previous_head[:7]} -> {info.current_head[:7]}")


@app.command("cleanup-backups")
def cleanup_backups(
    repo_id: Optional[int] = typer.Option(None, "--repo", "-r", help="Only sweep this repository."),
    max_age_hours: Optional[float] = typer.Option(
        None,
        "--max-age-hours",
        help="Delete backups older than this many hours (defaults to the configured value).",
    ),
    config: str = ConfigOption,
) -> None:
    """Delete backup files older than the retention window."""
    config_path = Path(config)
    config_data = load_config(config_path)
    backups_cfg = config_data.get("backups") or {}
    hours = max_age_hours if max_age_hours is not None else backups_cfg.get("max_age_hours", DEFAULT_BACKUP_MAX_AGE_HOURS)
    with _open_store(config_data, config_path) as store:
        repos = [_require_repo(store, repo_id)] if repo_id is not None else store.list_repos()
        rules = RulesService.from_config(config_data, base_dir=config_path.parent)
        applier = FileApplier(rules, status_provider=store, backups=store, workspace=_workspace(config_data))
        total = 0
        for repo in repos:
            if not Path(repo.base_path).is_dir():
                LOGGER.warning("Skipping missing repository path: %s", repo.base_path)
                continue
            result = applier.cleanup_backups(repo.base_path, max_age_hours=float(hours))
            total += result["deleted"]
            typer.echo(f"#{repo.id} {repo.label}: deleted {result['deleted']} backup(s)")
        typer.echo(f"Total deleted: {total}")


__all__ = ["app", "load_config"]
