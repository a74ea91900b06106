"""Run state machine sequencing plan, code, review, apply, and rollback.

Statuses move ``pending → planning → coding → reviewing → ready|failed``; a
ready run moves ``applying → completed|failed`` and a finished run can be
``rolled_back``. Each phase call records a :class:`RunStep`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

from .memory.schema import Repo, Run, RunStatus, StepStatus, utc_now
from .memory.store import RunStore
from .models.llm_client import ChatClient
from .phases import PhaseName
from .phases.base import PhaseLogSettings
from .phases.code import Coder
from .phases.plan import Plan, Planner, read_files_for_context
from .phases.review import Reviewer
from .rules import RulesService
from .tools.applier import ApplyResult, FileApplier, RepoBlocked, RepoNotFound, check_repo_status
from .tools.vcs import CheckpointInfo, GitRepository

LOGGER = logging.getLogger(__name__)

CANCELLABLE_STATUSES = frozenset(
    {RunStatus.PENDING, RunStatus.PLANNING, RunStatus.CODING, RunStatus.REVIEWING, RunStatus.READY}
)
ROLLBACK_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.APPLYING})


class RunStateError(RuntimeError):
    """Raised when an operation is not allowed in the run's current status."""


class RunNotFound(RunStateError):
    """Raised when a run id is unknown."""


class RunConflict(RunStateError):
    """Raised when another run is already applying to the same repository."""


class ApplyFailed(RuntimeError):
    """Raised when one or more files failed to apply; the result is attached."""

    def __init__(self, message: str, *, run: Run, result: ApplyResult) -> None:
        super().__init__(message)
        self.run = run
        self.result = result


@dataclass(slots=True)
class _StepOutcome:
    output: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    tokens: int = 0


class RunOrchestrator:
    """Drive runs through the pipeline against an injected chat client."""

    def __init__(
        self,
        client: ChatClient,
        rules: RulesService,
        store: RunStore,
        *,
        workspace: str = "coder",
        log_settings: Optional[PhaseLogSettings] = None,
        applier: Optional[FileApplier] = None,
    ) -> None:
        self.client = client
        self.rules = rules
        self.store = store
        self.workspace = workspace
        self.planner = Planner(client, rules, workspace=workspace, log_settings=log_settings)
        self.coder = Coder(client, rules, workspace=workspace, log_settings=log_settings)
        self.reviewer = Reviewer(client, rules, workspace=workspace, log_settings=log_settings)
        self.applier = applier or FileApplier(rules, status_provider=store, backups=store, workspace=workspace)

    # ----------------------------------------------------------------- lookup
    def get_run(self, run_id: int) -> Run:
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run not found: {run_id}")
        return run

    def _repo(self, repo_id: int) -> Repo:
        repo = self.store.get_repo(repo_id)
        if repo is None:
            raise RepoNotFound("Repository not found")
        return repo

    def _require(self, run_id: int, allowed: Iterable[RunStatus], message: str) -> Run:
        run = self.get_run(run_id)
        if run.status not in set(allowed):
            raise RunStateError(f"{message} Current: {run.status.value}")
        return run

    # -------------------------------------------------------------- lifecycle
    def create_run(self, repo_id: int, request: str) -> Run:
        if not request or not request.strip():
            raise RunStateError("Request must not be empty.")
        repo = self._repo(repo_id)
        if not repo.is_active:
            raise RepoBlocked("Repository has been deleted")
        run = self.store.create_run(Run(repo_id=repo_id, request=request.strip()))
        LOGGER.info("Created run #%s for repository #%s", run.id, repo_id)
        return run

    def _transition(self, run: Run, status: RunStatus, **updates: Any) -> Run:
        if status in (RunStatus.COMPLETED, RunStatus.ROLLED_BACK):
            updates.setdefault("completed_at", utc_now())
        LOGGER.info("Run #%s: %s -> %s", run.id, run.status.value, status.value)
        return self.store.save_run(run.model_copy(update={"status": status, **updates}))

    def _run_step(
        self,
        run: Run,
        phase: PhaseName,
        action: Callable[[], _StepOutcome],
        *,
        failure_label: str,
        fail_run: bool = True,
    ) -> _StepOutcome:
        step = self.store.start_step(run.id, phase.value)
        try:
            outcome = action()
        except Exception as error:
            self.store.finish_step(step, status=StepStatus.FAILED, error_message=str(error))
            if fail_run:
                self._transition(self.get_run(run.id), RunStatus.FAILED, error_message=f"{failure_label}: {error}")
            raise
        self.store.finish_step(
            step,
            status=StepStatus.COMPLETED,
            tokens_used=outcome.tokens,
            output=outcome.output,
            model=outcome.model,
        )
        return outcome

    # ----------------------------------------------------------------- phases
    def plan(self, run_id: int) -> Run:
        run = self._require(run_id, {RunStatus.PENDING}, "Run already started.")
        repo = self._repo(run.repo_id)
        run = self._transition(run, RunStatus.PLANNING)

        def _action() -> _StepOutcome:
            result = self.planner.plan(run.request, repo.meta(), run_id=run.id)
            files_read: Dict[str, str] = {}
            if result.plan.files_to_read:
                files_read = read_files_for_context(repo.meta(), result.plan.files_to_read)
            return _StepOutcome(
                output={"plan": result.plan.model_dump(mode="json"), "files_read": sorted(files_read)},
                model=result.model,
                tokens=result.usage.total_tokens,
            )

        outcome = self._run_step(run, PhaseName.PLAN, _action, failure_label="Planning failed")
        return self.store.save_run(run.model_copy(update={"plan": outcome.output["plan"]}))

    def code(self, run_id: int) -> Run:
        run = self.get_run(run_id)
        if run.status != RunStatus.PLANNING or not run.plan:
            raise RunStateError(f"Planning phase must be completed first. Current: {run.status.value}")
        repo = self._repo(run.repo_id)
        plan = Plan.model_validate(run.plan)
        run = self._transition(run, RunStatus.CODING)

        def _action() -> _StepOutcome:
            paths = [entry.path for entry in plan.files_to_modify]
            contents = read_files_for_context(repo.meta(), paths)
            result = self.coder.generate_code(plan, repo.meta(), contents, run_id=run.id)
            return _StepOutcome(
                output={"diff": result.diff},
                model=result.model,
                tokens=result.usage.total_tokens,
            )

        outcome = self._run_step(run, PhaseName.CODE, _action, failure_label="Code generation failed")
        return self.store.save_run(run.model_copy(update={"diff": outcome.output["diff"]}))

    def review(self, run_id: int) -> Run:
        run = self.get_run(run_id)
        if run.status != RunStatus.CODING or not run.diff:
            raise RunStateError(f"Coding phase must be completed first. Current: {run.status.value}")
        repo = self._repo(run.repo_id)
        plan = Plan.model_validate(run.plan or {})
        run = self._transition(run, RunStatus.REVIEWING)

        def _action() -> _StepOutcome:
            result = self.reviewer.gate(run.diff or "", plan, repo.meta(), run_id=run.id)
            output: Dict[str, Any] = {"review": result.verdict.model_dump(mode="json")}
            if result.quick_scan is not None:
                output["quick_scan"] = result.quick_scan.to_dict()
            if result.path_check is not None:
                output["path_check"] = result.path_check.to_dict()
            return _StepOutcome(output=output, model=result.model, tokens=result.usage.total_tokens)

        outcome = self._run_step(run, PhaseName.REVIEW, _action, failure_label="Review failed")
        verdict = outcome.output["review"]
        safe = verdict.get("safe_to_apply") is True
        return self._transition(
            run,
            RunStatus.READY if safe else RunStatus.FAILED,
            review=verdict,
            error_message=None if safe else verdict.get("summary") or "Review rejected the changes.",
        )

    def apply(self, run_id: int) -> Run:
        """Apply a ready run between two checkpoints, rolling back on failure."""
        run = self._require(run_id, {RunStatus.READY}, "Run must be in ready status to apply.")
        if not run.diff:
            raise RunStateError("No diff content to apply.")
        if (run.review or {}).get("safe_to_apply") is not True:
            raise RunStateError("Review did not mark the changes safe to apply.")
        repo = self._repo(run.repo_id)
        check_repo_status(self.store, run.repo_id)

        git = GitRepository(repo.base_path)

        if not self.store.claim_apply(run.id, run.repo_id):
            raise RunConflict(f"Another run is already applying changes to repository #{run.repo_id}.")
        run = self.get_run(run.id)
        checkpoint: Optional[CheckpointInfo] = None
        result: Optional[ApplyResult] = None

        def _action() -> _StepOutcome:
            nonlocal checkpoint, result, run
            checkpoint = git.create_checkpoint(f"Before run #{run.id}")
            run = self.store.save_run(run.model_copy(update={"checkpoint": checkpoint.hash}))
            result = self.applier.apply(
                run.diff or "",
                repo.base_path,
                repo_id=repo.id,
                allowed_sub_paths=repo.allowed_paths,
                run_id=run.id,
            )
            if not result.success:
                if checkpoint.hash:
                    rolled = git.rollback(checkpoint.hash)
                    LOGGER.warning("Run #%s apply failed; rolled back to %s", run.id, rolled.rolled_back_to)
                discarded = self.applier.discard_created(result, repo.base_path)
                if discarded:
                    LOGGER.warning("Run #%s apply failed; removed created file(s): %s", run.id, ", ".join(discarded))
                raise ApplyFailed(
                    f"{result.failed} of {result.total_files} file(s) could not be applied.",
                    run=run,
                    result=result,
                )
            post = git.create_checkpoint(f"After run #{run.id}")
            run = self.store.save_run(run.model_copy(update={"post_checkpoint": post.hash}))
            return _StepOutcome(output=result.to_dict())

        try:
            outcome = self._run_step(run, PhaseName.APPLY, _action, failure_label="Apply failed")
        except ApplyFailed as error:
            failed_run = self.store.save_run(self.get_run(run.id).model_copy(update={"apply_result": error.result.to_dict()}))
            error.run = failed_run
            raise
        return self._transition(run, RunStatus.COMPLETED, apply_result=outcome.output, error_message=None)

    def rollback(self, run_id: int) -> Run:
        run = self._require(run_id, ROLLBACK_STATUSES, "Run cannot be rolled back in this status.")
        if not run.checkpoint:
            raise RunStateError("No checkpoint available for rollback.")
        repo = self._repo(run.repo_id)
        if repo.maintenance_lock:
            raise RepoBlocked("Repository is under maintenance lock. All operations blocked.")
        checkpoint = run.checkpoint

        def _action() -> _StepOutcome:
            info = GitRepository(repo.base_path).rollback(checkpoint)
            return _StepOutcome(output=info.to_dict())

        self._run_step(run, PhaseName.ROLLBACK, _action, failure_label="Rollback failed", fail_run=False)
        return self._transition(run, RunStatus.ROLLED_BACK)

    def cancel(self, run_id: int) -> Run:
        run = self._require(run_id, CANCELLABLE_STATUSES, "Cannot cancel run.")
        return self._transition(run, RunStatus.FAILED, error_message="Cancelled by user", completed_at=utc_now())

    def preview(self, run_id: int) -> Dict[str, Any]:
        run = self.get_run(run_id)
        if not run.diff:
            raise RunStateError("Run has no diff to preview.")
        repo = self._repo(run.repo_id)
        return self.applier.preview(run.diff, repo.base_path, repo_id=repo.id)


__all__ = [
    "ApplyFailed",
    "RunConflict",
    "RunNotFound",
    "RunOrchestrator",
    "RunStateError",
]
