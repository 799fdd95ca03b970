"""Entry points of the exercise generation workflow.

``ExerciseWorkflow`` owns the fast, caller-facing transitions (start, answer,
approve) and delegates the slow AI stages to scheduled jobs. Every
entrypoint either fully applies its transition or raises before touching
any state.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path

from .access import AccessPolicy, AllowAllAccess
from .exceptions import AccessDeniedError, InvalidSessionStateError, StepStateError
from .llm import AIClient, LangChainStructuredClient
from .model_selection import ModelSelection
from .models import (
    RUNNING_SESSION_STEPS,
    ActionResult,
    ClarificationRound,
    OwnerUsage,
    Session,
    SessionProjection,
    SessionStep,
    StageJob,
    StartSessionResult,
    StepType,
    utc_now,
)
from .projection import build_projection
from .scheduler import StageScheduler
from .settings import RuntimeSettings
from .stages import GenerationStage, PlanningStage, Stage, StageContext, StageOutcome, ValidationStage
from .state_store import SessionStore

logger = logging.getLogger(__name__)

_NOT_AUTHORIZED = "Not authorized"


class ExerciseWorkflow:
    """Session lifecycle for LLM-mediated exercise generation."""

    def __init__(
        self,
        *,
        store: SessionStore,
        ai_client: AIClient,
        scheduler: StageScheduler,
        access_policy: AccessPolicy | None = None,
        settings: RuntimeSettings | None = None,
        model_selection: ModelSelection | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.store = store
        self.scheduler = scheduler
        self.access_policy = access_policy if access_policy is not None else AllowAllAccess()
        self.model_selection = (
            model_selection if model_selection is not None else ModelSelection.from_settings(self.settings)
        )
        context = StageContext(store=store, ai_client=ai_client, scheduler=scheduler, settings=self.settings)
        self._stages: dict[StepType, Stage] = {
            StepType.VALIDATION: ValidationStage(context),
            StepType.PLANNING: PlanningStage(context),
            StepType.GENERATION: GenerationStage(context),
        }
        scheduler.bind(self.run_job)

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        scheduler: StageScheduler,
        repo_root: Path | None = None,
        access_policy: AccessPolicy | None = None,
        ai_client: AIClient | None = None,
    ) -> "ExerciseWorkflow":
        """Build a workflow backed by the filesystem store and the OpenAI client."""
        root = repo_root if repo_root is not None else Path.cwd()
        if ai_client is None:
            ai_client = LangChainStructuredClient.from_settings(settings, repo_root=root)
        return cls(
            store=SessionStore(settings.state_store_path(root)),
            ai_client=ai_client,
            scheduler=scheduler,
            access_policy=access_policy,
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Caller-facing entrypoints
    # ------------------------------------------------------------------

    def start_session(
        self,
        document_ref: str,
        prompt_text: str,
        model: str | None = None,
        *,
        caller_id: str,
    ) -> StartSessionResult:
        """Create a session at ``validating`` and schedule its validation stage.

        Raises:
            AccessDeniedError: If the caller may not edit ``document_ref``.
            ValueError: If the prompt is empty or the model is not allowed.
        """
        if not prompt_text.strip():
            raise ValueError("prompt_text must be non-empty")
        self._require_access(document_ref, caller_id)
        resolved_model = self.model_selection.resolve(model)

        session = Session(
            document_ref=document_ref,
            owner_id=caller_id,
            initial_prompt=prompt_text,
            model=resolved_model,
        )
        job = StageJob(session_id=session.session_id, stage=StepType.VALIDATION)
        session = self.store.create_session(session.model_copy(update={"scheduled_job": job}))
        self.scheduler.schedule(job)
        return StartSessionResult(session_id=session.session_id)

    def answer_clarifications(
        self,
        session_id: str,
        answers: Mapping[str, str | list[str]],
        *,
        caller_id: str,
    ) -> ActionResult:
        """Record a round of clarification answers and re-run validation.

        Raises:
            SessionNotFoundError: If the session does not exist.
            AccessDeniedError: If the caller does not own the session.
            InvalidSessionStateError: If the session is not awaiting clarification.
            ValueError: If ``answers`` is empty.
        """
        self._require_owner(session_id, caller_id)
        clarification = ClarificationRound(answers=dict(answers))
        job = StageJob(session_id=session_id, stage=StepType.VALIDATION)

        def _append(session: Session) -> None:
            session.clarifications.append(clarification)
            session.scheduled_job = job

        self.store.transition_session(
            session_id,
            expected=SessionStep.AWAITING_CLARIFICATION,
            target=SessionStep.VALIDATING,
            update=_append,
            guard_message="Session not awaiting clarification",
        )
        self.scheduler.schedule(job)
        return ActionResult(success=True)

    def approve_plan(self, session_id: str, *, caller_id: str) -> ActionResult:
        """Approve the current plan and schedule generation.

        Raises:
            SessionNotFoundError: If the session does not exist.
            AccessDeniedError: If the caller does not own the session.
            InvalidSessionStateError: If the session is not awaiting approval or has no plan.
        """
        self._require_owner(session_id, caller_id)
        job = StageJob(session_id=session_id, stage=StepType.GENERATION)

        def _schedule_generation(session: Session) -> None:
            if session.plan is None:
                raise InvalidSessionStateError("No plan to approve")
            session.scheduled_job = job

        self.store.transition_session(
            session_id,
            expected=SessionStep.AWAITING_APPROVAL,
            target=SessionStep.GENERATING,
            update=_schedule_generation,
            guard_message="Session not awaiting approval",
        )
        self.scheduler.schedule(job)
        return ActionResult(success=True)

    def get_session(self, session_id: str, *, caller_id: str) -> SessionProjection:
        """Return the session, its steps and the latest completed result per stage.

        Raises:
            SessionNotFoundError: If the session does not exist.
            AccessDeniedError: If the caller may not read the session's document.
        """
        session, steps = self.store.snapshot(session_id)
        self._require_access(session.document_ref, caller_id)
        return build_projection(session, steps)

    def list_sessions(self, *, owner_id: str | None = None, document_ref: str | None = None) -> list[Session]:
        return self.store.list_sessions(owner_id=owner_id, document_ref=document_ref)

    def get_owner_usage(self, owner_id: str) -> OwnerUsage:
        return self.store.read_owner_usage(owner_id)

    # ------------------------------------------------------------------
    # Scheduler-facing entrypoints
    # ------------------------------------------------------------------

    def run_job(self, job: StageJob) -> StageOutcome:
        """Execute one delivered stage job. Duplicate or stale deliveries are skipped."""
        return self._stages[job.stage].run(job)

    def resume(self) -> list[StageJob]:
        """Re-schedule every persisted job that no worker has claimed yet.

        Sessions sitting at a running step without a job were claimed by a
        worker that has not finished; they are reported but left alone until
        ``fail_stalled`` or ``sweep_stalled`` ends them.
        """
        resumed: list[StageJob] = []
        for session in self.store.list_sessions():
            job = session.scheduled_job
            if job is not None:
                self.scheduler.schedule(job)
                resumed.append(job)
            elif session.current_step in RUNNING_SESSION_STEPS:
                logger.debug(
                    "Session %s is %s with its stage already claimed",
                    session.session_id,
                    session.current_step.value,
                )
        if resumed:
            logger.info("Resumed %d scheduled stage job(s)", len(resumed))
        return resumed

    def fail_stalled(self, session_id: str, *, stalled_after: float = 0.0) -> Session:
        """Fail a session whose claimed stage never finished.

        The session must sit at a running step with no pending job and must
        not have changed for ``stalled_after`` seconds. Its unfinished steps
        are failed as well. A worker that is in fact still running loses its
        transition and leaves the session failed.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidSessionStateError: If the session is not stalled.
        """
        session = self.store.read_session(session_id)
        if session.current_step not in RUNNING_SESSION_STEPS:
            raise InvalidSessionStateError(
                "Session is not running a stage",
                details={"current_step": session.current_step.value},
            )
        cutoff = utc_now() - timedelta(seconds=stalled_after)
        message = f"{session.current_step.value} stage stopped before finishing"

        def _mark_stalled(current: Session) -> None:
            if current.scheduled_job is not None:
                raise InvalidSessionStateError("Session has a scheduled job waiting to run")
            if current.updated_at > cutoff:
                raise InvalidSessionStateError(f"Session changed less than {stalled_after:g}s ago")
            current.error_message = message

        failed = self.store.transition_session(
            session_id,
            expected=session.current_step,
            target=SessionStep.FAILED,
            update=_mark_stalled,
            guard_message="Session is not running a stage",
        )
        for step in self.store.read_steps(session_id):
            if step.status.is_final:
                continue
            try:
                self.store.fail_step(session_id, step.step_id, error_message=message)
            except StepStateError:
                logger.debug("Step %s finished while its session was failed", step.step_id)
        logger.warning("Failed stalled session %s: %s", session_id, message)
        return failed

    def sweep_stalled(self, stalled_after: float) -> list[str]:
        """Fail every session whose claimed stage has been silent for ``stalled_after`` seconds."""
        failed: list[str] = []
        for session in self.store.list_sessions():
            if session.current_step not in RUNNING_SESSION_STEPS or session.scheduled_job is not None:
                continue
            try:
                self.fail_stalled(session.session_id, stalled_after=stalled_after)
            except InvalidSessionStateError:
                continue
            failed.append(session.session_id)
        return failed

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _require_access(self, document_ref: str, caller_id: str) -> None:
        if not caller_id or not self.access_policy.verify_access(document_ref, caller_id):
            raise AccessDeniedError(_NOT_AUTHORIZED, details={"document_ref": document_ref})

    def _require_owner(self, session_id: str, caller_id: str) -> Session:
        session = self.store.read_session(session_id)
        if session.owner_id != caller_id:
            raise AccessDeniedError(_NOT_AUTHORIZED, details={"session_id": session_id})
        return session
