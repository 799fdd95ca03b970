"""Stage runners for validation, planning and generation.

Each runner executes one delivered ``StageJob``. It claims the job, records a
step, calls the AI client and advances the session. Any exception escaping
the stage body fails both the step and the session instead of propagating
to the scheduler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from .exceptions import StagePreconditionError, StepStateError, StructuredOutputError
from .llm import AIClient
from .models import (
    STAGE_SESSION_STEPS,
    ExerciseDraft,
    ExercisePlan,
    GeneratedExercise,
    GeneratedExerciseMetadata,
    GenerationError,
    GenerationResult,
    GenerationStepInput,
    GenerationStepOutput,
    PlanningStepInput,
    PlanningStepOutput,
    Requirements,
    Session,
    SessionStep,
    StageJob,
    Step,
    StepInput,
    StepType,
    ValidationResponse,
    ValidationStepInput,
    ValidationStepOutput,
)
from .prompts import build_generation_prompt, build_planning_prompt, build_validation_prompt
from .scheduler import StageScheduler
from .settings import RuntimeSettings
from .state_store import SessionStore

logger = logging.getLogger(__name__)


class StageOutcome(str, Enum):
    SKIPPED = "skipped"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StageContext:
    """Collaborators shared by every stage runner."""

    store: SessionStore
    ai_client: AIClient
    scheduler: StageScheduler
    settings: RuntimeSettings


@dataclass
class StageAttempt:
    """Mutable state of one stage execution."""

    job: StageJob
    session: Session
    step: Step | None = None
    tokens: int = 0
    tokens_committed: bool = False


def _error_text(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


def _spent_tokens(exc: BaseException) -> int:
    return exc.tokens_used if isinstance(exc, StructuredOutputError) else 0


def _require_requirements(session: Session) -> Requirements:
    if session.requirements is None:
        raise StagePreconditionError(f"Session {session.session_id} has no requirements")
    return session.requirements


def _require_plan(session: Session) -> ExercisePlan:
    if session.plan is None:
        raise StagePreconditionError(f"Session {session.session_id} has no approved plan to generate")
    return session.plan


class Stage:
    """Base runner: claim, record a step, execute, and fail cleanly on error."""

    step_type: ClassVar[StepType]

    def __init__(self, context: StageContext) -> None:
        self.context = context

    @property
    def session_step(self) -> SessionStep:
        return STAGE_SESSION_STEPS[self.step_type]

    def build_input(self, session: Session) -> StepInput:
        raise NotImplementedError

    def execute(self, attempt: StageAttempt, step: Step) -> StageOutcome:
        raise NotImplementedError

    def run(self, job: StageJob) -> StageOutcome:
        if job.stage != self.step_type:
            raise ValueError(f"{type(self).__name__} cannot run {job.stage.value} job {job.job_id}")
        store = self.context.store
        session = store.claim_job(job)
        if session is None:
            logger.info(
                "Skipping %s job %s: session %s no longer holds it",
                job.stage.value,
                job.job_id,
                job.session_id,
            )
            return StageOutcome.SKIPPED
        logger.info("Claimed %s job %s for session %s", job.stage.value, job.job_id, job.session_id)

        attempt = StageAttempt(job=job, session=session)
        try:
            step_input = self.build_input(session)
            attempt.step = store.create_step(
                Step(session_id=session.session_id, step_type=self.step_type, input=step_input)
            )
            return self.execute(attempt, attempt.step)
        except Exception as exc:
            attempt.tokens += _spent_tokens(exc)
            logger.exception("%s stage failed for session %s", self.step_type.value, session.session_id)
            self._fail(attempt, _error_text(exc))
            return StageOutcome.FAILED
        finally:
            self._record_owner_tokens(session.owner_id, attempt.tokens)

    def advance(
        self,
        attempt: StageAttempt,
        target: SessionStep,
        *,
        next_job: StageJob | None = None,
        **changes: object,
    ) -> Session:
        """Move the session forward, committing the attempt's tokens with the transition.

        When ``next_job`` is given it is persisted on the session before it is
        handed to the scheduler, so a crash in between leaves a job that
        ``resume`` can replay.
        """
        tokens = attempt.tokens

        def _update(session: Session) -> None:
            for name, value in changes.items():
                setattr(session, name, value)
            session.scheduled_job = next_job
            session.tokens_used += tokens

        session = self.context.store.transition_session(
            attempt.session.session_id,
            expected=self.session_step,
            target=target,
            update=_update,
        )
        attempt.tokens_committed = True
        attempt.session = session
        if next_job is not None:
            self.context.scheduler.schedule(next_job)
        return session

    def _record_owner_tokens(self, owner_id: str, tokens: int) -> None:
        if not tokens:
            return
        try:
            self.context.store.add_owner_tokens(owner_id, tokens)
        except (OSError, ValueError):
            logger.exception("Could not add %d token(s) to the usage ledger of owner %r", tokens, owner_id)

    def _fail(self, attempt: StageAttempt, message: str) -> None:
        store = self.context.store
        session_id = attempt.session.session_id
        if attempt.step is not None:
            try:
                store.fail_step(session_id, attempt.step.step_id, error_message=message)
            except StepStateError:
                logger.warning("Step %s already finished; leaving it as recorded", attempt.step.step_id)
        tokens = 0 if attempt.tokens_committed else attempt.tokens
        store.fail_session(session_id, expected=self.session_step, error_message=message, tokens=tokens)


class ValidationStage(Stage):
    step_type = StepType.VALIDATION

    def build_input(self, session: Session) -> ValidationStepInput:
        return ValidationStepInput(
            user_prompt=session.initial_prompt,
            previous_clarifications=list(session.clarifications) or None,
        )

    def execute(self, attempt: StageAttempt, step: Step) -> StageOutcome:
        session = attempt.session
        prompt = build_validation_prompt(
            user_prompt=session.initial_prompt,
            previous_clarifications=session.clarifications,
        )
        result = self.context.ai_client.generate_structured(
            model=session.model,
            prompt=prompt,
            schema=ValidationResponse,
        )
        attempt.tokens += result.tokens_used
        response = result.value
        self.context.store.complete_step(
            session.session_id,
            step.step_id,
            output=ValidationStepOutput(result=response),
            tokens_used=result.tokens_used,
        )

        if response.is_ready:
            missing = response.extracted_requirements.missing_fields()
            if missing:
                logger.warning("Session %s marked ready with missing fields: %s", session.session_id, missing)
            self.advance(
                attempt,
                SessionStep.PLANNING,
                next_job=StageJob(session_id=session.session_id, stage=StepType.PLANNING),
                requirements=response.extracted_requirements,
            )
        else:
            questions = response.clarification_needed or []
            logger.info("Session %s needs clarification (%d question(s))", session.session_id, len(questions))
            self.advance(attempt, SessionStep.AWAITING_CLARIFICATION)
        return StageOutcome.COMPLETED


class PlanningStage(Stage):
    step_type = StepType.PLANNING

    def build_input(self, session: Session) -> PlanningStepInput:
        return PlanningStepInput(requirements=_require_requirements(session))

    def execute(self, attempt: StageAttempt, step: Step) -> StageOutcome:
        session = attempt.session
        requirements = _require_requirements(session)
        result = self.context.ai_client.generate_structured(
            model=session.model,
            prompt=build_planning_prompt(requirements=requirements),
            schema=ExercisePlan,
        )
        attempt.tokens += result.tokens_used

        max_items = self.context.settings.max_plan_items
        plan = result.value.truncated(max_items)
        if len(plan.exercises) < len(result.value.exercises):
            logger.warning(
                "Truncated plan for session %s from %d to %d items",
                session.session_id,
                len(result.value.exercises),
                max_items,
            )

        self.context.store.complete_step(
            session.session_id,
            step.step_id,
            output=PlanningStepOutput(result=plan),
            tokens_used=result.tokens_used,
        )
        self.advance(attempt, SessionStep.AWAITING_APPROVAL, plan=plan)
        return StageOutcome.COMPLETED


class GenerationStage(Stage):
    step_type = StepType.GENERATION

    def build_input(self, session: Session) -> GenerationStepInput:
        plan = _require_plan(session)
        _require_requirements(session)
        return GenerationStepInput(plan=plan)

    def execute(self, attempt: StageAttempt, step: Step) -> StageOutcome:
        session = attempt.session
        plan, requirements = _require_plan(session), _require_requirements(session)
        ai_client = self.context.ai_client
        ai_client.preflight(session.model)

        exercises: list[GeneratedExercise] = []
        errors: list[GenerationError] = []
        step_tokens = 0
        for item in plan.exercises:
            try:
                result = ai_client.generate_structured(
                    model=session.model,
                    prompt=build_generation_prompt(requirements=requirements, plan=plan, item=item),
                    schema=ExerciseDraft,
                )
            except Exception as exc:
                logger.warning(
                    "Generation of plan item %s failed for session %s",
                    item.id,
                    session.session_id,
                    exc_info=True,
                )
                attempt.tokens += _spent_tokens(exc)
                step_tokens += _spent_tokens(exc)
                errors.append(GenerationError(plan_item_id=item.id, error=_error_text(exc)))
                continue
            attempt.tokens += result.tokens_used
            step_tokens += result.tokens_used
            content = result.value.content
            if content.type != item.type:
                logger.warning(
                    "Plan item %s asked for %s but the model produced %s",
                    item.id,
                    item.type,
                    content.type,
                )
            exercises.append(
                GeneratedExercise(
                    plan_item_id=item.id,
                    content=content,
                    metadata=GeneratedExerciseMetadata(tokens_used=result.tokens_used),
                )
            )

        generation = GenerationResult(exercises=exercises, total_generated=len(exercises), errors=errors)
        generation.check_against_plan(plan)
        self.context.store.complete_step(
            session.session_id,
            step.step_id,
            output=GenerationStepOutput(result=generation),
            tokens_used=step_tokens,
        )
        logger.info(
            "Generated %d of %d exercise(s) for session %s",
            generation.total_generated,
            len(plan.exercises),
            session.session_id,
        )

        if generation.total_generated == 0 and self.context.settings.empty_generation_policy == "fail":
            self.advance(
                attempt,
                SessionStep.FAILED,
                error_message=f"No exercises were generated; all {len(errors)} plan item(s) failed",
            )
            return StageOutcome.FAILED
        self.advance(attempt, SessionStep.COMPLETED)
        return StageOutcome.COMPLETED
