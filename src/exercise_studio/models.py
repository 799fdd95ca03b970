from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


class SessionStep(str, Enum):
    VALIDATING = "validating"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SESSION_STEPS


TERMINAL_SESSION_STEPS: frozenset[SessionStep] = frozenset({SessionStep.COMPLETED, SessionStep.FAILED})

# Steps during which a stage job is expected to be running or queued.
RUNNING_SESSION_STEPS: frozenset[SessionStep] = frozenset(
    {SessionStep.VALIDATING, SessionStep.PLANNING, SessionStep.GENERATING}
)

SESSION_STEP_TRANSITIONS: dict[SessionStep, frozenset[SessionStep]] = {
    SessionStep.VALIDATING: frozenset(
        {SessionStep.AWAITING_CLARIFICATION, SessionStep.PLANNING, SessionStep.FAILED}
    ),
    SessionStep.AWAITING_CLARIFICATION: frozenset({SessionStep.VALIDATING}),
    SessionStep.PLANNING: frozenset({SessionStep.AWAITING_APPROVAL, SessionStep.FAILED}),
    SessionStep.AWAITING_APPROVAL: frozenset({SessionStep.GENERATING}),
    SessionStep.GENERATING: frozenset({SessionStep.COMPLETED, SessionStep.FAILED}),
    SessionStep.COMPLETED: frozenset(),
    SessionStep.FAILED: frozenset(),
}


class StepType(str, Enum):
    VALIDATION = "validation"
    PLANNING = "planning"
    GENERATION = "generation"


# Session step a stage of the given type runs under.
STAGE_SESSION_STEPS: dict[StepType, SessionStep] = {
    StepType.VALIDATION: SessionStep.VALIDATING,
    StepType.PLANNING: SessionStep.PLANNING,
    StepType.GENERATION: SessionStep.GENERATING,
}


class StepStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in {StepStatus.COMPLETED, StepStatus.FAILED}


class CefrLevel(str, Enum):
    A1 = "A1"
    A2 = "A2"
    B1 = "B1"
    B2 = "B2"
    C1 = "C1"
    C2 = "C2"


# ---------------------------------------------------------------------------
# Validation stage schemas
# ---------------------------------------------------------------------------


class ClarificationQuestion(BaseModel):
    """A question posed back to the teacher when the prompt is underspecified."""

    id: str
    question: str
    type: Literal["select", "text", "multiselect"]
    options: list[str] | None = None
    required: bool = True


class Requirements(BaseModel):
    """Requirements extracted from the teacher's prompt; every field may be missing."""

    target_language: str | None = None
    level: CefrLevel | None = None
    native_language: str | None = None
    topic: str | None = None
    duration: float | None = Field(default=None, ge=0, description="Lesson duration in minutes")
    exercise_types: list[str] | None = None
    additional_context: str | None = None

    def missing_fields(self) -> list[str]:
        required = ("target_language", "level", "exercise_types")
        return [name for name in required if not getattr(self, name)]


class ValidationResponse(BaseModel):
    status: Literal["ready", "needs_clarification"]
    extracted_requirements: Requirements = Field(default_factory=Requirements)
    clarification_needed: list[ClarificationQuestion] | None = None
    missing_fields: list[str] | None = None
    reasoning: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status == "ready"


class ClarificationRound(BaseModel):
    """One batch of answers given by the teacher, keyed by question id."""

    answers: dict[str, str | list[str]]
    answered_at: datetime = Field(default_factory=utc_now)

    @field_validator("answers")
    @classmethod
    def _answers_non_empty(cls, value: dict[str, str | list[str]]) -> dict[str, str | list[str]]:
        if not value:
            raise ValueError("answers must contain at least one entry")
        for question_id in value:
            if not question_id.strip():
                raise ValueError("answer keys must be non-empty question ids")
        return value


# ---------------------------------------------------------------------------
# Planning stage schemas
# ---------------------------------------------------------------------------


class ExercisePlanItem(BaseModel):
    id: str
    type: str
    title: str
    description: str
    estimated_duration: float | None = Field(default=None, ge=0)
    parameters: dict[str, Any] | None = None
    dependencies: list[str] | None = None


class PlanMetadata(BaseModel):
    difficulty: str | None = None
    estimated_completion_time: float | None = None


class ExercisePlan(BaseModel):
    """Ordered list of exercises to generate plus plan-level rationale."""

    exercises: list[ExercisePlanItem] = Field(min_length=1)
    total_duration: float | None = None
    sequence_rationale: str | None = None
    learning_objectives: list[str] | None = None
    metadata: PlanMetadata | None = None

    @model_validator(mode="after")
    def _check_item_ids(self) -> "ExercisePlan":
        seen: set[str] = set()
        for item in self.exercises:
            if not item.id.strip():
                raise ValueError("plan item ids must be non-empty")
            if item.id in seen:
                raise ValueError(f"duplicate plan item id {item.id}")
            if item.dependencies:
                dropped = [dep for dep in item.dependencies if dep not in seen]
                if dropped:
                    logger.warning("Dropping dependencies of plan item %s on non-earlier items: %s", item.id, dropped)
                    item.dependencies = [dep for dep in item.dependencies if dep in seen]
            seen.add(item.id)
        return self

    @property
    def item_ids(self) -> list[str]:
        return [item.id for item in self.exercises]

    def truncated(self, max_items: int) -> "ExercisePlan":
        """Return a copy keeping the first ``max_items`` items.

        Dependencies always point at earlier items, so a prefix never
        leaves a dangling reference.
        """
        if len(self.exercises) <= max_items:
            return self
        return self.model_copy(update={"exercises": list(self.exercises[:max_items])})


# ---------------------------------------------------------------------------
# Generation stage schemas
# ---------------------------------------------------------------------------


class MultipleChoiceOption(BaseModel):
    id: str
    text: str


class MultipleChoiceQuestion(BaseModel):
    id: str
    question: str
    options: list[MultipleChoiceOption]
    correct_answer: str = Field(description="Id of the correct option")
    explanation: str | None = None


class MultipleChoiceExercise(BaseModel):
    type: Literal["multiple-choice"]
    title: str
    instructions: str
    questions: list[MultipleChoiceQuestion]


class TrueFalseStatement(BaseModel):
    id: str
    statement: str
    correct_answer: bool
    explanation: str | None = None


class TrueFalseExercise(BaseModel):
    type: Literal["true-false"]
    title: str
    instructions: str
    statements: list[TrueFalseStatement]


class FillBlank(BaseModel):
    correct_answer: str
    alternative_answers: list[str] | None = None
    hint: str | None = None


class FillBlanksItem(BaseModel):
    id: str
    sentence: str = Field(description="Sentence containing unnumbered [[blank]] placeholders")
    blanks: list[FillBlank]


class FillBlanksExercise(BaseModel):
    type: Literal["fill-blanks"]
    title: str
    instructions: str
    items: list[FillBlanksItem]


class SequencingItem(BaseModel):
    id: str
    content: str
    correct_position: int = Field(ge=1)


class SequencingExercise(BaseModel):
    type: Literal["sequencing"]
    title: str
    instructions: str
    items: list[SequencingItem]
    context: str | None = None


class RubricPoint(BaseModel):
    criterion: str
    points: float


class ShortAnswerQuestion(BaseModel):
    id: str
    question: str
    expected_answer_guidelines: str | None = None
    rubric: list[RubricPoint] | None = None


class ShortAnswerExercise(BaseModel):
    type: Literal["short-answer"]
    title: str
    instructions: str
    questions: list[ShortAnswerQuestion]


class PassageMetadata(BaseModel):
    word_count: int | None = None
    reading_time: float | None = None
    source: str | None = None


class TextPassageExercise(BaseModel):
    type: Literal["text-passage"]
    title: str
    content: str
    metadata: PassageMetadata | None = None


class DiscussionPromptExercise(BaseModel):
    type: Literal["discussion-prompt"]
    title: str
    prompt: str
    guiding_questions: list[str] | None = None
    context: str | None = None


class WordCountTarget(BaseModel):
    min: int | None = None
    max: int | None = None


class WritingRubricCriterion(BaseModel):
    criterion: str
    description: str
    max_points: float


class _WritingExercise(BaseModel):
    title: str
    instructions: str
    prompt: str
    word_count_target: WordCountTarget | None = None
    rubric: list[WritingRubricCriterion] | None = None


class SummaryWritingExercise(_WritingExercise):
    type: Literal["summary-writing"]


class OpinionWritingExercise(_WritingExercise):
    type: Literal["opinion-writing"]


class DescriptionWritingExercise(_WritingExercise):
    type: Literal["description-writing"]


class SentenceCompletionExercise(_WritingExercise):
    type: Literal["sentence-completion"]


ExerciseContent = Annotated[
    Union[
        MultipleChoiceExercise,
        TrueFalseExercise,
        FillBlanksExercise,
        SequencingExercise,
        ShortAnswerExercise,
        TextPassageExercise,
        DiscussionPromptExercise,
        SummaryWritingExercise,
        OpinionWritingExercise,
        DescriptionWritingExercise,
        SentenceCompletionExercise,
    ],
    Field(discriminator="type"),
]


class ExerciseDraft(BaseModel):
    """Structured-output envelope for a single generated exercise."""

    content: ExerciseContent


class GeneratedExerciseMetadata(BaseModel):
    generated_at: datetime = Field(default_factory=utc_now)
    tokens_used: int | None = None


class GeneratedExercise(BaseModel):
    plan_item_id: str
    content: ExerciseContent
    metadata: GeneratedExerciseMetadata | None = None


class GenerationError(BaseModel):
    plan_item_id: str
    error: str


class GenerationResult(BaseModel):
    exercises: list[GeneratedExercise] = Field(default_factory=list)
    total_generated: int = 0
    errors: list[GenerationError] = Field(default_factory=list)

    @model_validator(mode="after")
    def _total_matches(self) -> "GenerationResult":
        if self.total_generated != len(self.exercises):
            raise ValueError(
                f"total_generated ({self.total_generated}) must equal the number of exercises ({len(self.exercises)})"
            )
        return self

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def check_against_plan(self, plan: ExercisePlan) -> None:
        known = set(plan.item_ids)
        for entry in [*self.exercises, *self.errors]:
            if entry.plan_item_id not in known:
                raise ValueError(f"generation entry references unknown plan item {entry.plan_item_id}")


# ---------------------------------------------------------------------------
# Step payloads (tagged by stage)
# ---------------------------------------------------------------------------


class ValidationStepInput(BaseModel):
    kind: Literal["validation"] = "validation"
    user_prompt: str
    previous_clarifications: list[ClarificationRound] | None = None


class PlanningStepInput(BaseModel):
    kind: Literal["planning"] = "planning"
    requirements: Requirements


class GenerationStepInput(BaseModel):
    kind: Literal["generation"] = "generation"
    plan: ExercisePlan


StepInput = Annotated[
    Union[ValidationStepInput, PlanningStepInput, GenerationStepInput],
    Field(discriminator="kind"),
]


class ValidationStepOutput(BaseModel):
    kind: Literal["validation"] = "validation"
    result: ValidationResponse


class PlanningStepOutput(BaseModel):
    kind: Literal["planning"] = "planning"
    result: ExercisePlan


class GenerationStepOutput(BaseModel):
    kind: Literal["generation"] = "generation"
    result: GenerationResult


StepOutput = Annotated[
    Union[ValidationStepOutput, PlanningStepOutput, GenerationStepOutput],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class StageJob(BaseModel):
    """A unit of scheduled work: run one stage for one session."""

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=lambda: f"JOB-{uuid.uuid4().hex[:12]}")
    session_id: str
    stage: StepType
    scheduled_at: datetime = Field(default_factory=utc_now)

    @property
    def expected_step(self) -> SessionStep:
        return STAGE_SESSION_STEPS[self.stage]


class Session(BaseModel):
    session_id: str = Field(default_factory=lambda: f"SES-{uuid.uuid4().hex[:16]}")
    document_ref: str
    owner_id: str
    initial_prompt: str
    model: str
    current_step: SessionStep = SessionStep.VALIDATING
    requirements: Requirements | None = None
    plan: ExercisePlan | None = None
    clarifications: list[ClarificationRound] = Field(default_factory=list)
    scheduled_job: StageJob | None = None
    tokens_used: int = Field(default=0, ge=0)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_consistency(self) -> "Session":
        if not self.initial_prompt.strip():
            raise ValueError("initial_prompt must be non-empty")
        if (self.current_step == SessionStep.FAILED) != (self.error_message is not None):
            raise ValueError("error_message must be set exactly when current_step is failed")
        if self.scheduled_job is not None:
            if self.scheduled_job.session_id != self.session_id:
                raise ValueError("scheduled_job belongs to a different session")
            if self.scheduled_job.expected_step != self.current_step:
                raise ValueError(
                    f"scheduled {self.scheduled_job.stage.value} job does not match step {self.current_step.value}"
                )
        return self


class Step(BaseModel):
    step_id: str = Field(default_factory=lambda: f"STEP-{uuid.uuid4().hex[:12]}")
    session_id: str
    sequence: int = Field(default=0, ge=0)
    step_type: StepType
    status: StepStatus = StepStatus.PROCESSING
    input: StepInput
    input_fingerprint: str | None = None
    output: StepOutput | None = None
    tokens_used: int | None = Field(default=None, ge=0)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _check_payloads(self) -> "Step":
        if self.input.kind != self.step_type.value:
            raise ValueError(f"{self.step_type.value} step cannot carry {self.input.kind} input")
        if self.output is not None:
            if self.status != StepStatus.COMPLETED:
                raise ValueError("output is only allowed on completed steps")
            if self.output.kind != self.step_type.value:
                raise ValueError(f"{self.step_type.value} step cannot carry {self.output.kind} output")
        elif self.status == StepStatus.COMPLETED:
            raise ValueError("completed steps must carry an output")
        return self


class OwnerUsage(BaseModel):
    owner_id: str
    tokens_used: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Entrypoint results
# ---------------------------------------------------------------------------


class StartSessionResult(BaseModel):
    session_id: str


class ActionResult(BaseModel):
    success: bool


class SessionProjection(BaseModel):
    """Read model for a live observer: session, its steps and the latest result per stage."""

    session: Session
    steps: list[Step]
    validation_result: ValidationResponse | None = None
    plan_result: ExercisePlan | None = None
    generation_result: GenerationResult | None = None
