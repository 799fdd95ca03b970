from importlib.metadata import PackageNotFoundError, version

from .access import AccessPolicy, AllowAllAccess, StaticAccessPolicy
from .exceptions import (
    AccessDeniedError,
    ExerciseStudioError,
    InvalidSessionStateError,
    SessionNotFoundError,
    StagePreconditionError,
    StepStateError,
)
from .llm import AIClient, LangChainStructuredClient, StructuredResult
from .model_selection import ModelSelection, normalize_model_id
from .models import (
    ActionResult,
    ClarificationQuestion,
    ClarificationRound,
    ExerciseDraft,
    ExercisePlan,
    ExercisePlanItem,
    GeneratedExercise,
    GenerationError,
    GenerationResult,
    OwnerUsage,
    Requirements,
    Session,
    SessionProjection,
    SessionStep,
    StageJob,
    StartSessionResult,
    Step,
    StepStatus,
    StepType,
    ValidationResponse,
)
from .projection import build_projection
from .scheduler import ManualScheduler, StageScheduler, WorkQueueScheduler
from .settings import RuntimeSettings
from .stages import StageOutcome
from .state_store import SessionStore
from .workflow import ExerciseWorkflow


def get_version() -> str:
    try:
        return version("exercise-studio")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AIClient",
    "AccessDeniedError",
    "AccessPolicy",
    "ActionResult",
    "AllowAllAccess",
    "ClarificationQuestion",
    "ClarificationRound",
    "ExerciseDraft",
    "ExercisePlan",
    "ExercisePlanItem",
    "ExerciseStudioError",
    "ExerciseWorkflow",
    "GeneratedExercise",
    "GenerationError",
    "GenerationResult",
    "InvalidSessionStateError",
    "LangChainStructuredClient",
    "ManualScheduler",
    "ModelSelection",
    "OwnerUsage",
    "Requirements",
    "RuntimeSettings",
    "Session",
    "SessionNotFoundError",
    "SessionProjection",
    "SessionStep",
    "SessionStore",
    "StageJob",
    "StageOutcome",
    "StagePreconditionError",
    "StageScheduler",
    "StartSessionResult",
    "StaticAccessPolicy",
    "Step",
    "StepStateError",
    "StepStatus",
    "StepType",
    "StructuredResult",
    "ValidationResponse",
    "WorkQueueScheduler",
    "build_projection",
    "get_version",
    "normalize_model_id",
]
