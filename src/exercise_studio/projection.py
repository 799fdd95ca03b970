from __future__ import annotations

from .models import (
    ExercisePlan,
    GenerationResult,
    GenerationStepOutput,
    PlanningStepOutput,
    Session,
    SessionProjection,
    Step,
    StepStatus,
    StepType,
    ValidationResponse,
    ValidationStepOutput,
)


def latest_completed_steps(steps: list[Step]) -> dict[StepType, Step]:
    """Return the highest-sequence completed step for each step type."""
    latest: dict[StepType, Step] = {}
    for step in steps:
        if step.status != StepStatus.COMPLETED:
            continue
        current = latest.get(step.step_type)
        if current is None or step.sequence > current.sequence:
            latest[step.step_type] = step
    return latest


def build_projection(session: Session, steps: list[Step]) -> SessionProjection:
    """Assemble the observer view of a session from one consistent snapshot.

    Failed and in-flight steps are listed in ``steps`` but never surface as a
    typed result; a re-run that completes supersedes earlier results of the
    same type.
    """
    validation_result: ValidationResponse | None = None
    plan_result: ExercisePlan | None = None
    generation_result: GenerationResult | None = None

    for step in latest_completed_steps(steps).values():
        output = step.output
        if isinstance(output, ValidationStepOutput):
            validation_result = output.result
        elif isinstance(output, PlanningStepOutput):
            plan_result = output.result
        elif isinstance(output, GenerationStepOutput):
            generation_result = output.result
        else:
            raise TypeError(f"Unhandled step output {type(output).__name__} on step {step.step_id}")

    return SessionProjection(
        session=session,
        steps=sorted(steps, key=lambda step: step.sequence),
        validation_result=validation_result,
        plan_result=plan_result,
        generation_result=generation_result,
    )
