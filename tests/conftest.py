from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from pydantic import BaseModel

from exercise_studio.llm import StructuredResult
from exercise_studio.models import (
    ClarificationQuestion,
    ExerciseDraft,
    ExercisePlan,
    ExercisePlanItem,
    Requirements,
    ValidationResponse,
)
from exercise_studio.scheduler import ManualScheduler
from exercise_studio.settings import RuntimeSettings
from exercise_studio.state_store import SessionStore
from exercise_studio.workflow import ExerciseWorkflow

OWNER = "teacher-1"
DOCUMENT = "doc-1"
PROMPT = "5 B1 German exercises about food"


class FakeAIClient:
    """Scripted AIClient: responses are queued per schema and consumed in order.

    A queued exception is raised instead of returned. Calls with nothing
    queued raise, which the stages record as a failure.
    """

    def __init__(self) -> None:
        self._responses: dict[type, deque[tuple[Any, int]]] = defaultdict(deque)
        self.calls: list[dict[str, Any]] = []
        self.preflight_calls: list[str] = []
        self.preflight_error: Exception | None = None

    def queue(self, schema: type[BaseModel], *responses: Any, tokens: int = 0) -> None:
        for response in responses:
            self._responses[schema].append((response, tokens))

    def pending(self, schema: type[BaseModel]) -> int:
        return len(self._responses[schema])

    def calls_for(self, schema: type[BaseModel]) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["schema"] is schema]

    def preflight(self, model: str) -> None:
        self.preflight_calls.append(model)
        if self.preflight_error is not None:
            raise self.preflight_error

    def generate_structured(self, *, model: str, prompt: str, schema: type[BaseModel]) -> StructuredResult:
        self.calls.append({"model": model, "prompt": prompt, "schema": schema})
        if not self._responses[schema]:
            raise RuntimeError(f"no scripted response for {schema.__name__}")
        response, tokens = self._responses[schema].popleft()
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            response = schema.model_validate(response)
        return StructuredResult(value=response, tokens_used=tokens)


def make_requirements() -> Requirements:
    return Requirements(
        target_language="German",
        level="B1",
        native_language="English",
        topic="food",
        duration=45,
        exercise_types=["multiple-choice", "fill-blanks"],
    )


def ready_response() -> ValidationResponse:
    return ValidationResponse(status="ready", extracted_requirements=make_requirements(), reasoning="complete")


def clarification_response() -> ValidationResponse:
    return ValidationResponse(
        status="needs_clarification",
        extracted_requirements=Requirements(target_language="German", topic="food"),
        clarification_needed=[
            ClarificationQuestion(
                id="level",
                question="Which CEFR level are your students?",
                type="select",
                options=["A1", "A2", "B1", "B2", "C1", "C2"],
            )
        ],
        missing_fields=["level", "exercise_types"],
    )


def make_plan(size: int = 3) -> ExercisePlan:
    return ExercisePlan(
        exercises=[
            ExercisePlanItem(
                id=f"ex-{index}",
                type="multiple-choice",
                title=f"Food vocabulary {index}",
                description="Pick the right word",
                estimated_duration=5,
            )
            for index in range(1, size + 1)
        ],
        total_duration=5 * size,
        learning_objectives=["Name common foods"],
    )


def make_draft(title: str = "Im Restaurant") -> ExerciseDraft:
    return ExerciseDraft.model_validate(
        {
            "content": {
                "type": "multiple-choice",
                "title": title,
                "instructions": "Choose the correct answer.",
                "questions": [
                    {
                        "id": "q1",
                        "question": "Was isst man zum Frühstück?",
                        "options": [{"id": "a", "text": "Brot"}, {"id": "b", "text": "Schuh"}],
                        "correct_answer": "a",
                    }
                ],
            }
        }
    )


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(state_store_root=str(tmp_path / "store")).normalized()


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "store")


@pytest.fixture
def ai_client() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def make_workflow(
    store: SessionStore,
    ai_client: FakeAIClient,
    scheduler: ManualScheduler,
    settings: RuntimeSettings,
) -> Callable[..., ExerciseWorkflow]:
    def _make(**overrides: Any) -> ExerciseWorkflow:
        options: dict[str, Any] = {
            "store": store,
            "ai_client": ai_client,
            "scheduler": scheduler,
            "settings": settings,
        }
        options.update(overrides)
        return ExerciseWorkflow(**options)

    return _make


@pytest.fixture
def workflow(make_workflow: Callable[..., ExerciseWorkflow]) -> ExerciseWorkflow:
    return make_workflow()


@pytest.fixture
def session_awaiting_approval(
    workflow: ExerciseWorkflow,
    ai_client: FakeAIClient,
    scheduler: ManualScheduler,
) -> str:
    """A session driven through validation and planning with a three-item plan."""
    ai_client.queue(ValidationResponse, ready_response(), tokens=100)
    ai_client.queue(ExercisePlan, make_plan(3), tokens=200)
    session_id = workflow.start_session(DOCUMENT, PROMPT, caller_id=OWNER).session_id
    scheduler.run_pending()
    return session_id
