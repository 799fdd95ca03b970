from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conftest import DOCUMENT, OWNER, PROMPT, make_plan, ready_response
from exercise_studio.canonical import fingerprint
from exercise_studio.exceptions import InvalidSessionStateError, SessionNotFoundError, StepStateError
from exercise_studio.models import (
    Session,
    SessionStep,
    StageJob,
    Step,
    StepStatus,
    StepType,
    ValidationStepInput,
    ValidationStepOutput,
)
from exercise_studio.state_store import SessionStore, owner_usage_key


def _create(store: SessionStore, **updates: object) -> Session:
    session = Session(document_ref=DOCUMENT, owner_id=OWNER, initial_prompt=PROMPT, model="gpt-4o-mini")
    return store.create_session(session.model_copy(update=updates))


def _validation_step(session: Session) -> Step:
    return Step(
        session_id=session.session_id,
        step_type=StepType.VALIDATION,
        input=ValidationStepInput(user_prompt=PROMPT),
    )


def test_create_and_read_session_round_trip(store: SessionStore) -> None:
    session = _create(store)

    loaded = store.read_session(session.session_id)

    assert loaded == session
    assert (store.root / "sessions" / session.session_id / "session.json").is_file()


def test_create_session_twice_is_rejected(store: SessionStore) -> None:
    session = _create(store)
    with pytest.raises(ValueError, match="already exists"):
        store.create_session(session)


@pytest.mark.parametrize("session_id", ["SES-unknown", "../escape", "a/b", ""])
def test_read_unknown_or_unsafe_session_raises_not_found(store: SessionStore, session_id: str) -> None:
    with pytest.raises(SessionNotFoundError):
        store.read_session(session_id)


def test_corrupt_session_file_raises_value_error(store: SessionStore) -> None:
    session = _create(store)
    store.session_path(session.session_id).write_text("", encoding="utf-8")
    with pytest.raises(ValueError, match="is empty"):
        store.read_session(session.session_id)


def test_transition_applies_update_and_bumps_timestamp(store: SessionStore) -> None:
    session = _create(store)
    requirements = ready_response().extracted_requirements

    def _set_requirements(current: Session) -> None:
        current.requirements = requirements

    updated = store.transition_session(
        session.session_id,
        expected=SessionStep.VALIDATING,
        target=SessionStep.PLANNING,
        update=_set_requirements,
    )

    assert updated.current_step == SessionStep.PLANNING
    assert updated.requirements == requirements
    assert updated.updated_at >= session.updated_at
    assert store.read_session(session.session_id) == updated


def test_transition_from_wrong_step_raises_without_mutation(store: SessionStore) -> None:
    session = _create(store)
    with pytest.raises(InvalidSessionStateError, match="Session not awaiting approval") as excinfo:
        store.transition_session(
            session.session_id,
            expected=SessionStep.AWAITING_APPROVAL,
            target=SessionStep.GENERATING,
            guard_message="Session not awaiting approval",
        )
    assert excinfo.value.details == {"current_step": "validating", "expected": "awaiting_approval"}
    assert store.read_session(session.session_id) == session


def test_illegal_transition_is_rejected(store: SessionStore) -> None:
    session = _create(store)
    with pytest.raises(ValueError, match="Illegal session transition"):
        store.transition_session(session.session_id, expected=SessionStep.VALIDATING, target=SessionStep.COMPLETED)


def test_update_that_breaks_invariants_is_not_written(store: SessionStore) -> None:
    session = _create(store)

    def _fail_without_message(current: Session) -> None:
        current.error_message = None

    with pytest.raises(ValueError):
        store.transition_session(
            session.session_id,
            expected=SessionStep.VALIDATING,
            target=SessionStep.FAILED,
            update=_fail_without_message,
        )
    assert store.read_session(session.session_id).current_step == SessionStep.VALIDATING


def test_tokens_cannot_decrease(store: SessionStore) -> None:
    session = _create(store, tokens_used=10)

    def _reset(current: Session) -> None:
        current.tokens_used = 5

    with pytest.raises(ValueError, match="cannot decrease"):
        store.transition_session(
            session.session_id,
            expected=SessionStep.VALIDATING,
            target=SessionStep.AWAITING_CLARIFICATION,
            update=_reset,
        )


def test_concurrent_transitions_let_exactly_one_caller_win(store: SessionStore) -> None:
    session = _create(store)
    store.transition_session(session.session_id, expected=SessionStep.VALIDATING, target=SessionStep.PLANNING)

    def _set_plan(current: Session) -> None:
        current.plan = make_plan(2)

    store.transition_session(
        session.session_id,
        expected=SessionStep.PLANNING,
        target=SessionStep.AWAITING_APPROVAL,
        update=_set_plan,
    )

    barrier = threading.Barrier(8)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def _approve() -> None:
        barrier.wait()
        try:
            store.transition_session(
                session.session_id,
                expected=SessionStep.AWAITING_APPROVAL,
                target=SessionStep.GENERATING,
            )
            outcome = "won"
        except InvalidSessionStateError:
            outcome = "lost"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_approve) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["lost"] * 7 + ["won"]
    assert store.read_session(session.session_id).current_step == SessionStep.GENERATING


def test_claim_job_is_single_use(store: SessionStore) -> None:
    session = Session(document_ref=DOCUMENT, owner_id=OWNER, initial_prompt=PROMPT, model="gpt-4o-mini")
    job = StageJob(session_id=session.session_id, stage=StepType.VALIDATION)
    store.create_session(session.model_copy(update={"scheduled_job": job}))

    claimed = store.claim_job(job)

    assert claimed is not None
    assert claimed.scheduled_job is None
    assert store.claim_job(job) is None
    assert store.claim_job(StageJob(session_id=session.session_id, stage=StepType.VALIDATION)) is None


def test_fail_session_records_message_and_tokens(store: SessionStore) -> None:
    session = _create(store, tokens_used=3)

    failed = store.fail_session(session.session_id, expected=SessionStep.VALIDATING, error_message="timeout", tokens=4)

    assert failed is not None
    assert failed.current_step == SessionStep.FAILED
    assert failed.error_message == "timeout"
    assert failed.tokens_used == 7


def test_fail_session_is_noop_once_session_moved_on(store: SessionStore) -> None:
    session = _create(store)
    store.transition_session(
        session.session_id,
        expected=SessionStep.VALIDATING,
        target=SessionStep.AWAITING_CLARIFICATION,
    )

    assert store.fail_session(session.session_id, expected=SessionStep.VALIDATING, error_message="late") is None
    assert store.read_session(session.session_id).current_step == SessionStep.AWAITING_CLARIFICATION


def test_steps_get_increasing_sequence_and_fingerprint(store: SessionStore) -> None:
    session = _create(store)

    first = store.create_step(_validation_step(session))
    second = store.create_step(_validation_step(session))

    assert (first.sequence, second.sequence) == (1, 2)
    assert first.input_fingerprint == fingerprint(first.input)
    assert first.input_fingerprint == second.input_fingerprint
    assert [step.step_id for step in store.read_steps(session.session_id)] == [first.step_id, second.step_id]


def test_finished_steps_are_immutable(store: SessionStore) -> None:
    session = _create(store)
    step = store.create_step(_validation_step(session))

    completed = store.complete_step(
        session.session_id,
        step.step_id,
        output=ValidationStepOutput(result=ready_response()),
        tokens_used=12,
    )

    assert completed.status == StepStatus.COMPLETED
    assert completed.completed_at is not None
    with pytest.raises(StepStateError):
        store.fail_step(session.session_id, step.step_id, error_message="late")
    with pytest.raises(StepStateError):
        store.complete_step(
            session.session_id,
            step.step_id,
            output=ValidationStepOutput(result=ready_response()),
            tokens_used=1,
        )
    assert store.read_step(session.session_id, step.step_id) == completed


def test_failed_step_keeps_no_output(store: SessionStore) -> None:
    session = _create(store)
    step = store.create_step(_validation_step(session))

    failed = store.fail_step(session.session_id, step.step_id, error_message="schema mismatch")

    assert failed.status == StepStatus.FAILED
    assert failed.output is None
    assert failed.error_message == "schema mismatch"


def test_create_step_rejects_finished_steps(store: SessionStore) -> None:
    session = _create(store)
    step = _validation_step(session).model_copy(update={"status": StepStatus.FAILED})
    with pytest.raises(StepStateError):
        store.create_step(step)


def test_create_step_for_unknown_session_raises(store: SessionStore) -> None:
    orphan = Step(
        session_id="SES-ghost",
        step_type=StepType.VALIDATION,
        input=ValidationStepInput(user_prompt=PROMPT),
    )
    with pytest.raises(SessionNotFoundError):
        store.create_step(orphan)


def test_snapshot_returns_session_and_ordered_steps(store: SessionStore) -> None:
    session = _create(store)
    steps = [store.create_step(_validation_step(session)) for _ in range(3)]

    snapshot_session, snapshot_steps = store.snapshot(session.session_id)

    assert snapshot_session == session
    assert [step.sequence for step in snapshot_steps] == [step.sequence for step in steps]


def test_list_sessions_filters_by_owner_and_document(store: SessionStore) -> None:
    mine = _create(store)
    other_doc = _create(store, document_ref="doc-2")
    theirs = _create(store, owner_id="teacher-2")

    assert [s.session_id for s in store.list_sessions(owner_id=OWNER)] == [mine.session_id, other_doc.session_id]
    assert [s.session_id for s in store.list_sessions(document_ref="doc-2")] == [other_doc.session_id]
    assert {s.session_id for s in store.list_sessions()} == {mine.session_id, other_doc.session_id, theirs.session_id}


def test_owner_usage_accumulates(store: SessionStore) -> None:
    assert store.read_owner_usage(OWNER).tokens_used == 0

    store.add_owner_tokens(OWNER, 30)
    usage = store.add_owner_tokens(OWNER, 12)

    assert usage.tokens_used == 42
    assert store.read_owner_usage(OWNER).tokens_used == 42
    with pytest.raises(ValueError):
        store.add_owner_tokens(OWNER, -1)


def test_owner_usage_key_is_a_digest_of_the_exact_id() -> None:
    assert owner_usage_key("Jörg") == fingerprint("Jörg")
    assert owner_usage_key("Jörg") != owner_usage_key("J-rg")
    assert owner_usage_key("../../root").isalnum()
    with pytest.raises(ValueError):
        owner_usage_key("   ")


def test_owner_usage_keeps_similar_and_non_ascii_owners_apart(store: SessionStore) -> None:
    store.add_owner_tokens("Jörg", 100)
    store.add_owner_tokens("J-rg", 50)
    store.add_owner_tokens("李雷", 7)

    assert store.read_owner_usage("Jörg").model_dump(include={"owner_id", "tokens_used"}) == {
        "owner_id": "Jörg",
        "tokens_used": 100,
    }
    assert store.read_owner_usage("J-rg").tokens_used == 50
    assert store.read_owner_usage("李雷").owner_id == "李雷"
    assert store.read_owner_usage("李雷").tokens_used == 7
    assert len(list(store.usage_dir.glob("*.json"))) == 3


def test_store_creates_its_layout(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "fresh")
    assert (tmp_path / "fresh" / "sessions").is_dir()
    assert (tmp_path / "fresh" / "usage").is_dir()
    assert store.list_sessions() == []
