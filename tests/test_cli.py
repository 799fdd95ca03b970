from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from conftest import OWNER, PROMPT, FakeAIClient, make_draft, make_plan, ready_response
from exercise_studio import __main__ as cli
from exercise_studio.models import ExerciseDraft, ExercisePlan, ValidationResponse
from exercise_studio.state_store import SessionStore


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> FakeAIClient:
    client = FakeAIClient()

    class _ClientFactory:
        @classmethod
        def from_settings(cls, settings: Any, *, repo_root: Path | None = None) -> FakeAIClient:
            return client

    monkeypatch.setattr("exercise_studio.workflow.LangChainStructuredClient", _ClientFactory)
    return client


@pytest.fixture
def run_cli(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    def _run(*args: str) -> tuple[int, str]:
        code = cli.main(["--state-store-root", str(tmp_path / "store"), "--caller-id", OWNER, *args])
        return code, capsys.readouterr().out

    return _run


def test_start_defer_then_show(run_cli, fake_client: FakeAIClient) -> None:
    code, out = run_cli("start", "--document", "doc-1", "--prompt", PROMPT, "--defer")
    assert code == 0
    started = json.loads(out)
    assert started["session"]["current_step"] == "validating"
    assert fake_client.calls == []

    code, out = run_cli("show", started["session"]["session_id"])
    assert code == 0
    assert json.loads(out)["session"]["initial_prompt"] == PROMPT


def test_full_flow_through_cli(run_cli, fake_client: FakeAIClient) -> None:
    fake_client.queue(ValidationResponse, ready_response(), tokens=11)
    fake_client.queue(ExercisePlan, make_plan(2), tokens=22)
    fake_client.queue(ExerciseDraft, make_draft(), make_draft(), tokens=5)

    code, out = run_cli("start", "--document", "doc-1", "--prompt", PROMPT)
    assert code == 0
    projection = json.loads(out)
    assert projection["session"]["current_step"] == "awaiting_approval"
    assert len(projection["plan_result"]["exercises"]) == 2
    session_id = projection["session"]["session_id"]

    code, out = run_cli("approve", session_id)
    assert code == 0
    projection = json.loads(out)
    assert projection["session"]["current_step"] == "completed"
    assert projection["generation_result"]["total_generated"] == 2

    code, out = run_cli("usage")
    assert code == 0
    assert json.loads(out)["tokens_used"] == 11 + 22 + 5 + 5


def test_worker_once_runs_deferred_sessions(run_cli, fake_client: FakeAIClient) -> None:
    fake_client.queue(ValidationResponse, ready_response())
    fake_client.queue(ExercisePlan, make_plan(1))
    _, out = run_cli("start", "--document", "doc-1", "--prompt", PROMPT, "--defer")
    session_id = json.loads(out)["session"]["session_id"]

    assert run_cli("worker", "--once")[0] == 0

    code, out = run_cli("show", session_id)
    assert json.loads(out)["session"]["current_step"] == "awaiting_approval"


def test_guard_violation_exits_non_zero(run_cli, fake_client: FakeAIClient) -> None:
    _, out = run_cli("start", "--document", "doc-1", "--prompt", PROMPT, "--defer")
    session_id = json.loads(out)["session"]["session_id"]

    code, out = run_cli("approve", session_id)

    assert code == 1
    assert out == ""


def test_unknown_session_exits_non_zero(run_cli, fake_client: FakeAIClient) -> None:
    assert run_cli("show", "SES-nope") == (1, "")


def test_list_prints_owned_sessions(run_cli, fake_client: FakeAIClient) -> None:
    _, out = run_cli("start", "--document", "doc-1", "--prompt", PROMPT, "--defer")
    session_id = json.loads(out)["session"]["session_id"]

    code, out = run_cli("list", "--document", "doc-1")

    assert code == 0
    assert out.split("\t")[:2] == [session_id, "validating"]


def test_start_reads_prompt_file(run_cli, fake_client: FakeAIClient, tmp_path: Path) -> None:
    prompt_file = tmp_path / "request.md"
    prompt_file.write_text(PROMPT, encoding="utf-8")

    code, out = run_cli("start", "--document", "doc-1", "--prompt-file", str(prompt_file), "--defer")

    assert code == 0
    assert json.loads(out)["session"]["initial_prompt"] == PROMPT
    assert run_cli("start", "--document", "doc-1", "--prompt-file", str(tmp_path / "missing.md"))[0] == 1


def test_parse_answers_merges_pairs_and_json() -> None:
    answers = cli.parse_answers(
        ["level=B1", "exercise_types=true-false", "exercise_types=sequencing"],
        '{"topic": "food"}',
    )
    assert answers == {"topic": "food", "level": "B1", "exercise_types": ["true-false", "sequencing"]}


@pytest.mark.parametrize(
    ("pairs", "answers_json"),
    [([], None), (["level"], None), (["=B1"], None), ([], "[1, 2]"), ([], "{not json")],
)
def test_parse_answers_rejects_bad_input(pairs: list[str], answers_json: str | None) -> None:
    with pytest.raises(ValueError):
        cli.parse_answers(pairs, answers_json)


def test_stalled_sessions_are_failed_by_command_and_worker(
    run_cli,
    fake_client: FakeAIClient,
    tmp_path: Path,
) -> None:
    store = SessionStore(tmp_path / "store")
    session_ids = []
    for _ in range(2):
        _, out = run_cli("start", "--document", "doc-1", "--prompt", PROMPT, "--defer")
        session_ids.append(json.loads(out)["session"]["session_id"])

    assert run_cli("fail-stalled", session_ids[0]) == (1, "")
    for session_id in session_ids:
        job = store.read_session(session_id).scheduled_job
        assert job is not None and store.claim_job(job) is not None

    code, out = run_cli("fail-stalled", session_ids[0])
    assert code == 0
    assert json.loads(out)["session"]["current_step"] == "failed"

    assert run_cli("worker", "--once", "--stalled-after", "0")[0] == 0
    assert store.read_session(session_ids[1]).error_message == "validating stage stopped before finishing"
    assert fake_client.calls == []
