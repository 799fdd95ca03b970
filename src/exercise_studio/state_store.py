from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .canonical import fingerprint
from .exceptions import InvalidSessionStateError, SessionNotFoundError, StepStateError
from .models import (
    SESSION_STEP_TRANSITIONS,
    OwnerUsage,
    Session,
    SessionStep,
    StageJob,
    Step,
    StepOutput,
    StepStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_RECORD_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")

SessionUpdate = Callable[[Session], None]


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def owner_usage_key(owner_id: str) -> str:
    """Return the ledger file stem for ``owner_id``.

    The stem is a digest of the exact id, so any owner id maps to a safe
    file name and distinct ids never share a ledger.

    Raises:
        ValueError: If the owner ID is empty.
    """
    if not owner_id.strip():
        raise ValueError("owner_id must be non-empty")
    return fingerprint(owner_id)


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------


class SessionStore:
    """Filesystem store for generation sessions and their step history.

    Every session lives in its own directory. The session record and all
    of its step records are written under one exclusive ``fcntl`` lock on
    the session file, so a transition is a compare-and-swap on
    ``current_step`` and a snapshot sees the session and its steps at the
    same instant. Writes go through temp-file-then-rename.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.sessions_dir = self.root / "sessions"
        self.usage_dir = self.root / "usage"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.sessions_dir, self.usage_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def session_dir(self, session_id: str) -> Path:
        if not _RECORD_ID_RE.match(session_id):
            raise SessionNotFoundError(session_id)
        return self.sessions_dir / session_id

    def session_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "session.json"

    def steps_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "steps"

    def _step_path(self, session_id: str, step_id: str) -> Path:
        if not _RECORD_ID_RE.match(step_id):
            raise ValueError(f"invalid step id: {step_id!r}")
        return self.steps_dir(session_id) / f"{step_id}.json"

    def _require_session_file(self, session_id: str) -> Path:
        path = self.session_path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(session_id)
        return path

    # ------------------------------------------------------------------
    # Unlocked readers (callers hold the session lock or accept a racy read)
    # ------------------------------------------------------------------

    def _load_session(self, session_id: str) -> Session:
        path = self.session_path(session_id)
        try:
            text = _safe_read_json(path, "session")
        except FileNotFoundError as exc:
            raise SessionNotFoundError(session_id) from exc
        try:
            return Session.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"session at {path} failed validation: {exc}") from exc

    def _write_session(self, session: Session) -> None:
        text = session.model_dump_json(indent=2)
        # Round-trip so model validators run on the mutated record before it lands on disk.
        Session.model_validate_json(text)
        _atomic_write_text(self.session_path(session.session_id), text)

    def _load_step(self, session_id: str, step_id: str) -> Step:
        path = self._step_path(session_id, step_id)
        text = _safe_read_json(path, "step")
        try:
            return Step.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"step at {path} failed validation: {exc}") from exc

    def _load_steps(self, session_id: str) -> list[Step]:
        steps_dir = self.steps_dir(session_id)
        if not steps_dir.is_dir():
            return []
        steps = [self._load_step(session_id, path.stem) for path in steps_dir.glob("*.json")]
        return sorted(steps, key=lambda step: step.sequence)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        """Persist a new session.

        Raises:
            ValueError: If a session with this ID already exists.
        """
        path = self.session_path(session.session_id)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"Session already exists: {session.session_id}")
            self._write_session(session)
        logger.info("Created session %s at %s", session.session_id, session.current_step.value)
        return session

    def read_session(self, session_id: str) -> Session:
        """Read a session by ID.

        Raises:
            SessionNotFoundError: If the session does not exist.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self._require_session_file(session_id)
        with _locked_file(path):
            return self._load_session(session_id)

    def list_sessions(self, *, owner_id: str | None = None, document_ref: str | None = None) -> list[Session]:
        """Return sessions ordered by creation time, optionally filtered by owner and document."""
        sessions: list[Session] = []
        for path in self.sessions_dir.glob("*/session.json"):
            session = self.read_session(path.parent.name)
            if owner_id is not None and session.owner_id != owner_id:
                continue
            if document_ref is not None and session.document_ref != document_ref:
                continue
            sessions.append(session)
        return sorted(sessions, key=lambda session: (session.created_at, session.session_id))

    def transition_session(
        self,
        session_id: str,
        *,
        expected: SessionStep,
        target: SessionStep,
        update: SessionUpdate | None = None,
        guard_message: str | None = None,
    ) -> Session:
        """Move a session from ``expected`` to ``target`` under an exclusive lock.

        The read-check-write is atomic with respect to every other writer of
        this session, so two concurrent callers of the same transition cannot
        both succeed.

        Args:
            session_id: The session identifier.
            expected: The step the session must currently be at.
            target: The step to move to.
            update: Optional callback applying further changes to the session copy.
            guard_message: Error message used when the session is not at ``expected``.

        Returns:
            The updated Session.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidSessionStateError: If the session is not at ``expected``.
            ValueError: If ``expected -> target`` is not a legal transition.
        """
        if target not in SESSION_STEP_TRANSITIONS[expected]:
            raise ValueError(f"Illegal session transition: {expected.value} -> {target.value}")
        path = self._require_session_file(session_id)
        with _locked_file(path):
            session = self._load_session(session_id)
            if session.current_step != expected:
                raise InvalidSessionStateError(
                    guard_message
                    or f"Session {session_id} is {session.current_step.value}, expected {expected.value}",
                    details={"current_step": session.current_step.value, "expected": expected.value},
                )
            updated = session.model_copy(deep=True)
            if update is not None:
                update(updated)
            if updated.tokens_used < session.tokens_used:
                raise ValueError(f"tokens_used for session {session_id} cannot decrease")
            updated.current_step = target
            updated.updated_at = utc_now()
            self._write_session(updated)
        logger.info("Session %s: %s -> %s", session_id, expected.value, target.value)
        return updated

    def claim_job(self, job: StageJob) -> Session | None:
        """Claim a scheduled stage job for execution.

        Succeeds only while the session is still at the job's step and still
        holds this exact job. Returns ``None`` for a stale or duplicate
        delivery, leaving the session untouched.
        """
        path = self._require_session_file(job.session_id)
        with _locked_file(path):
            session = self._load_session(job.session_id)
            scheduled = session.scheduled_job
            if session.current_step != job.expected_step or scheduled is None or scheduled.job_id != job.job_id:
                return None
            claimed = session.model_copy(update={"scheduled_job": None, "updated_at": utc_now()})
            self._write_session(claimed)
        return claimed

    def fail_session(
        self,
        session_id: str,
        *,
        expected: SessionStep,
        error_message: str,
        tokens: int = 0,
    ) -> Session | None:
        """Move a session at ``expected`` to ``failed``, adding any uncommitted tokens.

        Returns ``None`` if the session already left ``expected``; the stage
        that wanted to fail it no longer owns it.
        """
        if tokens < 0:
            raise ValueError("tokens must be non-negative")
        message = error_message.strip() or "Unknown error"

        def _set_error(session: Session) -> None:
            session.error_message = message
            session.scheduled_job = None
            session.tokens_used += tokens

        try:
            return self.transition_session(session_id, expected=expected, target=SessionStep.FAILED, update=_set_error)
        except InvalidSessionStateError:
            logger.warning("Session %s left %s before it could be failed: %s", session_id, expected.value, message)
            return None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def create_step(self, step: Step) -> Step:
        """Append a step to its session's history.

        Assigns the next per-session sequence number and the input fingerprint.

        Raises:
            SessionNotFoundError: If the owning session does not exist.
            StepStateError: If the step is already finished.
        """
        if step.status.is_final:
            raise StepStateError(f"Cannot create step {step.step_id} in final status {step.status.value}")
        path = self._require_session_file(step.session_id)
        with _locked_file(path):
            existing = self._load_steps(step.session_id)
            sequence = existing[-1].sequence + 1 if existing else 1
            stored = step.model_copy(update={"sequence": sequence, "input_fingerprint": fingerprint(step.input)})
            step_path = self._step_path(step.session_id, stored.step_id)
            if step_path.exists():
                raise ValueError(f"Step already exists: {stored.step_id}")
            _atomic_write_text(step_path, stored.model_dump_json(indent=2))
        return stored

    def _finish_step(self, session_id: str, step_id: str, finish: Callable[[Step], Step]) -> Step:
        path = self._require_session_file(session_id)
        with _locked_file(path):
            step = self._load_step(session_id, step_id)
            if step.status.is_final:
                raise StepStateError(f"Step {step_id} is already {step.status.value} and cannot change")
            finished = finish(step)
            text = finished.model_dump_json(indent=2)
            Step.model_validate_json(text)
            _atomic_write_text(self._step_path(session_id, step_id), text)
        return finished

    def complete_step(self, session_id: str, step_id: str, *, output: StepOutput, tokens_used: int | None) -> Step:
        """Mark a processing step completed with its output.

        Raises:
            StepStateError: If the step already finished.
        """
        return self._finish_step(
            session_id,
            step_id,
            lambda step: step.model_copy(
                update={
                    "status": StepStatus.COMPLETED,
                    "output": output,
                    "tokens_used": tokens_used,
                    "completed_at": utc_now(),
                }
            ),
        )

    def fail_step(self, session_id: str, step_id: str, *, error_message: str) -> Step:
        """Mark a processing step failed; it keeps no output.

        Raises:
            StepStateError: If the step already finished.
        """
        return self._finish_step(
            session_id,
            step_id,
            lambda step: step.model_copy(
                update={
                    "status": StepStatus.FAILED,
                    "error_message": error_message,
                    "completed_at": utc_now(),
                }
            ),
        )

    def read_step(self, session_id: str, step_id: str) -> Step:
        path = self._require_session_file(session_id)
        with _locked_file(path):
            return self._load_step(session_id, step_id)

    def read_steps(self, session_id: str) -> list[Step]:
        """Return all steps of a session ordered by sequence."""
        path = self._require_session_file(session_id)
        with _locked_file(path):
            return self._load_steps(session_id)

    def snapshot(self, session_id: str) -> tuple[Session, list[Step]]:
        """Read a session and all of its steps in one consistent read."""
        path = self._require_session_file(session_id)
        with _locked_file(path):
            return self._load_session(session_id), self._load_steps(session_id)

    # ------------------------------------------------------------------
    # Owner token usage
    # ------------------------------------------------------------------

    def _usage_path(self, owner_id: str) -> Path:
        return self.usage_dir / f"{owner_usage_key(owner_id)}.json"

    def add_owner_tokens(self, owner_id: str, tokens: int) -> OwnerUsage:
        """Add ``tokens`` to the owner's running AI token total."""
        if tokens < 0:
            raise ValueError("tokens must be non-negative")
        path = self._usage_path(owner_id)
        with _locked_file(path):
            usage = self._load_usage(path, owner_id)
            updated = OwnerUsage(owner_id=owner_id, tokens_used=usage.tokens_used + tokens, updated_at=utc_now())
            _atomic_write_text(path, updated.model_dump_json(indent=2))
        return updated

    def read_owner_usage(self, owner_id: str) -> OwnerUsage:
        path = self._usage_path(owner_id)
        with _locked_file(path):
            return self._load_usage(path, owner_id)

    @staticmethod
    def _load_usage(path: Path, owner_id: str) -> OwnerUsage:
        if not path.is_file():
            return OwnerUsage(owner_id=owner_id)
        text = _safe_read_json(path, "owner usage")
        try:
            return OwnerUsage.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"owner usage at {path} failed validation: {exc}") from exc
