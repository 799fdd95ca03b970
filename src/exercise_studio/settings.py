from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

EMPTY_GENERATION_POLICIES = frozenset({"complete", "fail"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    default_model: str = "gpt-4o-mini"
    allowed_models: tuple[str, ...] = ()
    ai_timeout_seconds: int = 120
    ai_max_retries: int = 2
    temperature: float = 0.4
    max_plan_items: int = 12
    worker_count: int = 1
    stall_timeout_seconds: int = 3_600
    empty_generation_policy: str = "complete"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("EXERCISE_STATE_STORE_ROOT", "state_store"),
            default_model=os.getenv("EXERCISE_DEFAULT_MODEL", "gpt-4o-mini"),
            allowed_models=_get_env_list("EXERCISE_ALLOWED_MODELS"),
            ai_timeout_seconds=_get_env_int("EXERCISE_AI_TIMEOUT", default=120, minimum=1, maximum=3_600),
            ai_max_retries=_get_env_int("EXERCISE_AI_MAX_RETRIES", default=2, minimum=0, maximum=10),
            temperature=_get_env_float("EXERCISE_TEMPERATURE", default=0.4, minimum=0.0, maximum=2.0),
            max_plan_items=_get_env_int("EXERCISE_MAX_PLAN_ITEMS", default=12, minimum=1, maximum=100),
            worker_count=_get_env_int("EXERCISE_WORKER_COUNT", default=1, minimum=1, maximum=64),
            stall_timeout_seconds=_get_env_int(
                "EXERCISE_STALL_TIMEOUT", default=3_600, minimum=1, maximum=7 * 24 * 3_600
            ),
            empty_generation_policy=os.getenv("EXERCISE_EMPTY_GENERATION_POLICY", "complete"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        default_model = self.default_model.strip()
        if not default_model:
            raise ValueError("EXERCISE_DEFAULT_MODEL must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("EXERCISE_STATE_STORE_ROOT must be non-empty")

        policy = self.empty_generation_policy.strip().lower()
        if policy not in EMPTY_GENERATION_POLICIES:
            raise ValueError(
                "EXERCISE_EMPTY_GENERATION_POLICY must be one of: " + ", ".join(sorted(EMPTY_GENERATION_POLICIES))
            )
        return RuntimeSettings(
            state_store_root=self.state_store_root,
            default_model=default_model,
            allowed_models=tuple(model.strip() for model in self.allowed_models if model.strip()),
            ai_timeout_seconds=self.ai_timeout_seconds,
            ai_max_retries=self.ai_max_retries,
            temperature=self.temperature,
            max_plan_items=self.max_plan_items,
            worker_count=self.worker_count,
            stall_timeout_seconds=self.stall_timeout_seconds,
            empty_generation_policy=policy,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Read an inclusive-bounded integer, returning ``default`` when the variable is unset."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}, got: {parsed}")
    return parsed


def _get_env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())
