from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .exceptions import StructuredOutputError
from .model_selection import normalize_model_id
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 2


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(frozen=True, slots=True)
class StructuredResult(Generic[ModelT]):
    """A validated structured-output object and the tokens the call consumed."""

    value: ModelT
    tokens_used: int = 0


class AIClient(Protocol):
    """Structured-generation call consumed by every stage.

    Implementations may raise on provider errors, timeouts or output that
    does not match ``schema``; stages treat any exception as a failure of
    the call. Unusable output should raise ``StructuredOutputError`` so the
    tokens the call spent are still counted.
    """

    def preflight(self, model: str) -> None:
        """Raise if calls for ``model`` cannot possibly succeed (bad model id, missing credentials)."""
        ...

    def generate_structured(self, *, model: str, prompt: str, schema: type[ModelT]) -> StructuredResult[ModelT]:
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Adapter that wraps a structured-output runnable and validates the response.

    The runnable is expected to be bound with ``include_raw=True`` so the
    provider message, and with it the token usage, is available alongside
    the parsed payload.
    """

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str) -> StructuredResult[ModelT]:
        """Invoke the LLM and return the validated schema instance with its token usage.

        Raises:
            StructuredOutputError: If the LLM returns unparseable or invalid output.
                It carries the tokens the call consumed.
        """
        raw_output = self.runnable.invoke(prompt)
        tokens_used = extract_token_usage(raw_output)
        try:
            value = normalize_structured_output(raw_output=raw_output, schema=self.schema)
        except RuntimeError as exc:
            raise StructuredOutputError(str(exc), tokens_used=tokens_used) from exc
        return StructuredResult(value=value, tokens_used=tokens_used)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required to call the AI provider")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key and request limits.

    Args:
        model_name: OpenAI model identifier, optionally provider-prefixed.
        temperature: Sampling temperature.
        timeout: Request timeout in seconds; a timeout surfaces as an exception.
        max_retries: Transport-level retries performed by the OpenAI client.
        repo_root: Optional repo root for .env file resolution.

    Raises:
        ValueError: If the model name is empty or names another provider.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    model = normalize_model_id(model_name)
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(model=model, temperature=temperature, timeout=timeout, max_retries=max_retries)


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw LLM structured output into a validated Pydantic model instance.

    Handles three input shapes:
    1. ``include_raw=True`` envelope: ``{"parsed": ..., "parsing_error": ..., "raw": ...}``
    2. Direct Pydantic BaseModel instance (same or different schema)
    3. Plain dict

    Raises:
        RuntimeError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            ) from parsing_error
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def extract_token_usage(raw_output: Any) -> int:
    """Return the total token count reported for a structured call, or 0 if none was reported.

    Reads ``usage_metadata["total_tokens"]`` from the raw provider message,
    falling back to the OpenAI ``response_metadata["token_usage"]`` block.
    """
    message = raw_output.get("raw") if isinstance(raw_output, dict) else None
    if message is None:
        return 0

    usage = getattr(message, "usage_metadata", None)
    if isinstance(usage, dict) and isinstance(usage.get("total_tokens"), int):
        return max(usage["total_tokens"], 0)

    response_metadata = getattr(message, "response_metadata", None) or {}
    token_usage = response_metadata.get("token_usage") if isinstance(response_metadata, dict) else None
    if isinstance(token_usage, dict) and isinstance(token_usage.get("total_tokens"), int):
        return max(token_usage["total_tokens"], 0)
    return 0


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Bind ``schema`` to a chat model through non-strict function calling.

    Exercise schemas carry optional fields and free-form parameter maps,
    which OpenAI strict function calling rejects.
    """
    chat_model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        repo_root=repo_root,
    )
    runnable = chat_model.with_structured_output(schema, method="function_calling", include_raw=True)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


class LangChainStructuredClient:
    """AIClient backed by langchain-openai structured output."""

    def __init__(
        self,
        *,
        temperature: float = 0.4,
        timeout: int = _DEFAULT_TIMEOUT,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        repo_root: Path | None = None,
    ) -> None:
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries
        self.repo_root = repo_root

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "LangChainStructuredClient":
        return cls(
            temperature=settings.temperature,
            timeout=settings.ai_timeout_seconds,
            max_retries=settings.ai_max_retries,
            repo_root=repo_root,
        )

    def preflight(self, model: str) -> None:
        normalize_model_id(model)
        ensure_openai_api_key(repo_root=self.repo_root)

    def generate_structured(self, *, model: str, prompt: str, schema: type[ModelT]) -> StructuredResult[ModelT]:
        adapter = get_structured_chat_model(
            model_name=model,
            schema=schema,
            temperature=self.temperature,
            timeout=self.timeout,
            max_retries=self.max_retries,
            repo_root=self.repo_root,
        )
        result = adapter.invoke(prompt)
        logger.debug("Structured call for %s on %s used %d tokens", schema.__name__, model, result.tokens_used)
        return result
