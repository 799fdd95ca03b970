from __future__ import annotations

from dataclasses import dataclass

from .settings import RuntimeSettings

SUPPORTED_PROVIDERS: frozenset[str] = frozenset({"openai"})


def normalize_model_id(model_id: str) -> str:
    """Strip an optional provider prefix and return the bare provider model id.

    Accepts ``gpt-4o``, ``openai/gpt-4o`` and ``openai:gpt-4o``.

    Raises:
        ValueError: If the id is empty or names an unsupported provider.
    """
    value = model_id.strip()
    if not value:
        raise ValueError("model must be a non-empty string")
    for separator in ("/", ":"):
        if separator in value:
            provider, _, name = value.partition(separator)
            provider = provider.strip().lower()
            if provider not in SUPPORTED_PROVIDERS:
                raise ValueError(
                    f"Unsupported model provider '{provider}'. Supported: {', '.join(sorted(SUPPORTED_PROVIDERS))}"
                )
            name = name.strip()
            if not name:
                raise ValueError(f"model id '{model_id}' has an empty model name")
            return name
    return value


@dataclass(frozen=True)
class ModelSelection:
    """Picks the model a new session will use for every stage.

    A session's model is fixed when it starts, so this is consulted
    exactly once per session.
    """

    default_model: str
    allowed_models: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.default_model or not self.default_model.strip():
            raise ValueError("ModelSelection default_model must be non-empty")
        if self.allowed_models and normalize_model_id(self.default_model) not in self.allowed_models:
            raise ValueError(f"default model '{self.default_model}' is not in the allowed model list")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "ModelSelection":
        return cls(
            default_model=settings.default_model,
            allowed_models=frozenset(normalize_model_id(model) for model in settings.allowed_models),
        )

    def resolve(self, requested: str | None) -> str:
        """Resolve a caller-supplied model id (or the default) to a bare model id.

        Raises:
            ValueError: If the model is malformed or not allowed.
        """
        model = normalize_model_id(requested if requested is not None else self.default_model)
        if self.allowed_models and model not in self.allowed_models:
            available = ", ".join(sorted(self.allowed_models))
            raise ValueError(f"Model '{model}' is not allowed. Allowed models: {available}")
        return model
