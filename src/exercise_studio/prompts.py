"""Prompt templates for the validation, planning and generation stages.

Templates are markdown files shipped in ``prompts/``. ``{>name}`` includes
``prompts/partials/name.md`` and ``{variable}`` is replaced with the value
passed at render time. Structured values are embedded as canonical JSON so
a given session state always produces the same prompt.
"""

from __future__ import annotations

import json
import re
from functools import lru_cache
from pathlib import Path

from .canonical import to_canonical_json
from .models import ClarificationRound, ExercisePlan, ExercisePlanItem, Requirements

_PARTIAL_RE = re.compile(r"\{>([a-zA-Z0-9_-]+)\}")
_VARIABLE_RE = re.compile(r"\{([a-zA-Z0-9_]+)\}")

_PREVIOUS_CLARIFICATIONS_SECTION = """
## Previous Clarifications

The teacher has already answered these questions:

{answers}
"""


def get_prompts_dir() -> Path:
    """Return package-relative path to the prompt templates."""
    return Path(__file__).resolve().parent / "prompts"


@lru_cache(maxsize=None)
def load_template(name: str) -> str:
    """Read a template and expand its partials.

    Raises:
        FileNotFoundError: If the template or one of its partials is missing.
    """
    path = get_prompts_dir() / f"{name}.md"
    if not path.is_file():
        raise FileNotFoundError(f"Prompt template not found: {path}")
    text = path.read_text(encoding="utf-8")

    def _include(match: re.Match[str]) -> str:
        partial = get_prompts_dir() / "partials" / f"{match.group(1)}.md"
        if not partial.is_file():
            raise FileNotFoundError(f"Prompt partial '{match.group(1)}' not found for template {name}")
        return partial.read_text(encoding="utf-8").rstrip("\n")

    return _PARTIAL_RE.sub(_include, text)


def render_template(template: str, variables: dict[str, str]) -> str:
    """Substitute ``{variable}`` placeholders.

    Raises:
        KeyError: If the template uses a variable that was not supplied.
    """
    missing = sorted({name for name in _VARIABLE_RE.findall(template) if name not in variables})
    if missing:
        raise KeyError(f"Prompt template variables not supplied: {', '.join(missing)}")
    return _VARIABLE_RE.sub(lambda match: variables[match.group(1)], template)


def _format_clarifications(rounds: list[ClarificationRound]) -> str:
    merged: dict[str, str | list[str]] = {}
    for clarification in rounds:
        merged.update(clarification.answers)
    lines = []
    for question_id, answer in merged.items():
        value = ", ".join(answer) if isinstance(answer, list) else answer
        lines.append(f"- {question_id}: {value}")
    return "\n".join(lines)


def build_validation_prompt(
    *,
    user_prompt: str,
    previous_clarifications: list[ClarificationRound] | None = None,
) -> str:
    section = ""
    if previous_clarifications:
        section = _PREVIOUS_CLARIFICATIONS_SECTION.format(answers=_format_clarifications(previous_clarifications))
    return render_template(
        load_template("validate-requirements"),
        {"userPrompt": user_prompt.strip(), "previousClarifications": section},
    )


def build_planning_prompt(*, requirements: Requirements) -> str:
    return render_template(load_template("plan-exercises"), {"requirements": _as_json_block(requirements)})


def build_generation_prompt(*, requirements: Requirements, plan: ExercisePlan, item: ExercisePlanItem) -> str:
    return render_template(
        load_template("generate-exercise"),
        {
            "requirements": _as_json_block(requirements),
            "approvedPlan": _as_json_block(plan),
            "exerciseItem": _as_json_block(item),
        },
    )


def _as_json_block(value: Requirements | ExercisePlan | ExercisePlanItem) -> str:
    # Re-indent the canonical form so the block stays readable for the model.
    pretty = json.dumps(json.loads(to_canonical_json(value)), indent=2, ensure_ascii=False, sort_keys=True)
    return f"```json\n{pretty}\n```"
