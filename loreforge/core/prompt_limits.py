"""Prompt character accounting and trimming of carried-forward decisions."""

from typing import Literal

from pydantic import BaseModel

from loreforge.core.config import Settings, get_settings

# Formatting overhead charged per carried decision
DECISION_OVERHEAD_CHARS = 20


class PromptAnalysis(BaseModel):
    total_chars: int
    instruction_chars: int
    message_chars: int
    percent_of_limit: float
    recommendation: Literal["ok", "warning", "error"]
    message: str

    @property
    def exceeds_limit(self) -> bool:
        return self.recommendation == "error"


def analyze_prompt(
    instruction: str, message: str, settings: Settings | None = None
) -> PromptAnalysis:
    """Measure an assembled prompt against the configured ceilings."""
    settings = settings or get_settings()
    total = len(instruction) + len(message)
    percent = total / settings.PROMPT_MAX_CHARS * 100

    if total > settings.PROMPT_MAX_CHARS:
        recommendation = "error"
        text = (
            f"Prompt too long: {total} chars exceeds limit by "
            f"{total - settings.PROMPT_MAX_CHARS} chars"
        )
    elif total > settings.PROMPT_WARNING_CHARS:
        recommendation = "warning"
        text = (
            f"Prompt is {percent:.1f}% of limit "
            f"({settings.PROMPT_MAX_CHARS - total} chars remaining)"
        )
    else:
        recommendation = "ok"
        text = f"Prompt is {total} chars ({percent:.1f}% of limit)"

    return PromptAnalysis(
        total_chars=total,
        instruction_chars=len(instruction),
        message_chars=len(message),
        percent_of_limit=percent,
        recommendation=recommendation,
        message=text,
    )


def trim_prior_decisions(decisions: dict[str, str], max_chars: int) -> dict[str, str]:
    """
    Keep the most recent decisions that fit within max_chars.

    Insertion order is treated as chronological. The result keeps that order.
    """
    kept: list[tuple[str, str]] = []
    used = 0
    for question, answer in reversed(list(decisions.items())):
        cost = len(question) + len(str(answer)) + DECISION_OVERHEAD_CHARS
        if used + cost > max_chars:
            break
        kept.append((question, answer))
        used += cost
    return dict(reversed(kept))
