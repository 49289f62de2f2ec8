"""Stage definitions shared by every deliverable registry.

A stage is declarative data: an instruction, a pure context builder and the
output model its response is validated against. Registries build their
stages once at import time.
"""

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loreforge.core.config import get_settings
from loreforge.core.prompt_limits import trim_prior_decisions
from loreforge.core.schemas_outputs import StageOutputBase, project_output
from loreforge.core.schemas_pipeline import ChunkPlan, PipelineContext

# ruff: noqa: E501
OUTPUT_RULES = """
In addition to the stage fields, you MAY include these bookkeeping fields:
- sources_used: array of chunk_ids from the provided canon that you relied on
- assumptions: array of reasonable assumptions you made
- proposals: array of {"question": string, "options": [string], "rule_impact": string} for genuine unknowns a human must decide
- conflicts: array of {"existing_claim", "new_claim", "entity_name", "field_path", "severity", "summary", "suggested_fix"} when your content contradicts the provided canon
- issues: array of {"description", "severity": "critical|moderate|minor", "issue_type", "location", "suggestion"} for rules or logic problems
- retrieval_hints: {"entities": [], "keywords": [], "regions": [], "eras": []} naming canon you need but were not given
- canon_update: one-line summary of canon changes (can be "No canon changes needed")

CRITICAL RULES:
1. Output ONLY the JSON object, no markdown, no explanation, no preamble.
2. Never contradict the provided canon silently. Report contradictions under conflicts.
3. Do not repeat content from earlier stages unless asked to."""


@dataclass(frozen=True)
class StageDefinition:
    id: str
    name: str
    deliverable: str
    instruction: str
    build_context: Callable[[PipelineContext], dict[str, Any]]
    output_model: type[StageOutputBase]
    chunk_plan: Callable[[PipelineContext], ChunkPlan] | None = None
    chunk_model: type[StageOutputBase] | None = None
    accumulate_key: str | None = None
    chunk_label: str = "Chunk"
    should_run: Callable[[PipelineContext], bool] | None = None

    @property
    def chunked(self) -> bool:
        return self.chunk_plan is not None

    def runs_for(self, ctx: PipelineContext) -> bool:
        if self.should_run is None:
            return True
        return bool(self.should_run(ctx))

    def system_prompt(self) -> str:
        return f"{self.instruction.strip()}\n{OUTPUT_RULES}"

    def build_message(self, ctx: PipelineContext) -> str:
        return json.dumps(self.build_context(ctx), indent=2, default=str)


# =============================================================================
# Context helpers
# =============================================================================


def prior(ctx: PipelineContext, stage_id: str) -> dict[str, Any] | None:
    """Allow-listed projection of an earlier stage, or None if missing/malformed."""
    return project_output(ctx.stage_results.get(stage_id))


def prior_field(ctx: PipelineContext, stage_id: str, field: str, default: Any = None) -> Any:
    projected = prior(ctx, stage_id)
    if not projected:
        return default
    return projected.get(field, default)


def canon_payload(ctx: PipelineContext) -> list[dict[str, Any]]:
    return [
        {
            "chunk_id": f.chunk_id,
            "entity": f.entity_name,
            "type": f.entity_type,
            "text": f.text,
            "source": f.source,
        }
        for f in ctx.canon.facts
    ]


def base_context(ctx: PipelineContext, stage_key: str, instructions: str) -> dict[str, Any]:
    """Fields every stage message starts from."""
    settings = get_settings()
    message: dict[str, Any] = {
        "request": ctx.request.prompt,
        "deliverable": ctx.request.deliverable,
        "stage": stage_key,
        "instructions": instructions,
    }
    if ctx.request.flags:
        message["flags"] = ctx.request.flags
    facts = canon_payload(ctx)
    if facts:
        message["relevant_canon"] = facts
    if ctx.prior_decisions:
        message["previous_decisions"] = trim_prior_decisions(
            ctx.prior_decisions, settings.PRIOR_DECISIONS_MAX_CHARS
        )
    return message


def add_prior(message: dict[str, Any], key: str, ctx: PipelineContext, stage_id: str) -> None:
    """Embed an earlier stage's projection under key, omitting it when unavailable."""
    projected = prior(ctx, stage_id)
    if projected:
        message[key] = projected


# =============================================================================
# Routing helpers
# =============================================================================

_FRACTION = re.compile(r"^\s*(\d+)\s*/\s*(\d+)")
_NUMBER = re.compile(r"^\s*(\d+(?:\.\d+)?)")


def parse_challenge(value: Any) -> float:
    """Parse a challenge rating ("1/2" -> 0.5, "5" -> 5.0). Unknown gives 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return 0.0
    fraction = _FRACTION.match(value)
    if fraction:
        denominator = int(fraction.group(2))
        return int(fraction.group(1)) / denominator if denominator else 0.0
    number = _NUMBER.match(value)
    return float(number.group(1)) if number else 0.0


def mentions_any(keywords: tuple[str, ...], *texts: Any) -> bool:
    haystack = " ".join(str(t).lower() for t in texts if t)
    return any(kw in haystack for kw in keywords)
