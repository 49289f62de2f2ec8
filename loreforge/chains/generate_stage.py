"""LLM chain for generating one stage (or one chunk of a stage)."""

import json
import logging

from pydantic import BaseModel, ValidationError

from loreforge.chains.stage_definition import StageDefinition
from loreforge.core.config import Settings
from loreforge.core.errors import GenerationCallError, StageParseError
from loreforge.core.llm import (
    ProviderConfig,
    call_llm,
    default_provider,
    describe_json_error,
    parse_llm_json_dict,
)
from loreforge.core.logging import get_logger, log_with_context
from loreforge.core.prompt_limits import analyze_prompt
from loreforge.core.schemas_outputs import StageOutputBase, validate_stage_output
from loreforge.core.schemas_pipeline import PipelineContext

logger = get_logger(__name__)

# ruff: noqa: E501
FIX_SCHEMA_PROMPT = """The previous output was invalid. Here is the error:

{error}

Here is your previous output:

{previous_output}

Here is the original request:

{original_message}

Please fix the output to match the required JSON schema exactly. Output ONLY valid JSON, no explanation."""


def entity_label(ctx: PipelineContext) -> str | None:
    """Name of the thing being generated, once an earlier stage has named it."""
    for output in ctx.stage_results.values():
        name = getattr(output, "name", None)
        if isinstance(name, str) and name.strip():
            return name.strip()
    return None


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def _validate(stage: StageDefinition, data: dict, chunked: bool) -> StageOutputBase:
    if chunked and stage.chunk_model is not None:
        return stage.chunk_model.model_validate(data)
    return validate_stage_output(stage.id, data)


def generate_stage_output(
    stage: StageDefinition,
    ctx: PipelineContext,
    *,
    settings: Settings,
    provider: ProviderConfig | None = None,
) -> BaseModel:
    """
    Call the LLM for a stage and validate its response.

    When ctx.chunk_state is set the response is validated as one chunk
    (stage.chunk_model); otherwise against the stage's union member.

    Args:
        stage: Stage to run
        ctx: Session context (read only here)
        settings: Application settings
        provider: Provider override (defaults to the request's, then settings)

    Returns:
        Validated stage or chunk output

    Raises:
        GenerationCallError: If the provider call fails. Never retried here.
        StageParseError: If output stays invalid after STAGE_PARSE_MAX_ATTEMPTS
    """
    provider = provider or ctx.request.provider or default_provider(settings)
    chunk = ctx.chunk_state
    chunked = chunk is not None
    where = {
        "stage_id": stage.id,
        "chunk_index": chunk.index if chunk else None,
        "chunk_total": chunk.total if chunk else None,
        "entity": entity_label(ctx),
    }

    instruction = stage.system_prompt()
    original_message = stage.build_message(ctx)

    analysis = analyze_prompt(instruction, original_message, settings)
    if analysis.recommendation != "ok":
        log_with_context(
            logger,
            logging.WARNING,
            analysis.message,
            session_id=ctx.session_id,
            stage_id=stage.id,
            total_chars=analysis.total_chars,
        )

    max_attempts = max(1, settings.STAGE_PARSE_MAX_ATTEMPTS)
    message = original_message
    error_msg = ""
    position: dict[str, int | None] = {"line": None, "column": None, "position": None}

    for attempt in range(1, max_attempts + 1):
        log_with_context(
            logger,
            logging.INFO,
            f"Generating {stage.id} (attempt {attempt}/{max_attempts})",
            session_id=ctx.session_id,
            chunk=f"{chunk.index}/{chunk.total}" if chunk else None,
        )

        result = call_llm(instruction, message, provider, settings)
        if not result.success:
            raise GenerationCallError(
                result.error or "Generation call failed",
                provider=result.provider,
                **where,
            )

        raw_output = result.text or ""
        try:
            data = parse_llm_json_dict(raw_output)
            return _validate(stage, data, chunked)
        except json.JSONDecodeError as e:
            error_msg = f"Invalid JSON: {describe_json_error(e)}"
            position = {"line": e.lineno, "column": e.colno, "position": e.pos}
        except ValidationError as e:
            error_msg = f"Schema mismatch: {_format_validation_error(e)}"
            position = {"line": None, "column": None, "position": None}

        logger.warning(
            f"Attempt {attempt} for {stage.id} failed validation: {error_msg}",
            extra={"session_id": ctx.session_id},
        )
        message = FIX_SCHEMA_PROMPT.format(
            error=error_msg,
            previous_output=raw_output,
            original_message=original_message,
        )

    raise StageParseError(error_msg, attempts=max_attempts, **position, **where)
