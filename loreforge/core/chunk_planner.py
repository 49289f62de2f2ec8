"""Chunk planning for iterative generation of large artifacts."""

import math
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from loreforge.core.logging import get_logger
from loreforge.core.schemas_pipeline import ChunkPlan

logger = get_logger(__name__)

# Checked in this order; first substring hit wins
SCALE_ORDER = ("simple", "moderate", "complex", "massive")

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

NO_CHUNKING = ChunkPlan(should_chunk=False, total_chunks=1, chunk_size=1)


def _read_field(source: Any, field: str) -> tuple[bool, Any]:
    """Return (present, value) for a field on a model or mapping."""
    if source is None:
        return False, None
    if isinstance(source, BaseModel):
        data = source.model_dump()
        return (field in data and data[field] is not None), data.get(field)
    if isinstance(source, Mapping):
        return (field in source and source[field] is not None), source.get(field)
    return False, None


def coerce_quantity(value: Any) -> int | None:
    """
    Coerce a raw quantity into an integer.

    Integers are used as-is, finite floats are floored and strings use
    leading-integer semantics ("12 rooms" -> 12). Booleans, NaN, infinities
    and anything unparseable give None.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return math.floor(value)
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        if match is None:
            return None
        return int(match.group(1))
    return None


def scale_quantity(scale: Any, scale_defaults: Mapping[str, int]) -> int | None:
    """Look up the default quantity for a scale keyword by substring match."""
    if not isinstance(scale, str) or not scale.strip():
        return None
    lowered = scale.lower()
    for keyword in SCALE_ORDER:
        if keyword in lowered and keyword in scale_defaults:
            return scale_defaults[keyword]
    return None


def plan_chunks(
    stage_results: Mapping[str, Any],
    source_stage: str,
    quantity_field: str,
    scale_field: str | None,
    scale_defaults: Mapping[str, int],
    max_chunks: int | None = None,
) -> ChunkPlan:
    """
    Decide whether a stage runs as N sequential chunk iterations.

    Args:
        stage_results: Completed stage outputs keyed by stage id
        source_stage: Stage whose output holds the quantity
        quantity_field: Field holding the explicit quantity
        scale_field: Field holding the scale keyword, used only when the
            quantity field is absent
        scale_defaults: Scale keyword -> quantity
        max_chunks: Upper bound on iterations; larger quantities are clamped

    Returns:
        ChunkPlan; never zero iterations
    """
    source = stage_results.get(source_stage)
    present, raw = _read_field(source, quantity_field)

    if present:
        quantity = coerce_quantity(raw)
        origin = "explicit"
    else:
        _, scale = _read_field(source, scale_field) if scale_field else (False, None)
        quantity = scale_quantity(scale, scale_defaults)
        origin = f"scale:{scale}"

    if quantity is None or quantity <= 1:
        logger.debug(
            f"No chunking for {source_stage}.{quantity_field}: raw={raw!r} quantity={quantity}"
        )
        return NO_CHUNKING

    if max_chunks is not None and quantity > max_chunks:
        logger.warning(
            f"Clamping {source_stage}.{quantity_field} from {quantity} to {max_chunks} chunks"
        )
        quantity = max_chunks

    logger.debug(f"Planned {quantity} chunks from {source_stage} ({origin})")
    return ChunkPlan(should_chunk=True, total_chunks=quantity, chunk_size=1)


def recent_window(items: list[Any] | None, size: int) -> list[Any]:
    """Return the last `size` previously generated sub-artifacts."""
    if not items or size <= 0:
        return []
    return list(items[-size:])


def append_chunk_output(stage_result: Any, accumulate_key: str, item: Any) -> int:
    """
    Append one iteration's output to the accumulate list in the stage result.

    Works on a stage output model or a plain dict.

    Returns:
        New length of the accumulate list
    """
    if isinstance(stage_result, BaseModel):
        existing = getattr(stage_result, accumulate_key, None)
    else:
        existing = stage_result.get(accumulate_key)
    if not isinstance(existing, list):
        existing = []
    existing.append(item)
    if isinstance(stage_result, BaseModel):
        setattr(stage_result, accumulate_key, existing)
    else:
        stage_result[accumulate_key] = existing
    return len(existing)
