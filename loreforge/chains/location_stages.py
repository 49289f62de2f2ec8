"""Location stages. Spaces are generated one per chunk iteration."""

from typing import Any

from loreforge.chains.stage_definition import (
    StageDefinition,
    add_prior,
    base_context,
    prior_field,
)
from loreforge.core.chunk_planner import plan_chunks, recent_window
from loreforge.core.config import get_settings
from loreforge.core.schemas_outputs import (
    LocationDetails,
    LocationFoundation,
    LocationPurpose,
    LocationSpaces,
    SpaceChunk,
)
from loreforge.core.schemas_pipeline import ChunkPlan, PipelineContext

# ruff: noqa: E501
PURPOSE_PROMPT = """You are creating a D&D location. This is stage 1/4: Purpose & Scope.

Determine WHAT needs to be generated and HOW complex it should be.

Fields:
- name, location_type, description (2-3 sentences), purpose (required)
- scale: "simple" (1-5 spaces), "moderate" (6-20), "complex" (21-50) or "massive" (50+) (required)
- estimated_spaces: number of distinct spaces to generate (required). If the user lists specific rooms, COUNT THEM and use that exact number.
- architectural_style, setting
- key_features: 3-5 must-have features"""

FOUNDATION_PROMPT = """You are creating a D&D location. This is stage 2/4: Foundation.

Establish the structural foundation appropriate to the scale.
- All scales: layout {description, dimensions, levels}, spatial_organization, access_points
- Complex/massive: wings, floors, vertical_connections, constraints
- chunk_mesh_metadata (REQUIRED): {connection_protocol, boundary_markers, spatial_hierarchy, coordinate_system} so iteratively generated spaces mesh"""

SPACES_PROMPT = """You are creating a D&D location. This is stage 3/4: Spaces (iterative).

Generate EXACTLY ONE space per response with these fields:
id, name, purpose, description, space_type ("room"|"stairs"|"corridor"), dimensions {width, height, unit}, doors [{wall, position_on_wall_ft, width_ft, leads_to}], features [{type, label, position}], lighting, mesh_anchors {connects_to, connection_types, boundary_interface}.

Door leads_to MUST use the exact name of another space, or "Pending" for spaces not generated yet.
Only generate spaces the user asked for."""

DETAILS_PROMPT = """You are creating a D&D location. This is stage 4/4: Details.

The structure is complete. Add narrative details:
materials, lighting_scheme, atmosphere, inhabitants {permanent_residents, notable_npcs, visitors, creatures}, encounter_areas, secrets, treasure_locations, history, current_events, adventure_hooks, special_features."""


def build_purpose(ctx: PipelineContext) -> dict[str, Any]:
    return base_context(
        ctx,
        "purpose",
        "Analyze the request and determine the location type, its scale and how many distinct spaces to generate.",
    )


def build_foundation(ctx: PipelineContext) -> dict[str, Any]:
    scale = prior_field(ctx, "location_purpose", "scale", "moderate")
    message = base_context(
        ctx,
        "foundation",
        f"Generate the structural foundation for this location (scale: {scale}).",
    )
    add_prior(message, "purpose", ctx, "location_purpose")
    return message


def plan_spaces(ctx: PipelineContext) -> ChunkPlan:
    settings = get_settings()
    return plan_chunks(
        ctx.stage_results,
        source_stage="location_purpose",
        quantity_field="estimated_spaces",
        scale_field="scale",
        scale_defaults=settings.CHUNK_SCALE_DEFAULTS,
        max_chunks=settings.CHUNK_MAX_ITERATIONS,
    )


def build_spaces(ctx: PipelineContext) -> dict[str, Any]:
    chunk = ctx.chunk_state
    if chunk is not None:
        instructions = (
            f"Generate space #{chunk.index} of {chunk.total}. "
            "Review recent_spaces for context and use mesh_anchors to link."
        )
    else:
        instructions = "Generate the single space for this location with mesh_anchors."
    message = base_context(ctx, "spaces", instructions)
    message["purpose"] = {
        "name": prior_field(ctx, "location_purpose", "name"),
        "location_type": prior_field(ctx, "location_purpose", "location_type"),
        "scale": prior_field(ctx, "location_purpose", "scale"),
    }
    message["foundation"] = {
        "layout": prior_field(ctx, "location_foundation", "layout"),
        "chunk_mesh_metadata": prior_field(ctx, "location_foundation", "chunk_mesh_metadata"),
    }
    window = chunk.window if chunk is not None else get_settings().CHUNK_RECENT_WINDOW
    spaces = prior_field(ctx, "location_spaces", "spaces", [])
    message["recent_spaces"] = recent_window(spaces, window)
    if chunk is not None:
        message["chunk_info"] = f"{chunk.label} {chunk.index}/{chunk.total}"
    return message


def build_details(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(
        ctx,
        "details",
        "Add rich narrative details that bring the location to life.",
    )
    spaces = prior_field(ctx, "location_spaces", "spaces", [])
    message["structure"] = {
        "name": prior_field(ctx, "location_purpose", "name"),
        "type": prior_field(ctx, "location_purpose", "location_type"),
        "scale": prior_field(ctx, "location_purpose", "scale"),
        "layout": prior_field(ctx, "location_foundation", "layout"),
        "total_spaces": len(spaces),
        "space_list": [
            {k: s.get(k) for k in ("id", "name", "purpose", "dimensions")}
            for s in spaces
            if isinstance(s, dict)
        ],
    }
    return message


LOCATION_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(
        id="location_purpose",
        name="Purpose",
        deliverable="location",
        instruction=PURPOSE_PROMPT,
        build_context=build_purpose,
        output_model=LocationPurpose,
    ),
    StageDefinition(
        id="location_foundation",
        name="Foundation",
        deliverable="location",
        instruction=FOUNDATION_PROMPT,
        build_context=build_foundation,
        output_model=LocationFoundation,
    ),
    StageDefinition(
        id="location_spaces",
        name="Spaces",
        deliverable="location",
        instruction=SPACES_PROMPT,
        build_context=build_spaces,
        output_model=LocationSpaces,
        chunk_plan=plan_spaces,
        chunk_model=SpaceChunk,
        accumulate_key="spaces",
        chunk_label="Space",
    ),
    StageDefinition(
        id="location_details",
        name="Details",
        deliverable="location",
        instruction=DETAILS_PROMPT,
        build_context=build_details,
        output_model=LocationDetails,
    ),
)
