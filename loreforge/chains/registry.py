"""Ordered stage registries per deliverable."""

from loreforge.chains.location_stages import LOCATION_STAGES
from loreforge.chains.monster_stages import MONSTER_STAGES
from loreforge.chains.npc_stages import NPC_STAGES
from loreforge.chains.stage_definition import StageDefinition

REGISTRIES: dict[str, tuple[StageDefinition, ...]] = {
    "monster": MONSTER_STAGES,
    "npc": NPC_STAGES,
    "location": LOCATION_STAGES,
}


def get_stages(deliverable: str) -> tuple[StageDefinition, ...]:
    """
    Get the ordered stages for a deliverable.

    Raises:
        ValueError: If the deliverable has no registry
    """
    try:
        return REGISTRIES[deliverable]
    except KeyError:
        raise ValueError(
            f"Unknown deliverable {deliverable!r}; expected one of {sorted(REGISTRIES)}"
        ) from None


def get_stage(deliverable: str, stage_id: str) -> StageDefinition:
    for stage in get_stages(deliverable):
        if stage.id == stage_id:
            return stage
    raise ValueError(f"Unknown stage {stage_id!r} for deliverable {deliverable!r}")
