"""Pydantic schemas for per-stage structured outputs.

Every stage output is one member of a discriminated union keyed on `stage`.
Each model lists the content fields later stages may see (PROJECTED_FIELDS);
anything else, including the bookkeeping fields shared by all stages, is
kept out of later prompts by `project_output`.
"""

from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from loreforge.core.logging import get_logger

logger = get_logger(__name__)

BOOKKEEPING_FIELDS = frozenset(
    {
        "stage",
        "sources_used",
        "assumptions",
        "proposals",
        "conflicts",
        "issues",
        "physics_issues",
        "validation_issues",
        "retrieval_hints",
        "canon_update",
    }
)


class RetrievalHints(BaseModel):
    """Canon a stage asks to have pulled in before the next stage runs."""

    model_config = ConfigDict(extra="ignore")

    entities: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    regions: list[str] = Field(default_factory=list)
    eras: list[str] = Field(default_factory=list)

    @property
    def terms(self) -> list[str]:
        seen: dict[str, None] = {}
        for term in [*self.entities, *self.keywords, *self.regions, *self.eras]:
            if isinstance(term, str) and term.strip():
                seen.setdefault(term.strip(), None)
        return list(seen)


class StageOutputBase(BaseModel):
    """Bookkeeping fields every stage may emit alongside its content."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = ()
    # List fields whose items are projected through another model
    ITEM_MODELS: ClassVar[dict[str, type["StageOutputBase"]]] = {}

    sources_used: list[Any] = Field(default_factory=list)
    assumptions: list[Any] = Field(default_factory=list)
    proposals: list[Any] = Field(default_factory=list)
    conflicts: list[Any] = Field(default_factory=list)
    issues: list[Any] = Field(default_factory=list)
    retrieval_hints: RetrievalHints | None = None
    canon_update: Any = None

    def content_fields(self) -> dict[str, Any]:
        """All non-bookkeeping fields, including unrecognized extras."""
        data = self.model_dump()
        return {k: v for k, v in data.items() if k not in BOOKKEEPING_FIELDS and v is not None}


# =============================================================================
# Monster
# =============================================================================


class MonsterBasicInfo(StageOutputBase):
    stage: Literal["monster_basic_info"] = "monster_basic_info"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "description",
        "size",
        "creature_type",
        "subtype",
        "alignment",
        "challenge_rating",
        "experience_points",
        "location",
    )

    name: str | None = None
    description: str | None = None
    size: str | None = None
    creature_type: str | None = None
    subtype: str | None = None
    alignment: str | None = None
    challenge_rating: str | float | None = None
    experience_points: int | str | None = None
    location: str | None = None


class MonsterStats(StageOutputBase):
    stage: Literal["monster_stats"] = "monster_stats"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "ability_scores",
        "armor_class",
        "hit_points",
        "hit_dice",
        "proficiency_bonus",
        "speed",
        "saving_throws",
        "skill_proficiencies",
        "damage_vulnerabilities",
        "damage_resistances",
        "damage_immunities",
        "condition_immunities",
        "senses",
        "languages",
    )

    ability_scores: dict[str, Any] = Field(default_factory=dict)
    armor_class: Any = None
    hit_points: Any = None
    hit_dice: str | None = None
    proficiency_bonus: int | str | None = None
    speed: dict[str, Any] = Field(default_factory=dict)
    saving_throws: list[Any] = Field(default_factory=list)
    skill_proficiencies: list[Any] = Field(default_factory=list)
    damage_vulnerabilities: list[Any] = Field(default_factory=list)
    damage_resistances: list[Any] = Field(default_factory=list)
    damage_immunities: list[Any] = Field(default_factory=list)
    condition_immunities: list[Any] = Field(default_factory=list)
    senses: list[Any] = Field(default_factory=list)
    languages: list[Any] = Field(default_factory=list)


class MonsterCombat(StageOutputBase):
    stage: Literal["monster_combat"] = "monster_combat"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "abilities",
        "actions",
        "bonus_actions",
        "reactions",
        "tactics",
    )

    abilities: list[Any] = Field(default_factory=list)
    actions: list[Any] = Field(default_factory=list)
    bonus_actions: list[Any] = Field(default_factory=list)
    reactions: list[Any] = Field(default_factory=list)
    tactics: str | None = None


class MonsterLegendary(StageOutputBase):
    stage: Literal["monster_legendary"] = "monster_legendary"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "legendary_actions",
        "mythic_actions",
        "lair_actions",
        "regional_effects",
    )

    legendary_actions: dict[str, Any] | None = None
    mythic_actions: dict[str, Any] | None = None
    lair_actions: list[Any] = Field(default_factory=list)
    regional_effects: list[Any] = Field(default_factory=list)


class MonsterLore(StageOutputBase):
    stage: Literal["monster_lore"] = "monster_lore"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = ("ecology", "lore", "notes", "sources")

    ecology: str | None = None
    lore: str | None = None
    notes: list[Any] = Field(default_factory=list)
    sources: list[Any] = Field(default_factory=list)


# =============================================================================
# NPC
# =============================================================================


class NpcBasicInfo(StageOutputBase):
    stage: Literal["npc_basic_info"] = "npc_basic_info"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "title",
        "description",
        "appearance",
        "background",
        "race",
        "subtype",
        "alignment",
        "role",
        "challenge_rating",
        "class_levels",
        "location",
        "affiliation",
    )

    name: str | None = None
    title: str | None = None
    description: str | None = None
    appearance: str | None = None
    background: str | None = None
    race: str | None = None
    subtype: str | None = None
    alignment: str | None = None
    role: str | None = None
    challenge_rating: str | float | None = None
    class_levels: Any = None
    location: str | None = None
    affiliation: str | None = None


class NpcCoreDetails(StageOutputBase):
    stage: Literal["npc_core_details"] = "npc_core_details"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "personality_traits",
        "ideals",
        "bonds",
        "flaws",
        "goals",
        "fears",
        "mannerisms",
        "voice",
        "secrets",
        "hooks",
    )

    personality_traits: list[Any] = Field(default_factory=list)
    ideals: list[Any] = Field(default_factory=list)
    bonds: list[Any] = Field(default_factory=list)
    flaws: list[Any] = Field(default_factory=list)
    goals: list[Any] = Field(default_factory=list)
    fears: list[Any] = Field(default_factory=list)
    mannerisms: list[Any] = Field(default_factory=list)
    voice: str | None = None
    secrets: list[Any] = Field(default_factory=list)
    hooks: list[Any] = Field(default_factory=list)


class NpcStats(StageOutputBase):
    stage: Literal["npc_stats"] = "npc_stats"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "ability_scores",
        "armor_class",
        "hit_points",
        "speed",
        "proficiency_bonus",
        "saving_throws",
        "skill_proficiencies",
        "senses",
        "languages",
    )

    ability_scores: dict[str, Any] = Field(default_factory=dict)
    armor_class: Any = None
    hit_points: Any = None
    speed: Any = None
    proficiency_bonus: int | str | None = None
    saving_throws: list[Any] = Field(default_factory=list)
    skill_proficiencies: list[Any] = Field(default_factory=list)
    senses: list[Any] = Field(default_factory=list)
    languages: list[Any] = Field(default_factory=list)


class NpcCombat(StageOutputBase):
    stage: Literal["npc_combat"] = "npc_combat"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "actions",
        "bonus_actions",
        "reactions",
        "tactics",
    )

    actions: list[Any] = Field(default_factory=list)
    bonus_actions: list[Any] = Field(default_factory=list)
    reactions: list[Any] = Field(default_factory=list)
    tactics: str | None = None


class NpcSpellcasting(StageOutputBase):
    stage: Literal["npc_spellcasting"] = "npc_spellcasting"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "spellcasting_ability",
        "spell_save_dc",
        "spell_attack_bonus",
        "spell_slots",
        "spells_known",
        "innate_spells",
    )

    spellcasting_ability: str | None = None
    spell_save_dc: int | str | None = None
    spell_attack_bonus: int | str | None = None
    spell_slots: dict[str, Any] = Field(default_factory=dict)
    spells_known: list[Any] = Field(default_factory=list)
    innate_spells: list[Any] = Field(default_factory=list)


class NpcRelationships(StageOutputBase):
    stage: Literal["npc_relationships"] = "npc_relationships"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = ("allies", "enemies", "factions", "family")

    allies: list[Any] = Field(default_factory=list)
    enemies: list[Any] = Field(default_factory=list)
    factions: list[Any] = Field(default_factory=list)
    family: list[Any] = Field(default_factory=list)


class NpcEquipment(StageOutputBase):
    stage: Literal["npc_equipment"] = "npc_equipment"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "weapons",
        "armor",
        "magic_items",
        "gear",
        "wealth",
    )

    weapons: list[Any] = Field(default_factory=list)
    armor: list[Any] = Field(default_factory=list)
    magic_items: list[Any] = Field(default_factory=list)
    gear: list[Any] = Field(default_factory=list)
    wealth: Any = None


# =============================================================================
# Location
# =============================================================================


class LocationPurpose(StageOutputBase):
    stage: Literal["location_purpose"] = "location_purpose"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "location_type",
        "description",
        "purpose",
        "scale",
        "estimated_spaces",
        "architectural_style",
        "setting",
        "key_features",
    )

    name: str | None = None
    location_type: str | None = None
    description: str | None = None
    purpose: str | None = None
    scale: str | None = None
    estimated_spaces: Any = None
    architectural_style: str | None = None
    setting: str | None = None
    key_features: list[Any] = Field(default_factory=list)


class LocationFoundation(StageOutputBase):
    stage: Literal["location_foundation"] = "location_foundation"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "layout",
        "spatial_organization",
        "access_points",
        "wings",
        "floors",
        "vertical_connections",
        "constraints",
        "chunk_mesh_metadata",
    )

    layout: Any = None
    spatial_organization: str | None = None
    access_points: list[Any] = Field(default_factory=list)
    wings: list[Any] = Field(default_factory=list)
    floors: list[Any] = Field(default_factory=list)
    vertical_connections: list[Any] = Field(default_factory=list)
    constraints: list[Any] = Field(default_factory=list)
    chunk_mesh_metadata: dict[str, Any] = Field(default_factory=dict)


class SpaceChunk(StageOutputBase):
    """One generated space, the output of a single spaces iteration."""

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "name",
        "purpose",
        "description",
        "space_type",
        "dimensions",
        "doors",
        "features",
        "lighting",
        "mesh_anchors",
    )

    id: str | None = None
    name: str | None = None
    purpose: str | None = None
    description: str | None = None
    space_type: str = "room"
    dimensions: dict[str, Any] = Field(default_factory=dict)
    doors: list[Any] = Field(default_factory=list)
    features: list[Any] = Field(default_factory=list)
    lighting: str | None = None
    mesh_anchors: dict[str, Any] = Field(default_factory=dict)


class LocationSpaces(StageOutputBase):
    stage: Literal["location_spaces"] = "location_spaces"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = ("spaces",)
    ITEM_MODELS: ClassVar[dict[str, type[StageOutputBase]]] = {"spaces": SpaceChunk}

    spaces: list[dict[str, Any]] = Field(default_factory=list)


class LocationDetails(StageOutputBase):
    stage: Literal["location_details"] = "location_details"

    PROJECTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "materials",
        "lighting_scheme",
        "atmosphere",
        "inhabitants",
        "encounter_areas",
        "secrets",
        "treasure_locations",
        "history",
        "current_events",
        "adventure_hooks",
        "special_features",
    )

    materials: Any = None
    lighting_scheme: str | None = None
    atmosphere: str | None = None
    inhabitants: Any = None
    encounter_areas: list[Any] = Field(default_factory=list)
    secrets: list[Any] = Field(default_factory=list)
    treasure_locations: list[Any] = Field(default_factory=list)
    history: str | None = None
    current_events: Any = None
    adventure_hooks: list[Any] = Field(default_factory=list)
    special_features: list[Any] = Field(default_factory=list)


StageOutput = Annotated[
    Union[
        MonsterBasicInfo,
        MonsterStats,
        MonsterCombat,
        MonsterLegendary,
        MonsterLore,
        NpcBasicInfo,
        NpcCoreDetails,
        NpcStats,
        NpcCombat,
        NpcSpellcasting,
        NpcRelationships,
        NpcEquipment,
        LocationPurpose,
        LocationFoundation,
        LocationSpaces,
        LocationDetails,
    ],
    Field(discriminator="stage"),
]

_stage_output_adapter: TypeAdapter[StageOutput] = TypeAdapter(StageOutput)


def validate_stage_output(stage_id: str, data: dict[str, Any]) -> StageOutputBase:
    """
    Validate raw stage output against the union member for stage_id.

    Raises:
        ValidationError: If the data does not match the stage's schema
    """
    payload = dict(data)
    payload["stage"] = stage_id
    return _stage_output_adapter.validate_python(payload)


def project_output(output: Any) -> dict[str, Any] | None:
    """
    Project a stage output down to its allow-listed content fields.

    Returns None for missing or malformed outputs; callers omit those.
    """
    if output is None:
        return None
    if isinstance(output, dict):
        stage_id = output.get("stage")
        if not isinstance(stage_id, str):
            return None
        try:
            output = validate_stage_output(stage_id, output)
        except ValidationError as e:
            logger.debug(f"Omitting malformed prior output for {stage_id}: {e}")
            return None
    if not isinstance(output, StageOutputBase):
        return None

    projected: dict[str, Any] = {}
    item_models = type(output).ITEM_MODELS
    for field in type(output).PROJECTED_FIELDS:
        value = getattr(output, field, None)
        if value is None or value == [] or value == {}:
            continue
        if field in item_models and isinstance(value, list):
            value = [project_item(item_models[field], item) for item in value]
        projected[field] = value
    return projected


def project_item(model: type[StageOutputBase], item: Any) -> Any:
    """Keep only the allow-listed keys of one accumulated chunk item."""
    if not isinstance(item, dict):
        return item
    kept: dict[str, Any] = {}
    for key in model.PROJECTED_FIELDS:
        value = item.get(key)
        if value is None or value == [] or value == {}:
            continue
        kept[key] = value
    return kept
