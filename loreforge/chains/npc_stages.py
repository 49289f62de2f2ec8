"""NPC stages with routing for combat and spellcasting."""

from typing import Any

from loreforge.chains.stage_definition import (
    StageDefinition,
    add_prior,
    base_context,
    mentions_any,
    parse_challenge,
    prior,
)
from loreforge.core.schemas_outputs import (
    NpcBasicInfo,
    NpcCombat,
    NpcCoreDetails,
    NpcEquipment,
    NpcRelationships,
    NpcSpellcasting,
    NpcStats,
)
from loreforge.core.schemas_pipeline import PipelineContext

COMBAT_KEYWORDS = (
    "warrior",
    "fighter",
    "soldier",
    "guard",
    "knight",
    "barbarian",
    "combat",
    "battle",
    "attack",
    "weapon",
    "armor",
    "bodyguard",
    "mercenary",
    "gladiator",
    "champion",
)

NON_COMBAT_KEYWORDS = (
    "shopkeeper",
    "merchant",
    "scholar",
    "librarian",
    "scribe",
    "peaceful",
    "non-combat",
    "civilian",
    "child",
    "elder",
    "infant",
    "baby",
)

SPELLCASTING_CLASSES = (
    "wizard",
    "sorcerer",
    "warlock",
    "cleric",
    "druid",
    "bard",
    "paladin",
    "ranger",
    "artificer",
    "eldritch knight",
    "arcane trickster",
)

SPELL_KEYWORDS = (
    "spell",
    "magic",
    "mage",
    "caster",
    "arcane",
    "divine",
    "sorcery",
    "witch",
    "warlock",
    "wizard",
    "cleric",
    "druid",
    "enchant",
    "conjure",
    "summon",
    "ritual",
    "cantrip",
)

MAGICAL_RACES = (
    "dragon",
    "fey",
    "celestial",
    "fiend",
    "demon",
    "devil",
    "elemental",
    "genasi",
    "aasimar",
    "tiefling",
    "drow",
)

# Innately magical races only get spellcasting from this CR up
MAGICAL_RACE_MIN_CR = 2

# ruff: noqa: E501
NPC_BASE_PROMPT = """You are a D&D 5e NPC creator. You CREATE a fully-formed character; canon facts are reference and context, not a limit.
If canon does not specify a detail, create it from the user request, the canon, and 5E conventions."""

BASIC_INFO_PROMPT = f"""{NPC_BASE_PROMPT}

You are creating the BASIC INFORMATION section.
Fields: name, title, description, appearance, background, race, subtype, alignment, role, challenge_rating (string like "1/2" or "5"), class_levels ({{class: level}}), location, affiliation."""

CORE_DETAILS_PROMPT = f"""{NPC_BASE_PROMPT}

You are creating the CORE DETAILS and PERSONALITY section.
Fields: personality_traits, ideals, bonds, flaws, goals, fears, mannerisms (arrays), voice (string), secrets, hooks (arrays)."""

STATS_PROMPT = f"""{NPC_BASE_PROMPT}

You are creating the STATS section.
Fields: ability_scores {{str, dex, con, int, wis, cha}}, armor_class, hit_points, speed, proficiency_bonus, saving_throws, skill_proficiencies, senses, languages.
Values must be consistent with the challenge rating and class levels."""

COMBAT_PROMPT = f"""{NPC_BASE_PROMPT}

You are creating the COMBAT section.
Fields: actions, bonus_actions, reactions (arrays of {{name, description}}), tactics (string)."""

SPELLCASTING_PROMPT = f"""{NPC_BASE_PROMPT}

You are creating the SPELLCASTING section.
Fields: spellcasting_ability, spell_save_dc, spell_attack_bonus, spell_slots ({{level: count}}), spells_known (array), innate_spells (array)."""

RELATIONSHIPS_PROMPT = f"""{NPC_BASE_PROMPT}

You are creating the RELATIONSHIPS section.
Fields: allies, enemies, factions, family (arrays of {{name, relationship, notes}}).
Prefer entities that exist in the provided canon."""

EQUIPMENT_PROMPT = f"""{NPC_BASE_PROMPT}

You are creating the EQUIPMENT section.
Fields: weapons, armor, magic_items, gear (arrays), wealth."""


def _identity(ctx: PipelineContext) -> dict[str, Any]:
    return prior(ctx, "npc_basic_info") or {}


def _class_names(class_levels: Any) -> list[str]:
    if isinstance(class_levels, dict):
        return [str(k) for k in class_levels]
    if isinstance(class_levels, list):
        names = []
        for entry in class_levels:
            if isinstance(entry, dict) and entry.get("class"):
                names.append(str(entry["class"]))
            elif isinstance(entry, str):
                names.append(entry)
        return names
    return []


def needs_combat(ctx: PipelineContext) -> bool:
    """Skip combat for clear non-combatants and CR 0 civilians."""
    info = _identity(ctx)
    texts = (info.get("description"), info.get("role"), ctx.request.prompt)
    combat = mentions_any(COMBAT_KEYWORDS, *texts)
    if mentions_any(NON_COMBAT_KEYWORDS, *texts) and not combat:
        return False
    cr = parse_challenge(info.get("challenge_rating"))
    if cr == 0 and not combat and not _class_names(info.get("class_levels")):
        return False
    return True


def needs_spellcasting(ctx: PipelineContext) -> bool:
    info = _identity(ctx)
    classes = [c.lower() for c in _class_names(info.get("class_levels"))]
    if any(sc in c for c in classes for sc in SPELLCASTING_CLASSES):
        return True
    if mentions_any(SPELL_KEYWORDS, info.get("description"), ctx.request.prompt):
        return True
    magical = mentions_any(MAGICAL_RACES, info.get("race"), info.get("subtype"))
    return magical and parse_challenge(info.get("challenge_rating")) >= MAGICAL_RACE_MIN_CR


def build_basic_info(ctx: PipelineContext) -> dict[str, Any]:
    return base_context(
        ctx,
        "basic_info",
        "Create a solid foundation for this NPC that the next stages will build upon.",
    )


def build_core_details(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(ctx, "core_details", "Give this NPC depth and a distinct personality.")
    add_prior(message, "basic_info", ctx, "npc_basic_info")
    return message


def build_stats(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(ctx, "stats", "Generate mechanical statistics for this NPC.")
    add_prior(message, "basic_info", ctx, "npc_basic_info")
    return message


def build_combat(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(ctx, "combat", "Generate combat actions and tactics.")
    add_prior(message, "basic_info", ctx, "npc_basic_info")
    add_prior(message, "stats", ctx, "npc_stats")
    return message


def build_spellcasting(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(ctx, "spellcasting", "Generate spellcasting for this NPC.")
    add_prior(message, "basic_info", ctx, "npc_basic_info")
    add_prior(message, "stats", ctx, "npc_stats")
    return message


def build_relationships(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(ctx, "relationships", "Connect this NPC to the world.")
    add_prior(message, "basic_info", ctx, "npc_basic_info")
    add_prior(message, "core_details", ctx, "npc_core_details")
    return message


def build_equipment(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(ctx, "equipment", "Equip this NPC consistently with their role.")
    add_prior(message, "basic_info", ctx, "npc_basic_info")
    add_prior(message, "combat", ctx, "npc_combat")
    add_prior(message, "spellcasting", ctx, "npc_spellcasting")
    return message


def _stage(stage_id: str, name: str, prompt: str, builder, model, should_run=None):
    return StageDefinition(
        id=stage_id,
        name=name,
        deliverable="npc",
        instruction=prompt,
        build_context=builder,
        output_model=model,
        should_run=should_run,
    )


NPC_STAGES: tuple[StageDefinition, ...] = (
    _stage("npc_basic_info", "Basic Info", BASIC_INFO_PROMPT, build_basic_info, NpcBasicInfo),
    _stage(
        "npc_core_details", "Core Details", CORE_DETAILS_PROMPT, build_core_details, NpcCoreDetails
    ),
    _stage("npc_stats", "Stats", STATS_PROMPT, build_stats, NpcStats),
    _stage("npc_combat", "Combat", COMBAT_PROMPT, build_combat, NpcCombat, needs_combat),
    _stage(
        "npc_spellcasting",
        "Spellcasting",
        SPELLCASTING_PROMPT,
        build_spellcasting,
        NpcSpellcasting,
        needs_spellcasting,
    ),
    _stage(
        "npc_relationships",
        "Relationships",
        RELATIONSHIPS_PROMPT,
        build_relationships,
        NpcRelationships,
    ),
    _stage("npc_equipment", "Equipment", EQUIPMENT_PROMPT, build_equipment, NpcEquipment),
)
