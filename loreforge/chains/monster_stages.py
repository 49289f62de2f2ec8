"""Monster stat block stages: basic info through ecology and lore."""

from typing import Any

from loreforge.chains.stage_definition import (
    StageDefinition,
    add_prior,
    base_context,
    parse_challenge,
    prior_field,
)
from loreforge.core.schemas_outputs import (
    MonsterBasicInfo,
    MonsterCombat,
    MonsterLegendary,
    MonsterLore,
    MonsterStats,
)
from loreforge.core.schemas_pipeline import PipelineContext

# Legendary and lair features only for monsters at or above this CR
LEGENDARY_MIN_CR = 5

# ruff: noqa: E501
BASIC_INFO_PROMPT = """You are creating a D&D 5e monster stat block. This is stage 1/5: Basic Information.

Establish the fundamental identity and classification of the monster.

Focus ONLY on these fields:
- name: The monster's name (required)
- description: Physical appearance and general behavior (2-3 sentences, required)
- size: Tiny, Small, Medium, Large, Huge, or Gargantuan (required)
- creature_type: Aberration, Beast, Celestial, Construct, Dragon, Elemental, Fey, Fiend, Giant, Humanoid, Monstrosity, Ooze, Plant, or Undead (required)
- subtype: Specific subtype if applicable (e.g., "goblinoid", "shapechanger")
- alignment: Typical alignment for this creature (required)
- challenge_rating: CR as a string like "1/4", "1/2", "1", "5" (required)
- experience_points: XP value based on CR
- location: Typical habitat or environment

Do NOT include stats, abilities, or actions yet."""

STATS_PROMPT = """You are creating a D&D 5e monster stat block. This is stage 2/5: Stats and Defenses.

Focus ONLY on these fields:
- ability_scores: {str, dex, con, int, wis, cha} (integers 1-30, required)
- armor_class: Integer or array of {value, type, notes} (required)
- hit_points: Integer or {average, formula} (required)
- hit_dice: String like "8d10"
- proficiency_bonus: Integer +2 to +9 based on CR (required)
- speed: {walk, fly, swim, climb, burrow} as strings like "30 ft."
- saving_throws, skill_proficiencies: arrays of {name, value, notes?} with value as a string like "+5"
- damage_vulnerabilities, damage_resistances, damage_immunities, condition_immunities: arrays
- senses: array (e.g., "darkvision 60 ft.")
- languages: array

Use CR-appropriate values."""

COMBAT_PROMPT = """You are creating a D&D 5e monster stat block. This is stage 3/5: Combat and Abilities.

Focus ONLY on these fields:
- abilities: passive traits, each {name, description, uses?, recharge?, notes?}
- actions: each {name, description, uses?, recharge?, notes?} with attack bonus, damage and DCs in the description
- bonus_actions: array, if applicable
- reactions: array, if applicable
- tactics: string describing combat behavior

Include at least one attack action and appropriate bonuses and save DCs for the CR."""

LEGENDARY_PROMPT = """You are creating a D&D 5e monster stat block. This is stage 4/5: Legendary and Lair Features.

Focus ONLY on these fields (only if appropriate):
- legendary_actions: {summary, options: [{name, description, uses?, recharge?, notes?}]}
- mythic_actions: {summary, options} - only for CR 15+
- lair_actions: array of strings, if the creature has a lair
- regional_effects: array of strings

If a field is not appropriate, omit it."""

LORE_PROMPT = """You are creating a D&D 5e monster stat block. This is stage 5/5: Ecology and Lore.

Focus ONLY on these fields:
- ecology: 2-3 sentences on habitat, diet, social structure and behavior
- lore: 2-3 sentences of background lore or origin
- notes: array of GM notes or adventure hooks
- sources: array of cited source books or references"""


def _challenge_label(ctx: PipelineContext) -> str:
    return str(prior_field(ctx, "monster_basic_info", "challenge_rating", "unknown"))


def build_basic_info(ctx: PipelineContext) -> dict[str, Any]:
    return base_context(
        ctx,
        "basic_info",
        "Generate the basic information for this monster: name, description, size, creature type, alignment and challenge rating.",
    )


def build_stats(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(
        ctx,
        "stats",
        f"Generate stats and defenses appropriate for CR {_challenge_label(ctx)}.",
    )
    add_prior(message, "basic_info", ctx, "monster_basic_info")
    return message


def build_combat(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(
        ctx,
        "combat",
        f"Generate combat abilities and actions mechanically appropriate for CR {_challenge_label(ctx)}.",
    )
    add_prior(message, "basic_info", ctx, "monster_basic_info")
    add_prior(message, "stats", ctx, "monster_stats")
    return message


def build_legendary(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(
        ctx,
        "legendary",
        f"Generate legendary actions and lair features fitting CR {_challenge_label(ctx)}.",
    )
    add_prior(message, "basic_info", ctx, "monster_basic_info")
    add_prior(message, "combat", ctx, "monster_combat")
    return message


def build_lore(ctx: PipelineContext) -> dict[str, Any]:
    message = base_context(
        ctx,
        "lore",
        "Generate ecology and lore that helps a GM use this monster effectively.",
    )
    add_prior(message, "basic_info", ctx, "monster_basic_info")
    message["stats_summary"] = {
        "cr": prior_field(ctx, "monster_basic_info", "challenge_rating"),
        "type": prior_field(ctx, "monster_basic_info", "creature_type"),
        "has_legendary": bool(prior_field(ctx, "monster_legendary", "legendary_actions")),
    }
    return message


def needs_legendary(ctx: PipelineContext) -> bool:
    cr = parse_challenge(prior_field(ctx, "monster_basic_info", "challenge_rating"))
    return cr >= LEGENDARY_MIN_CR


MONSTER_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(
        id="monster_basic_info",
        name="Basic Info",
        deliverable="monster",
        instruction=BASIC_INFO_PROMPT,
        build_context=build_basic_info,
        output_model=MonsterBasicInfo,
    ),
    StageDefinition(
        id="monster_stats",
        name="Stats & Defenses",
        deliverable="monster",
        instruction=STATS_PROMPT,
        build_context=build_stats,
        output_model=MonsterStats,
    ),
    StageDefinition(
        id="monster_combat",
        name="Combat & Abilities",
        deliverable="monster",
        instruction=COMBAT_PROMPT,
        build_context=build_combat,
        output_model=MonsterCombat,
    ),
    StageDefinition(
        id="monster_legendary",
        name="Legendary & Lair",
        deliverable="monster",
        instruction=LEGENDARY_PROMPT,
        build_context=build_legendary,
        output_model=MonsterLegendary,
        should_run=needs_legendary,
    ),
    StageDefinition(
        id="monster_lore",
        name="Ecology & Lore",
        deliverable="monster",
        instruction=LORE_PROMPT,
        build_context=build_lore,
        output_model=MonsterLore,
    ),
)
