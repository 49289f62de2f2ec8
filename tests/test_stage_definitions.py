"""Tests for stage registries, context building, projection and routing."""

import json

import pytest
from pydantic import ValidationError

from loreforge.chains.location_stages import build_spaces
from loreforge.chains.monster_stages import needs_legendary
from loreforge.chains.npc_stages import build_equipment, needs_combat, needs_spellcasting
from loreforge.chains.registry import get_stage, get_stages
from loreforge.chains.stage_definition import OUTPUT_RULES, parse_challenge
from loreforge.core.prompt_limits import analyze_prompt, trim_prior_decisions
from loreforge.core.schemas_canon import CanonFactSet
from loreforge.core.schemas_outputs import (
    LocationSpaces,
    MonsterBasicInfo,
    NpcBasicInfo,
    NpcCombat,
    project_output,
    validate_stage_output,
)
from loreforge.core.schemas_pipeline import ChunkState, PipelineContext, RequestConfig
from tests.fakes.fake_canon_store import make_fact


def _ctx(deliverable="npc", prompt="A retired sellsword", **results) -> PipelineContext:
    ctx = PipelineContext(
        session_id="sess-1",
        request=RequestConfig(deliverable=deliverable, prompt=prompt),
    )
    # Assigned after construction so malformed outputs can be planted
    ctx.stage_results.update(results)
    return ctx


class TestRegistry:
    def test_registry_order(self):
        assert [s.id for s in get_stages("monster")] == [
            "monster_basic_info",
            "monster_stats",
            "monster_combat",
            "monster_legendary",
            "monster_lore",
        ]
        assert [s.id for s in get_stages("location")] == [
            "location_purpose",
            "location_foundation",
            "location_spaces",
            "location_details",
        ]
        assert len(get_stages("npc")) == 7

    def test_only_location_spaces_is_chunked(self):
        chunked = [s.id for d in ("monster", "npc", "location") for s in get_stages(d) if s.chunked]
        assert chunked == ["location_spaces"]
        assert get_stage("location", "location_spaces").accumulate_key == "spaces"

    def test_unknown_deliverable(self):
        with pytest.raises(ValueError):
            get_stages("spell")
        with pytest.raises(ValueError):
            get_stage("npc", "monster_stats")

    def test_system_prompt_carries_output_rules(self):
        stage = get_stage("monster", "monster_stats")
        assert stage.system_prompt().endswith(OUTPUT_RULES)


class TestStageOutputUnion:
    def test_discriminates_on_stage(self):
        output = validate_stage_output("npc_combat", {"actions": [{"name": "Longsword"}]})
        assert isinstance(output, NpcCombat)
        assert output.stage == "npc_combat"

    def test_unknown_stage_rejected(self):
        with pytest.raises(ValidationError):
            validate_stage_output("npc_dance", {})

    def test_schema_mismatch_rejected(self):
        with pytest.raises(ValidationError):
            validate_stage_output("npc_combat", {"actions": "stab"})


class TestProjection:
    def test_allow_list_excludes_bookkeeping_and_extras(self):
        output = MonsterBasicInfo(
            name="Gloomfang",
            challenge_rating="6",
            sources_used=["c1"],
            proposals=[{"question": "Q?"}],
            surprise_field="leak",
        )
        projected = project_output(output)
        assert projected == {"name": "Gloomfang", "challenge_rating": "6"}

    def test_missing_and_malformed_are_omitted(self):
        assert project_output(None) is None
        assert project_output({"stage": "npc_combat", "actions": "stab"}) is None
        assert project_output({"name": "no stage"}) is None

    def test_malformed_prior_is_omitted_from_context(self):
        ctx = _ctx(
            npc_basic_info=NpcBasicInfo(name="Mara"),
            npc_combat={"stage": "npc_combat", "actions": "stab"},
        )
        message = build_equipment(ctx)
        assert message["basic_info"] == {"name": "Mara"}
        assert "combat" not in message


class TestContextBuilding:
    def test_base_context_carries_canon_and_decisions(self):
        ctx = _ctx()
        ctx.canon = CanonFactSet(facts=[make_fact("c1", "Mara served the Lords' Alliance")])
        ctx.prior_decisions = {"Is she a Harper?": "No"}
        message = json.loads(get_stage("npc", "npc_basic_info").build_message(ctx))
        assert message["relevant_canon"][0]["chunk_id"] == "c1"
        assert message["previous_decisions"] == {"Is she a Harper?": "No"}
        assert message["request"] == "A retired sellsword"

    def test_spaces_context_shows_recent_window(self):
        spaces = [{"name": f"Room {i}"} for i in range(1, 9)]
        ctx = _ctx("location", location_spaces=LocationSpaces(spaces=spaces))
        ctx.chunk_state = ChunkState(index=9, total=12, label="Space", window=5)

        message = build_spaces(ctx)

        assert [s["name"] for s in message["recent_spaces"]] == [
            "Room 4",
            "Room 5",
            "Room 6",
            "Room 7",
            "Room 8",
        ]
        assert message["chunk_info"] == "Space 9/12"


class TestRouting:
    @pytest.mark.parametrize(
        "raw,expected", [("1/2", 0.5), ("5", 5.0), (7, 7.0), ("10 (5,900 XP)", 10.0), ("?", 0.0)]
    )
    def test_parse_challenge(self, raw, expected):
        assert parse_challenge(raw) == expected

    def test_legendary_only_at_high_cr(self):
        assert needs_legendary(
            _ctx("monster", monster_basic_info=MonsterBasicInfo(challenge_rating="5"))
        )
        assert not needs_legendary(
            _ctx("monster", monster_basic_info=MonsterBasicInfo(challenge_rating="1/2"))
        )
        assert not needs_legendary(_ctx("monster"))

    def test_non_combatant_skips_combat(self):
        shopkeeper = NpcBasicInfo(role="shopkeeper", description="A kindly merchant")
        assert not needs_combat(_ctx(prompt="A kindly shopkeeper", npc_basic_info=shopkeeper))
        guard = NpcBasicInfo(role="city guard")
        assert needs_combat(_ctx(prompt="A gate guard", npc_basic_info=guard))

    def test_casters_get_spellcasting(self):
        wizard = NpcBasicInfo(class_levels=[{"class": "Wizard", "level": 5}])
        assert needs_spellcasting(_ctx(prompt="An old scholar", npc_basic_info=wizard))
        fighter = NpcBasicInfo(class_levels={"Fighter": 3}, race="human")
        assert not needs_spellcasting(_ctx(prompt="A dockhand", npc_basic_info=fighter))


class TestPromptLimits:
    def test_analyze_prompt_thresholds(self, settings):
        assert analyze_prompt("a" * 100, "b" * 100, settings).recommendation == "ok"
        assert analyze_prompt("a" * 7_000, "b" * 500, settings).recommendation == "warning"
        result = analyze_prompt("a" * 7_000, "b" * 1_000, settings)
        assert result.recommendation == "error"
        assert result.exceeds_limit

    def test_trim_keeps_most_recent_in_order(self):
        decisions = {f"Question {i}?": "Answer" for i in range(10)}
        # Each entry costs 11 + 6 + 20 = 37 chars
        trimmed = trim_prior_decisions(decisions, 100)
        assert list(trimmed) == ["Question 8?", "Question 9?"]
