"""Tests for stage generation with a mocked LLM boundary."""

import json
from unittest.mock import patch

import pytest

from loreforge.chains.generate_stage import generate_stage_output
from loreforge.chains.registry import get_stage
from loreforge.core.errors import GenerationCallError, StageParseError
from loreforge.core.llm import LLMResult
from loreforge.core.schemas_outputs import LocationPurpose, MonsterBasicInfo, SpaceChunk
from loreforge.core.schemas_pipeline import ChunkState, PipelineContext, RequestConfig

VALID_BASIC_INFO = {
    "name": "Gloomfang",
    "description": "A shadow-wreathed wolf the size of a horse.",
    "size": "Large",
    "creature_type": "Monstrosity",
    "alignment": "neutral evil",
    "challenge_rating": "6",
}


def _ctx(deliverable="monster") -> PipelineContext:
    return PipelineContext(
        session_id="sess-gen",
        request=RequestConfig(deliverable=deliverable, prompt="A shadow wolf"),
    )


def _ok(payload) -> LLMResult:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return LLMResult.ok(text, "openai")


@pytest.fixture
def mock_llm():
    with patch("loreforge.chains.generate_stage.call_llm") as mock:
        yield mock


class TestGenerateStageOutput:
    def test_valid_output_first_try(self, mock_llm, settings):
        mock_llm.return_value = _ok(VALID_BASIC_INFO)
        stage = get_stage("monster", "monster_basic_info")

        output = generate_stage_output(stage, _ctx(), settings=settings)

        assert isinstance(output, MonsterBasicInfo)
        assert output.name == "Gloomfang"
        assert mock_llm.call_count == 1

    def test_fenced_json_is_accepted(self, mock_llm, settings):
        mock_llm.return_value = _ok(f"```json\n{json.dumps(VALID_BASIC_INFO)}\n```")
        stage = get_stage("monster", "monster_basic_info")
        assert generate_stage_output(stage, _ctx(), settings=settings).size == "Large"

    def test_invalid_json_retries_with_fix_prompt(self, mock_llm, settings):
        mock_llm.side_effect = [_ok('{"name": "Gloomfang",'), _ok(VALID_BASIC_INFO)]
        stage = get_stage("monster", "monster_basic_info")

        output = generate_stage_output(stage, _ctx(), settings=settings)

        assert output.name == "Gloomfang"
        assert mock_llm.call_count == 2
        retry_message = mock_llm.call_args_list[1].args[1]
        assert "The previous output was invalid" in retry_message
        assert '{"name": "Gloomfang",' in retry_message

    def test_parse_error_after_retry_cap(self, mock_llm, settings):
        mock_llm.return_value = _ok('{\n  "name": "Gloomfang"\n  "size": "Large"\n}')
        stage = get_stage("monster", "monster_basic_info")

        with pytest.raises(StageParseError) as exc_info:
            generate_stage_output(stage, _ctx(), settings=settings)

        error = exc_info.value
        assert mock_llm.call_count == settings.STAGE_PARSE_MAX_ATTEMPTS
        assert error.attempts == 3
        assert error.stage_id == "monster_basic_info"
        assert error.line == 3
        assert error.column is not None
        assert error.position is not None

    def test_schema_mismatch_names_field(self, mock_llm, settings):
        mock_llm.return_value = _ok({"ability_scores": "strong"})
        stage = get_stage("monster", "monster_stats")

        with pytest.raises(StageParseError) as exc_info:
            generate_stage_output(stage, _ctx(), settings=settings)

        assert "ability_scores" in exc_info.value.reason
        assert exc_info.value.line is None

    def test_non_object_json_is_a_parse_error(self, mock_llm, settings):
        mock_llm.return_value = _ok("[1, 2, 3]")
        stage = get_stage("monster", "monster_basic_info")
        with pytest.raises(StageParseError):
            generate_stage_output(stage, _ctx(), settings=settings)

    def test_call_failure_is_not_retried(self, mock_llm, settings):
        mock_llm.return_value = LLMResult.fail("OpenAI API error 503: overloaded", "openai")
        stage = get_stage("monster", "monster_basic_info")

        with pytest.raises(GenerationCallError) as exc_info:
            generate_stage_output(stage, _ctx(), settings=settings)

        assert mock_llm.call_count == 1
        assert exc_info.value.retryable is True
        assert exc_info.value.provider == "openai"
        assert exc_info.value.to_dict()["stage_id"] == "monster_basic_info"

    def test_chunk_is_validated_against_chunk_model(self, mock_llm, settings):
        mock_llm.return_value = _ok({"id": "space_3", "name": "Armory", "space_type": "room"})
        ctx = _ctx("location")
        ctx.stage_results["location_purpose"] = LocationPurpose(name="Keep", estimated_spaces=5)
        ctx.chunk_state = ChunkState(index=3, total=5, label="Space")
        stage = get_stage("location", "location_spaces")

        output = generate_stage_output(stage, ctx, settings=settings)

        assert isinstance(output, SpaceChunk)
        assert output.name == "Armory"

    def test_chunk_errors_name_the_chunk(self, mock_llm, settings):
        mock_llm.return_value = LLMResult.fail("Ollama request failed: connection refused", "ollama")
        ctx = _ctx("location")
        ctx.chunk_state = ChunkState(index=2, total=5, label="Space")
        stage = get_stage("location", "location_spaces")

        with pytest.raises(GenerationCallError) as exc_info:
            generate_stage_output(stage, ctx, settings=settings)

        assert exc_info.value.chunk_index == 2
        assert exc_info.value.chunk_total == 5
        assert "chunk=2/5" in str(exc_info.value)
