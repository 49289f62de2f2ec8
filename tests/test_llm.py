"""Tests for provider dispatch and LLM output parsing."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import openai
import pytest

from loreforge.core.config import Settings
from loreforge.core.llm import (
    ProviderConfig,
    call_llm,
    describe_json_error,
    parse_llm_json_dict,
)

_REQUEST = httpx.Request("POST", "https://example.test")


def _openai_response(text):
    message = SimpleNamespace(content=text)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture
def mock_http_client():
    """Patch httpx.Client; yields the client returned by the context manager."""
    with patch("loreforge.core.llm.httpx.Client") as mock_cls:
        client = MagicMock()
        mock_cls.return_value.__enter__.return_value = client
        yield client


class TestCallLLMDispatch:
    def test_none_provider_fails_without_calling(self, settings):
        with patch("loreforge.core.llm.openai.OpenAI") as mock_openai:
            result = call_llm("sys", "msg", ProviderConfig(type="none"), settings)

        assert result.success is False
        assert "No AI provider configured" in result.error
        mock_openai.assert_not_called()

    def test_missing_key_fails(self):
        settings = Settings(LLM_PROVIDER="anthropic", ANTHROPIC_API_KEY=None)
        result = call_llm("sys", "msg", ProviderConfig(type="anthropic"), settings)
        assert result.success is False
        assert result.error == "anthropic API key not configured."

    def test_openai_success(self, settings):
        with patch("loreforge.core.llm.openai.OpenAI") as mock_openai:
            create = mock_openai.return_value.chat.completions.create
            create.return_value = _openai_response('{"name": "Mara"}')

            result = call_llm("sys", "msg", ProviderConfig(type="openai", model="gpt-test"), settings)

        assert result.success is True
        assert result.text == '{"name": "Mara"}'
        assert result.provider == "openai"
        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert mock_openai.call_args.kwargs["api_key"] == "test-openai-key"

    def test_session_key_overrides_settings(self, settings):
        with patch("loreforge.core.llm.openai.OpenAI") as mock_openai:
            mock_openai.return_value.chat.completions.create.return_value = _openai_response("{}")
            call_llm("sys", "msg", ProviderConfig(type="openai", api_key="sk-session"), settings)

        assert mock_openai.call_args.kwargs["api_key"] == "sk-session"

    def test_openai_error_is_normalized(self, settings):
        with patch("loreforge.core.llm.openai.OpenAI") as mock_openai:
            mock_openai.return_value.chat.completions.create.side_effect = (
                openai.APIConnectionError(request=_REQUEST)
            )
            result = call_llm("sys", "msg", ProviderConfig(type="openai"), settings)

        assert result.success is False
        assert result.error.startswith("OpenAI request failed")

    def test_openai_empty_body(self, settings):
        with patch("loreforge.core.llm.openai.OpenAI") as mock_openai:
            mock_openai.return_value.chat.completions.create.return_value = _openai_response("")
            result = call_llm("sys", "msg", ProviderConfig(type="openai"), settings)

        assert result.error == "Empty response from OpenAI."

    def test_anthropic_joins_text_blocks(self):
        settings = Settings(LLM_PROVIDER="anthropic", ANTHROPIC_API_KEY="test-anthropic-key")
        with patch("loreforge.core.llm.anthropic.Anthropic") as mock_anthropic:
            mock_anthropic.return_value.messages.create.return_value = SimpleNamespace(
                content=[SimpleNamespace(text='{"a": '), SimpleNamespace(text="1}")]
            )
            result = call_llm("sys", "msg", ProviderConfig(type="anthropic"), settings)

        assert result.success is True
        assert result.text == '{"a": 1}'
        assert mock_anthropic.return_value.messages.create.call_args.kwargs["system"] == "sys"


class TestHttpProviders:
    def test_gemini_http_error_truncates_body(self, mock_http_client):
        settings = Settings(GEMINI_API_KEY="test-gemini-key")
        mock_http_client.post.return_value = httpx.Response(503, text="x" * 500, request=_REQUEST)

        result = call_llm("sys", "msg", ProviderConfig(type="gemini"), settings)

        assert result.success is False
        assert result.error.startswith("Gemini API error 503: ")
        assert len(result.error) == len("Gemini API error 503: ") + 200

    def test_gemini_success(self, mock_http_client):
        settings = Settings(GEMINI_API_KEY="test-gemini-key")
        body = {"candidates": [{"content": {"parts": [{"text": '{"ok": true}'}]}}]}
        mock_http_client.post.return_value = httpx.Response(200, json=body, request=_REQUEST)

        result = call_llm("sys", "msg", ProviderConfig(type="gemini", model="gemini-test"), settings)

        assert result.text == '{"ok": true}'
        url = mock_http_client.post.call_args.args[0]
        assert "gemini-test:generateContent" in url

    def test_ollama_needs_no_key_and_uses_base_url(self, mock_http_client, settings):
        body = {"message": {"content": "{}"}}
        mock_http_client.post.return_value = httpx.Response(200, json=body, request=_REQUEST)

        provider = ProviderConfig(type="ollama", base_url="http://gpu-box:11434/")
        result = call_llm("sys", "msg", provider, settings)

        assert result.success is True
        assert mock_http_client.post.call_args.args[0] == "http://gpu-box:11434/api/chat"

    def test_empty_json_body(self, mock_http_client):
        settings = Settings(OPENROUTER_API_KEY="test-or-key")
        mock_http_client.post.return_value = httpx.Response(200, text="", request=_REQUEST)

        result = call_llm("sys", "msg", ProviderConfig(type="openrouter"), settings)

        assert result.error == "Empty response from OpenRouter."

    def test_network_failure(self, mock_http_client, settings):
        mock_http_client.post.side_effect = httpx.ConnectError("connection refused")

        result = call_llm("sys", "msg", ProviderConfig(type="ollama"), settings)

        assert result.success is False
        assert result.error == "Ollama request failed: connection refused"

    def test_invalid_base_url_is_normalized(self, mock_http_client, settings):
        mock_http_client.post.side_effect = httpx.InvalidURL("Invalid port: 'notaport'")

        provider = ProviderConfig(type="ollama", base_url="http://gpu-box:notaport")
        result = call_llm("sys", "msg", provider, settings)

        assert result.success is False
        assert result.provider == "ollama"
        assert result.error == "Ollama request failed: Invalid port: 'notaport'"


class TestParseLLMJson:
    def test_strips_fences(self):
        assert parse_llm_json_dict('```json\n{"name": "Mara"}\n```') == {"name": "Mara"}
        assert parse_llm_json_dict('Here you go:\n```\n{"a": 1}\n```') == {"a": 1}
        assert parse_llm_json_dict('  {"a": 1}  ') == {"a": 1}

    def test_rejects_non_object(self):
        with pytest.raises(json.JSONDecodeError) as exc_info:
            parse_llm_json_dict("[1, 2]")
        assert exc_info.value.pos == 0

    def test_error_description_has_position(self):
        with pytest.raises(json.JSONDecodeError) as exc_info:
            parse_llm_json_dict('{\n  "a": 1\n  "b": 2\n}')

        description = describe_json_error(exc_info.value)
        assert "line 3" in description
        assert "column 3" in description
