"""LLM client utilities: provider dispatch and JSON output parsing."""

import json
import re
from typing import Any, Literal

import anthropic
import httpx
import openai
from pydantic import BaseModel, Field

from loreforge.core.config import Settings, get_settings
from loreforge.core.logging import get_logger

logger = get_logger(__name__)

ProviderType = Literal["openai", "anthropic", "gemini", "ollama", "openrouter", "none"]

DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-5-20250929",
    "gemini": "gemini-2.0-flash",
    "ollama": "llama3",
    "openrouter": "google/gemini-2.0-flash-exp:free",
}

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"

# Vendor error bodies are truncated to this many characters
ERROR_BODY_CHARS = 200


class ProviderConfig(BaseModel):
    """Which provider a session calls, with optional per-session overrides."""

    type: ProviderType = "openai"
    model: str | None = None
    api_key: str | None = Field(default=None, exclude=True, repr=False)
    base_url: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


class LLMResult(BaseModel):
    """Normalized outcome of one generation call. Vendor failures never raise."""

    success: bool
    text: str | None = None
    error: str | None = None
    provider: str | None = None

    @classmethod
    def ok(cls, text: str, provider: str) -> "LLMResult":
        return cls(success=True, text=text, provider=provider)

    @classmethod
    def fail(cls, error: str, provider: str) -> "LLMResult":
        return cls(success=False, error=error, provider=provider)


def default_provider(settings: Settings | None = None) -> ProviderConfig:
    settings = settings or get_settings()
    return ProviderConfig(type=settings.LLM_PROVIDER, model=settings.LLM_MODEL)


def _api_key(provider: ProviderConfig, settings: Settings) -> str | None:
    if provider.api_key:
        return provider.api_key
    return {
        "openai": settings.OPENAI_API_KEY,
        "anthropic": settings.ANTHROPIC_API_KEY,
        "gemini": settings.GEMINI_API_KEY,
        "openrouter": settings.OPENROUTER_API_KEY,
    }.get(provider.type)


def _temperature(provider: ProviderConfig, settings: Settings) -> float:
    if provider.temperature is not None:
        return provider.temperature
    return settings.LLM_TEMPERATURE


def _max_tokens(provider: ProviderConfig, settings: Settings) -> int:
    return provider.max_tokens or settings.LLM_MAX_TOKENS


def _http_error(label: str, response: httpx.Response) -> str:
    return f"{label} API error {response.status_code}: {response.text[:ERROR_BODY_CHARS]}"


def _call_openai(instruction, message, provider, settings, model, api_key) -> LLMResult:
    client = openai.OpenAI(api_key=api_key, timeout=settings.LLM_TIMEOUT_SECONDS, max_retries=0)
    try:
        response = client.chat.completions.create(
            model=model,
            temperature=_temperature(provider, settings),
            max_tokens=_max_tokens(provider, settings),
            messages=[
                {"role": "system", "content": instruction},
                {"role": "user", "content": message},
            ],
        )
    except openai.OpenAIError as e:
        return LLMResult.fail(f"OpenAI request failed: {e}", "openai")

    text = response.choices[0].message.content if response.choices else None
    if not text:
        return LLMResult.fail("Empty response from OpenAI.", "openai")
    return LLMResult.ok(text, "openai")


def _call_anthropic(instruction, message, provider, settings, model, api_key) -> LLMResult:
    client = anthropic.Anthropic(
        api_key=api_key, timeout=settings.LLM_TIMEOUT_SECONDS, max_retries=0
    )
    try:
        response = client.messages.create(
            model=model,
            max_tokens=_max_tokens(provider, settings),
            temperature=_temperature(provider, settings),
            system=instruction,
            messages=[{"role": "user", "content": message}],
        )
    except anthropic.AnthropicError as e:
        return LLMResult.fail(f"Anthropic request failed: {e}", "anthropic")

    text = "".join(block.text for block in response.content if getattr(block, "text", None))
    if not text:
        return LLMResult.fail("Empty response from Anthropic.", "anthropic")
    return LLMResult.ok(text, "anthropic")


def _post_json(label: str, url: str, payload: dict, headers: dict, timeout: float):
    """POST and decode JSON. Returns (data, error)."""
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(url, json=payload, headers=headers)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        return None, f"{label} request failed: {e}"
    if response.is_error:
        return None, _http_error(label, response)
    try:
        return response.json(), None
    except ValueError:
        return None, f"Empty response from {label}."


def _call_gemini(instruction, message, provider, settings, model, api_key) -> LLMResult:
    payload = {
        "system_instruction": {"parts": [{"text": instruction}]},
        "contents": [{"parts": [{"text": message}]}],
        "generationConfig": {
            "temperature": _temperature(provider, settings),
            "maxOutputTokens": _max_tokens(provider, settings),
        },
    }
    data, error = _post_json(
        "Gemini",
        GEMINI_URL.format(model=model),
        payload,
        {"x-goog-api-key": api_key or ""},
        settings.LLM_TIMEOUT_SECONDS,
    )
    if error:
        return LLMResult.fail(error, "gemini")
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        text = None
    if not text:
        return LLMResult.fail("Empty response from Gemini.", "gemini")
    return LLMResult.ok(text, "gemini")


def _call_ollama(instruction, message, provider, settings, model, api_key) -> LLMResult:
    base_url = (provider.base_url or settings.OLLAMA_BASE_URL).rstrip("/")
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": instruction},
            {"role": "user", "content": message},
        ],
        "stream": False,
    }
    data, error = _post_json(
        "Ollama", f"{base_url}/api/chat", payload, {}, settings.LLM_TIMEOUT_SECONDS
    )
    if error:
        return LLMResult.fail(error, "ollama")
    try:
        text = data["message"]["content"]
    except (KeyError, TypeError):
        text = None
    if not text:
        return LLMResult.fail("Empty response from Ollama.", "ollama")
    return LLMResult.ok(text, "ollama")


def _call_openrouter(instruction, message, provider, settings, model, api_key) -> LLMResult:
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": instruction},
            {"role": "user", "content": message},
        ],
        "temperature": _temperature(provider, settings),
        "max_tokens": _max_tokens(provider, settings),
    }
    headers = {"Authorization": f"Bearer {api_key}", "X-Title": "LoreForge"}
    data, error = _post_json(
        "OpenRouter", OPENROUTER_URL, payload, headers, settings.LLM_TIMEOUT_SECONDS
    )
    if error:
        return LLMResult.fail(error, "openrouter")
    try:
        text = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        text = None
    if not text:
        return LLMResult.fail("Empty response from OpenRouter.", "openrouter")
    return LLMResult.ok(text, "openrouter")


_DISPATCH = {
    "openai": _call_openai,
    "anthropic": _call_anthropic,
    "gemini": _call_gemini,
    "ollama": _call_ollama,
    "openrouter": _call_openrouter,
}

# Providers that cannot run without a key
_KEYED = {"openai", "anthropic", "gemini", "openrouter"}


def call_llm(
    instruction: str,
    message: str,
    provider: ProviderConfig | None = None,
    settings: Settings | None = None,
) -> LLMResult:
    """
    Send one instruction/message pair to the configured provider.

    HTTP errors, empty bodies and network failures are all normalized to
    LLMResult(success=False, error=...). No retries are made here.

    Args:
        instruction: System instruction
        message: User message
        provider: Provider config (defaults to settings)
        settings: Application settings

    Returns:
        LLMResult
    """
    settings = settings or get_settings()
    provider = provider or default_provider(settings)

    if provider.type == "none":
        return LLMResult.fail(
            "No AI provider configured. Configure a provider to generate content.", "none"
        )
    handler = _DISPATCH.get(provider.type)
    if handler is None:
        return LLMResult.fail(f"Unknown provider type: {provider.type}", provider.type)

    api_key = _api_key(provider, settings)
    if provider.type in _KEYED and not api_key:
        return LLMResult.fail(f"{provider.type} API key not configured.", provider.type)

    model = provider.model or DEFAULT_MODELS[provider.type]
    logger.info(
        f"Calling {provider.type}:{model}",
        extra={"instruction_chars": len(instruction), "message_chars": len(message)},
    )
    return handler(instruction, message, provider, settings, model, api_key)


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_llm_json_dict(raw_output: str) -> dict[str, Any]:
    """
    Parse LLM output as a JSON object.

    Raises:
        json.JSONDecodeError: If the text is not valid JSON, or is JSON but
            not an object (reported at position 0)
    """
    cleaned = _strip_llm_fences(raw_output)
    parsed = json.loads(cleaned)
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError(
            f"Expected a JSON object, got {type(parsed).__name__}", cleaned, 0
        )
    return parsed


def describe_json_error(error: json.JSONDecodeError, context_chars: int = 40) -> str:
    """Position-aware description of a JSON error with surrounding text."""
    doc = error.doc or ""
    start = max(0, error.pos - context_chars)
    snippet = doc[start : error.pos + context_chars].replace("\n", "\\n")
    return (
        f"{error.msg} at line {error.lineno}, column {error.colno} "
        f"(char {error.pos}) near: {snippet!r}"
    )
