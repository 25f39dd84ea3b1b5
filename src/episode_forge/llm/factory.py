"""Select the LLM provider once, from settings."""

import asyncio

import httpx

from ..config import Settings
from ..errors import ValidationError
from .backoff import RetryPolicy, Sleep
from .base import LLMAdapter
from .providers import GeminiAdapter, OllamaAdapter, OpenAICompatAdapter

PROVIDER_ALIASES = {
    "gemini": "gemini",
    "google": "gemini",
    "openai": "openai",
    "glm": "openai",
    "huggingface": "openai",
    "ollama": "ollama",
}


def _build(
    provider: str,
    model: str,
    embedding_model: str,
    settings: Settings,
    client: httpx.AsyncClient,
    sleep: Sleep,
) -> LLMAdapter:
    key = PROVIDER_ALIASES.get(provider.lower().strip())
    if key is None:
        raise ValidationError(
            f"Unknown LLM provider: {provider!r}",
            "NOT_SUPPORTED",
            hint=f"Use one of: {', '.join(sorted(PROVIDER_ALIASES))}",
            details={"provider": provider},
        )

    common = dict(
        embedding_model=embedding_model,
        timeout=settings.http_timeout_seconds,
        generate_policy=RetryPolicy(max_attempts=settings.llm_max_attempts),
        embed_policy=RetryPolicy(max_attempts=settings.embed_max_attempts),
        repair_attempts=settings.parse_repair_attempts,
        sleep=sleep,
    )

    if key == "gemini":
        return GeminiAdapter(
            model or GeminiAdapter.DEFAULT_MODEL,
            client,
            api_key=settings.gemini_api_key,
            base_url=settings.gemini_base_url,
            **common,
        )
    if key == "openai":
        return OpenAICompatAdapter(
            model or OpenAICompatAdapter.DEFAULT_MODEL,
            client,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            **common,
        )
    return OllamaAdapter(
        model or OllamaAdapter.DEFAULT_MODEL,
        client,
        base_url=settings.ollama_base_url,
        **common,
    )


def create_llm_adapter(
    settings: Settings,
    client: httpx.AsyncClient,
    sleep: Sleep = asyncio.sleep,
) -> LLMAdapter:
    """Adapter used for structured generation."""
    return _build(
        settings.llm_provider,
        settings.llm_model,
        settings.embedding_model,
        settings,
        client,
        sleep,
    )


def create_embedding_adapter(
    settings: Settings,
    client: httpx.AsyncClient,
    sleep: Sleep = asyncio.sleep,
) -> LLMAdapter:
    """Adapter used for embeddings; may be a different provider than generation."""
    provider = settings.resolved_embedding_provider
    same = PROVIDER_ALIASES.get(provider.lower()) == PROVIDER_ALIASES.get(settings.llm_provider.lower())
    return _build(
        provider,
        settings.llm_model if same else "",
        settings.embedding_model,
        settings,
        client,
        sleep,
    )
