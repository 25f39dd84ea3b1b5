"""Concrete LLM providers over httpx.

Supports:
- Gemini (Google Generative Language REST API)
- Any OpenAI-compatible chat endpoint (OpenAI, GLM, Hugging Face router, vLLM)
- Ollama (local)
"""

import logging
from typing import Optional

import httpx

from ..errors import UpstreamError, classify_http_status
from .base import ChatMessage, JsonRequest, LLMAdapter

logger = logging.getLogger(__name__)


class HttpAdapter(LLMAdapter):
    """Shared POST handling; maps transport and status failures to UpstreamError."""

    def __init__(self, model: str, client: httpx.AsyncClient, **kwargs):
        super().__init__(model, **kwargs)
        self.client = client

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> dict:
        try:
            response = await self.client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"{self.name} request timed out: {exc}", "TIMEOUT") from exc
        except httpx.TransportError as exc:
            raise UpstreamError(
                f"{self.name} transport error: {exc}",
                "UNAVAILABLE",
                details={"url": url},
            ) from exc

        if response.status_code >= 400:
            raise classify_http_status(
                response.status_code,
                response.text,
                response.headers,
                provider=self.provider,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                f"{self.name} returned a non-JSON body",
                "UNAVAILABLE",
                details={"body": response.text},
            ) from exc


class GeminiAdapter(HttpAdapter):
    """Gemini generateContent / embedContent."""

    provider = "gemini"
    DEFAULT_MODEL = "gemini-2.5-flash"

    def __init__(self, model: str, client: httpx.AsyncClient, api_key: str, base_url: str, **kwargs):
        super().__init__(model, client, **kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    @property
    def _headers(self) -> dict:
        return {"x-goog-api-key": self.api_key}

    async def _complete(self, request: JsonRequest, messages: list[ChatMessage]) -> str:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in messages
            if m.role != "system"
        ]
        payload = {
            "contents": contents,
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_output_tokens,
                "responseMimeType": "application/json",
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        data = await self._post(
            f"{self.base_url}/models/{self.model}:generateContent",
            payload,
            self._headers,
        )
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            logger.debug("Gemini returned no candidates: %s", feedback)
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts).strip()

    async def _embed(self, text: str) -> list[float]:
        data = await self._post(
            f"{self.base_url}/models/{self.embedding_model}:embedContent",
            {
                "model": f"models/{self.embedding_model}",
                "content": {"parts": [{"text": text}]},
            },
            self._headers,
        )
        return list((data.get("embedding") or {}).get("values") or [])


class OpenAICompatAdapter(HttpAdapter):
    """OpenAI-compatible /chat/completions and /embeddings."""

    provider = "openai"
    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(self, model: str, client: httpx.AsyncClient, api_key: str, base_url: str, **kwargs):
        super().__init__(model, client, **kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    @property
    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _complete(self, request: JsonRequest, messages: list[ChatMessage]) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": request.temperature,
            "max_tokens": request.max_output_tokens,
            "response_format": {"type": "json_object"},
        }
        data = await self._post(f"{self.base_url}/chat/completions", payload, self._headers)
        choices = data.get("choices") or []
        if not choices:
            return ""
        return ((choices[0].get("message") or {}).get("content") or "").strip()

    async def _embed(self, text: str) -> list[float]:
        data = await self._post(
            f"{self.base_url}/embeddings",
            {"model": self.embedding_model, "input": text},
            self._headers,
        )
        items = data.get("data") or []
        if not items:
            return []
        return list(items[0].get("embedding") or [])


class OllamaAdapter(HttpAdapter):
    """Ollama /api/chat and /api/embed."""

    provider = "ollama"
    DEFAULT_MODEL = "llama3.1:8b"

    def __init__(self, model: str, client: httpx.AsyncClient, base_url: str, **kwargs):
        super().__init__(model, client, **kwargs)
        self.base_url = base_url.rstrip("/")

    async def _complete(self, request: JsonRequest, messages: list[ChatMessage]) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "format": request.schema.model_json_schema(),
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_output_tokens,
            },
        }
        data = await self._post(f"{self.base_url}/api/chat", payload)
        return ((data.get("message") or {}).get("content") or "").strip()

    async def _embed(self, text: str) -> list[float]:
        data = await self._post(
            f"{self.base_url}/api/embed",
            {"model": self.embedding_model, "input": text},
        )
        embeddings = data.get("embeddings") or []
        if not embeddings:
            return []
        return list(embeddings[0])
