"""LLM adapter layer.

Structured-JSON generation and embeddings over several providers, with
backoff, timeouts and a JSON repair loop.
"""

from .backoff import RetryPolicy, with_backoff
from .base import ChatMessage, JsonRequest, LLMAdapter, ParseFailure, Parsed, parse_structured
from .factory import create_embedding_adapter, create_llm_adapter
from .jsonscan import extract_first_json_object
from .providers import GeminiAdapter, HttpAdapter, OllamaAdapter, OpenAICompatAdapter

__all__ = [
    "RetryPolicy",
    "with_backoff",
    "ChatMessage",
    "JsonRequest",
    "LLMAdapter",
    "Parsed",
    "ParseFailure",
    "parse_structured",
    "create_llm_adapter",
    "create_embedding_adapter",
    "extract_first_json_object",
    "HttpAdapter",
    "GeminiAdapter",
    "OpenAICompatAdapter",
    "OllamaAdapter",
]
