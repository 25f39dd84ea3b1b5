"""Provider-neutral LLM adapter.

Concrete providers only implement two raw calls, ``_complete`` and
``_embed``. Everything that makes a call dependable lives here:
- backoff on retryable upstream failures (including empty replies)
- a per-attempt timeout
- schema validation of JSON output with a bounded repair loop
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from ..errors import ParseError, UpstreamError
from .backoff import RetryPolicy, Sleep, with_backoff
from .jsonscan import extract_first_json_object

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

JSON_ONLY_SUFFIX = "Return only complete, valid JSON. Do not truncate the response."


@dataclass
class ChatMessage:
    role: str  # system | user | assistant
    content: str


@dataclass
class JsonRequest:
    """One structured-output call.

    ``agent`` names the caller (writer, continuity, facts, ...) and is used
    for logging and by test doubles to route scripted replies.
    """
    agent: str
    system: str
    prompt: str
    schema: type[BaseModel]
    temperature: float = 0.7
    max_output_tokens: int = 2048
    history: list[ChatMessage] = field(default_factory=list)

    @property
    def schema_text(self) -> str:
        return json.dumps(self.schema.model_json_schema(), ensure_ascii=False)


@dataclass
class Parsed(Generic[M]):
    value: M


@dataclass
class ParseFailure:
    code: str  # INVALID_JSON | INVALID_SHAPE
    message: str
    errors: list[str] = field(default_factory=list)


ParseResult = Union[Parsed, ParseFailure]


def parse_structured(text: str, schema: type[M]) -> ParseResult:
    """Validate model text against ``schema`` without raising."""
    candidate = extract_first_json_object(text or "")
    if candidate is None:
        return ParseFailure("INVALID_JSON", "no complete JSON object found in the reply")
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return ParseFailure("INVALID_JSON", f"malformed JSON: {exc.msg} at position {exc.pos}")
    try:
        return Parsed(schema.model_validate(data))
    except SchemaError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        ]
        return ParseFailure("INVALID_SHAPE", "reply does not match the schema", errors)


class LLMAdapter(ABC):
    """Uniform interface over language-model providers."""

    provider = "base"

    def __init__(
        self,
        model: str,
        *,
        embedding_model: str = "",
        timeout: float = 180.0,
        generate_policy: Optional[RetryPolicy] = None,
        embed_policy: Optional[RetryPolicy] = None,
        repair_attempts: int = 2,
        sleep: Sleep = asyncio.sleep,
    ):
        self.model = model
        self.embedding_model = embedding_model or model
        self.timeout = timeout
        self.generate_policy = generate_policy or RetryPolicy(max_attempts=5)
        self.embed_policy = embed_policy or RetryPolicy(max_attempts=3)
        self.repair_attempts = repair_attempts
        self._sleep = sleep

    @property
    def name(self) -> str:
        return f"{self.provider}/{self.model}"

    @abstractmethod
    async def _complete(self, request: JsonRequest, messages: list[ChatMessage]) -> str:
        """Send one chat turn and return the raw reply text."""

    @abstractmethod
    async def _embed(self, text: str) -> list[float]:
        """Return the embedding vector for ``text``."""

    def build_messages(self, request: JsonRequest) -> list[ChatMessage]:
        system = (
            f"{request.system.strip()}\n\n"
            "Respond with a single JSON object matching this JSON schema. "
            "No prose, no markdown fences.\n"
            f"{request.schema_text}"
        )
        return [
            ChatMessage("system", system),
            ChatMessage("user", request.prompt),
            *request.history,
        ]

    async def complete_text(self, request: JsonRequest, messages: list[ChatMessage]) -> str:
        """Raw completion with timeout and backoff; empty replies are retried."""

        async def attempt() -> str:
            text = await self._complete(request, messages)
            if not text or not text.strip():
                raise UpstreamError(
                    f"{self.name} returned empty text",
                    "EMPTY_RESPONSE",
                    details={"agent": request.agent},
                )
            return text

        return await with_backoff(
            attempt,
            self.generate_policy,
            label=f"{self.name} [{request.agent}]",
            timeout=self.timeout,
            sleep=self._sleep,
        )

    def repair_prompt(self, request: JsonRequest, failure: ParseFailure, level: int) -> str:
        """Escalating correction prompt for a reply that failed validation."""
        if level == 1:
            lines = [f"Your previous reply was rejected: {failure.message}."]
            if failure.errors:
                lines.append("Validation errors:")
                lines.extend(f"- {err}" for err in failure.errors[:20])
            lines.append("Return the corrected JSON object.")
            lines.append(JSON_ONLY_SUFFIX)
            return "\n".join(lines)
        return (
            "Output JSON only. No explanations, no markdown, no text before or after the object.\n"
            f"The object must match this JSON schema:\n{request.schema_text}\n"
            f"{JSON_ONLY_SUFFIX}"
        )

    async def generate_structured_json(self, request: JsonRequest) -> BaseModel:
        """Return ``request.schema`` validated output.

        Network failures are retried with backoff inside each call. Malformed
        output takes a separate repair path: up to ``repair_attempts`` extra
        calls, each with a stricter correction prompt and no backoff delay.

        Args:
            request: Prompt, target schema and sampling settings for one agent

        Returns:
            An instance of ``request.schema``

        Raises:
            UpstreamError: Retries exhausted or a non-retryable API failure
            ParseError: Output still malformed after every repair attempt
        """
        messages = self.build_messages(request)
        text = await self.complete_text(request, messages)
        result = parse_structured(text, request.schema)

        level = 0
        while isinstance(result, ParseFailure) and level < self.repair_attempts:
            level += 1
            logger.warning(
                "%s [%s] %s (%s), repair %d/%d",
                self.name, request.agent, failure_label(result), result.message,
                level, self.repair_attempts,
            )
            messages = messages + [
                ChatMessage("assistant", text[:4000]),
                ChatMessage("user", self.repair_prompt(request, result, level)),
            ]
            text = await self.complete_text(request, messages)
            result = parse_structured(text, request.schema)

        if isinstance(result, ParseFailure):
            raise ParseError(
                f"{request.agent} output invalid after {level} repair attempts: {result.message}",
                result.code,
                hint=JSON_ONLY_SUFFIX,
                details={"agent": request.agent, "errors": result.errors, "raw": text},
            )
        return result.value

    async def embed_text(self, text: str) -> list[float]:
        """Embedding with timeout and backoff."""

        async def attempt() -> list[float]:
            vector = await self._embed(text)
            if not vector:
                raise UpstreamError(f"{self.name} returned an empty embedding", "EMBED_FAILED")
            return vector

        return await with_backoff(
            attempt,
            self.embed_policy,
            label=f"{self.name} [embed]",
            timeout=self.timeout,
            sleep=self._sleep,
        )


def failure_label(failure: ParseFailure) -> str:
    return "invalid JSON" if failure.code == "INVALID_JSON" else "schema mismatch"
