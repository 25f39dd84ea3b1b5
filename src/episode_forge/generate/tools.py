"""Tools the writer may call while drafting.

The writer asks for tools by returning ``tool_calls`` instead of content.
Results (or error payloads) are fed back as the next user turn. Read tools
never see episodes past ``max_episode_no``. Write tools are staged, not
executed, in dry-run mode.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ..errors import AgentError, ToolError
from ..graph.repository import NovelRepository
from ..llm.base import LLMAdapter
from .context import EpisodeContext
from .models import ChunkKind, PlotSeedStatus
from .schemas import ToolCall

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 4000


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    arguments: dict[str, str] = field(default_factory=dict)
    writes: bool = False


TOOL_SPECS = {
    spec.name: spec
    for spec in [
        ToolSpec("list_characters", "List known characters with their profiles."),
        ToolSpec("list_locations", "List known locations with their profiles."),
        ToolSpec("list_open_plot_seeds", "List unresolved plot seeds (id, title, detail)."),
        ToolSpec(
            "read_episode",
            "Read the full text of an earlier episode.",
            {"episode_no": "integer, 1..latest committed episode"},
        ),
        ToolSpec(
            "rag_search",
            "Semantic search over earlier episodes.",
            {"query": "text to search for", "kind": "optional: summary | fact | style"},
        ),
        ToolSpec(
            "upsert_character",
            "Create a character or merge new profile fields into an existing one.",
            {"name": "character name", "profile": "object of profile fields"},
            writes=True,
        ),
        ToolSpec(
            "upsert_location",
            "Create a location or merge new profile fields into an existing one.",
            {"name": "location name", "profile": "object of profile fields"},
            writes=True,
        ),
        ToolSpec(
            "insert_plot_seed",
            "Open a new unresolved plot seed introduced by this episode.",
            {
                "title": "short title",
                "detail": "what is set up and left open",
                "character_names": "optional list of involved character names",
                "location_names": "optional list of related location names",
            },
            writes=True,
        ),
    ]
}


def _require_str(args: dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolError(f"'{key}' must be a non-empty string", "INVALID_ARGUMENT", details={"argument": key})
    return value.strip()


def _optional_names(args: dict, key: str) -> list[str]:
    value = args.get(key) or []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ToolError(f"'{key}' must be a list of names", "INVALID_ARGUMENT", details={"argument": key})
    return [str(v).strip() for v in value if str(v).strip()]


class WriterToolbox:
    """Executes writer tool calls for one episode attempt."""

    def __init__(
        self,
        repository: NovelRepository,
        embedder: LLMAdapter,
        context: EpisodeContext,
        *,
        embedding_model_tag: str,
        dry_run: bool = False,
        search_k: int = 8,
    ):
        self.repository = repository
        self.embedder = embedder
        self.context = context
        self.embedding_model_tag = embedding_model_tag
        self.dry_run = dry_run
        self.search_k = search_k
        self.created_plot_seed_ids: list[str] = []
        self.staged: list[dict] = []
        self.calls = 0

    def describe(self) -> str:
        lines = []
        for spec in TOOL_SPECS.values():
            args = ", ".join(f"{k}: {v}" for k, v in spec.arguments.items()) or "no arguments"
            lines.append(f"- {spec.name}({args}): {spec.description}")
        return "\n".join(lines)

    async def execute(self, call: ToolCall) -> dict:
        """Run one call; failures come back as error payloads, not exceptions."""
        self.calls += 1
        spec = TOOL_SPECS.get(call.name)
        logger.info("Writer tool call #%d: %s %s", self.calls, call.name, json.dumps(call.arguments, ensure_ascii=False)[:200])

        try:
            if spec is None:
                raise ToolError(
                    f"Unknown tool: {call.name}",
                    "UNKNOWN_TOOL",
                    hint=f"Available tools: {', '.join(TOOL_SPECS)}",
                )
            if spec.writes and self.dry_run:
                self.staged.append({"tool": call.name, "arguments": call.arguments})
                return {"tool": call.name, "ok": True, "staged": True,
                        "note": "dry run: the write was recorded but not applied"}
            handler = getattr(self, f"_tool_{call.name}")
            result = await handler(call.arguments)
        except AgentError as exc:
            logger.warning("Writer tool %s failed: %s", call.name, exc)
            return {"tool": call.name, "ok": False, **exc.to_llm_response()}

        return {"tool": call.name, "ok": True, "result": result}

    async def _tool_list_characters(self, args: dict) -> list[dict]:
        return [c.to_dict() for c in await self.repository.list_characters(self.context.novel_id)]

    async def _tool_list_locations(self, args: dict) -> list[dict]:
        return [l.to_dict() for l in await self.repository.list_locations(self.context.novel_id)]

    async def _tool_list_open_plot_seeds(self, args: dict) -> list[dict]:
        seeds = await self.repository.list_plot_seeds(self.context.novel_id, PlotSeedStatus.OPEN)
        return [{"id": s.id, "title": s.title, "detail": s.detail} for s in seeds]

    async def _tool_read_episode(self, args: dict) -> dict:
        try:
            episode_no = int(args.get("episode_no"))
        except (TypeError, ValueError):
            raise ToolError("'episode_no' must be an integer", "INVALID_ARGUMENT") from None
        if episode_no < 1 or episode_no > self.context.max_episode_no:
            raise ToolError(
                f"episode_no must be between 1 and {self.context.max_episode_no}",
                "INVALID_ARGUMENT",
                details={"episode_no": episode_no},
            )
        episode = await self.repository.get_episode(self.context.novel_id, episode_no)
        if episode is None:
            raise ToolError(f"Episode {episode_no} not found", "TOOL_EXECUTION_FAILED")
        return {
            "episode_no": episode.episode_no,
            "story_time": episode.story_time,
            "content": episode.content[:MAX_TOOL_RESULT_CHARS],
        }

    async def _tool_rag_search(self, args: dict) -> list[dict]:
        query = _require_str(args, "query")
        kind = (args.get("kind") or "summary").strip().lower()
        if self.context.max_episode_no < 1:
            return []
        embedding = await self.embedder.embed_text(query[:2000])
        if kind in ("summary", "episode"):
            hits = await self.repository.match_episode_summaries(
                self.context.novel_id, embedding, self.context.max_episode_no,
                self.search_k, self.embedding_model_tag,
            )
        elif kind in (ChunkKind.FACT.value, ChunkKind.STYLE.value):
            hits = await self.repository.match_episode_chunks(
                self.context.novel_id, embedding, self.context.max_episode_no,
                self.search_k, self.embedding_model_tag, ChunkKind(kind),
            )
        else:
            raise ToolError(f"Unsupported search kind: {kind}", "INVALID_ARGUMENT",
                            hint="Use summary, fact or style")
        return [h.to_dict() for h in hits]

    async def _tool_upsert_character(self, args: dict) -> dict:
        profile = self._profile(args)
        character = await self.repository.upsert_character(
            self.context.novel_id, _require_str(args, "name"), profile
        )
        return character.to_dict()

    async def _tool_upsert_location(self, args: dict) -> dict:
        profile = self._profile(args)
        location = await self.repository.upsert_location(
            self.context.novel_id, _require_str(args, "name"), profile
        )
        return location.to_dict()

    async def _tool_insert_plot_seed(self, args: dict) -> dict:
        seed = await self.repository.insert_plot_seed(
            self.context.novel_id,
            _require_str(args, "title"),
            str(args.get("detail") or ""),
            _optional_names(args, "character_names"),
            _optional_names(args, "location_names"),
        )
        if seed.introduced_in_episode_id is None and seed.id not in self.created_plot_seed_ids:
            self.created_plot_seed_ids.append(seed.id)
        return {"id": seed.id, "title": seed.title, "detail": seed.detail}

    @staticmethod
    def _profile(args: dict) -> dict[str, Any]:
        profile = args.get("profile") or {}
        if not isinstance(profile, dict):
            raise ToolError("'profile' must be an object", "INVALID_ARGUMENT")
        return profile


def render_tool_results(results: list[dict], budget_left: Optional[int] = None) -> str:
    text = json.dumps(results, ensure_ascii=False, default=str)
    if len(text) > MAX_TOOL_RESULT_CHARS * 2:
        text = text[: MAX_TOOL_RESULT_CHARS * 2] + "...(truncated)"
    lines = ["Tool results:", text]
    if budget_left is not None and budget_left <= 0:
        lines.append("The tool budget is used up. Write the final episode_content now.")
    return "\n".join(lines)
