"""Retrieve earlier content relevant to a draft's facts."""

import asyncio
import logging

from ..graph.repository import NovelRepository
from ..llm.base import LLMAdapter
from .models import ChunkKind, GenerationConfig, GroundingHit

logger = logging.getLogger(__name__)


class GroundingRetriever:
    """Two similarity searches (episode summaries, fact chunks), merged.

    Hits never come from episodes after ``max_episode_no``: the bound is
    passed to the store and checked again on the way out.
    """

    def __init__(
        self,
        repository: NovelRepository,
        embedder: LLMAdapter,
        config: GenerationConfig,
        embedding_model_tag: str,
    ):
        self.repository = repository
        self.embedder = embedder
        self.config = config
        self.embedding_model_tag = embedding_model_tag

    def build_query(self, facts: list[str]) -> str:
        return "\n".join(f.strip() for f in facts if f.strip())[: self.config.grounding_query_chars]

    async def retrieve(self, novel_id: str, facts: list[str], max_episode_no: int) -> list[GroundingHit]:
        """Find earlier content that bears on the draft's facts.

        Args:
            novel_id: Novel to search
            facts: Facts extracted from the draft
            max_episode_no: Latest episode evidence may come from

        Returns:
            Hits sorted by episode number, then similarity; empty when there
            are no facts or no earlier episodes
        """
        query = self.build_query(facts)
        if not query or max_episode_no < 1:
            return []

        embedding = await self.embedder.embed_text(query)
        summaries, fact_chunks = await asyncio.gather(
            self.repository.match_episode_summaries(
                novel_id, embedding, max_episode_no,
                self.config.grounding_k, self.embedding_model_tag,
            ),
            self.repository.match_episode_chunks(
                novel_id, embedding, max_episode_no,
                self.config.grounding_k, self.embedding_model_tag, ChunkKind.FACT,
            ),
        )

        merged = []
        for source, hits in ((ChunkKind.EPISODE, summaries), (ChunkKind.FACT, fact_chunks)):
            for hit in hits[: self.config.grounding_k]:
                if hit.episode_no > max_episode_no:
                    logger.warning("Dropping grounding hit from future episode %d", hit.episode_no)
                    continue
                hit.source = source
                merged.append(hit)

        merged.sort(key=lambda h: (h.episode_no, -h.similarity))
        logger.debug(
            "Grounding for %s: %d summary + %d fact hits (max episode %d)",
            novel_id, len(summaries), len(fact_chunks), max_episode_no,
        )
        return merged
