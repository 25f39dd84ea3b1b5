"""Commit an accepted episode and update derived state."""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial

from ..errors import AgentError
from ..graph.repository import NovelRepository
from ..llm.base import LLMAdapter
from .context import EpisodeContext
from .models import ChunkKind, Draft, Episode, EpisodeChunk, GenerationConfig

logger = logging.getLogger(__name__)


@dataclass
class PersistOutcome:
    episode: Episode
    stats: dict = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


class EpisodePersister:
    """Writes the episode, then the eventually-consistent extras.

    Only the episode insert can fail the call. Seed lifecycle updates and
    retrieval chunks are best-effort: a failure is logged and reported as a
    warning, and nothing already written is rolled back.
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

    async def persist(
        self,
        context: EpisodeContext,
        draft: Draft,
        facts: list[str],
        story_time: str,
        created_plot_seed_ids: list[str],
    ) -> PersistOutcome:
        """Store an accepted episode and its side data.

        Only the episode insert can fail the call. Seed and chunk updates
        that fail are logged and collected as warnings.

        Args:
            context: Context the episode was written against
            draft: Accepted draft
            facts: Facts extracted from the draft, indexed as fact chunks
            story_time: ISO timestamp for the episode
            created_plot_seed_ids: Seeds opened by writer tools during this run

        Returns:
            PersistOutcome with the stored episode and any warnings
        """
        episode = await self.repository.insert_episode(
            context.novel_id, context.episode_no, story_time, draft.content
        )
        outcome = PersistOutcome(episode=episode)
        logger.info("Inserted episode %d of %s (%s)", episode.episode_no, context.novel_id, episode.id)

        steps = [
            ("introduced_seeds", partial(self._mark_introduced, context, episode, created_plot_seed_ids)),
            ("summary_chunks", partial(self._index_summary, context, episode)),
            ("fact_chunks", partial(self._index_facts, context, episode, facts)),
            ("resolved_seeds", partial(self._resolve_seeds, context, episode, draft.resolved_plot_seed_ids)),
        ]
        for name, step in steps:
            try:
                outcome.stats[name] = await step()
            except AgentError as exc:
                message = f"{name} failed: {exc}"
                logger.warning("Episode %s persisted but %s", episode.id, message)
                outcome.warnings.append(message)

        return outcome

    async def _mark_introduced(self, context: EpisodeContext, episode: Episode, seed_ids: list[str]) -> int:
        return await self.repository.mark_plot_seeds_introduced(context.novel_id, seed_ids, episode.id)

    async def _index_summary(self, context: EpisodeContext, episode: Episode) -> int:
        text = episode.content.strip()[: self.config.summary_chars]
        if not text:
            return 0
        embedding = await self.embedder.embed_text(text)
        chunk = self._chunk(context, episode, ChunkKind.EPISODE, 0, text, embedding)
        return await self.repository.insert_chunks([chunk])

    async def _index_facts(self, context: EpisodeContext, episode: Episode, facts: list[str]) -> int:
        if not facts:
            return 0
        embeddings = await asyncio.gather(*(self.embedder.embed_text(f) for f in facts))
        chunks = [
            self._chunk(context, episode, ChunkKind.FACT, index, fact, embedding)
            for index, (fact, embedding) in enumerate(zip(facts, embeddings))
        ]
        return await self.repository.insert_chunks(chunks)

    async def _resolve_seeds(self, context: EpisodeContext, episode: Episode, seed_ids: list[str]) -> int:
        if not seed_ids:
            return 0
        resolved = await self.repository.resolve_plot_seeds(context.novel_id, seed_ids, episode.id)
        skipped = sorted(set(seed_ids) - set(resolved))
        if skipped:
            logger.info("Not resolving seeds %s: unknown, already resolved, or never introduced", skipped)
        return len(resolved)

    def _chunk(self, context, episode, kind, index, content, embedding) -> EpisodeChunk:
        return EpisodeChunk(
            id=EpisodeChunk.make_id(episode.id, kind, index),
            novel_id=context.novel_id,
            episode_id=episode.id,
            episode_no=episode.episode_no,
            chunk_kind=kind,
            chunk_index=index,
            content=content,
            embedding=embedding,
            embedding_model=self.embedding_model_tag,
        )
