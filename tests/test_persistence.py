"""Tests for committing accepted episodes."""

import asyncio

import pytest

from fakes import ScriptedLLM, make_text

from episode_forge.errors import DatabaseError, UpstreamError
from episode_forge.generate.models import ChunkKind, Draft, GenerationConfig, PlotSeedStatus
from episode_forge.generate.persistence import EpisodePersister

TAG = "scripted/test-embed"
STORY_TIME = "2025-01-01T09:00:00+09:00"


def persist(repo, context, draft, facts=(), created=(), llm=None, config=None):
    persister = EpisodePersister(repo, llm or ScriptedLLM(), config or GenerationConfig(), TAG)
    return asyncio.run(persister.persist(context, draft, list(facts), STORY_TIME, list(created)))


class TestEpisodePersister:
    """Test the episode insert and the best-effort follow-up steps."""

    def test_inserts_episode_and_chunks(self, repo, load_context):
        content = make_text(600)
        outcome = persist(repo, load_context(), Draft(content), facts=["Mina opened the shop.", "Jun slept."])

        assert outcome.warnings == []
        assert outcome.episode.episode_no == 1
        assert repo.episodes["novel-1"][0].content == content
        kinds = sorted(c.chunk_kind.value for c in repo.chunks.values())
        assert kinds == ["episode", "fact", "fact"]
        assert all(c.embedding_model == TAG for c in repo.chunks.values())
        assert outcome.stats["summary_chunks"] == 1
        assert outcome.stats["fact_chunks"] == 2

    def test_summary_is_truncated_prefix(self, repo, load_context):
        content = make_text(5000)
        persist(repo, load_context(), Draft(content), config=GenerationConfig(summary_chars=4000))
        summary = next(c for c in repo.chunks.values() if c.chunk_kind is ChunkKind.EPISODE)
        assert summary.content == content[:4000]
        assert summary.chunk_index == 0

    def test_chunk_failure_keeps_episode(self, repo, load_context):
        repo.fail_on.add("insert_chunks")
        outcome = persist(repo, load_context(), Draft(make_text(600)), facts=["A fact."])

        assert len(repo.episodes["novel-1"]) == 1
        assert len(outcome.warnings) == 2
        assert outcome.warnings[0].startswith("summary_chunks failed")
        assert "fact_chunks" not in outcome.stats

    def test_embedding_failure_is_a_warning(self, repo, load_context):
        llm = ScriptedLLM()

        async def broken_embed(text):
            raise UpstreamError("embed down", "BAD_REQUEST")

        llm._embed = broken_embed
        outcome = persist(repo, load_context(), Draft(make_text(600)), facts=["A fact."], llm=llm)
        assert outcome.episode.id
        assert any("summary_chunks" in w for w in outcome.warnings)
        assert any("fact_chunks" in w for w in outcome.warnings)

    def test_episode_insert_failure_propagates(self, repo, load_context):
        repo.fail_on.add("insert_episode")
        with pytest.raises(DatabaseError):
            persist(repo, load_context(), Draft(make_text(600)))
        assert repo.chunks == {}


class TestPlotSeedLifecycle:
    """Test introduction and resolution of plot seeds."""

    def test_created_seeds_marked_introduced(self, repo, load_context):
        seed = asyncio.run(repo.insert_plot_seed("novel-1", "The missing key"))
        outcome = persist(repo, load_context(), Draft(make_text(600)), created=[seed.id])

        assert repo.seeds[seed.id].introduced_in_episode_id == outcome.episode.id
        assert repo.seeds[seed.id].status is PlotSeedStatus.OPEN

    def test_resolution_requires_introduction(self, repo, load_context):
        never_introduced = asyncio.run(repo.insert_plot_seed("novel-1", "A rumour"))
        outcome = persist(repo, load_context(), Draft(make_text(600), resolved_plot_seed_ids=[never_introduced.id]))

        seed = repo.seeds[never_introduced.id]
        assert seed.status is PlotSeedStatus.OPEN
        assert seed.resolved_in_episode_id is None
        assert outcome.stats["resolved_seeds"] == 0

    def test_resolves_seed_from_earlier_episode(self, repo, load_context):
        seed = asyncio.run(repo.insert_plot_seed("novel-1", "The missing key"))
        first = persist(repo, load_context(), Draft(make_text(600)), created=[seed.id])

        second = persist(repo, load_context(), Draft(make_text(620), resolved_plot_seed_ids=[seed.id, "unknown"]))

        resolved = repo.seeds[seed.id]
        assert resolved.status is PlotSeedStatus.RESOLVED
        assert resolved.introduced_in_episode_id == first.episode.id
        assert resolved.resolved_in_episode_id == second.episode.id
        assert second.stats["resolved_seeds"] == 1

    def test_introduction_failure_blocks_resolution(self, repo, load_context):
        seed = asyncio.run(repo.insert_plot_seed("novel-1", "The missing key"))
        repo.fail_on.add("mark_plot_seeds_introduced")
        outcome = persist(
            repo, load_context(), Draft(make_text(600), resolved_plot_seed_ids=[seed.id]), created=[seed.id]
        )

        assert repo.seeds[seed.id].status is PlotSeedStatus.OPEN
        assert repo.seeds[seed.id].resolved_in_episode_id is None
        assert outcome.warnings[0].startswith("introduced_seeds failed")
