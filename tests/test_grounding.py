"""Tests for grounding retrieval."""

import asyncio

from fakes import ScriptedLLM

from episode_forge.generate.grounding import GroundingRetriever
from episode_forge.generate.models import ChunkKind, GenerationConfig, GroundingHit

TAG = "scripted/test-embed"


class FutureLeakingRepository:
    """Returns whatever it was given, ignoring the episode bound."""

    def __init__(self, summaries, facts):
        self.summaries = summaries
        self.facts = facts
        self.calls = []

    async def match_episode_summaries(self, novel_id, embedding, max_episode_no, match_count=30, embedding_model=""):
        self.calls.append(("summary", max_episode_no, match_count, embedding_model))
        return list(self.summaries)

    async def match_episode_chunks(self, novel_id, embedding, max_episode_no, match_count=10,
                                   embedding_model="", kind=ChunkKind.FACT):
        self.calls.append((kind.value, max_episode_no, match_count, embedding_model))
        return list(self.facts)


class TestGroundingRetriever:
    """Test the merged summary and fact search."""

    def test_no_prior_episodes(self, repo):
        llm = ScriptedLLM()
        hits = asyncio.run(GroundingRetriever(repo, llm, GenerationConfig(), TAG).retrieve("novel-1", ["a fact"], 0))
        assert hits == []
        assert llm.embedded == []

    def test_no_facts(self, repo):
        llm = ScriptedLLM()
        hits = asyncio.run(GroundingRetriever(repo, llm, GenerationConfig(), TAG).retrieve("novel-1", ["", "  "], 3))
        assert hits == []

    def test_merges_and_sorts(self, repo):
        for no in (1, 2, 3):
            repo.add_chunk("novel-1", no, ChunkKind.EPISODE, f"Summary of part {no}: Mina and the clock.", TAG)
            repo.add_chunk("novel-1", no, ChunkKind.FACT, f"Mina fixed clock {no}.", TAG)
        repo.add_chunk("novel-1", 1, ChunkKind.FACT, "Mina fixed a clock.", "other/model")

        llm = ScriptedLLM()
        retriever = GroundingRetriever(repo, llm, GenerationConfig(grounding_k=8), TAG)
        hits = asyncio.run(retriever.retrieve("novel-1", ["Mina fixed a clock."], 3))

        assert len(hits) == 6
        assert [h.episode_no for h in hits] == sorted(h.episode_no for h in hits)
        assert {h.source for h in hits} == {ChunkKind.EPISODE, ChunkKind.FACT}
        assert all(h.content != "Mina fixed a clock." for h in hits)
        assert llm.embedded == ["Mina fixed a clock."]

    def test_bound_passed_to_store(self, repo):
        for no in (1, 2, 3, 4):
            repo.add_chunk("novel-1", no, ChunkKind.FACT, f"Fact from part {no}.", TAG)
        retriever = GroundingRetriever(repo, ScriptedLLM(), GenerationConfig(), TAG)
        hits = asyncio.run(retriever.retrieve("novel-1", ["Fact"], 2))
        assert {h.episode_no for h in hits} == {1, 2}
        assert all(call["max_episode_no"] == 2 for call in repo.match_calls)

    def test_future_hits_dropped_even_if_store_leaks(self):
        store = FutureLeakingRepository(
            summaries=[GroundingHit(ChunkKind.EPISODE, 5, 0.9, "future summary")],
            facts=[
                GroundingHit(ChunkKind.FACT, 2, 0.4, "older fact"),
                GroundingHit(ChunkKind.FACT, 2, 0.8, "closer fact"),
                GroundingHit(ChunkKind.FACT, 7, 0.99, "future fact"),
            ],
        )
        retriever = GroundingRetriever(store, ScriptedLLM(), GenerationConfig(grounding_k=4), TAG)
        hits = asyncio.run(retriever.retrieve("novel-1", ["q"], 3))

        assert [h.content for h in hits] == ["closer fact", "older fact"]
        assert ("summary", 3, 4, TAG) in store.calls
        assert ("fact", 3, 4, TAG) in store.calls
