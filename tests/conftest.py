"""Shared fixtures."""

import asyncio

import pytest

from fakes import MemoryRepository, ScriptedLLM

from episode_forge.generate.context import ContextLoader
from episode_forge.generate.models import GenerationConfig

STORY_BIBLE = """A quiet mystery set in a seaside repair workshop.
Mina repairs clocks; Jun is her apprentice.
분량: 500~700자"""

EMBED_TAG = "scripted/test-embed"


@pytest.fixture
def repo():
    repository = MemoryRepository()
    repository.add_novel("novel-1", STORY_BIBLE)
    return repository


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def config():
    return GenerationConfig()


@pytest.fixture
def load_context(repo, config):
    """Callable returning a freshly loaded context for a novel."""

    def _load(novel_id: str = "novel-1"):
        return asyncio.run(ContextLoader(repo, config).load(novel_id))

    return _load
