"""Construct the long-lived clients once and hand them to the pipeline."""

from dataclasses import dataclass
from typing import Optional

import httpx
from neo4j import AsyncDriver

from .config import Settings, get_settings
from .generate.models import GenerationConfig
from .generate.orchestrator import EpisodeOrchestrator
from .graph.connection import get_driver
from .graph.repository import Neo4jNovelRepository
from .llm import LLMAdapter, RetryPolicy, create_embedding_adapter, create_llm_adapter


@dataclass
class Services:
    settings: Settings
    http: httpx.AsyncClient
    driver: AsyncDriver
    llm: LLMAdapter
    embedder: LLMAdapter
    repository: Neo4jNovelRepository

    @classmethod
    def create(cls, settings: Optional[Settings] = None) -> "Services":
        settings = settings or get_settings()
        # The per-call timeout is enforced by the adapters' backoff wrapper.
        http = httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds, connect=10.0))
        driver = get_driver(settings)
        return cls(
            settings=settings,
            http=http,
            driver=driver,
            llm=create_llm_adapter(settings, http),
            embedder=create_embedding_adapter(settings, http),
            repository=Neo4jNovelRepository(
                driver,
                database=settings.neo4j_database,
                retry_policy=RetryPolicy(max_attempts=settings.db_max_attempts),
                timeout=settings.db_timeout_seconds,
            ),
        )

    def orchestrator(self, config: GenerationConfig) -> EpisodeOrchestrator:
        return EpisodeOrchestrator(
            repository=self.repository,
            llm=self.llm,
            embedder=self.embedder,
            config=config,
            embedding_model_tag=self.settings.resolved_embedding_tag,
        )

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.driver.close()

    async def __aenter__(self) -> "Services":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
