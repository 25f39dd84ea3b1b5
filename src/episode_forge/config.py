"""Configuration management for Episode Forge."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings, loaded from environment and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="EF_",
        extra="ignore",
    )

    # Neo4j connection
    neo4j_uri: str = Field(default="bolt://localhost:7687")
    neo4j_user: str = Field(default="neo4j")
    neo4j_password: str = Field(default="episodeforge")
    neo4j_database: str = Field(default="neo4j")

    # Language model
    llm_provider: str = Field(default="gemini", description="gemini, openai or ollama")
    llm_model: str = Field(default="", description="Empty means the provider default")

    gemini_api_key: str = Field(default="")
    gemini_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")

    # Any OpenAI-compatible chat endpoint (GLM, HF router, vLLM, ...)
    openai_api_key: str = Field(default="")
    openai_base_url: str = Field(default="https://api.openai.com/v1")

    ollama_base_url: str = Field(default="http://localhost:11434")

    # Embeddings
    embedding_provider: str = Field(default="", description="Empty means same as llm_provider")
    embedding_model: str = Field(default="text-embedding-004")
    embedding_model_tag: str = Field(
        default="",
        description="Tag stored on chunks; searches only match chunks with the same tag",
    )

    # Timeouts and retries
    http_timeout_seconds: float = Field(default=180.0)
    db_timeout_seconds: float = Field(default=180.0)
    llm_max_attempts: int = Field(default=5)
    embed_max_attempts: int = Field(default=3)
    db_max_attempts: int = Field(default=3)
    parse_repair_attempts: int = Field(default=2)

    # Generation defaults, overridable per run
    max_tiktaka: int = Field(default=2, description="Outer review attempt budget minus one")
    max_writer_attempts: int = Field(default=8)
    max_tool_calls: int = Field(default=6)
    story_time_step_minutes: int = Field(default=5)
    start_story_time_iso: str = Field(default="2025-01-01T09:00:00+09:00")
    writer_temperature: float = Field(default=0.8)
    review_temperature: float = Field(default=0.2)

    @property
    def resolved_embedding_provider(self) -> str:
        return self.embedding_provider or self.llm_provider

    @property
    def resolved_embedding_tag(self) -> str:
        if self.embedding_model_tag:
            return self.embedding_model_tag
        return f"{self.resolved_embedding_provider}/{self.embedding_model}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
