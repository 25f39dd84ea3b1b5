"""Episode generation module.

Writes the next episode of a novel using:
- deterministic hard constraints (length, continuity anchor, meta-references)
- LLM reviewers for continuity and consistency
- vector retrieval over earlier episodes for grounding

The pipeline itself lives in ``episode_forge.generate.orchestrator``.
"""

from .models import (
    EpisodeResult,
    EpisodeStatus,
    GenerationConfig,
    RunReport,
)

__all__ = [
    "EpisodeResult",
    "EpisodeStatus",
    "GenerationConfig",
    "RunReport",
]
