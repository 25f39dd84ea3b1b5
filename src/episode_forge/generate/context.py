"""Assemble the narrative state needed to write the next episode."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from ..errors import ValidationError
from ..graph.repository import NovelRepository
from .models import Character, Episode, GenerationConfig, Location, Novel, PlotSeed, PlotSeedStatus

logger = logging.getLogger(__name__)

# "500~700자", "500-700 chars", "500 ~ 700 characters", "500–700 글자"
LENGTH_BAND_RE = re.compile(
    r"(\d{2,5})\s*[~\-–〜]\s*(\d{2,5})\s*(?:자|글자|chars?|characters?)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class LengthBand:
    min_chars: int
    max_chars: int

    @property
    def midpoint(self) -> int:
        return (self.min_chars + self.max_chars) // 2

    def contains(self, length: int) -> bool:
        return self.min_chars <= length <= self.max_chars

    def __str__(self) -> str:
        return f"{self.min_chars}~{self.max_chars}"


def parse_length_band(story_bible: str, default: LengthBand) -> LengthBand:
    """Read a length directive from the story bible, or return ``default``."""
    match = LENGTH_BAND_RE.search(story_bible or "")
    if not match:
        return default
    low, high = int(match.group(1)), int(match.group(2))
    if low <= 0 or low > high:
        logger.warning("Ignoring invalid length band %s~%s in story bible", low, high)
        return default
    return LengthBand(low, high)


def tail(text: str, chars: int) -> str:
    text = text or ""
    return text[-chars:] if len(text) > chars else text


@dataclass
class EpisodeContext:
    """Read-only snapshot of a novel at generation time."""
    novel: Novel
    episode_no: int
    max_episode_no: int
    story_bible: str
    length_band: LengthBand
    previous_episode: Optional[Episode] = None
    previous_tail: str = ""
    recent_tails: list[str] = field(default_factory=list)  # oldest first
    characters: list[Character] = field(default_factory=list)
    locations: list[Location] = field(default_factory=list)
    open_plot_seeds: list[PlotSeed] = field(default_factory=list)

    @property
    def novel_id(self) -> str:
        return self.novel.id

    @property
    def is_first_episode(self) -> bool:
        return self.previous_episode is None


class ContextLoader:
    """Loads an ``EpisodeContext`` from the repository. No side effects."""

    def __init__(self, repository: NovelRepository, config: GenerationConfig):
        self.repository = repository
        self.config = config

    async def load(self, novel_id: str) -> EpisodeContext:
        novel = await self.repository.get_novel(novel_id)
        if novel is None:
            raise ValidationError(
                f"Novel not found: {novel_id}",
                "INVALID_ARGUMENT",
                details={"novel_id": novel_id},
            )

        max_no, recent, characters, locations, seeds = await asyncio.gather(
            self.repository.get_max_episode_no(novel_id),
            self.repository.list_recent_episodes(novel_id, max(1, self.config.previous_tails)),
            self.repository.list_characters(novel_id),
            self.repository.list_locations(novel_id),
            self.repository.list_plot_seeds(novel_id, PlotSeedStatus.OPEN),
        )

        previous = recent[0] if recent else None
        bible = (novel.story_bible or "")[: self.config.story_bible_chars]
        band = parse_length_band(
            novel.story_bible,
            LengthBand(self.config.default_min_chars, self.config.default_max_chars),
        )

        context = EpisodeContext(
            novel=novel,
            episode_no=max_no + 1,
            max_episode_no=max_no,
            story_bible=bible,
            length_band=band,
            previous_episode=previous,
            previous_tail=tail(previous.content, self.config.tail_chars) if previous else "",
            recent_tails=[tail(e.content, self.config.tail_chars) for e in reversed(recent)],
            characters=characters,
            locations=locations,
            open_plot_seeds=seeds,
        )
        logger.debug(
            "Loaded context for %s: next episode %d, band %s, %d characters, %d open seeds",
            novel_id, context.episode_no, band, len(characters), len(seeds),
        )
        return context
