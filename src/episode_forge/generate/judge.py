"""LLM-as-judge passes: continuity review, fact extraction, consistency review."""

import logging
import re

from rapidfuzz import fuzz

from ..llm.base import JsonRequest, LLMAdapter
from .context import EpisodeContext
from .models import GenerationConfig, GroundingHit, ReviewResult
from .schemas import FactList, ReviewVerdict

logger = logging.getLogger(__name__)

FACT_MAX_CHARS = 200
FACT_DUPLICATE_RATIO = 90


class ContinuityReviewer:
    """Checks that a draft flows directly out of the previous scene."""

    SYSTEM = '''You are a strict continuity editor for a serialized novel.
You judge only whether the new installment continues naturally from the previous one.'''

    PROMPT = '''PREVIOUS INSTALLMENT ENDINGS (oldest first):
"""
{previous}
"""

NEW INSTALLMENT:
"""
{draft}
"""

Check every item:
1. The opening is the immediate continuation of the previous scene (no reset, prologue or unexplained jump).
2. Any jump in time or place is narrated as a transition.
3. No character's state (injury, mood, knowledge, position) changes without cause.
4. No major new character or event appears without foreshadowing.
5. Tension left open at the end of the previous installment is not silently dropped.

Set "passed" to true only if there are no issues. For every problem add an issue with
severity low, medium or high. If anything fails, give one concrete "revision_instruction".'''

    def __init__(self, llm: LLMAdapter, config: GenerationConfig):
        self.llm = llm
        self.config = config

    async def review(self, context: EpisodeContext, draft: str) -> ReviewResult:
        previous = "\n---\n".join(context.recent_tails[-self.config.previous_tails:]) or "(none)"
        verdict = await self.llm.generate_structured_json(JsonRequest(
            agent="continuity",
            system=self.SYSTEM,
            prompt=self.PROMPT.format(previous=previous, draft=draft),
            schema=ReviewVerdict,
            temperature=self.config.review_temperature,
            max_output_tokens=1024,
        ))
        result = ReviewResult.from_verdict(verdict)
        if verdict.passed and not result.passed:
            logger.info("Continuity reviewer said passed but listed %d issues; treating as failed", len(result.issues))
        return result


def normalize_fact(fact: str) -> str:
    return re.sub(r"\s+", " ", fact or "").strip().rstrip(".").lower()


def dedupe_facts(facts: list[str], limit: int = 10) -> list[str]:
    """Drop empty, exact and near-duplicate facts, keeping first occurrences."""
    kept: list[str] = []
    keys: list[str] = []
    for fact in facts:
        text = re.sub(r"\s+", " ", fact or "").strip()[:FACT_MAX_CHARS]
        key = normalize_fact(text)
        if not key:
            continue
        if any(key == k or fuzz.token_set_ratio(key, k) >= FACT_DUPLICATE_RATIO for k in keys):
            continue
        kept.append(text)
        keys.append(key)
        if len(kept) >= limit:
            break
    return kept


class FactExtractor:
    """Lists the atomic facts a draft establishes or changes."""

    SYSTEM = '''You extract facts from fiction for a continuity database.'''

    PROMPT = '''Read the installment below and list up to {limit} short, atomic factual statements
about what happens or is established in it: who did what, where, when, what changed.
One fact per item, no interpretation, no duplicates.

INSTALLMENT:
"""
{draft}
"""'''

    def __init__(self, llm: LLMAdapter, config: GenerationConfig):
        self.llm = llm
        self.config = config

    async def extract(self, draft: str) -> list[str]:
        result = await self.llm.generate_structured_json(JsonRequest(
            agent="facts",
            system=self.SYSTEM,
            prompt=self.PROMPT.format(limit=self.config.max_facts, draft=draft),
            schema=FactList,
            temperature=self.config.review_temperature,
            max_output_tokens=1024,
        ))
        facts = dedupe_facts(result.facts, self.config.max_facts)
        logger.debug("Extracted %d facts (%d raw)", len(facts), len(result.facts))
        return facts


class ConsistencyReviewer:
    """Checks a draft's facts against the story bible and retrieved evidence."""

    SYSTEM = '''You are a strict fact-checker for a serialized novel.
You compare a new installment against established canon and retrieved evidence.'''

    PROMPT = '''STORY BIBLE:
"""
{story_bible}
"""

PREVIOUS INSTALLMENT ENDINGS (oldest first):
"""
{previous}
"""

RETRIEVED EVIDENCE FROM EARLIER INSTALLMENTS:
{hits}

FACTS EXTRACTED FROM THE NEW INSTALLMENT:
{facts}

NEW INSTALLMENT:
"""
{draft}
"""

Check every item:
1. No extracted fact directly contradicts the evidence or the story bible.
2. Time, place and character state do not change without supporting evidence.
3. Phrasing that could be read as contradicting canon is flagged for clarification, not accepted.

Set "passed" to true only if there are no issues. For every problem add an issue with
severity low, medium or high, citing the conflicting evidence. If anything fails,
give one concrete "revision_instruction".'''

    def __init__(self, llm: LLMAdapter, config: GenerationConfig):
        self.llm = llm
        self.config = config

    @staticmethod
    def format_hits(hits: list[GroundingHit]) -> str:
        if not hits:
            return "(none)"
        return "\n".join(
            f"- [{h.source.value} #{h.episode_no} sim={h.similarity:.3f}] {h.content[:500]}"
            for h in hits
        )

    async def review(
        self,
        context: EpisodeContext,
        draft: str,
        facts: list[str],
        hits: list[GroundingHit],
    ) -> ReviewResult:
        verdict = await self.llm.generate_structured_json(JsonRequest(
            agent="consistency",
            system=self.SYSTEM,
            prompt=self.PROMPT.format(
                story_bible=context.story_bible or "(none)",
                previous="\n---\n".join(context.recent_tails) or "(none)",
                hits=self.format_hits(hits),
                facts="\n".join(f"- {f}" for f in facts) or "(none)",
                draft=draft,
            ),
            schema=ReviewVerdict,
            temperature=self.config.review_temperature,
            max_output_tokens=1024,
        ))
        result = ReviewResult.from_verdict(verdict)
        if verdict.passed and not result.passed:
            logger.info("Consistency reviewer said passed but listed %d issues; treating as failed", len(result.issues))
        return result
