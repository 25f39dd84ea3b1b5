"""Deterministic hard constraints checked on every draft.

These run before any model-based review:
- length within the novel's band
- verbatim continuity anchor from the previous episode
- no meta-references to episode numbers
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from .context import EpisodeContext, LengthBand
from .models import GenerationConfig

# Checked against text with all whitespace removed, so "지난 화" and "3 화" match too.
# "화요일" (Tuesday) is excluded.
META_PATTERNS_COMPACT = [
    re.compile(r"\d+회차"),
    re.compile(r"\d+화(?!요일)"),
    re.compile(r"(?:지난|이전|전)회차"),
    re.compile(r"(?:지난|이전)화(?!요일)"),
    re.compile(r"(?:이전|전)편"),
]

# Checked against the original text.
META_PATTERNS_SPACED = [
    re.compile(r"\bep(?:isode)?\.?\s*#?\d+\b", re.IGNORECASE),
    re.compile(r"\b(?:previous|last|prior)\s+(?:episode|installment)\b", re.IGNORECASE),
]

SENTENCE_RE = re.compile(r"[^.!?。！？…]+(?:[.!?。！？…]+[\"'”’」』)\]]*|$)")
WHITESPACE_RE = re.compile(r"\s+")

COMPRESS_GUIDANCE = "Compress: cut exposition and description, keep the events and dialogue."
EXPAND_GUIDANCE = "Expand: add one action beat, two lines of dialogue and one sensory detail."


def find_meta_references(text: str) -> list[str]:
    """Return every forbidden meta-reference found in ``text``."""
    found = []
    compact = WHITESPACE_RE.sub("", text or "")
    for pattern in META_PATTERNS_COMPACT:
        found.extend(m.group(0) for m in pattern.finditer(compact))
    for pattern in META_PATTERNS_SPACED:
        found.extend(m.group(0) for m in pattern.finditer(text or ""))
    return found


def normalize_whitespace(text: str) -> str:
    return WHITESPACE_RE.sub(" ", text or "").strip()


def split_sentences(text: str) -> list[tuple[int, str]]:
    """Split normalized text into ``(start_offset, sentence)`` pairs."""
    sentences = []
    for match in SENTENCE_RE.finditer(text):
        raw = match.group(0)
        if not raw.strip():
            continue
        offset = match.start() + (len(raw) - len(raw.lstrip()))
        sentences.append((offset, raw.strip()))
    return sentences


def extract_anchor(previous_tail: str, fallback_chars: int = 220, max_chars: int = 400) -> str:
    """The text a new episode must repeat verbatim near its start.

    It is the last two sentences of the normalized tail, taken as one exact
    slice. When segmentation finds fewer than two sentences, or the two
    sentences are too long to fit comfortably in the opening, the last
    ``fallback_chars`` characters are used instead.
    """
    normalized = normalize_whitespace(previous_tail)
    if not normalized:
        return ""
    sentences = split_sentences(normalized)
    if len(sentences) >= 2:
        anchor = normalized[sentences[-2][0]:].strip()
        if len(anchor) <= max_chars:
            return anchor
    return normalized[-fallback_chars:].strip()


@dataclass
class LengthCheck:
    ok: bool
    length: int
    band: LengthBand
    direction: Optional[str] = None  # "compress" | "expand"
    target: Optional[int] = None
    guidance: str = ""


def check_length(content: str, band: LengthBand, tolerance: int = 50) -> LengthCheck:
    length = len((content or "").strip())
    if band.contains(length):
        return LengthCheck(ok=True, length=length, band=band)

    target = band.midpoint
    low = max(band.min_chars, target - tolerance)
    high = min(band.max_chars, target + tolerance)
    if length > band.max_chars:
        direction, advice = "compress", COMPRESS_GUIDANCE
    else:
        direction, advice = "expand", EXPAND_GUIDANCE
    guidance = (
        f"Length is {length} characters but must be {band.min_chars}-{band.max_chars}. "
        f"Rewrite to about {target} characters (between {low} and {high}). {advice}"
    )
    return LengthCheck(False, length, band, direction, target, guidance)


def check_anchor(content: str, anchor: str, window: int = 800) -> Optional[str]:
    """Return a failure message, or None when the anchor is present."""
    if not anchor:
        return None
    opening = normalize_whitespace(content)[:window]
    if anchor in opening:
        return None
    return (
        "The episode must continue directly from the previous scene. "
        f"Within the first {window} characters, repeat this closing text of the previous "
        f"episode exactly, then continue from it:\n\"{anchor}\""
    )


@dataclass
class TokenBudget:
    """Output-token budget nudged toward the length band after each miss."""
    value: int
    step: int = 180
    minimum: int = 600
    maximum: int = 8192

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "TokenBudget":
        return cls(config.token_budget, config.token_step, config.min_token_budget, config.max_token_budget)

    def adjust(self, direction: Optional[str]) -> int:
        if direction == "compress":
            self.value -= self.step
        elif direction == "expand":
            self.value += self.step
        self.value = max(self.minimum, min(self.maximum, self.value))
        return self.value


@dataclass
class GuardrailReport:
    ok: bool
    failures: list[str] = field(default_factory=list)
    length: Optional[LengthCheck] = None

    @property
    def message(self) -> str:
        return "\n".join(self.failures)


class HardConstraintValidator:
    """Runs every hard constraint on a draft."""

    def __init__(self, config: GenerationConfig):
        self.config = config

    def anchor_for(self, context: EpisodeContext) -> str:
        if context.is_first_episode:
            return ""
        return extract_anchor(
            context.previous_tail,
            self.config.anchor_fallback_chars,
            self.config.anchor_window // 2,
        )

    def validate(self, content: str, context: EpisodeContext) -> GuardrailReport:
        failures = []

        length = check_length(content, context.length_band, self.config.length_target_tolerance)
        if not length.ok:
            failures.append(length.guidance)

        anchor_failure = check_anchor(content, self.anchor_for(context), self.config.anchor_window)
        if anchor_failure:
            failures.append(anchor_failure)

        meta = find_meta_references(content)
        if meta:
            failures.append(
                "Remove references to episode numbers or previous episodes: "
                + ", ".join(sorted(set(meta)))
            )

        return GuardrailReport(ok=not failures, failures=failures, length=length)
