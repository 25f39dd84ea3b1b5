"""Data models for episode generation."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional


class RunState(str, Enum):
    """Progress of one (novel, episode_no) attempt."""
    DRAFTING = "drafting"
    REVIEWING = "reviewing"
    PERSISTED = "persisted"
    REVIEW_FAILED = "review_failed"


class EpisodeStatus(str, Enum):
    """Per-novel outcome reported by a run."""
    OK = "ok"
    DRY_RUN = "dry_run"
    REVIEW_FAILED = "review_failed"
    ERROR = "error"  # an exception escaped this novel's attempt


class PlotSeedStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ChunkKind(str, Enum):
    EPISODE = "episode"
    FACT = "fact"
    STYLE = "style"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class GenerationConfig:
    """Knobs for one run. Defaults mirror Settings; CLI flags override."""
    # Retry budgets
    max_tiktaka: int = 2
    max_writer_attempts: int = 8
    max_meta_attempts: int = 2
    max_tool_calls: int = 6

    # Modes
    dry_run: bool = False
    disable_writer_tools: bool = False

    # Context
    tail_chars: int = 2500
    story_bible_chars: int = 6000
    previous_tails: int = 2

    # Hard constraints
    anchor_window: int = 800
    anchor_fallback_chars: int = 220
    default_min_chars: int = 500
    default_max_chars: int = 700
    length_target_tolerance: int = 50

    # Writer token budget
    token_budget: int = 2500
    token_step: int = 180
    min_token_budget: int = 600
    max_token_budget: int = 8192

    # Story time
    story_time_step_minutes: int = 5
    start_story_time_iso: str = "2025-01-01T09:00:00+09:00"

    # Grounding and indexing
    grounding_k: int = 8
    grounding_query_chars: int = 2000
    summary_chars: int = 4000
    max_facts: int = 10

    writer_temperature: float = 0.8
    review_temperature: float = 0.2

    @property
    def max_review_attempts(self) -> int:
        return max(1, min(self.max_tiktaka + 1, 3))

    @classmethod
    def from_settings(cls, settings, **overrides) -> "GenerationConfig":
        """Build from Settings; ``None`` overrides are ignored."""
        values = {
            "max_tiktaka": settings.max_tiktaka,
            "max_writer_attempts": settings.max_writer_attempts,
            "max_tool_calls": settings.max_tool_calls,
            "story_time_step_minutes": settings.story_time_step_minutes,
            "start_story_time_iso": settings.start_story_time_iso,
            "writer_temperature": settings.writer_temperature,
            "review_temperature": settings.review_temperature,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class Novel:
    id: str
    title: str = ""
    story_bible: str = ""
    status: str = "active"


@dataclass
class Episode:
    """A persisted installment. Immutable once written."""
    id: str
    novel_id: str
    episode_no: int
    story_time: str
    content: str


@dataclass
class Character:
    novel_id: str
    name: str
    profile: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"name": self.name, "profile": self.profile}


@dataclass
class Location:
    novel_id: str
    name: str
    profile: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"name": self.name, "profile": self.profile}


@dataclass
class PlotSeed:
    id: str
    novel_id: str
    title: str
    detail: str = ""
    status: PlotSeedStatus = PlotSeedStatus.OPEN
    introduced_in_episode_id: Optional[str] = None
    resolved_in_episode_id: Optional[str] = None
    character_names: list[str] = field(default_factory=list)
    location_names: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class EpisodeChunk:
    """Retrieval index entry derived from an episode."""
    id: str
    novel_id: str
    episode_id: str
    episode_no: int
    chunk_kind: ChunkKind
    chunk_index: int
    content: str
    embedding: list[float]
    embedding_model: str

    @property
    def embedding_dim(self) -> int:
        return len(self.embedding)

    @staticmethod
    def make_id(episode_id: str, kind: ChunkKind, index: int) -> str:
        return f"{episode_id}:{kind.value}:{index}"


@dataclass
class GroundingHit:
    """One similarity-search result, tagged with where it came from."""
    source: ChunkKind
    episode_no: int
    similarity: float
    content: str
    chunk_id: str = ""

    def to_dict(self) -> dict:
        return {
            "source": self.source.value,
            "episode_no": self.episode_no,
            "similarity": round(self.similarity, 4),
            "content": self.content,
        }


@dataclass
class Issue:
    severity: Severity
    description: str

    def to_dict(self) -> dict:
        return {"severity": self.severity.value, "description": self.description}


@dataclass
class ReviewResult:
    passed: bool
    issues: list[Issue] = field(default_factory=list)
    revision_instruction: Optional[str] = None

    @classmethod
    def from_verdict(cls, verdict) -> "ReviewResult":
        """Never trust the reported flag alone: any issue means failure."""
        issues = [Issue(Severity(i.severity), i.description) for i in verdict.issues]
        return cls(
            passed=bool(verdict.passed) and not issues,
            issues=issues,
            revision_instruction=(verdict.revision_instruction or "").strip() or None,
        )

    def instruction_text(self) -> str:
        """Revision instruction, falling back to the issue list."""
        if self.revision_instruction:
            return self.revision_instruction
        return "\n".join(f"- [{i.severity.value}] {i.description}" for i in self.issues)


@dataclass
class Draft:
    """Writer output for one attempt."""
    content: str
    resolved_plot_seed_ids: list[str] = field(default_factory=list)
    created_plot_seed_ids: list[str] = field(default_factory=list)
    tool_calls: int = 0


@dataclass
class EpisodeRun:
    """Ephemeral progress record for one episode attempt."""
    novel_id: str
    episode_no: int
    state: RunState = RunState.DRAFTING
    attempt_count: int = 0
    writer_attempts: int = 0
    last_review_issues: list[Issue] = field(default_factory=list)
    last_revision_instruction: Optional[str] = None
    created_plot_seed_ids: list[str] = field(default_factory=list)


@dataclass
class EpisodeResult:
    novel_id: str
    episode_no: int
    status: EpisodeStatus
    episode_id: Optional[str] = None
    story_time: Optional[str] = None
    issues: list[Issue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (EpisodeStatus.OK, EpisodeStatus.DRY_RUN)

    def to_dict(self) -> dict:
        data = {
            "novel_id": self.novel_id,
            "episode_no": self.episode_no,
            "status": self.status.value,
        }
        if self.episode_id:
            data["episode_id"] = self.episode_id
        if self.story_time:
            data["story_time"] = self.story_time
        if self.issues:
            data["issues"] = [i.to_dict() for i in self.issues]
        if self.warnings:
            data["warnings"] = self.warnings
        return data


@dataclass
class RunReport:
    results: list[EpisodeResult] = field(default_factory=list)
    completed: Optional[bool] = None  # set by chains, which may recover from failed episodes

    @property
    def ok(self) -> bool:
        if self.completed is not None:
            return self.completed
        return all(r.ok for r in self.results)

    def to_dict(self) -> dict:
        return {"ok": self.ok, "results": [r.to_dict() for r in self.results]}
