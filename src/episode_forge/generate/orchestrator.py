"""Episode generation-review pipeline.

One episode attempt is a small state machine. Each stage handler does its
work and returns an ``Event``; ``TRANSITIONS`` decides the next stage. The
retry budgets live in the handlers:

- writer attempts (per outer attempt) bound DRAFTING <-> HARD_VALIDATING
- review attempts bound the loops back from either reviewer to DRAFTING
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..errors import AgentError, ParseError, UnexpectedError, ValidationError
from ..graph.repository import NovelRepository
from ..llm.base import LLMAdapter
from .context import ContextLoader, EpisodeContext
from .generator import DraftGenerator
from .grounding import GroundingRetriever
from .guardrails import HardConstraintValidator, TokenBudget
from .judge import ConsistencyReviewer, ContinuityReviewer, FactExtractor
from .models import (
    Draft,
    EpisodeResult,
    EpisodeRun,
    EpisodeStatus,
    GenerationConfig,
    GroundingHit,
    Issue,
    ReviewResult,
    RunReport,
    RunState,
    Severity,
)
from .persistence import EpisodePersister
from .storytime import next_story_time
from .tools import WriterToolbox

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    DRAFTING = "drafting"
    HARD_VALIDATING = "hard_validating"
    CONTINUITY_REVIEW = "continuity_review"
    FACT_EXTRACTION = "fact_extraction"
    GROUNDING = "grounding"
    CONSISTENCY_REVIEW = "consistency_review"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class Event(str, Enum):
    DRAFTED = "drafted"
    DRAFT_REJECTED = "draft_rejected"
    WRITER_EXHAUSTED = "writer_exhausted"
    CONSTRAINTS_PASSED = "constraints_passed"
    CONSTRAINTS_FAILED = "constraints_failed"
    REVIEW_PASSED = "review_passed"
    REVIEW_FAILED = "review_failed"
    REVIEW_EXHAUSTED = "review_exhausted"
    FACTS_EXTRACTED = "facts_extracted"
    GROUNDED = "grounded"
    PERSISTED = "persisted"
    DRY_RUN = "dry_run"


TRANSITIONS: dict[tuple[Stage, Event], Stage] = {
    (Stage.DRAFTING, Event.DRAFTED): Stage.HARD_VALIDATING,
    (Stage.DRAFTING, Event.DRAFT_REJECTED): Stage.DRAFTING,
    (Stage.DRAFTING, Event.WRITER_EXHAUSTED): Stage.FAILED,
    (Stage.HARD_VALIDATING, Event.CONSTRAINTS_PASSED): Stage.CONTINUITY_REVIEW,
    (Stage.HARD_VALIDATING, Event.CONSTRAINTS_FAILED): Stage.DRAFTING,
    (Stage.CONTINUITY_REVIEW, Event.REVIEW_PASSED): Stage.FACT_EXTRACTION,
    (Stage.CONTINUITY_REVIEW, Event.REVIEW_FAILED): Stage.DRAFTING,
    (Stage.CONTINUITY_REVIEW, Event.REVIEW_EXHAUSTED): Stage.FAILED,
    (Stage.FACT_EXTRACTION, Event.FACTS_EXTRACTED): Stage.GROUNDING,
    (Stage.GROUNDING, Event.GROUNDED): Stage.CONSISTENCY_REVIEW,
    (Stage.CONSISTENCY_REVIEW, Event.REVIEW_PASSED): Stage.PERSISTING,
    (Stage.CONSISTENCY_REVIEW, Event.REVIEW_FAILED): Stage.DRAFTING,
    (Stage.CONSISTENCY_REVIEW, Event.REVIEW_EXHAUSTED): Stage.FAILED,
    (Stage.PERSISTING, Event.PERSISTED): Stage.DONE,
    (Stage.PERSISTING, Event.DRY_RUN): Stage.DONE,
}

TERMINAL_STAGES = (Stage.DONE, Stage.FAILED)


def next_stage(stage: Stage, event: Event) -> Stage:
    try:
        return TRANSITIONS[(stage, event)]
    except KeyError:
        raise UnexpectedError(
            f"No transition from {stage.value} on {event.value}",
            details={"stage": stage.value, "event": event.value},
        ) from None


@dataclass
class Attempt:
    """Mutable working state threaded through the stage handlers."""
    run: EpisodeRun
    context: EpisodeContext
    budget: TokenBudget
    story_time: str
    toolbox: Optional[WriterToolbox] = None
    draft: Optional[Draft] = None
    guardrail_message: Optional[str] = None
    facts: list[str] = field(default_factory=list)
    hits: list[GroundingHit] = field(default_factory=list)
    failure_issues: list[Issue] = field(default_factory=list)
    episode_id: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    transitions: list[tuple[Stage, Event, Stage]] = field(default_factory=list)

    def writer_instruction(self) -> Optional[str]:
        parts = [p for p in (self.run.last_revision_instruction, self.guardrail_message) if p]
        return "\n\n".join(parts) or None


class EpisodeOrchestrator:
    """Runs the pipeline for one or many novels.

    Every collaborator is injected; nothing here constructs clients.
    """

    def __init__(
        self,
        repository: NovelRepository,
        llm: LLMAdapter,
        embedder: LLMAdapter,
        config: GenerationConfig,
        embedding_model_tag: str,
    ):
        self.repository = repository
        self.llm = llm
        self.embedder = embedder
        self.config = config
        self.embedding_model_tag = embedding_model_tag

        self.loader = ContextLoader(repository, config)
        self.writer = DraftGenerator(llm, config)
        self.validator = HardConstraintValidator(config)
        self.continuity = ContinuityReviewer(llm, config)
        self.facts = FactExtractor(llm, config)
        self.retriever = GroundingRetriever(repository, embedder, config, embedding_model_tag)
        self.consistency = ConsistencyReviewer(llm, config)
        self.persister = EpisodePersister(repository, embedder, config, embedding_model_tag)

        self.handlers: dict[Stage, Callable[[Attempt], Awaitable[Event]]] = {
            Stage.DRAFTING: self._drafting,
            Stage.HARD_VALIDATING: self._hard_validating,
            Stage.CONTINUITY_REVIEW: self._continuity_review,
            Stage.FACT_EXTRACTION: self._fact_extraction,
            Stage.GROUNDING: self._grounding,
            Stage.CONSISTENCY_REVIEW: self._consistency_review,
            Stage.PERSISTING: self._persisting,
        }

    async def run(self, novel_ids: Optional[list[str]] = None, limit: int = 50) -> RunReport:
        """Generate the next episode for each novel, or all active novels.

        A failure in one novel is recorded and the loop moves on.
        """
        if novel_ids is None:
            novel_ids = await self.repository.list_active_novel_ids(limit)
            logger.info("Found %d active novels", len(novel_ids))

        report = RunReport()
        for novel_id in novel_ids:
            report.results.append(await self.run_novel(novel_id))
        return report

    async def run_novel(self, novel_id: str) -> EpisodeResult:
        """``run_episode`` with per-novel error isolation."""
        try:
            return await self.run_episode(novel_id)
        except AgentError as exc:
            logger.error("Novel %s failed: %s", novel_id, exc)
            error = exc
        except Exception as exc:
            logger.exception("Novel %s failed unexpectedly", novel_id)
            error = AgentError.from_unknown(exc)
        return self._error_result(novel_id, error, await self._safe_episode_no(novel_id))

    async def _safe_episode_no(self, novel_id: str) -> int:
        try:
            return await self.repository.get_max_episode_no(novel_id) + 1
        except AgentError:
            return 0

    def _error_result(self, novel_id: str, error: AgentError, episode_no: int) -> EpisodeResult:
        description = str(error)
        if error.hint:
            description += f" (hint: {error.hint})"
        return EpisodeResult(
            novel_id=novel_id,
            episode_no=episode_no,
            status=EpisodeStatus.ERROR,
            issues=[Issue(Severity.HIGH, description)],
        )

    async def run_episode(self, novel_id: str) -> EpisodeResult:
        """Write, review and (unless dry-run) persist the next episode.

        Args:
            novel_id: Novel to continue

        Returns:
            EpisodeResult with status ok, dry_run or review_failed

        Raises:
            AgentError: Anything that escapes the stage handlers; ``run_novel``
                turns it into an error result
        """
        context = await self.loader.load(novel_id)
        previous = context.previous_episode
        story_time = next_story_time(
            previous.story_time if previous else None,
            self.config.story_time_step_minutes,
            self.config.start_story_time_iso,
        )

        run = EpisodeRun(novel_id=novel_id, episode_no=context.episode_no, attempt_count=1)
        toolbox = None
        if not self.config.disable_writer_tools:
            toolbox = WriterToolbox(
                self.repository,
                self.embedder,
                context,
                embedding_model_tag=self.embedding_model_tag,
                dry_run=self.config.dry_run,
                search_k=self.config.grounding_k,
            )
        attempt = Attempt(
            run=run,
            context=context,
            budget=TokenBudget.from_config(self.config),
            story_time=story_time,
            toolbox=toolbox,
        )
        logger.info(
            "Novel %s: writing episode %d (story time %s, band %s)",
            novel_id, context.episode_no, story_time, context.length_band,
        )

        stage = Stage.DRAFTING
        while stage not in TERMINAL_STAGES:
            event = await self.handlers[stage](attempt)
            new_stage = next_stage(stage, event)
            attempt.transitions.append((stage, event, new_stage))
            logger.debug("%s #%d: %s --%s--> %s", novel_id, context.episode_no, stage.value, event.value, new_stage.value)
            stage = new_stage

        return self._result(attempt, stage)

    def _result(self, attempt: Attempt, stage: Stage) -> EpisodeResult:
        run = attempt.run
        if stage is Stage.FAILED:
            run.state = RunState.REVIEW_FAILED
            issues = attempt.failure_issues or run.last_review_issues
            logger.warning(
                "Novel %s episode %d failed review after %d outer attempts",
                run.novel_id, run.episode_no, run.attempt_count,
            )
            return EpisodeResult(
                novel_id=run.novel_id,
                episode_no=run.episode_no,
                status=EpisodeStatus.REVIEW_FAILED,
                issues=list(issues),
            )

        if self.config.dry_run:
            status = EpisodeStatus.DRY_RUN
        else:
            run.state = RunState.PERSISTED
            status = EpisodeStatus.OK
        return EpisodeResult(
            novel_id=run.novel_id,
            episode_no=run.episode_no,
            status=status,
            episode_id=attempt.episode_id,
            story_time=attempt.story_time,
            warnings=attempt.warnings,
        )

    # Stage handlers

    async def _drafting(self, attempt: Attempt) -> Event:
        run = attempt.run
        run.state = RunState.DRAFTING
        if run.writer_attempts >= self.config.max_writer_attempts:
            message = attempt.guardrail_message or "Writer attempts exhausted"
            attempt.failure_issues = [Issue(Severity.HIGH, message)]
            return Event.WRITER_EXHAUSTED

        run.writer_attempts += 1
        logger.info(
            "Writer attempt %d/%d (review attempt %d/%d, %d tokens)",
            run.writer_attempts, self.config.max_writer_attempts,
            run.attempt_count, self.config.max_review_attempts, attempt.budget.value,
        )
        try:
            draft = await self.writer.generate(
                attempt.context,
                attempt.writer_instruction(),
                attempt.budget.value,
                attempt.toolbox,
            )
        except (ValidationError, ParseError) as exc:
            attempt.guardrail_message = f"{exc.message}. {exc.hint}" if exc.hint else exc.message
            logger.info("Draft rejected: %s", attempt.guardrail_message)
            return Event.DRAFT_REJECTED

        attempt.draft = draft
        for seed_id in draft.created_plot_seed_ids:
            if seed_id not in run.created_plot_seed_ids:
                run.created_plot_seed_ids.append(seed_id)
        return Event.DRAFTED

    async def _hard_validating(self, attempt: Attempt) -> Event:
        report = self.validator.validate(attempt.draft.content, attempt.context)
        if report.ok:
            attempt.guardrail_message = None
            return Event.CONSTRAINTS_PASSED

        attempt.guardrail_message = report.message
        if report.length is not None and report.length.direction:
            attempt.budget.adjust(report.length.direction)
        logger.info(
            "Hard constraints failed (%d chars): %s",
            report.length.length if report.length else -1,
            "; ".join(f.splitlines()[0] for f in report.failures),
        )
        return Event.CONSTRAINTS_FAILED

    async def _continuity_review(self, attempt: Attempt) -> Event:
        attempt.run.state = RunState.REVIEWING
        result = await self.continuity.review(attempt.context, attempt.draft.content)
        return self._after_review(attempt, result, "continuity")

    async def _fact_extraction(self, attempt: Attempt) -> Event:
        attempt.facts = await self.facts.extract(attempt.draft.content)
        return Event.FACTS_EXTRACTED

    async def _grounding(self, attempt: Attempt) -> Event:
        attempt.hits = await self.retriever.retrieve(
            attempt.context.novel_id, attempt.facts, attempt.context.max_episode_no
        )
        return Event.GROUNDED

    async def _consistency_review(self, attempt: Attempt) -> Event:
        result = await self.consistency.review(
            attempt.context, attempt.draft.content, attempt.facts, attempt.hits
        )
        return self._after_review(attempt, result, "consistency")

    async def _persisting(self, attempt: Attempt) -> Event:
        if self.config.dry_run:
            logger.info("Dry run: skipping persistence of episode %d", attempt.run.episode_no)
            return Event.DRY_RUN
        outcome = await self.persister.persist(
            attempt.context,
            attempt.draft,
            attempt.facts,
            attempt.story_time,
            attempt.run.created_plot_seed_ids,
        )
        attempt.episode_id = outcome.episode.id
        attempt.warnings = outcome.warnings
        return Event.PERSISTED

    def _after_review(self, attempt: Attempt, result: ReviewResult, name: str) -> Event:
        run = attempt.run
        if result.passed:
            logger.info("%s review passed", name.capitalize())
            return Event.REVIEW_PASSED

        run.last_review_issues = result.issues
        run.last_revision_instruction = result.instruction_text()
        logger.info(
            "%s review failed with %d issues (attempt %d/%d)",
            name.capitalize(), len(result.issues), run.attempt_count, self.config.max_review_attempts,
        )
        if run.attempt_count >= self.config.max_review_attempts:
            if not run.last_review_issues:
                run.last_review_issues = [Issue(Severity.HIGH, f"{name} review failed without issues")]
            return Event.REVIEW_EXHAUSTED

        run.attempt_count += 1
        run.writer_attempts = 0
        attempt.guardrail_message = None
        return Event.REVIEW_FAILED

    async def run_chain(
        self,
        novel_id: str,
        target_episodes: int,
        max_restarts: int = 5,
        clean_start: bool = False,
    ) -> RunReport:
        """Write episodes until the novel has ``target_episodes`` of them.

        After a failed episode the novel's generated data is cleared and the
        chain restarts from episode 1, at most ``max_restarts`` times.
        """
        if self.config.dry_run:
            raise ValidationError(
                "Chains need persisted episodes and cannot run in dry-run mode",
                "NOT_SUPPORTED",
            )
        if target_episodes < 1:
            raise ValidationError("target_episodes must be >= 1", "INVALID_ARGUMENT")

        report = RunReport()
        if clean_start:
            await self.repository.delete_novel_data(novel_id)

        restarts = 0
        while True:
            progress = await self.repository.get_max_episode_no(novel_id)
            if progress >= target_episodes:
                logger.info("Chain for %s reached %d episodes", novel_id, progress)
                report.completed = True
                return report

            result = await self.run_novel(novel_id)
            report.results.append(result)
            if result.ok:
                logger.info("Chain %s: episode %d persisted (%d/%d)",
                            novel_id, result.episode_no, result.episode_no, target_episodes)
                continue

            if restarts >= max_restarts:
                logger.error("Chain for %s gave up after %d restarts", novel_id, restarts)
                report.completed = False
                return report
            restarts += 1
            logger.warning(
                "Chain %s: episode %d ended with %s; clearing and restarting (%d/%d)",
                novel_id, result.episode_no, result.status.value, restarts, max_restarts,
            )
            await self.repository.delete_novel_data(novel_id)
