"""Episode writer: drafts the next installment, optionally using tools."""

import logging
from typing import Optional

from ..errors import ParseError, ValidationError
from ..llm.base import ChatMessage, JsonRequest, LLMAdapter
from .context import EpisodeContext
from .guardrails import extract_anchor, find_meta_references
from .models import Draft, GenerationConfig
from .schemas import WriterOutput
from .tools import WriterToolbox, render_tool_results

logger = logging.getLogger(__name__)

META_HINT = "Rewrite to avoid referencing previous episode numbers or '지난 화'"


class DraftGenerator:
    """Produces ``Draft`` objects for an ``EpisodeContext``."""

    WRITER_SYSTEM = '''You are the writer of an ongoing serialized web novel.
You write the next installment so that it reads as a seamless continuation.

Rules:
- Continue the story exactly where the previous installment stopped. No recap, no prologue, no scene reset.
- Never mention episode numbers, chapter labels, or phrases like "previous episode" / "지난 화".
- Stay inside the required length band (count every character, including spaces).
- Keep established facts, character states and the story bible intact.
- List in resolved_plot_seed_ids only the ids of open plot seeds this installment actually pays off.'''

    WRITER_PROMPT = '''NOVEL: {title}

STORY BIBLE:
{story_bible}

REQUIRED LENGTH: {band} characters.

CHARACTERS:
{characters}

LOCATIONS:
{locations}

OPEN PLOT SEEDS:
{plot_seeds}

RECENT TEXT (oldest first):
{recent}

{anchor_section}{tools_section}{revision_section}Write the next installment now.'''

    ANCHOR_SECTION = '''OPENING REQUIREMENT:
Begin by repeating the following closing text of the previous installment word for word, then continue from it:
"{anchor}"

'''

    TOOLS_SECTION = '''TOOLS:
Instead of writing, you may return "tool_calls": [{{"name": ..., "arguments": {{...}}}}] with an empty episode_content.
You may make at most {max_calls} tool calls for this draft. Available tools:
{tools}

'''

    REVISION_SECTION = '''REVISION INSTRUCTIONS (fix all of these):
{instruction}

'''

    META_CORRECTION = (
        "Your draft referenced episode numbers or earlier installments ({found}). "
        "Rewrite it without any such references; describe events directly instead."
    )

    def __init__(self, llm: LLMAdapter, config: GenerationConfig):
        self.llm = llm
        self.config = config

    async def generate(
        self,
        context: EpisodeContext,
        revision_instruction: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        toolbox: Optional[WriterToolbox] = None,
    ) -> Draft:
        """Write one draft free of meta-references.

        A draft that mentions episode numbers gets one corrective retry;
        after ``max_meta_attempts`` the rule violation is raised.

        Args:
            context: Loaded state for the episode being written
            revision_instruction: Reviewer or guardrail feedback from the last attempt
            max_output_tokens: Token budget (default from config)
            toolbox: Writer tools, or None to write from the static context only

        Returns:
            Draft with content, declared resolved seeds and seeds created by tools

        Raises:
            ValidationError: Meta-references survived every correction
        """
        tokens = max_output_tokens or self.config.token_budget
        instruction = revision_instruction
        found: list[str] = []

        for attempt in range(1, self.config.max_meta_attempts + 1):
            draft = await self._write(context, instruction, tokens, toolbox)
            found = find_meta_references(draft.content)
            if not found:
                return draft
            logger.info(
                "Draft for %s mentions episode meta %s (attempt %d/%d)",
                context.novel_id, found, attempt, self.config.max_meta_attempts,
            )
            correction = self.META_CORRECTION.format(found=", ".join(sorted(set(found))))
            instruction = f"{revision_instruction}\n{correction}" if revision_instruction else correction

        raise ValidationError(
            "Draft still references episode numbers after correction",
            "INVALID_ARGUMENT",
            hint=META_HINT,
            details={"rule": "no_episode_meta", "found": sorted(set(found))},
        )

    def build_prompt(
        self,
        context: EpisodeContext,
        revision_instruction: Optional[str],
        toolbox: Optional[WriterToolbox],
    ) -> str:
        static = toolbox is None
        if static:
            characters = "\n".join(
                f"- {c.name}: {c.profile}" if c.profile else f"- {c.name}" for c in context.characters
            )
            locations = "\n".join(
                f"- {l.name}: {l.profile}" if l.profile else f"- {l.name}" for l in context.locations
            )
        else:
            characters = ", ".join(c.name for c in context.characters)
            locations = ", ".join(l.name for l in context.locations)

        seeds = "\n".join(f"- [{s.id}] {s.title}: {s.detail}" for s in context.open_plot_seeds)
        recent = "\n---\n".join(context.recent_tails)

        anchor = ""
        if not context.is_first_episode:
            anchor = extract_anchor(
                context.previous_tail,
                self.config.anchor_fallback_chars,
                self.config.anchor_window // 2,
            )

        return self.WRITER_PROMPT.format(
            title=context.novel.title or context.novel_id,
            story_bible=context.story_bible or "(none)",
            band=context.length_band,
            characters=characters or "(none)",
            locations=locations or "(none)",
            plot_seeds=seeds or "(none)",
            recent=recent or "(this is the first installment)",
            anchor_section=self.ANCHOR_SECTION.format(anchor=anchor) if anchor else "",
            tools_section=(
                self.TOOLS_SECTION.format(max_calls=self.config.max_tool_calls, tools=toolbox.describe())
                if toolbox is not None else ""
            ),
            revision_section=(
                self.REVISION_SECTION.format(instruction=revision_instruction)
                if revision_instruction else ""
            ),
        )

    async def _write(
        self,
        context: EpisodeContext,
        revision_instruction: Optional[str],
        max_output_tokens: int,
        toolbox: Optional[WriterToolbox],
    ) -> Draft:
        prompt = self.build_prompt(context, revision_instruction, toolbox)
        history: list[ChatMessage] = []
        calls_made = 0
        cap = self.config.max_tool_calls if toolbox is not None else 0

        # At most one turn per tool call, plus the final write and one nudge.
        for _ in range(cap + 2):
            request = JsonRequest(
                agent="writer",
                system=self.WRITER_SYSTEM,
                prompt=prompt,
                schema=WriterOutput,
                temperature=self.config.writer_temperature,
                max_output_tokens=max_output_tokens,
                history=list(history),
            )
            output: WriterOutput = await self.llm.generate_structured_json(request)

            if output.tool_calls and not output.episode_content.strip():
                history.append(ChatMessage("assistant", output.model_dump_json()))
                if toolbox is None or calls_made >= cap:
                    history.append(ChatMessage(
                        "user",
                        "Tools are not available now. Return the final episode_content.",
                    ))
                    continue
                results = []
                for call in output.tool_calls[: cap - calls_made]:
                    results.append(await toolbox.execute(call))
                    calls_made += 1
                if len(output.tool_calls) > len(results):
                    logger.info("Dropped %d writer tool calls over the cap", len(output.tool_calls) - len(results))
                history.append(ChatMessage("user", render_tool_results(results, cap - calls_made)))
                continue

            content = output.episode_content.strip()
            if not content:
                raise ParseError("Writer returned no episode_content", "INVALID_SHAPE")
            return Draft(
                content=content,
                resolved_plot_seed_ids=list(dict.fromkeys(output.resolved_plot_seed_ids)),
                created_plot_seed_ids=list(toolbox.created_plot_seed_ids) if toolbox else [],
                tool_calls=calls_made,
            )

        raise ParseError(
            "Writer kept requesting tools without producing content",
            "INVALID_SHAPE",
            details={"tool_calls": calls_made},
        )
