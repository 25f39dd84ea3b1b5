"""Pydantic schemas for every structured model reply."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class ReviewIssue(BaseModel):
    severity: Literal["low", "medium", "high"]
    description: str = Field(min_length=1)


class ReviewVerdict(BaseModel):
    """Shared reply shape of the continuity and consistency reviewers."""
    passed: bool
    issues: list[ReviewIssue] = Field(default_factory=list)
    revision_instruction: Optional[str] = None


class FactList(BaseModel):
    facts: list[str] = Field(default_factory=list)


class ToolCall(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class WriterOutput(BaseModel):
    """Either final content, or tool calls to run before writing."""
    episode_content: str = ""
    resolved_plot_seed_ids: list[str] = Field(default_factory=list)
    tool_calls: list[ToolCall] = Field(default_factory=list)
