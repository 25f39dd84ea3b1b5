"""In-fiction timestamps, always rendered in KST (UTC+09:00)."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from ..errors import ValidationError

KST = timezone(timedelta(hours=9))


def parse_story_time(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as KST."""
    text = (value or "").strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid story time: {value!r}",
            "INVALID_ARGUMENT",
            hint="Use ISO-8601, e.g. 2025-01-01T09:00:00+09:00",
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=KST)
    return parsed.astimezone(KST)


def format_story_time(value: datetime) -> str:
    return value.astimezone(KST).isoformat(timespec="seconds")


def next_story_time(previous: Optional[str], step_minutes: int, start_iso: str) -> str:
    """``previous + step``, or the start time when there is no previous episode."""
    if step_minutes <= 0:
        raise ValidationError(
            "story_time_step_minutes must be positive",
            "INVALID_ARGUMENT",
            details={"story_time_step_minutes": step_minutes},
        )
    if not previous:
        return format_story_time(parse_story_time(start_iso))
    return format_story_time(parse_story_time(previous) + timedelta(minutes=step_minutes))
