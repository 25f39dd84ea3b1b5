"""Tests for context assembly and story time."""

import asyncio

import pytest

from fakes import make_text

from episode_forge.errors import ValidationError
from episode_forge.generate.context import ContextLoader, LengthBand, parse_length_band
from episode_forge.generate.models import GenerationConfig
from episode_forge.generate.storytime import next_story_time, parse_story_time

DEFAULT_BAND = LengthBand(500, 700)


class TestLengthBand:
    """Test reading the length directive from a story bible."""

    @pytest.mark.parametrize("bible, expected", [
        ("분량: 800~1200자", LengthBand(800, 1200)),
        ("회당 300 - 400 글자 내외", LengthBand(300, 400)),
        ("Each installment is 1500–2000 characters.", LengthBand(1500, 2000)),
        ("length 900~1100 chars", LengthBand(900, 1100)),
    ])
    def test_parses_directive(self, bible, expected):
        assert parse_length_band(bible, DEFAULT_BAND) == expected

    def test_default_when_missing(self):
        assert parse_length_band("No length rules here.", DEFAULT_BAND) == DEFAULT_BAND
        assert parse_length_band("", DEFAULT_BAND) == DEFAULT_BAND

    def test_default_when_inverted(self):
        assert parse_length_band("900~500자", DEFAULT_BAND) == DEFAULT_BAND

    def test_midpoint(self):
        assert LengthBand(500, 700).midpoint == 600
        assert str(LengthBand(500, 700)) == "500~700"


class TestContextLoader:
    """Test the snapshot handed to the writer."""

    def test_first_episode(self, load_context):
        context = load_context()
        assert context.episode_no == 1
        assert context.max_episode_no == 0
        assert context.is_first_episode
        assert context.previous_tail == ""
        assert context.length_band == LengthBand(500, 700)

    def test_tails_oldest_first(self, repo, load_context):
        repo.add_episode("novel-1", "Episode one text.", "2025-01-01T09:00:00+09:00")
        repo.add_episode("novel-1", "Episode two text.", "2025-01-01T09:05:00+09:00")
        repo.add_episode("novel-1", "Episode three text.", "2025-01-01T09:10:00+09:00")
        context = load_context()
        assert context.episode_no == 4
        assert context.max_episode_no == 3
        assert context.previous_episode.episode_no == 3
        assert context.recent_tails == ["Episode two text.", "Episode three text."]
        assert context.previous_tail == "Episode three text."

    def test_tail_is_truncated(self, repo, load_context):
        repo.add_episode("novel-1", make_text(4000), "2025-01-01T09:00:00+09:00")
        context = load_context()
        assert len(context.previous_tail) == 2500
        assert context.previous_tail.endswith("x.")

    def test_open_seeds_only(self, repo, load_context):
        open_seed = asyncio.run(repo.insert_plot_seed("novel-1", "The missing key"))
        closed = asyncio.run(repo.insert_plot_seed("novel-1", "The broken clock"))
        closed.introduced_in_episode_id = "ep"
        asyncio.run(repo.resolve_plot_seeds("novel-1", [closed.id], "ep2"))

        context = load_context()
        assert [s.id for s in context.open_plot_seeds] == [open_seed.id]

    def test_missing_novel(self, repo):
        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(ContextLoader(repo, GenerationConfig()).load("nope"))
        assert exc_info.value.details == {"novel_id": "nope"}


class TestStoryTime:
    """Test in-fiction timestamps."""

    def test_first_episode_uses_start(self):
        assert next_story_time(None, 5, "2025-01-01T09:00:00+09:00") == "2025-01-01T09:00:00+09:00"

    def test_advances_by_step(self):
        assert next_story_time("2025-01-01T09:00:00+09:00", 5, "") == "2025-01-01T09:05:00+09:00"

    def test_crosses_midnight(self):
        assert next_story_time("2025-01-01T23:58:00+09:00", 5, "") == "2025-01-02T00:03:00+09:00"

    def test_utc_input_rendered_in_kst(self):
        assert next_story_time("2025-01-01T00:00:00Z", 30, "") == "2025-01-01T09:30:00+09:00"

    def test_naive_input_is_kst(self):
        assert parse_story_time("2025-03-01T12:00:00").utcoffset().total_seconds() == 9 * 3600

    def test_rejects_bad_values(self):
        with pytest.raises(ValidationError):
            next_story_time(None, 0, "2025-01-01T09:00:00+09:00")
        with pytest.raises(ValidationError):
            next_story_time("yesterday", 5, "")
