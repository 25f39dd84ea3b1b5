"""Tests for the Neo4j repository against a scripted driver."""

import asyncio

import pytest
from neo4j.exceptions import ClientError, ServiceUnavailable

from fakes import SleepRecorder

from episode_forge.config import Settings
from episode_forge.errors import DatabaseError, UpstreamError, ValidationError
from episode_forge.generate.models import ChunkKind, PlotSeedStatus
from episode_forge.graph.repository import Neo4jNovelRepository, check_match_args, merge_profiles
from episode_forge.llm.backoff import RetryPolicy
from episode_forge.services import Services


HANG = object()


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    async def data(self):
        return self.rows


class FakeSession:
    def __init__(self, driver):
        self.driver = driver

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def run(self, query, **params):
        self.driver.queries.append((" ".join(query.split()), params))
        outcome = self.driver.outcomes.pop(0) if self.driver.outcomes else []
        if callable(outcome):
            outcome = outcome(self.driver)
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResult(outcome)


class FakeDriver:
    """Each ``session.run`` consumes the next scripted outcome.

    An outcome is a list of rows, an exception, HANG, or a callable that
    receives the driver and returns one of those.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.queries = []
        self.databases = []

    def session(self, database=None):
        self.databases.append(database)
        return FakeSession(self)


def repository(driver, sleeper=None, timeout=None):
    return Neo4jNovelRepository(
        driver,
        database="novels",
        retry_policy=RetryPolicy(max_attempts=3, jitter=0),
        timeout=timeout,
        sleep=sleeper or SleepRecorder(),
    )


class TestHelpers:
    """Test profile merging and search argument checks."""

    def test_merge_profiles(self):
        merged = merge_profiles(
            {"job": "clockmaker", "looks": {"hair": "short"}, "age": 30},
            {"looks": {"scar": "left hand"}, "age": None, "mood": "tired"},
        )
        assert merged == {
            "job": "clockmaker",
            "looks": {"hair": "short", "scar": "left hand"},
            "age": 30,
            "mood": "tired",
        }

    def test_check_match_args(self):
        check_match_args(0, 1)
        with pytest.raises(ValidationError):
            check_match_args(-1, 5)
        with pytest.raises(ValidationError):
            check_match_args(3, 0)


class TestNeo4jRepository:
    """Test query plumbing and error mapping."""

    def test_get_novel(self):
        driver = FakeDriver([{"id": "n1", "title": "T", "story_bible": None, "status": "active"}])
        novel = asyncio.run(repository(driver).get_novel("n1"))
        assert novel.story_bible == ""
        assert driver.queries[0][1] == {"novel_id": "n1"}
        assert driver.databases == ["novels"]

    def test_missing_novel(self):
        assert asyncio.run(repository(FakeDriver([])).get_novel("n1")) is None

    def test_unavailable_is_retried(self):
        sleeper = SleepRecorder()
        driver = FakeDriver(ServiceUnavailable("connection refused"), [{"max_no": 4}])
        assert asyncio.run(repository(driver, sleeper).get_max_episode_no("n1")) == 4
        assert len(driver.queries) == 2
        assert sleeper.delays == [0.7]

    def test_hanging_query_times_out_and_retries(self):
        sleeper = SleepRecorder()
        driver = FakeDriver(HANG, [{"max_no": 2}])
        repo = repository(driver, sleeper, timeout=0.05)
        assert asyncio.run(repo.get_max_episode_no("n1")) == 2
        assert len(driver.queries) == 2
        assert sleeper.delays == [0.7]

    def test_hanging_query_gives_up(self):
        driver = FakeDriver(HANG, HANG, HANG)
        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(repository(driver, timeout=0.05).get_max_episode_no("n1"))
        assert exc_info.value.code == "TIMEOUT"
        assert len(driver.queries) == 3

    def test_client_error_not_retried(self):
        driver = FakeDriver(ClientError("bad cypher"))
        with pytest.raises(DatabaseError) as exc_info:
            asyncio.run(repository(driver).list_active_novel_ids())
        assert exc_info.value.code == "QUERY_FAILED"
        assert not exc_info.value.retryable
        assert len(driver.queries) == 1

    def test_profiles_decoded(self):
        driver = FakeDriver([
            {"name": "Jun", "profile_json": '{"job": "apprentice"}'},
            {"name": "Mina", "profile_json": None},
        ])
        characters = asyncio.run(repository(driver).list_characters("n1"))
        assert [(c.name, c.profile) for c in characters] == [("Jun", {"job": "apprentice"}), ("Mina", {})]

    def test_insert_episode_conflict(self):
        existing = {"id": "e1", "episode_no": 1, "story_time": "2025-01-01T09:00:00+09:00", "content": "old"}
        driver = FakeDriver([existing])
        with pytest.raises(DatabaseError) as exc_info:
            asyncio.run(repository(driver).insert_episode("n1", 1, "2025-01-01T09:00:00+09:00", "new"))
        assert exc_info.value.code == "INSERT_FAILED"
        assert exc_info.value.details["existing_id"] == "e1"

    def test_insert_episode_idempotent(self):
        row = {"id": "e1", "episode_no": 1, "story_time": "2025-01-01T09:00:00+09:00", "content": "same"}
        episode = asyncio.run(repository(FakeDriver([row])).insert_episode(
            "n1", 1, "2025-01-01T09:00:00+09:00", "same"
        ))
        assert episode.id == "e1"

    def test_plot_seeds_ordered_by_returned_columns(self):
        row = {
            "id": "s1", "title": "The stopped clock", "detail": None, "status": "open",
            "introduced_in_episode_id": None, "resolved_in_episode_id": None,
            "created_at": None, "character_names": ["Mina"], "location_names": [],
        }
        driver = FakeDriver([row])
        seeds = asyncio.run(repository(driver).list_plot_seeds("n1", PlotSeedStatus.OPEN))
        assert [(s.id, s.character_names) for s in seeds] == [("s1", ["Mina"])]

        query, params = driver.queries[0]
        assert params["status"] == "open"
        # An aggregating RETURN can only be ordered by what it projects.
        assert "s.created_at AS created_at" in query
        assert query.endswith("ORDER BY created_at, id")
        assert "ORDER BY s." not in query

    def test_insert_plot_seed_returns_listed_seed(self):
        listed = {
            "id": None, "title": "The stopped clock", "detail": "It stops at 4:12.", "status": "open",
            "introduced_in_episode_id": None, "resolved_in_episode_id": None,
            "created_at": None, "character_names": [], "location_names": [],
        }

        def listing(driver):
            listed["id"] = driver.queries[1][1]["id"]
            return [listed]

        # title lookup, create, link, list
        driver = FakeDriver([], [], [], listing)
        seed = asyncio.run(repository(driver).insert_plot_seed("n1", " The stopped clock ", "It stops at 4:12."))
        assert seed.id == driver.queries[1][1]["id"]
        assert seed.title == "The stopped clock"
        assert driver.queries[3][0].endswith("ORDER BY created_at, id")

    def test_resolve_query_requires_introduction(self):
        driver = FakeDriver([{"id": "s1"}])
        resolved = asyncio.run(repository(driver).resolve_plot_seeds("n1", ["s1", "s2"], "e2"))
        assert resolved == ["s1"]
        assert "introduced_in_episode_id IS NOT NULL" in driver.queries[0][0]

    def test_empty_seed_lists_skip_queries(self):
        driver = FakeDriver()
        repo = repository(driver)
        assert asyncio.run(repo.resolve_plot_seeds("n1", [], "e2")) == []
        assert asyncio.run(repo.mark_plot_seeds_introduced("n1", [], "e2")) == 0
        assert asyncio.run(repo.insert_chunks([])) == 0
        assert driver.queries == []

    def test_similarity_search(self):
        driver = FakeDriver([{"id": "c1", "episode_no": 2, "content": "fact", "similarity": 0.8}])
        hits = asyncio.run(repository(driver).match_episode_chunks(
            "n1", [0.1, 0.2], 3, 5, "gemini/text-embedding-004", ChunkKind.FACT
        ))
        assert hits[0].source is ChunkKind.FACT
        assert hits[0].chunk_id == "c1"
        query, params = driver.queries[0]
        assert "k.episode_no <= $max_episode_no" in query
        assert params["max_episode_no"] == 3
        assert params["kind"] == "fact"

    def test_similarity_search_rejects_bad_bound(self):
        driver = FakeDriver()
        with pytest.raises(ValidationError):
            asyncio.run(repository(driver).match_episode_summaries("n1", [0.1], -1))
        assert driver.queries == []

    def test_delete_novel_data(self):
        driver = FakeDriver([{"n": 2}], [{"n": 5}], [{"n": 1}], [{"n": 3}], [{"n": 2}], [{"n": 0}])
        stats = asyncio.run(repository(driver).delete_novel_data("n1"))
        assert list(stats) == ["seed_links", "chunks", "plot_seeds", "episodes", "characters", "locations"]
        assert stats["chunks"] == 5
        assert not any("MATCH (n:Novel" in q for q, _ in driver.queries)


class TestServicesWiring:
    """Test that configured database limits reach the repository."""

    def test_db_timeout_from_settings(self):
        services = Services.create(Settings(_env_file=None, db_timeout_seconds=12.5, db_max_attempts=4))
        try:
            assert services.repository.timeout == 12.5
            assert services.repository.retry_policy.max_attempts == 4
        finally:
            asyncio.run(services.aclose())
