"""Narrative state storage.

``NovelRepository`` is the storage contract the pipeline depends on;
``Neo4jNovelRepository`` implements it on Neo4j. All state is partitioned
by ``novel_id``.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Optional

from neo4j import AsyncDriver
from neo4j.exceptions import Neo4jError, ServiceUnavailable, SessionExpired, TransientError

from ..errors import DatabaseError, ValidationError
from ..generate.models import (
    Character,
    ChunkKind,
    Episode,
    EpisodeChunk,
    GroundingHit,
    Location,
    Novel,
    PlotSeed,
    PlotSeedStatus,
)
from ..llm.backoff import RetryPolicy, Sleep, with_backoff

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_MATCH_COUNT = 30
DEFAULT_CHUNK_MATCH_COUNT = 10


def merge_profiles(existing: dict, update: dict) -> dict:
    """Merge ``update`` into ``existing``; nested dicts merge, ``None`` values are ignored."""
    merged = dict(existing)
    for key, value in (update or {}).items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_profiles(merged[key], value)
        else:
            merged[key] = value
    return merged


def check_match_args(max_episode_no: int, match_count: int) -> None:
    if max_episode_no is None or max_episode_no < 0:
        raise ValidationError(
            "max_episode_no must be >= 0",
            "INVALID_ARGUMENT",
            details={"max_episode_no": max_episode_no},
        )
    if match_count <= 0:
        raise ValidationError(
            "match_count must be positive",
            "INVALID_ARGUMENT",
            details={"match_count": match_count},
        )


class NovelRepository(ABC):
    """Storage operations used by the generation pipeline."""

    @abstractmethod
    async def get_novel(self, novel_id: str) -> Optional[Novel]: ...

    @abstractmethod
    async def list_active_novel_ids(self, limit: int = 50) -> list[str]: ...

    @abstractmethod
    async def get_max_episode_no(self, novel_id: str) -> int:
        """Highest committed episode number, 0 when none."""

    @abstractmethod
    async def list_recent_episodes(self, novel_id: str, limit: int) -> list[Episode]:
        """Newest first."""

    @abstractmethod
    async def get_episode(self, novel_id: str, episode_no: int) -> Optional[Episode]: ...

    @abstractmethod
    async def list_characters(self, novel_id: str) -> list[Character]: ...

    @abstractmethod
    async def list_locations(self, novel_id: str) -> list[Location]: ...

    @abstractmethod
    async def list_plot_seeds(
        self, novel_id: str, status: Optional[PlotSeedStatus] = None
    ) -> list[PlotSeed]: ...

    @abstractmethod
    async def upsert_character(self, novel_id: str, name: str, profile: dict) -> Character: ...

    @abstractmethod
    async def upsert_location(self, novel_id: str, name: str, profile: dict) -> Location: ...

    @abstractmethod
    async def insert_plot_seed(
        self,
        novel_id: str,
        title: str,
        detail: str = "",
        character_names: Optional[list[str]] = None,
        location_names: Optional[list[str]] = None,
    ) -> PlotSeed:
        """Open a seed, reusing an open seed with the same title."""

    @abstractmethod
    async def insert_episode(
        self, novel_id: str, episode_no: int, story_time: str, content: str
    ) -> Episode:
        """Insert once; re-issuing the identical write returns the same row."""

    @abstractmethod
    async def mark_plot_seeds_introduced(
        self, novel_id: str, seed_ids: list[str], episode_id: str
    ) -> int:
        """Back-fill ``introduced_in_episode_id`` where it is still unset."""

    @abstractmethod
    async def resolve_plot_seeds(
        self, novel_id: str, seed_ids: list[str], episode_id: str
    ) -> list[str]:
        """Resolve open, already-introduced seeds; returns the ids actually resolved."""

    @abstractmethod
    async def insert_chunks(self, chunks: list[EpisodeChunk]) -> int: ...

    @abstractmethod
    async def match_episode_summaries(
        self,
        novel_id: str,
        query_embedding: list[float],
        max_episode_no: int,
        match_count: int = DEFAULT_SUMMARY_MATCH_COUNT,
        embedding_model: str = "",
    ) -> list[GroundingHit]: ...

    @abstractmethod
    async def match_episode_chunks(
        self,
        novel_id: str,
        query_embedding: list[float],
        max_episode_no: int,
        match_count: int = DEFAULT_CHUNK_MATCH_COUNT,
        embedding_model: str = "",
        kind: ChunkKind = ChunkKind.FACT,
    ) -> list[GroundingHit]: ...

    @abstractmethod
    async def delete_novel_data(self, novel_id: str) -> dict:
        """Remove everything generated for a novel, keeping the Novel itself."""


class Neo4jNovelRepository(NovelRepository):
    """Neo4j-backed repository.

    Every query runs through ``_query``, which maps driver failures to
    ``DatabaseError`` and retries transient ones with backoff.
    """

    def __init__(
        self,
        driver: AsyncDriver,
        database: str = "neo4j",
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = 180.0,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize the repository.

        Args:
            driver: Async Neo4j driver
            database: Database name
            retry_policy: Backoff for transient failures (3 attempts by default)
            timeout: Per-query limit in seconds; None disables it
            sleep: Delay function between retries
        """
        self.driver = driver
        self.database = database
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self.timeout = timeout
        self._sleep = sleep

    async def _query(self, query: str, op: str = "QUERY_FAILED", **params) -> list[dict]:
        async def attempt() -> list[dict]:
            try:
                async with self.driver.session(database=self.database) as session:
                    result = await session.run(query, **params)
                    return await result.data()
            except (ServiceUnavailable, SessionExpired, TransientError) as exc:
                raise DatabaseError(
                    f"Neo4j unavailable: {exc}",
                    op,
                    retryable=True,
                ) from exc
            except Neo4jError as exc:
                raise DatabaseError(
                    exc.message or str(exc),
                    op,
                    details={"code": exc.code},
                ) from exc

        return await with_backoff(
            attempt,
            self.retry_policy,
            label=f"neo4j {op.lower()}",
            timeout=self.timeout,
            sleep=self._sleep,
        )

    # Reads

    async def get_novel(self, novel_id: str) -> Optional[Novel]:
        rows = await self._query(
            """
            MATCH (n:Novel {id: $novel_id})
            RETURN n.id AS id, n.title AS title, n.story_bible AS story_bible,
                   coalesce(n.status, 'active') AS status
            """,
            novel_id=novel_id,
        )
        if not rows:
            return None
        row = rows[0]
        return Novel(
            id=row["id"],
            title=row["title"] or "",
            story_bible=row["story_bible"] or "",
            status=row["status"],
        )

    async def upsert_novel(self, novel: Novel) -> Novel:
        await self._query(
            """
            MERGE (n:Novel {id: $id})
            ON CREATE SET n.created_at = datetime()
            SET n.title = $title, n.story_bible = $story_bible, n.status = $status
            """,
            "INSERT_FAILED",
            id=novel.id,
            title=novel.title,
            story_bible=novel.story_bible,
            status=novel.status,
        )
        return novel

    async def list_active_novel_ids(self, limit: int = 50) -> list[str]:
        rows = await self._query(
            """
            MATCH (n:Novel)
            WHERE coalesce(n.status, 'active') = 'active'
            RETURN n.id AS id
            ORDER BY n.created_at, n.id
            LIMIT $limit
            """,
            limit=limit,
        )
        return [row["id"] for row in rows]

    async def get_max_episode_no(self, novel_id: str) -> int:
        rows = await self._query(
            """
            MATCH (e:Episode {novel_id: $novel_id})
            RETURN coalesce(max(e.episode_no), 0) AS max_no
            """,
            novel_id=novel_id,
        )
        return int(rows[0]["max_no"]) if rows else 0

    async def list_recent_episodes(self, novel_id: str, limit: int) -> list[Episode]:
        rows = await self._query(
            """
            MATCH (e:Episode {novel_id: $novel_id})
            RETURN e.id AS id, e.episode_no AS episode_no,
                   e.story_time AS story_time, e.content AS content
            ORDER BY e.episode_no DESC
            LIMIT $limit
            """,
            novel_id=novel_id,
            limit=limit,
        )
        return [self._episode(novel_id, row) for row in rows]

    async def get_episode(self, novel_id: str, episode_no: int) -> Optional[Episode]:
        rows = await self._query(
            """
            MATCH (e:Episode {novel_id: $novel_id, episode_no: $episode_no})
            RETURN e.id AS id, e.episode_no AS episode_no,
                   e.story_time AS story_time, e.content AS content
            """,
            novel_id=novel_id,
            episode_no=episode_no,
        )
        return self._episode(novel_id, rows[0]) if rows else None

    @staticmethod
    def _episode(novel_id: str, row: dict) -> Episode:
        return Episode(
            id=row["id"],
            novel_id=novel_id,
            episode_no=int(row["episode_no"]),
            story_time=row["story_time"],
            content=row["content"] or "",
        )

    async def list_characters(self, novel_id: str) -> list[Character]:
        rows = await self._query(
            """
            MATCH (c:Character {novel_id: $novel_id})
            RETURN c.name AS name, c.profile_json AS profile_json
            ORDER BY c.name
            """,
            novel_id=novel_id,
        )
        return [Character(novel_id, r["name"], json.loads(r["profile_json"] or "{}")) for r in rows]

    async def list_locations(self, novel_id: str) -> list[Location]:
        rows = await self._query(
            """
            MATCH (l:Location {novel_id: $novel_id})
            RETURN l.name AS name, l.profile_json AS profile_json
            ORDER BY l.name
            """,
            novel_id=novel_id,
        )
        return [Location(novel_id, r["name"], json.loads(r["profile_json"] or "{}")) for r in rows]

    async def list_plot_seeds(
        self, novel_id: str, status: Optional[PlotSeedStatus] = None
    ) -> list[PlotSeed]:
        rows = await self._query(
            """
            MATCH (s:PlotSeed {novel_id: $novel_id})
            WHERE $status IS NULL OR s.status = $status
            OPTIONAL MATCH (s)-[:INVOLVES]->(c:Character)
            OPTIONAL MATCH (s)-[:SET_AT]->(l:Location)
            RETURN s.id AS id, s.title AS title, s.detail AS detail, s.status AS status,
                   s.introduced_in_episode_id AS introduced_in_episode_id,
                   s.resolved_in_episode_id AS resolved_in_episode_id,
                   s.created_at AS created_at,
                   collect(DISTINCT c.name) AS character_names,
                   collect(DISTINCT l.name) AS location_names
            ORDER BY created_at, id
            """,
            novel_id=novel_id,
            status=status.value if status else None,
        )
        return [self._plot_seed(novel_id, row) for row in rows]

    @staticmethod
    def _plot_seed(novel_id: str, row: dict) -> PlotSeed:
        return PlotSeed(
            id=row["id"],
            novel_id=novel_id,
            title=row["title"],
            detail=row["detail"] or "",
            status=PlotSeedStatus(row["status"]),
            introduced_in_episode_id=row["introduced_in_episode_id"],
            resolved_in_episode_id=row["resolved_in_episode_id"],
            character_names=row.get("character_names") or [],
            location_names=row.get("location_names") or [],
        )

    # Narrative state writes

    async def _upsert_profile(self, label: str, novel_id: str, name: str, profile: dict) -> dict:
        name = name.strip()
        if not name:
            raise ValidationError(f"{label} name is required", "REQUIRED")
        rows = await self._query(
            f"MATCH (x:{label} {{novel_id: $novel_id, name: $name}}) RETURN x.profile_json AS profile_json",
            novel_id=novel_id,
            name=name,
        )
        existing = json.loads(rows[0]["profile_json"] or "{}") if rows else {}
        merged = merge_profiles(existing, profile)
        await self._query(
            f"""
            MERGE (x:{label} {{novel_id: $novel_id, name: $name}})
            ON CREATE SET x.id = $id, x.created_at = datetime()
            SET x.profile_json = $profile_json, x.updated_at = datetime()
            """,
            "UPDATE_FAILED" if rows else "INSERT_FAILED",
            novel_id=novel_id,
            name=name,
            id=str(uuid.uuid4()),
            profile_json=json.dumps(merged, ensure_ascii=False),
        )
        return merged

    async def upsert_character(self, novel_id: str, name: str, profile: dict) -> Character:
        merged = await self._upsert_profile("Character", novel_id, name, profile)
        return Character(novel_id, name.strip(), merged)

    async def upsert_location(self, novel_id: str, name: str, profile: dict) -> Location:
        merged = await self._upsert_profile("Location", novel_id, name, profile)
        return Location(novel_id, name.strip(), merged)

    async def insert_plot_seed(
        self,
        novel_id: str,
        title: str,
        detail: str = "",
        character_names: Optional[list[str]] = None,
        location_names: Optional[list[str]] = None,
    ) -> PlotSeed:
        title = title.strip()
        if not title:
            raise ValidationError("plot seed title is required", "REQUIRED")

        rows = await self._query(
            """
            MATCH (s:PlotSeed {novel_id: $novel_id, status: 'open'})
            WHERE toLower(trim(s.title)) = toLower($title)
            RETURN s.id AS id
            LIMIT 1
            """,
            novel_id=novel_id,
            title=title,
        )
        if rows:
            seed_id = rows[0]["id"]
            await self._query(
                """
                MATCH (s:PlotSeed {id: $id})
                SET s.detail = CASE WHEN $detail = '' THEN s.detail ELSE $detail END,
                    s.updated_at = datetime()
                """,
                "UPDATE_FAILED",
                id=seed_id,
                detail=detail.strip(),
            )
        else:
            seed_id = str(uuid.uuid4())
            await self._query(
                """
                CREATE (s:PlotSeed {
                    id: $id, novel_id: $novel_id, title: $title, detail: $detail,
                    status: 'open', created_at: datetime()
                })
                """,
                "INSERT_FAILED",
                id=seed_id,
                novel_id=novel_id,
                title=title,
                detail=detail.strip(),
            )

        await self._query(
            """
            MATCH (s:PlotSeed {id: $id})
            CALL {
                WITH s
                UNWIND $character_names AS cname
                MATCH (c:Character {novel_id: $novel_id, name: cname})
                MERGE (s)-[:INVOLVES]->(c)
            }
            CALL {
                WITH s
                UNWIND $location_names AS lname
                MATCH (l:Location {novel_id: $novel_id, name: lname})
                MERGE (s)-[:SET_AT]->(l)
            }
            """,
            "UPDATE_FAILED",
            id=seed_id,
            novel_id=novel_id,
            character_names=[n.strip() for n in character_names or [] if n.strip()],
            location_names=[n.strip() for n in location_names or [] if n.strip()],
        )

        seeds = await self.list_plot_seeds(novel_id)
        for seed in seeds:
            if seed.id == seed_id:
                return seed
        raise DatabaseError("plot seed vanished after insert", "INSERT_FAILED", details={"id": seed_id})

    # Episode lifecycle

    async def insert_episode(
        self, novel_id: str, episode_no: int, story_time: str, content: str
    ) -> Episode:
        rows = await self._query(
            """
            MERGE (e:Episode {novel_id: $novel_id, episode_no: $episode_no})
            ON CREATE SET e.id = $id, e.story_time = $story_time, e.content = $content,
                          e.created_at = datetime()
            WITH e
            OPTIONAL MATCH (n:Novel {id: $novel_id})
            FOREACH (_ IN CASE WHEN n IS NULL THEN [] ELSE [1] END |
                MERGE (n)-[:HAS_EPISODE]->(e))
            RETURN e.id AS id, e.episode_no AS episode_no,
                   e.story_time AS story_time, e.content AS content
            """,
            "INSERT_FAILED",
            novel_id=novel_id,
            episode_no=episode_no,
            id=str(uuid.uuid4()),
            story_time=story_time,
            content=content,
        )
        if not rows:
            raise DatabaseError("episode insert returned no row", "INSERT_FAILED")
        episode = self._episode(novel_id, rows[0])
        if episode.content != content or episode.story_time != story_time:
            raise DatabaseError(
                f"episode {episode_no} already exists with different content",
                "INSERT_FAILED",
                details={"novel_id": novel_id, "episode_no": episode_no, "existing_id": episode.id},
            )
        return episode

    async def mark_plot_seeds_introduced(
        self, novel_id: str, seed_ids: list[str], episode_id: str
    ) -> int:
        if not seed_ids:
            return 0
        rows = await self._query(
            """
            MATCH (s:PlotSeed {novel_id: $novel_id})
            WHERE s.id IN $seed_ids AND s.introduced_in_episode_id IS NULL
            SET s.introduced_in_episode_id = $episode_id, s.updated_at = datetime()
            RETURN count(s) AS updated
            """,
            "UPDATE_FAILED",
            novel_id=novel_id,
            seed_ids=seed_ids,
            episode_id=episode_id,
        )
        return int(rows[0]["updated"]) if rows else 0

    async def resolve_plot_seeds(
        self, novel_id: str, seed_ids: list[str], episode_id: str
    ) -> list[str]:
        if not seed_ids:
            return []
        rows = await self._query(
            """
            MATCH (s:PlotSeed {novel_id: $novel_id, status: 'open'})
            WHERE s.id IN $seed_ids AND s.introduced_in_episode_id IS NOT NULL
            SET s.status = 'resolved', s.resolved_in_episode_id = $episode_id,
                s.resolved_at = datetime()
            RETURN s.id AS id
            """,
            "UPDATE_FAILED",
            novel_id=novel_id,
            seed_ids=seed_ids,
            episode_id=episode_id,
        )
        return [row["id"] for row in rows]

    async def insert_chunks(self, chunks: list[EpisodeChunk]) -> int:
        if not chunks:
            return 0
        payload = [
            {
                "id": c.id,
                "novel_id": c.novel_id,
                "episode_id": c.episode_id,
                "episode_no": c.episode_no,
                "chunk_kind": c.chunk_kind.value,
                "chunk_index": c.chunk_index,
                "content": c.content,
                "embedding": c.embedding,
                "embedding_dim": c.embedding_dim,
                "embedding_model": c.embedding_model,
            }
            for c in chunks
        ]
        rows = await self._query(
            """
            UNWIND $chunks AS c
            MERGE (k:EpisodeChunk {id: c.id})
            SET k += c, k.created_at = coalesce(k.created_at, datetime())
            WITH k, c
            OPTIONAL MATCH (e:Episode {id: c.episode_id})
            FOREACH (_ IN CASE WHEN e IS NULL THEN [] ELSE [1] END |
                MERGE (k)-[:CHUNK_OF]->(e))
            RETURN count(k) AS written
            """,
            "INSERT_FAILED",
            chunks=payload,
        )
        return int(rows[0]["written"]) if rows else 0

    # Similarity search

    async def _match(
        self,
        novel_id: str,
        query_embedding: list[float],
        max_episode_no: int,
        match_count: int,
        embedding_model: str,
        kind: ChunkKind,
    ) -> list[GroundingHit]:
        check_match_args(max_episode_no, match_count)
        rows = await self._query(
            """
            MATCH (k:EpisodeChunk {novel_id: $novel_id, chunk_kind: $kind})
            WHERE k.episode_no <= $max_episode_no
              AND ($embedding_model = '' OR k.embedding_model = $embedding_model)
              AND k.embedding_dim = size($embedding)
            WITH k, vector.similarity.cosine(k.embedding, $embedding) AS similarity
            RETURN k.id AS id, k.episode_no AS episode_no, k.content AS content, similarity
            ORDER BY similarity DESC
            LIMIT $match_count
            """,
            novel_id=novel_id,
            kind=kind.value,
            max_episode_no=max_episode_no,
            embedding_model=embedding_model,
            embedding=query_embedding,
            match_count=match_count,
        )
        return [
            GroundingHit(
                source=kind,
                episode_no=int(row["episode_no"]),
                similarity=float(row["similarity"]),
                content=row["content"],
                chunk_id=row["id"],
            )
            for row in rows
        ]

    async def match_episode_summaries(
        self,
        novel_id: str,
        query_embedding: list[float],
        max_episode_no: int,
        match_count: int = DEFAULT_SUMMARY_MATCH_COUNT,
        embedding_model: str = "",
    ) -> list[GroundingHit]:
        return await self._match(
            novel_id, query_embedding, max_episode_no, match_count, embedding_model, ChunkKind.EPISODE
        )

    async def match_episode_chunks(
        self,
        novel_id: str,
        query_embedding: list[float],
        max_episode_no: int,
        match_count: int = DEFAULT_CHUNK_MATCH_COUNT,
        embedding_model: str = "",
        kind: ChunkKind = ChunkKind.FACT,
    ) -> list[GroundingHit]:
        return await self._match(
            novel_id, query_embedding, max_episode_no, match_count, embedding_model, kind
        )

    # Maintenance

    async def delete_novel_data(self, novel_id: str) -> dict:
        steps = [
            ("seed_links", """
                MATCH (s:PlotSeed {novel_id: $novel_id})-[r:INVOLVES|SET_AT]->()
                DELETE r RETURN count(r) AS n
            """),
            ("chunks", "MATCH (k:EpisodeChunk {novel_id: $novel_id}) DETACH DELETE k RETURN count(k) AS n"),
            ("plot_seeds", "MATCH (s:PlotSeed {novel_id: $novel_id}) DETACH DELETE s RETURN count(s) AS n"),
            ("episodes", "MATCH (e:Episode {novel_id: $novel_id}) DETACH DELETE e RETURN count(e) AS n"),
            ("characters", "MATCH (c:Character {novel_id: $novel_id}) DETACH DELETE c RETURN count(c) AS n"),
            ("locations", "MATCH (l:Location {novel_id: $novel_id}) DETACH DELETE l RETURN count(l) AS n"),
        ]
        stats = {}
        for name, query in steps:
            rows = await self._query(query, "DELETE_FAILED", novel_id=novel_id)
            stats[name] = int(rows[0]["n"]) if rows else 0
        logger.info("Cleared novel %s: %s", novel_id, stats)
        return stats
