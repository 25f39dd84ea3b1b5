"""Neo4j connection management."""

import logging

from neo4j import AsyncDriver, AsyncGraphDatabase
from neo4j.exceptions import AuthError, Neo4jError, ServiceUnavailable

from ..config import Settings, get_settings
from ..errors import DatabaseError

logger = logging.getLogger(__name__)

CONSTRAINTS = [
    "CREATE CONSTRAINT novel_id IF NOT EXISTS FOR (n:Novel) REQUIRE n.id IS UNIQUE",
    "CREATE CONSTRAINT episode_id IF NOT EXISTS FOR (e:Episode) REQUIRE e.id IS UNIQUE",
    "CREATE CONSTRAINT episode_no IF NOT EXISTS FOR (e:Episode) REQUIRE (e.novel_id, e.episode_no) IS UNIQUE",
    "CREATE CONSTRAINT character_name IF NOT EXISTS FOR (c:Character) REQUIRE (c.novel_id, c.name) IS UNIQUE",
    "CREATE CONSTRAINT location_name IF NOT EXISTS FOR (l:Location) REQUIRE (l.novel_id, l.name) IS UNIQUE",
    "CREATE CONSTRAINT plot_seed_id IF NOT EXISTS FOR (s:PlotSeed) REQUIRE s.id IS UNIQUE",
    "CREATE CONSTRAINT chunk_id IF NOT EXISTS FOR (k:EpisodeChunk) REQUIRE k.id IS UNIQUE",
]

INDEXES = [
    "CREATE INDEX novel_status IF NOT EXISTS FOR (n:Novel) ON (n.status)",
    "CREATE INDEX plot_seed_lookup IF NOT EXISTS FOR (s:PlotSeed) ON (s.novel_id, s.status)",
    # Similarity search scans chunks of one novel and kind
    "CREATE INDEX chunk_lookup IF NOT EXISTS FOR (k:EpisodeChunk) ON (k.novel_id, k.chunk_kind, k.episode_no)",
]


def get_driver(settings: Settings | None = None) -> AsyncDriver:
    """Create an async Neo4j driver. Connects lazily."""
    settings = settings or get_settings()
    return AsyncGraphDatabase.driver(
        settings.neo4j_uri,
        auth=(settings.neo4j_user, settings.neo4j_password),
    )


async def check_connection(driver: AsyncDriver) -> bool:
    """Check if Neo4j is reachable and credentials are valid."""
    try:
        await driver.verify_connectivity()
        return True
    except (ServiceUnavailable, AuthError) as exc:
        logger.debug("Neo4j connectivity check failed: %s", exc)
        return False


async def init_schema(driver: AsyncDriver, database: str = "neo4j") -> int:
    """Create constraints and indexes. Safe to run repeatedly."""
    statements = CONSTRAINTS + INDEXES
    try:
        async with driver.session(database=database) as session:
            for statement in statements:
                result = await session.run(statement)
                await result.consume()
    except Neo4jError as exc:
        raise DatabaseError(
            f"Schema initialization failed: {exc.message}",
            "QUERY_FAILED",
            details={"code": exc.code},
        ) from exc
    logger.info("Schema ready (%d constraints, %d indexes)", len(CONSTRAINTS), len(INDEXES))
    return len(statements)
