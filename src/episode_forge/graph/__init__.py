"""Neo4j persistence for novels, episodes and retrieval chunks."""

from .connection import check_connection, get_driver, init_schema
from .repository import Neo4jNovelRepository, NovelRepository, merge_profiles

__all__ = [
    "check_connection",
    "get_driver",
    "init_schema",
    "Neo4jNovelRepository",
    "NovelRepository",
    "merge_profiles",
]
