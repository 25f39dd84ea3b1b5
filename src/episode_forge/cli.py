"""Command-line interface for Episode Forge.

Logs go to stderr through rich; ``run`` and ``chain`` print exactly one JSON
object on stdout.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from episode_forge import __version__

console = Console(stderr=True)

logger = logging.getLogger("episode_forge")


def setup_logging(quiet: bool = False, debug: bool = False) -> None:
    level = logging.WARNING if quiet else logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
        force=True,
    )
    # Keep third-party chatter out of info-level output.
    for name in ("httpx", "httpcore", "neo4j"):
        logging.getLogger(name).setLevel(logging.WARNING if not debug else logging.INFO)


def emit(payload: dict) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def fail_with(exc: BaseException) -> NoReturn:
    """Report an error that escaped the pipeline and exit non-zero."""
    from episode_forge.errors import AgentError

    error = AgentError.from_unknown(exc)
    logger.error("Run aborted: %s", error)
    emit({"ok": False, "results": [], "error": error.to_llm_response()})
    sys.exit(1)


def verbosity_options(func):
    func = click.option("--debug", is_flag=True, help="Debug logging")(func)
    func = click.option("--quiet", "-q", is_flag=True, help="Only warnings and errors")(func)
    return func


def generation_options(func):
    func = click.option("--start-story-time-iso", default=None,
                        help="Story time of episode 1 (ISO-8601)")(func)
    func = click.option("--story-time-step-minutes", type=int, default=None,
                        help="In-story minutes between consecutive episodes")(func)
    func = click.option("--disable-writer-tools", is_flag=True,
                        help="Give the writer a static context instead of tools")(func)
    func = click.option("--max-tiktaka", type=int, default=None,
                        help="Extra review rounds per episode (review attempts = min(n+1, 3))")(func)
    return func


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Episode Forge - write, review and publish the next episode of a serialized novel."""
    pass


@main.command()
@click.option("--novel-id", "novel_ids", multiple=True, help="Novel to advance (repeatable)")
@click.option("--all", "all_novels", is_flag=True, help="Advance every active novel")
@click.option("--dry-run", is_flag=True, help="Generate and review but do not persist")
@generation_options
@verbosity_options
def run(
    novel_ids: tuple[str, ...],
    all_novels: bool,
    dry_run: bool,
    max_tiktaka: int | None,
    disable_writer_tools: bool,
    story_time_step_minutes: int | None,
    start_story_time_iso: str | None,
    quiet: bool,
    debug: bool,
) -> None:
    """Generate the next episode for one or more novels.

    Example:
        episode-forge run --novel-id my-novel --dry-run
    """
    from episode_forge.generate.models import GenerationConfig
    from episode_forge.services import Services

    setup_logging(quiet, debug)
    if bool(novel_ids) == all_novels:
        raise click.UsageError("Pass either --novel-id or --all")

    async def _run():
        async with Services.create() as services:
            config = GenerationConfig.from_settings(
                services.settings,
                dry_run=dry_run,
                max_tiktaka=max_tiktaka,
                disable_writer_tools=disable_writer_tools,
                story_time_step_minutes=story_time_step_minutes,
                start_story_time_iso=start_story_time_iso,
            )
            orchestrator = services.orchestrator(config)
            return await orchestrator.run(None if all_novels else list(novel_ids))

    try:
        report = asyncio.run(_run())
    except Exception as exc:
        fail_with(exc)

    emit(report.to_dict())
    if not report.ok:
        sys.exit(1)


@main.command()
@click.option("--novel-id", required=True, help="Novel to build out")
@click.option("--target-episodes", type=int, default=5, show_default=True,
              help="Stop once the novel has this many episodes")
@click.option("--max-restarts", type=int, default=5, show_default=True,
              help="Clear and restart from episode 1 at most this many times")
@click.option("--clean-start", is_flag=True, help="Clear generated data before starting")
@generation_options
@verbosity_options
def chain(
    novel_id: str,
    target_episodes: int,
    max_restarts: int,
    clean_start: bool,
    max_tiktaka: int | None,
    disable_writer_tools: bool,
    story_time_step_minutes: int | None,
    start_story_time_iso: str | None,
    quiet: bool,
    debug: bool,
) -> None:
    """Generate episodes back to back until a target count is reached."""
    from episode_forge.generate.models import GenerationConfig
    from episode_forge.services import Services

    setup_logging(quiet, debug)

    async def _chain():
        async with Services.create() as services:
            config = GenerationConfig.from_settings(
                services.settings,
                max_tiktaka=max_tiktaka,
                disable_writer_tools=disable_writer_tools,
                story_time_step_minutes=story_time_step_minutes,
                start_story_time_iso=start_story_time_iso,
            )
            orchestrator = services.orchestrator(config)
            return await orchestrator.run_chain(novel_id, target_episodes, max_restarts, clean_start)

    try:
        report = asyncio.run(_chain())
    except Exception as exc:
        fail_with(exc)

    emit(report.to_dict())
    if not report.ok:
        sys.exit(1)


@main.command(name="add-novel")
@click.option("--novel-id", required=True)
@click.option("--title", required=True)
@click.option("--story-bible", "story_bible_path", type=click.Path(exists=True, dir_okay=False),
              help="Text file with the story bible")
@click.option("--inactive", is_flag=True, help="Exclude from --all runs")
def add_novel(novel_id: str, title: str, story_bible_path: str | None, inactive: bool) -> None:
    """Create or update a novel."""
    from episode_forge.generate.models import Novel
    from episode_forge.services import Services

    setup_logging()
    story_bible = Path(story_bible_path).read_text(encoding="utf-8") if story_bible_path else ""
    novel = Novel(
        id=novel_id,
        title=title,
        story_bible=story_bible,
        status="inactive" if inactive else "active",
    )

    async def _add():
        async with Services.create() as services:
            await services.repository.upsert_novel(novel)

    asyncio.run(_add())
    console.print(f"[green]OK[/green] Saved novel {novel_id} ({len(story_bible):,} chars of story bible)")


@main.command()
@click.option("--novel-id", required=True)
@click.option("--yes", is_flag=True, help="Confirm deletion")
def reset(novel_id: str, yes: bool) -> None:
    """Delete all generated data for a novel (the novel itself is kept)."""
    from episode_forge.services import Services

    setup_logging()
    if not yes:
        raise click.UsageError("Refusing to delete without --yes")

    async def _reset():
        async with Services.create() as services:
            return await services.repository.delete_novel_data(novel_id)

    stats = asyncio.run(_reset())

    table = Table(title=f"Cleared {novel_id}")
    table.add_column("Kind")
    table.add_column("Deleted", justify="right")
    for kind, count in stats.items():
        table.add_row(kind, f"{count:,}")
    console.print(table)


@main.command()
def status() -> None:
    """Check system status (Neo4j connection, providers)."""
    from episode_forge.config import get_settings
    from episode_forge.graph.connection import check_connection, get_driver

    settings = get_settings()
    console.print("[bold]Episode Forge Status[/bold]\n")

    async def _check() -> bool:
        driver = get_driver(settings)
        try:
            return await check_connection(driver)
        finally:
            await driver.close()

    table = Table(show_header=False)
    table.add_row("Neo4j URI", settings.neo4j_uri)
    table.add_row("LLM provider", settings.llm_provider)
    table.add_row("LLM model", settings.llm_model or "(provider default)")
    table.add_row("Embedding provider", settings.resolved_embedding_provider)
    table.add_row("Embedding model", settings.embedding_model)
    table.add_row("Embedding tag", settings.resolved_embedding_tag)
    table.add_row("HTTP timeout", f"{settings.http_timeout_seconds:.0f}s")
    console.print(table)

    if asyncio.run(_check()):
        console.print("[green]OK[/green] Neo4j connected")
    else:
        console.print("[red]X[/red] Neo4j not reachable")
        sys.exit(1)


@main.command(name="init-schema")
def init_schema_cmd() -> None:
    """Create Neo4j constraints and indexes."""
    from episode_forge.config import get_settings
    from episode_forge.graph.connection import get_driver, init_schema

    setup_logging()
    settings = get_settings()

    async def _init() -> int:
        driver = get_driver(settings)
        try:
            return await init_schema(driver, settings.neo4j_database)
        finally:
            await driver.close()

    count = asyncio.run(_init())
    console.print(f"[green]OK[/green] Applied {count} schema statements")


if __name__ == "__main__":
    main()
