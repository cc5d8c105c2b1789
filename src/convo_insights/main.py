"""CLI entrypoint for convo-insights."""

import logging
from pathlib import Path

import rich_click as click

from convo_insights import __version__
from convo_insights.orchestrator.controllers import (
    AnalysisCliController,
    BackendStatusCommand,
    DbCommand,
    ImportConversationsCommand,
    QueueApplyCommand,
    QueueEnqueueCommand,
    QueueInspectCommand,
    QueueListCommand,
    QueueProcessCommand,
    QueueReapCommand,
    QueueScanCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AnalysisCliController()
ANALYSIS_TYPES = ("workflow", "learning", "summary", "dedupe")
SCAN_TYPES = ("workflow", "learning", "summary")
STATUSES = ("pending", "claimed", "completed", "failed")


@click.group()
@click.version_option(version=__version__, prog_name="convo-insights")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def convo_insights(log_level: str) -> None:
    """Conversation analysis queue CLI.

    Nothing leaves the machine unless `CONVO_INSIGHTS_ALLOW_EXTERNAL_ANALYSIS=1`.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@convo_insights.group()
def queue() -> None:
    """Analysis queue commands."""


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "analysis_type",
    type=click.Choice(ANALYSIS_TYPES),
    required=True,
    help="Analysis to run. `dedupe` is rejected: use `dedupe run`.",
)
@click.option(
    "--conversation-id",
    "conversation_ids",
    multiple=True,
    required=True,
    help="Conversation id. Can be repeated.",
)
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
def queue_enqueue(
    db_path: Path | None,
    analysis_type: str,
    conversation_ids: tuple[str, ...],
    priority: int,
) -> None:
    """Enqueue conversations for one analysis type."""

    _emit_lines(
        CONTROLLER.enqueue(
            QueueEnqueueCommand(
                db_path=db_path,
                analysis_type=analysis_type,
                conversation_ids=conversation_ids,
                priority=priority,
            ),
        ),
    )


@queue.command("process")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=None,
    help="Items claimed per cycle. Defaults to CONVO_INSIGHTS_BATCH_SIZE.",
)
@click.option(
    "--cycles",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Maximum number of cycles; stops early when nothing is claimed.",
)
def queue_process(db_path: Path | None, batch_size: int | None, cycles: int) -> None:
    """Claim pending items and run them through the selected backend."""

    _emit_lines(
        CONTROLLER.process(
            QueueProcessCommand(db_path=db_path, batch_size=batch_size, cycles=cycles),
        ),
    )


@queue.command("scan")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "analysis_types",
    type=click.Choice(SCAN_TYPES),
    multiple=True,
    help="Analysis types to run. Defaults to all conversation analyses.",
)
@click.option(
    "--days",
    type=click.IntRange(min=1),
    default=None,
    help="Only conversations updated within this many days.",
)
@click.option("--project", "project_path", default=None, help="Only this project path.")
@click.option(
    "--provider",
    "providers",
    multiple=True,
    help="Only these providers. Can be repeated.",
)
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=None,
    help="Items claimed per cycle. Defaults to CONVO_INSIGHTS_BATCH_SIZE.",
)
def queue_scan(  # noqa: PLR0913
    db_path: Path | None,
    analysis_types: tuple[str, ...],
    days: int | None,
    project_path: str | None,
    providers: tuple[str, ...],
    batch_size: int | None,
) -> None:
    """Enqueue every matching conversation and drain the queue."""

    _emit_lines(
        CONTROLLER.scan(
            QueueScanCommand(
                db_path=db_path,
                analysis_types=analysis_types,
                days=days,
                project_path=project_path,
                providers=providers,
                batch_size=batch_size,
            ),
        ),
    )


@queue.command("pending")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_pending(db_path: Path | None) -> None:
    """Show pending count and totals by status."""

    _emit_lines(CONTROLLER.pending(DbCommand(db_path=db_path)))


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", type=click.Choice(STATUSES), default=None, help="Status filter.")
@click.option(
    "--type",
    "analysis_type",
    type=click.Choice(ANALYSIS_TYPES),
    default=None,
    help="Analysis type filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max items to print.",
)
def queue_list(
    db_path: Path | None,
    status: str | None,
    analysis_type: str | None,
    limit: int,
) -> None:
    """List queue items, newest first."""

    _emit_lines(
        CONTROLLER.list_items(
            QueueListCommand(
                db_path=db_path,
                status=status,
                analysis_type=analysis_type,
                limit=limit,
            ),
        ),
    )


@queue.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("queue_id")
def queue_inspect(db_path: Path | None, queue_id: str) -> None:
    """Show one queue item with its event history."""

    _emit_lines(CONTROLLER.inspect(QueueInspectCommand(db_path=db_path, queue_id=queue_id)))


@queue.command("reap")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--watch/--no-watch",
    default=False,
    show_default=True,
    help="Keep reaping every interval until interrupted.",
)
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between passes. Defaults to CONVO_INSIGHTS_REAPER_INTERVAL_SECONDS.",
)
@click.option(
    "--max-passes",
    type=click.IntRange(min=1),
    default=None,
    help="Stop watching after this many passes.",
)
def queue_reap(
    db_path: Path | None,
    watch: bool,
    interval_seconds: float | None,
    max_passes: int | None,
) -> None:
    """Fail stale claims and delete terminal items past retention."""

    _emit_lines(
        CONTROLLER.reap(
            QueueReapCommand(
                db_path=db_path,
                watch=watch,
                interval_seconds=interval_seconds,
                max_passes=max_passes,
            ),
        ),
    )


@queue.command("apply")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=100,
    show_default=True,
    help="Max completed items to apply.",
)
def queue_apply(db_path: Path | None, limit: int) -> None:
    """Write completed results to conversations, learnings and workflow signatures."""

    _emit_lines(CONTROLLER.apply(QueueApplyCommand(db_path=db_path, limit=limit)))


@convo_insights.group()
def dedupe() -> None:
    """Learning deduplication commands."""


@dedupe.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def dedupe_run(db_path: Path | None) -> None:
    """Ask the backend which learnings should be merged."""

    _emit_lines(CONTROLLER.dedupe(DbCommand(db_path=db_path)))


@convo_insights.group()
def backends() -> None:
    """Backend discovery commands."""


@backends.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--validate-key/--no-validate-key",
    default=False,
    show_default=True,
    help="Check the Gemini API key against the models endpoint.",
)
def backends_status(db_path: Path | None, validate_key: bool) -> None:
    """Show consent, detected CLI tool and API configuration."""

    _emit_lines(
        CONTROLLER.backend_status(
            BackendStatusCommand(db_path=db_path, validate_key=validate_key),
        ),
    )


@convo_insights.group()
def conversations() -> None:
    """Local conversation store commands."""


@conversations.command("import")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def conversations_import(db_path: Path | None, paths: tuple[Path, ...]) -> None:
    """Load conversations from JSON files (one object or an array per file)."""

    _emit_lines(
        CONTROLLER.import_conversations(
            ImportConversationsCommand(db_path=db_path, paths=paths),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    convo_insights()
