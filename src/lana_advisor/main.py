"""CLI entrypoint for lana-advisor."""

from pathlib import Path

import rich_click as click

from lana_advisor import __version__
from lana_advisor.controllers import (
    CreateTaskCommand,
    EngineCliController,
    EngineRunCommand,
    InspectTaskCommand,
    ListTasksCommand,
    UsageCommand,
)
from lana_advisor.tasks.fields import KNOWN_FIELD_NAMES
from lana_advisor.tasks.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
ENGINE_CONTROLLER = EngineCliController()


@click.group()
@click.version_option(version=__version__, prog_name="lana-advisor")
def lana_advisor() -> None:
    """Lana advisor deferred task engine CLI."""


@lana_advisor.group()
def engine() -> None:
    """Heartbeat engine commands."""


@engine.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Refresh system parameters, run a single heartbeat tick and exit.",
)
def engine_run(db_path: Path | None, once: bool) -> None:
    """Run the heartbeat engine.

    Without `--once` the engine runs in the foreground until SIGINT/SIGTERM.
    Configuration comes from `LANA_ADVISOR_*` and `GEMINI_API_KEY` environment variables.
    """

    try:
        lines = ENGINE_CONTROLLER.run_engine(EngineRunCommand(db_path=db_path, once=once))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@lana_advisor.group()
def tasks() -> None:
    """Deferred task queue commands."""


@tasks.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--requester", "requester_id", required=True, help="Requester public key.")
@click.option("--question", required=True, help="Question to answer once data is available.")
@click.option(
    "--missing",
    "missing_fields",
    multiple=True,
    required=True,
    type=click.Choice(sorted(KNOWN_FIELD_NAMES)),
    help="Missing data category. Can be repeated.",
)
@click.option("--language", default="sl", show_default=True, help="Answer language code.")
@click.option("--partial-answer", default=None, help="Answer already given to the requester.")
def tasks_create(  # noqa: PLR0913
    db_path: Path | None,
    requester_id: str,
    question: str,
    missing_fields: tuple[str, ...],
    language: str,
    partial_answer: str | None,
) -> None:
    """Create a pending task, superseding the requester's earlier pending task."""

    try:
        lines = ENGINE_CONTROLLER.create_task(
            CreateTaskCommand(
                db_path=db_path,
                requester_id=requester_id,
                question=question,
                missing_fields=missing_fields,
                language=language,
                partial_answer=partial_answer,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option("--requester", "requester_id", default=None, help="Optional requester filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum rows to show.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    requester_id: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _emit_lines(
        ENGINE_CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status,
                requester_id=requester_id,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its event trail."""

    _emit_lines(
        ENGINE_CONTROLLER.inspect_task(
            InspectTaskCommand(
                db_path=db_path,
                task_id=task_id,
            ),
        ),
    )


@lana_advisor.command("usage")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--requester", "requester_id", default=None, help="Optional requester filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum rows to show.",
)
def usage(db_path: Path | None, requester_id: str | None, limit: int) -> None:
    """Show reasoning token usage and cost."""

    _emit_lines(
        ENGINE_CONTROLLER.usage(
            UsageCommand(
                db_path=db_path,
                requester_id=requester_id,
                limit=limit,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    lana_advisor()
