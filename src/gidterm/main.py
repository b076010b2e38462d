"""CLI entrypoint for gidterm."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from gidterm import __version__
from gidterm.controllers import (
    GidtermCliController,
    HistoryCommand,
    ParseCommand,
    RunCommand,
    ValidateCommand,
)
from gidterm.workspace import WorkspaceError

click.rich_click.USE_MARKDOWN = True
_T = TypeVar("_T")
CONTROLLER = GidtermCliController()

_graph_option = click.option(
    "--graph",
    "graph_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Project graph file or project directory. Defaults to `.gid/graph.yml`.",
)
_workspace_option = click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace directory; every `<dir>/.gid/graph.yml` becomes a namespaced project.",
)


@click.group()
@click.version_option(version=__version__, prog_name="gidterm")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def gidterm(log_level: str) -> None:
    """Local task orchestrator: run a dependency graph of shell tasks on pseudo-terminals."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@gidterm.command("run")
@_graph_option
@_workspace_option
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum simultaneously running tasks. Overrides GIDTERM_MAX_CONCURRENCY.",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--no-history", is_flag=True, default=False, help="Do not record run history.")
@click.option("--show-output", is_flag=True, default=False, help="Echo task output lines.")
def run(  # noqa: PLR0913
    graph_path: Path | None,
    workspace: Path | None,
    max_concurrency: int | None,
    db_path: Path | None,
    no_history: bool,
    show_output: bool,
) -> None:
    """Run every task of the graph, respecting dependencies and the concurrency limit."""

    result = _guarded(
        lambda: CONTROLLER.run(
            RunCommand(
                graph_path=graph_path,
                workspace=workspace,
                max_concurrency=max_concurrency,
                db_path=db_path,
                history=not no_history,
                show_output=show_output,
            ),
            echo=click.echo,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Some tasks did not succeed.")


@gidterm.command("validate")
@_graph_option
@_workspace_option
def validate(graph_path: Path | None, workspace: Path | None) -> None:
    """Check a graph for unknown dependencies and cycles without running it."""

    result = _guarded(
        lambda: CONTROLLER.validate(ValidateCommand(graph_path=graph_path, workspace=workspace)),
    )
    _emit_lines(result.lines)


@gidterm.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task", "task_id", default=None, help="Only runs of this task id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Maximum runs to show.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def history(db_path: Path | None, task_id: str | None, limit: int, output_format: str) -> None:
    """Show recorded task runs, most recent first."""

    _emit_lines(
        CONTROLLER.history(
            HistoryCommand(
                db_path=db_path,
                task_id=task_id,
                limit=limit,
                output_format=output_format.lower(),
            ),
        ),
    )


@gidterm.command("parse")
@click.option("--type", "task_type", default=None, help="Task type annotation selecting the parser.")
@_graph_option
@click.argument("log_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def parse(task_type: str | None, graph_path: Path | None, log_path: Path) -> None:
    """Replay a captured log file through a parser and print the resulting state."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.parse(
                ParseCommand(log_path=log_path, task_type=task_type, graph_path=graph_path),
            ),
        ),
    )


@gidterm.command("parsers")
@_graph_option
def parsers(graph_path: Path | None) -> None:
    """List task type to parser mappings."""

    _emit_lines(_guarded(lambda: CONTROLLER.parsers(graph_path)))


def _guarded(action: Callable[[], _T]) -> _T:
    try:
        return action()
    except (WorkspaceError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    gidterm()
