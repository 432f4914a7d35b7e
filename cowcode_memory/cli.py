"""Command line interface for the cowcode memory index."""

from enum import Enum

import typer
from rich.console import Console
from rich.table import Table

from cowcode_memory.chat_log import append_note
from cowcode_memory.config import Config, LoggingConfig, get_config, set_config
from cowcode_memory.exceptions import CowcodeMemoryError
from cowcode_memory.index import MemoryIndex, create_memory_index
from cowcode_memory.logging import configure_logging, get_logger

log = get_logger(__name__)

app = typer.Typer(help="Cowcode memory - semantic search over notes and chat logs", no_args_is_help=True)
console = Console()


class IndexSource(str, Enum):
    memory = "memory"
    filesystem = "filesystem"


@app.callback()
def main(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    cfg = Config.from_yaml(config or None)
    if verbose:
        cfg.logging = LoggingConfig(level="DEBUG", format=cfg.logging.format)
    set_config(cfg)
    configure_logging(cfg.logging)


def _open_index() -> MemoryIndex:
    index = create_memory_index(get_config())
    if index is None:
        console.print("[yellow]Memory is disabled in config (memory.enabled: false).[/yellow]")
        raise typer.Exit(code=1)
    return index


@app.command()
def index(
    source: list[IndexSource] = typer.Option(
        [IndexSource.memory, IndexSource.filesystem],
        "-s",
        "--source",
        help="Source to index; repeat for several (default: all)",
    ),
    root: str = typer.Option("", "--root", help="Filesystem root (default: configured root or workspace)"),
    limit: int | None = typer.Option(None, "--limit", help="Max files (memory) or directory chunks (filesystem)"),
) -> None:
    """Refresh the index by hand; embedding failures are reported."""
    with _open_index() as memory:
        try:
            if IndexSource.memory in source:
                report = memory.sync(
                    max_files=limit,
                    on_file=lambda path: console.print(f"[dim]indexing {path}[/dim]"),
                )
                console.print(
                    f"Notes and chat logs: {len(report.upserted)} updated, "
                    f"{len(report.deleted)} removed, {report.unchanged} unchanged, "
                    f"{len(report.skipped)} skipped"
                )
            if IndexSource.filesystem in source:
                total = memory.index_filesystem(
                    root or None,
                    max_chunks=limit,
                    on_dir=lambda path: console.print(f"[dim]{path}[/dim]"),
                )
                console.print(f"Filesystem: {total} directories indexed")
        except CowcodeMemoryError as e:
            log.error("Indexing failed", error=str(e))
            console.print(f"[red]Indexing failed:[/red] {e}")
            raise typer.Exit(code=1)


@app.command()
def search(
    query: str = typer.Argument(..., help="What to look for"),
    max_results: int | None = typer.Option(None, "-n", "--max-results", help="Maximum results"),
    min_score: float | None = typer.Option(None, "--min-score", help="Minimum score (0-1)"),
    date_from: str = typer.Option("", "--from", help="Earliest date, YYYY-MM-DD"),
    date_to: str = typer.Option("", "--to", help="Latest date, YYYY-MM-DD"),
) -> None:
    """Semantic search over notes and chat logs."""
    with _open_index() as memory:
        try:
            results = memory.search(
                query,
                max_results=max_results,
                min_score=min_score,
                date_from=date_from or None,
                date_to=date_to or None,
            )
        except (CowcodeMemoryError, ValueError) as e:
            console.print(f"[red]Search failed:[/red] {e}")
            raise typer.Exit(code=1)

    if not results:
        console.print("No matches.")
        return
    table = Table(title=f"Memory search: {query}")
    table.add_column("Score", justify="right")
    table.add_column("Location")
    table.add_column("Snippet", overflow="fold")
    for result in results:
        table.add_row(
            f"{result.score:.2f}",
            f"{result.path}:{result.start_line}-{result.end_line}",
            result.snippet,
        )
    console.print(table)


@app.command()
def read(
    path: str = typer.Argument(..., help="Workspace-relative path"),
    from_line: int | None = typer.Option(None, "--from", help="1-based start line"),
    lines: int | None = typer.Option(None, "--lines", help="Number of lines"),
) -> None:
    """Print a note or chat log (or a line range of it)."""
    with _open_index() as memory:
        try:
            out = memory.read_file(path, from_line, lines)
        except CowcodeMemoryError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)
    console.print(out.text, markup=False, highlight=False)


@app.command()
def note(text: str = typer.Argument(..., help="Note text")) -> None:
    """Append a line to today's dated note; the next sync indexes it."""
    workspace = get_config().memory.resolved_workspace_path()
    rel_path = append_note(workspace, text)
    if rel_path is None:
        console.print("[yellow]Nothing to save.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"Saved to {rel_path}")


if __name__ == "__main__":
    app()
