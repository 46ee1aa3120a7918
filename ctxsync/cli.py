"""
Command-line interface for ctxsync.

Provides commands for initializing, syncing, querying, watching and
managing a project's code index.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TimeElapsedColumn
from rich.syntax import Syntax
from rich.table import Table

from .config import Config, STATE_DIR_NAME
from .errors import CtxsyncError, SyncStateUnavailable
from .logging_config import set_log_level, setup_logging
from .models import IndexFilter, SyncReport
from .progress import ProgressReporter
from . import __version__

logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()

DEFAULT_CONFIG_TOML = f"""# ctxsync configuration

[indexer]
exclude = [
    "node_modules",
    "*.min.js",
    "dist",
    "build",
    ".venv",
    "venv",
    "__pycache__",
    "*.pyc",
    ".git",
    "{STATE_DIR_NAME}",
    "target",
]
max_file_size = 1048576  # 1MB
respect_gitignore = true

[chunking]
max_tokens = 500
min_tokens = 40

[embeddings]
backend = "sentence-transformers"   # or "http" for an OpenAI-compatible endpoint
model = "all-MiniLM-L6-v2"
batch_size = 32
max_retries = 4

[cache]
retention_days = 30
reuse_for_queries = true

[sync]
max_workers = 4

[search]
default_limit = 10
min_score = 0.0
expand = true
expand_limit = 5
expanded_score_decay = 0.5
reference_weight = 0.05

[logging]
level = "INFO"
"""


def _configure_logging(config: Config, debug: bool) -> None:
    log_file = config.get("logging", "file")
    setup_logging(
        level="DEBUG" if debug else config.get("logging", "level", default="INFO"),
        log_file=config.state_dir / log_file if log_file else None,
        json_format=config.get("logging", "json", default=False),
        max_log_size_mb=config.get("logging", "max_size_mb", default=10),
        log_backups=config.get("logging", "backups", default=5),
    )


def _open_index(ctx: click.Context, project_root: Path, **kwargs):
    """Build a CodeIndex, exiting with a message if the backend cannot start."""
    from .service import CodeIndex

    config = Config(project_root)
    _configure_logging(config, ctx.obj.get("debug", False))
    try:
        return CodeIndex(config, **kwargs)
    except Exception as e:
        console.print(f"[red]Error opening index: {e}[/red]")
        if logger.isEnabledFor(logging.DEBUG):
            raise
        sys.exit(1)


def _print_report(report: SyncReport) -> None:
    table = Table(title="Sync Report", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Added", str(report.added))
    table.add_row("Modified", str(report.modified))
    table.add_row("Removed", str(report.removed))
    table.add_row("Unchanged", str(report.unchanged))
    table.add_row("Failed", f"[red]{report.failed}[/red]" if report.failed else "0")
    table.add_row("Chunks upserted", str(report.chunks_upserted))
    table.add_row("Chunks deleted", str(report.chunks_deleted))
    table.add_row("Embeddings computed", f"{report.embeddings_computed} ({report.cache_hits} cache hits)")
    table.add_row("Duration", ProgressReporter.format_duration(report.duration_seconds))
    if report.full_rebuild:
        table.add_row("Full rebuild", "yes")
    if report.cancelled:
        table.add_row("Cancelled", "[yellow]yes[/yellow]")
    console.print(table)

    for failure in report.failures:
        console.print(f"[red]✗ {failure.path}[/red] [dim]({failure.stage})[/dim] {failure.error_type}: {failure.reason}")


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__, prog_name="ctxsync")
@click.pass_context
def main(ctx: click.Context, debug: bool):
    """ctxsync - Incremental semantic code index with symbol-graph retrieval."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    if debug:
        set_log_level("DEBUG")


@main.command()
@click.option("--path", "-p", default=".", help="Project root path")
def init(path: str):
    """Initialize ctxsync in the current project."""
    project_root = Path(path).resolve()

    state_dir = project_root / STATE_DIR_NAME
    if state_dir.exists():
        console.print(f"[yellow]{STATE_DIR_NAME} directory already exists at {state_dir}[/yellow]")
        return

    state_dir.mkdir(parents=True, exist_ok=True)
    config_path = state_dir / "config.toml"
    config_path.write_text(DEFAULT_CONFIG_TOML)

    console.print(f"[green]✓[/green] Initialized ctxsync at {project_root}")
    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print("\nNext steps:")
    console.print("  1. Run [cyan]ctxsync sync[/cyan] to index your codebase")
    console.print("  2. Run [cyan]ctxsync query <text>[/cyan] to search your code")


@main.command()
@click.argument("path", default=".")
@click.option("--force", "-f", is_flag=True, help="Ignore sync state and rebuild the whole index")
@click.pass_context
def sync(ctx: click.Context, path: str, force: bool):
    """Bring the index up to date with the files under PATH."""
    project_root = Path(path).resolve()
    if not project_root.is_dir():
        console.print(f"[red]Error: Not a directory: {project_root}[/red]")
        sys.exit(1)

    console.print(f"[cyan]Syncing {project_root}...[/cyan]")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        TextColumn("[cyan]ETA: {task.fields[eta]}"),
        console=console,
    ) as progress:
        task = progress.add_task("Scanning files...", total=0, eta="calculating...")

        def progress_callback(event):
            """Handle progress events with ETA."""
            progress.update(
                task,
                total=event.total,
                completed=event.current,
                description=f"Syncing: {Path(event.filename).name}",
                eta=ProgressReporter.format_eta(event.eta_seconds),
            )

        code_index = _open_index(ctx, project_root, progress_callback=progress_callback)
        try:
            report = code_index.sync(force=force)
        except SyncStateUnavailable as e:
            console.print(f"\n[red]{e}[/red]")
            console.print("Run [cyan]ctxsync sync --force[/cyan] to rebuild.")
            sys.exit(2)
        except CtxsyncError as e:
            console.print(f"\n[red]Error during sync: {e}[/red]")
            if logger.isEnabledFor(logging.DEBUG):
                raise
            sys.exit(1)
        finally:
            code_index.close()

    console.print("\n[green]✓ Sync complete![/green]\n" if not report.failed
                  else "\n[yellow]Sync complete with failures[/yellow]\n")
    _print_report(report)
    if report.failed:
        sys.exit(3)


@main.command()
@click.argument("text")
@click.option("--limit", "-k", "-n", default=None, type=int, help="Maximum number of direct results")
@click.option("--lang", "-l", multiple=True, help="Filter by language (python, rust, ...)")
@click.option("--path", "-d", "prefixes", multiple=True, help="Filter by path prefix (e.g., src/)")
@click.option("--kind", "-t", multiple=True, help="Filter by chunk kind (function, class, method, ...)")
@click.option("--no-expand", is_flag=True, help="Skip symbol-graph expansion")
@click.pass_context
def query(ctx: click.Context, text: str, limit: Optional[int], lang: tuple, prefixes: tuple, kind: tuple, no_expand: bool):
    """Query the index with natural language or a code snippet.

    Examples:
      ctxsync query "authentication logic"
      ctxsync query "retry with backoff" --lang python --path src/
      ctxsync query "def parse_config" --kind function --no-expand
    """
    project_root = Path.cwd()
    if not (project_root / STATE_DIR_NAME).exists():
        console.print("[red]Error: No index found. Run 'ctxsync sync' first.[/red]")
        sys.exit(1)

    filters = IndexFilter(
        languages=list(lang) or None,
        path_prefixes=list(prefixes) or None,
        kinds=list(kind) or None,
    )

    code_index = _open_index(ctx, project_root)
    try:
        result = code_index.query(text, k=limit, filters=filters, expand=False if no_expand else None)
    except (CtxsyncError, ValueError) as e:
        console.print(f"[red]Error during query: {e}[/red]")
        if logger.isEnabledFor(logging.DEBUG):
            raise
        sys.exit(1)
    finally:
        code_index.close()

    console.print(f'[cyan]Query:[/cyan] "{text}"\n')
    if result.degraded:
        console.print(f"[yellow]Graph expansion unavailable: {result.degraded_reason}[/yellow]\n")
    if not result.results:
        console.print("[yellow]No results found.[/yellow]")
        return

    for i, item in enumerate(result.results, 1):
        entry = item.entry
        header = (
            f"[bold]{i}. {entry.path}:{entry.start_line}-{entry.end_line}[/bold] "
            f"[dim](score: {item.score:.3f})[/dim]"
        )
        if entry.name:
            header += f" [cyan]{entry.kind}: {entry.symbol_path or entry.name}[/cyan]"
        if item.origin == "expanded":
            header += f" [magenta]expanded via {item.via}[/magenta]"
        console.print(header)

        syntax = Syntax(
            entry.text,
            entry.language if entry.language != "unknown" else "text",
            theme="monokai",
            line_numbers=True,
            start_line=entry.start_line,
        )
        console.print(syntax)
        console.print()


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Show index statistics."""
    project_root = Path.cwd()
    if not (project_root / STATE_DIR_NAME).exists():
        console.print("[yellow]No index found. Run 'ctxsync sync' to create one.[/yellow]")
        return

    code_index = _open_index(ctx, project_root)
    try:
        stats = code_index.status()
    except CtxsyncError as e:
        console.print(f"[red]Error getting status: {e}[/red]")
        sys.exit(1)
    finally:
        code_index.close()

    table = Table(title="Index Statistics", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Total files", str(stats.total_files))
    table.add_row("Total chunks", str(stats.total_chunks))
    table.add_row("Index size", f"{stats.total_size_bytes / 1024 / 1024:.2f} MB")
    table.add_row("Cached embeddings", str(stats.cache_entries))
    table.add_row("Symbol graph", f"{stats.graph_nodes} nodes, {stats.graph_edges} edges")
    table.add_row("Dangling references", str(stats.dangling_references))
    if stats.last_sync:
        import datetime
        dt = datetime.datetime.fromtimestamp(stats.last_sync)
        table.add_row("Last sync", dt.strftime("%Y-%m-%d %H:%M:%S"))
    console.print(table)

    if stats.languages:
        console.print("\n[bold]Languages:[/bold]")
        for lang, count in sorted(stats.languages.items(), key=lambda x: -x[1]):
            console.print(f"  {lang}: {count}")


@main.command()
@click.argument("path", default=".")
@click.option("--debounce", default=0.5, show_default=True, help="Seconds of quiet before syncing")
@click.pass_context
def watch(ctx: click.Context, path: str, debounce: float):
    """Watch PATH and sync on every change."""
    from .watcher import FileWatcher

    project_root = Path(path).resolve()
    code_index = _open_index(ctx, project_root)
    try:
        console.print("[cyan]Initial sync...[/cyan]")
        _print_report(code_index.sync())

        console.print(f"[cyan]Watching {project_root} (Ctrl+C to stop)[/cyan]")
        watcher = FileWatcher(code_index, debounce_seconds=debounce)
        watcher.start(
            on_change=lambda rel_path, event_type: console.print(f"[dim]{event_type}: {rel_path}[/dim]"),
            on_sync=lambda report: console.print(
                f"[green]✓[/green] synced: +{report.added} ~{report.modified} "
                f"-{report.removed} ✗{report.failed}"
            ),
        )
    except SyncStateUnavailable as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(2)
    finally:
        code_index.close()


@main.command()
@click.confirmation_option(prompt="Are you sure you want to delete all indexed data?")
@click.pass_context
def clean(ctx: click.Context):
    """Remove all indexed data, cached embeddings and sync state."""
    project_root = Path.cwd()
    if not (project_root / STATE_DIR_NAME).exists():
        console.print("[yellow]No index found.[/yellow]")
        return

    code_index = _open_index(ctx, project_root)
    try:
        code_index.clear()
        console.print("[green]✓ Cleared all indexed data.[/green]")
    except CtxsyncError as e:
        console.print(f"[red]Error cleaning index: {e}[/red]")
        sys.exit(1)
    finally:
        code_index.close()


@main.command()
def version():
    """Show ctxsync version."""
    console.print(f"ctxsync version {__version__}")


if __name__ == "__main__":
    main()
