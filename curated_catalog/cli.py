from __future__ import annotations

import sys
import logging

import click
from rich.console import Console
from rich.table import Table

from .catalog.service import build_service
from .config import load_config
from .database.models import LocalFields, RemoteFields, Source, SourceKind
from .errors import CatalogError
from .utils.logging_config import setup_logging

console = Console()
logger = logging.getLogger(__name__)

STORED_KINDS = [
    SourceKind.YOUTUBE_CHANNEL.value,
    SourceKind.YOUTUBE_PLAYLIST.value,
    SourceKind.LOCAL.value,
]


def _format_duration(seconds: int) -> str:
    if not seconds:
        return "-"
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _print_videos(title: str, videos: list, show_depth: bool = False):
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Duration", justify="right")
    if show_depth:
        table.add_column("Depth", justify="right")
        table.add_column("Path")
    else:
        table.add_column("Published")

    for i, v in enumerate(videos, 1):
        if show_depth:
            depth = f"{v.depth}{'*' if v.flattened else ''}"
            table.add_row(
                str(i), v.title, _format_duration(v.duration_seconds), depth,
                v.relative_path or "",
            )
        else:
            table.add_row(
                str(i), v.title, _format_duration(v.duration_seconds),
                (v.published_at or "")[:10],
            )
    console.print(table)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, verbose):
    """Curated Catalog - one paginated catalog over YouTube and local videos."""
    ctx.ensure_object(dict)
    config = load_config()
    if verbose:
        config["log_level"] = "DEBUG"
    setup_logging(config.get("log_file"), config["log_level"])
    ctx.obj["config"] = config


@cli.command()
@click.pass_context
def sources(ctx):
    """List configured sources."""
    service = build_service(ctx.obj["config"])
    try:
        source_list = service.list_sources()
        stale = {s.id for s in source_list if service.is_stale(s)}
    finally:
        service.close()

    if not source_list:
        console.print("[yellow]No sources configured yet.[/yellow]")
        console.print("Add one with: [bold]catalog add-source ID --type local --path ...[/bold]")
        return

    table = Table(title="Sources")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Location")
    table.add_column("Videos", justify="right")
    table.add_column("Refreshed")

    for s in source_list:
        if s.kind == SourceKind.LOCAL:
            location = f"{s.local.path} (depth {s.local.max_depth})"
        else:
            location = s.remote.url
        refreshed = (s.updated_at or "never")[:19]
        if s.id in stale:
            refreshed += " [yellow](stale)[/yellow]"
        table.add_row(
            s.id,
            s.kind.value,
            s.title,
            location,
            "-" if s.total_videos is None else str(s.total_videos),
            refreshed,
        )

    console.print(table)


@cli.command("add-source")
@click.argument("source_id")
@click.option(
    "--type", "kind", required=True, type=click.Choice(STORED_KINDS), help="Source kind"
)
@click.option("--title", required=True, help="Display title")
@click.option("--url", default=None, help="Channel or playlist URL (YouTube sources)")
@click.option("--path", "folder", default=None, help="Library folder (local sources)")
@click.option("--max-depth", default=None, type=int, help="Navigation depth (local sources)")
@click.option("--position", default=0, type=int, help="Sort position")
@click.pass_context
def add_source(ctx, source_id, kind, title, url, folder, max_depth, position):
    """Add or update a source.

    \b
    Examples:
        catalog add-source sci --type youtube_channel --title Science \\
            --url https://www.youtube.com/@veritasium
        catalog add-source cartoons --type local --title Cartoons \\
            --path /media/cartoons --max-depth 2
    """
    config = ctx.obj["config"]
    service = build_service(config)

    depth = max_depth if max_depth is not None else service.default_max_depth
    try:
        kind = SourceKind(kind)
        if kind == SourceKind.LOCAL:
            if not folder:
                raise click.UsageError("--path is required for local sources")
            source = Source(
                id=source_id,
                kind=kind,
                title=title,
                local=LocalFields(path=folder, max_depth=depth),
                position=position,
            )
        else:
            if not url:
                raise click.UsageError("--url is required for YouTube sources")
            source = Source(
                id=source_id, kind=kind, title=title, remote=RemoteFields(url=url),
                position=position,
            )
        saved = service.add_source(source)
    except CatalogError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        service.close()

    console.print(f"[green]Saved source:[/green] {saved.id} ({saved.kind.value})")


@cli.command("remove-source")
@click.argument("source_id")
@click.pass_context
def remove_source(ctx, source_id):
    """Delete a source and its stored videos."""
    service = build_service(ctx.obj["config"])
    try:
        removed = service.remove_source(source_id)
    finally:
        service.close()

    if not removed:
        console.print(f"[red]Error:[/red] Source {source_id} not found")
        sys.exit(1)
    console.print(f"[green]Removed source:[/green] {source_id}")


@cli.command("reset-source")
@click.argument("source_id")
@click.pass_context
def reset_source(ctx, source_id):
    """Drop a source's cached videos so the next load fetches it live."""
    service = build_service(ctx.obj["config"])
    try:
        reset = service.reset_source_cache(source_id)
    except CatalogError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        service.close()

    if not reset:
        console.print(f"[red]Error:[/red] Source {source_id} not found")
        sys.exit(1)
    console.print(f"[green]Reset cache for source:[/green] {source_id}")


@cli.command("load-all")
@click.option("--no-api", is_flag=True, help="Use cached data only")
@click.pass_context
def load_all(ctx, no_api):
    """Aggregate every source into the catalog."""
    service = build_service(ctx.obj["config"])
    api_available = False if no_api else None

    try:
        with console.status("[bold]Loading sources...[/bold]"):
            catalog = service.load_all_sources(api_available)
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to load catalog: {e}")
        logger.exception("Failed to load catalog")
        sys.exit(1)
    finally:
        service.close()

    table = Table(title="Catalog")
    table.add_column("Source")
    table.add_column("Type")
    table.add_column("Videos", justify="right")
    table.add_column("Pages", justify="right")
    table.add_column("Data")

    for entry in catalog.sources:
        if entry.error:
            data = f"[red]{entry.error.category}[/red]"
        elif entry.fetched_new_data:
            data = "[green]fetched[/green]"
        elif entry.using_cached_data:
            data = "cached"
        else:
            data = "scanned"
        table.add_row(
            entry.source.title,
            entry.source.kind.value,
            str(entry.video_count),
            str(entry.pagination.total_pages),
            data,
        )

    console.print(table)
    console.print(f"  Videos written: {catalog.videos_written}")

    for err in catalog.errors:
        console.print(f"  [yellow]{err.source_id}:[/yellow] {err.message}")


@cli.command("load-source")
@click.argument("source_id")
@click.option("--page", "-p", default=1, type=int, help="Page number")
@click.pass_context
def load_source(ctx, source_id, page):
    """Show one page of a source's videos."""
    service = build_service(ctx.obj["config"])

    try:
        with console.status(f"[bold]Loading {source_id}...[/bold]"):
            entry = service.load_source_videos(source_id, page)
    except CatalogError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        service.close()

    p = entry.pagination
    _print_videos(
        f"{entry.source.title} - page {p.current_page}/{p.total_pages} "
        f"({p.total_videos} videos)",
        entry.videos,
        show_depth=entry.source.kind == SourceKind.LOCAL,
    )
    if entry.error:
        console.print(f"[yellow]Served stored page:[/yellow] {entry.error.message}")


@cli.command()
@click.pass_context
def refresh(ctx):
    """Refresh metadata for stale YouTube sources."""
    service = build_service(ctx.obj["config"])

    try:
        with console.status("[bold]Refreshing stale sources...[/bold]"):
            report = service.refresh_stale_sources()
    finally:
        service.close()

    if report.skipped_reason:
        console.print(f"[yellow]Refresh skipped:[/yellow] {report.skipped_reason}")
        return

    console.print(f"[green]Refreshed:[/green] {len(report.refreshed)}")
    console.print(f"  Handles resolved: {len(report.resolved)}")
    console.print(f"  Failed:           {len(report.failed)}")
    for err in report.failed:
        console.print(f"  [yellow]{err.source_id}:[/yellow] {err.message}")


@cli.command()
@click.argument("path")
@click.option("--max-depth", "-d", default=None, type=int, help="Navigation depth")
@click.pass_context
def scan(ctx, path, max_depth):
    """List every video under PATH, flattened below max depth."""
    service = build_service(ctx.obj["config"])
    try:
        videos = service.scan_local_folder(path, max_depth)
    except CatalogError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        service.close()

    _print_videos(f"{path} ({len(videos)} videos)", videos, show_depth=True)


@cli.command()
@click.argument("path")
@click.option("--max-depth", "-d", default=None, type=int, help="Navigation depth")
@click.option("--depth", default=1, type=int, help="Depth of PATH within the library")
@click.option("--all", "count_all", is_flag=True, help="Count every video at any depth")
@click.pass_context
def count(ctx, path, max_depth, depth, count_all):
    """Count videos under PATH the way the catalog lists them."""
    service = build_service(ctx.obj["config"])
    try:
        if count_all:
            total = service.count_all_videos_in_folder(path)
        else:
            total = service.count_videos_in_folder(path, max_depth, depth)
    except CatalogError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        service.close()

    console.print(f"{total} videos")


@cli.command()
@click.argument("path")
@click.option("--max-depth", "-d", default=None, type=int, help="Navigation depth")
@click.option("--depth", default=1, type=int, help="Depth of PATH within the library")
@click.pass_context
def browse(ctx, path, max_depth, depth):
    """Show one navigation level: sub-folders and the videos at PATH."""
    service = build_service(ctx.obj["config"])
    try:
        contents = service.folder_contents(path, max_depth, depth)
    except CatalogError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        service.close()

    if contents.folders:
        table = Table(title="Folders")
        table.add_column("Name")
        table.add_column("Depth", justify="right")
        for folder in contents.folders:
            table.add_row(folder.name, str(folder.depth))
        console.print(table)

    _print_videos(f"Videos at depth {contents.depth}", contents.videos, show_depth=True)


if __name__ == "__main__":
    cli()
