"""Typer CLI entrypoint for catalog-mirror."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .api import CatalogApi, build_api
from .config import ConfigRepository, Settings
from .engine.mapping import SetStatus
from .engine.packs import PackView
from .engine.search import SearchPage
from .errors import CatalogMirrorError
from .logging_conf import available_job_logs, configure_logging, log_path, tail_log
from .scheduler import APSchedulerAdapter, CatalogJobs

T = TypeVar("T")

app = typer.Typer(help="catalog-mirror command line", no_args_is_help=True, rich_markup_mode=None)
import_app = typer.Typer(name="import", help="Import sets into the catalog", no_args_is_help=True)
pack_app = typer.Typer(name="pack", help="Manage packs", no_args_is_help=True)
log_app = typer.Typer(name="log", help="Inspect log files", no_args_is_help=True)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    settings: Settings
    api: CatalogApi
    scheduler: APSchedulerAdapter


def build_state(verbose: bool) -> AppState:
    repository = ConfigRepository()
    settings = repository.load_settings()
    configure_logging(verbose=verbose)
    api = build_api(settings, repository.locator)
    return AppState(
        repository=repository,
        settings=settings,
        api=api,
        scheduler=APSchedulerAdapter(),
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _fail(message: str) -> None:
    console.print(message, style="red")
    raise typer.Exit(code=1)


def _run(state: AppState, action: Callable[[CatalogApi], Awaitable[T]]) -> T:
    async def _main() -> T:
        try:
            return await action(state.api)
        finally:
            await state.api.aclose()

    try:
        return asyncio.run(_main())
    except CatalogMirrorError as exc:
        _fail(f"{type(exc).__name__}: {exc}")


def _parse_ids(raw: Iterable[str]) -> list[int]:
    ids: list[int] = []
    for chunk in raw:
        for part in str(chunk).split(","):
            part = part.strip()
            if not part:
                continue
            if not part.isdigit():
                raise typer.BadParameter(f"Not a set id: {part}")
            ids.append(int(part))
    return ids


def _format_size(size: int | None) -> str:
    if not size:
        return "-"
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024:
            break
    return f"{value:.1f} {unit}"


def _status_label(code: int) -> str:
    try:
        return SetStatus(code).name.lower()
    except ValueError:
        return str(code)


def _format_time(epoch: int | None) -> str:
    if epoch is None:
        return "-"
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d")


def _render_summary(title: str, summary: dict[str, int]) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    for key, value in summary.items():
        table.add_row(key, str(value))
    return table


def _render_search(page: SearchPage) -> Table:
    table = Table(
        title=f"{page.total_sets} sets · {page.total_items} items",
        box=box.SIMPLE_HEAD,
    )
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Artist - Title", overflow="fold")
    table.add_column("Creator", style="magenta")
    table.add_column("Status", style="yellow")
    table.add_column("Ranked", style="dim")
    table.add_column("Items", justify="right")
    table.add_column("Size", justify="right", style="green")
    for record in page.sets:
        table.add_row(
            str(record.id),
            f"{record.artist} - {record.title}",
            record.creator,
            _status_label(record.status),
            _format_time(record.time_ranked),
            str(len(record.items)),
            _format_size(record.stripped.size if record.stripped else None),
        )
    return table


def _render_pack(view: PackView) -> Table:
    pack = view.pack
    table = Table(title=f"Pack #{pack.id} · {pack.name}", box=box.SIMPLE_HEAD, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", overflow="fold")
    table.add_row("kind", pack.kind)
    table.add_row("creator", str(pack.creator_id) if pack.creator_id is not None else "-")
    if pack.kind == "query":
        table.add_row("query", pack.query or "")
    else:
        table.add_row("content", pack.content_sha256 or "-")
    table.add_row("sets", str(view.count))
    table.add_row("size (stripped)", _format_size(view.size_stripped))
    table.add_row("size (full)", _format_size(view.size_full))
    table.add_row("downloads", str(pack.download_count))
    preview = ", ".join(str(set_id) for set_id in view.set_ids[:20])
    if len(view.set_ids) > 20:
        preview += ", …"
    table.add_row("ids", preview or "-")
    return table


def _render_jobs_table(jobs: Iterable[dict]) -> Table:
    table = Table(title="Scheduled jobs", box=box.SIMPLE_HEAD)
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Next run", style="green")
    table.add_column("Trigger", style="magenta", overflow="fold")
    for job in jobs:
        table.add_row(
            str(job.get("id", "-")),
            str(job.get("next_run_time", "-")),
            str(job.get("trigger", "-")),
        )
    return table


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    ctx.obj = build_state(verbose)


# ----------------------------------------------------------------------
# import / scan
# ----------------------------------------------------------------------
@import_app.command("sets", help="Import the given set ids.")
def import_sets(
    ctx: typer.Context,
    ids: List[str] = typer.Argument(..., help="Set ids, space or comma separated."),
) -> None:
    state = _get_state(ctx)
    set_ids = _parse_ids(ids)
    succeeded = _run(state, lambda api: api.import_sets(set_ids))
    style = "green" if succeeded == len(set_ids) else "yellow"
    console.print(f"Imported {succeeded}/{len(set_ids)} sets.", style=style)
    if succeeded < len(set_ids):
        raise typer.Exit(code=1)


@import_app.command("dump", help="Import every accepted set from a database dump.")
def import_dump(
    ctx: typer.Context,
    path: Optional[Path] = typer.Option(None, "--path", help="Local dump file; downloads the configured URL when absent."),
) -> None:
    state = _get_state(ctx)
    if path is not None and not path.exists():
        _fail(f"Dump file not found: {path}")
    progress = _run(state, lambda api: api.import_from_dump(path))
    console.print(_render_summary("Dump import", progress.summary()))
    if not progress.complete_success:
        console.print("Some sets failed; the dump will be retried on the next run.", style="yellow")
        raise typer.Exit(code=1)


@import_app.command("recents", help="Import newly ranked sets not yet in the catalog.")
def import_recents(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    progress = _run(state, lambda api: api.import_from_recents())
    console.print(_render_summary("Recents import", progress.summary()))


@app.command("scan", help="Re-fetch stored sets and re-import those that changed.")
def scan(
    ctx: typer.Context,
    since_days: Optional[int] = typer.Option(None, "--since-days", help="Only sets ranked in the last N days."),
) -> None:
    state = _get_state(ctx)
    since = None
    if since_days is not None:
        if since_days <= 0:
            raise typer.BadParameter("--since-days must be positive")
        since = int(datetime.now(timezone.utc).timestamp()) - since_days * 86400
    report = _run(state, lambda api: api.scan_for_changes(since))
    console.print(_render_summary("Change scan", report.summary()))


# ----------------------------------------------------------------------
# search / url
# ----------------------------------------------------------------------
@app.command("search", help="Search the catalog with the filter language.")
def search(
    ctx: typer.Context,
    query: str = typer.Argument("", help='Filter string, e.g. \'stars>5 mode=mania "artist name"\'.'),
    sort: str = typer.Option("auto", "--sort", help="Sort key, e.g. ranked_desc or stars_asc."),
    limit: int = typer.Option(20, "--limit", min=1, max=500),
    offset: int = typer.Option(0, "--offset", min=0),
    ids_only: bool = typer.Option(False, "--ids-only", help="Print matching set ids only."),
    sizes: bool = typer.Option(False, "--sizes", help="Print aggregate archive sizes."),
) -> None:
    state = _get_state(ctx)
    try:
        if ids_only:
            console.print(" ".join(str(set_id) for set_id in state.api.search_ids_only(query)))
            return
        if sizes:
            totals = state.api.search_aggregate_sizes(query)
            console.print(
                _render_summary(
                    "Aggregate sizes",
                    {
                        "sets": totals.count,
                        "stripped": totals.size_stripped,
                        "full": totals.size_full,
                    },
                )
            )
            return
        page = state.api.search(query, sort=sort, limit=limit, offset=offset)
    except ValueError as exc:
        _fail(str(exc))
    if not page.sets:
        console.print("No matches.", style="dim")
        return
    console.print(_render_search(page))


@app.command("url", help="Print a presigned download URL for a set.")
def url(
    ctx: typer.Context,
    set_id: int = typer.Argument(..., help="Set id."),
    alt: bool = typer.Option(False, "--alt", help="Prefer the variant that keeps embedded media."),
) -> None:
    state = _get_state(ctx)
    link = state.api.get_presigned_set_url(set_id, want_alt_media=alt)
    if link is None:
        _fail(f"Set {set_id} has no stored archive.")
    console.print(link, soft_wrap=True)


@app.command("status", help="Show catalog counts and the dump watermark.")
def status(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    summary = dict(state.api.repository.counts())
    last = state.api.repository.last_dump_import()
    table = _render_summary("Catalog", summary)
    table.add_row("last dump import", _format_time(last))
    console.print(table)


# ----------------------------------------------------------------------
# packs
# ----------------------------------------------------------------------
@pack_app.command("create", help="Create a static pack from ids or a query pack from a filter.")
def pack_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Pack name."),
    creator: Optional[int] = typer.Option(None, "--creator", help="Creator user id."),
    ids: Optional[str] = typer.Option(None, "--ids", help="Comma separated set ids."),
    query: Optional[str] = typer.Option(None, "--query", help="Filter string for a live query pack."),
) -> None:
    state = _get_state(ctx)
    if (ids is None) == (query is None):
        _fail("Pass exactly one of --ids or --query.")
    try:
        if ids is not None:
            pack = state.api.create_pack(name, "static", creator, ids=_parse_ids([ids]))
        else:
            pack = state.api.create_pack(name, "query", creator, query=query)
    except (ValueError, CatalogMirrorError) as exc:
        _fail(str(exc))
    console.print(f"Pack #{pack.id} `{pack.name}` created.", style="green")


@pack_app.command("list", help="List packs, optionally only those of one creator.")
def pack_list(
    ctx: typer.Context,
    creator: Optional[int] = typer.Option(None, "--creator", help="Creator user id."),
) -> None:
    state = _get_state(ctx)
    packs = state.api.list_packs(creator)
    if not packs:
        console.print("No packs yet.", style="dim")
        return
    table = Table(title="Packs", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Kind", style="magenta")
    table.add_column("Creator", style="dim")
    table.add_column("Downloads", justify="right", style="green")
    for pack in packs:
        table.add_row(
            str(pack.id),
            pack.name,
            pack.kind,
            str(pack.creator_id) if pack.creator_id is not None else "-",
            str(pack.download_count),
        )
    console.print(table)


@pack_app.command("show", help="Show a pack with its resolved membership.")
def pack_show(ctx: typer.Context, pack_id: int = typer.Argument(...)) -> None:
    state = _get_state(ctx)
    view = state.api.get_pack(pack_id)
    if view is None:
        _fail(f"Pack {pack_id} not found.")
    console.print(_render_pack(view))


@pack_app.command("add", help="Add set ids (or the current results of a query) to a static pack.")
def pack_add(
    ctx: typer.Context,
    pack_id: int = typer.Argument(...),
    ids: Optional[str] = typer.Argument(None, help="Comma separated set ids."),
    query: Optional[str] = typer.Option(None, "--query", help="Freeze the results of this filter into the pack."),
) -> None:
    state = _get_state(ctx)
    if (ids is None) == (query is None):
        _fail("Pass set ids or --query.")
    try:
        if query is not None:
            pack = state.api.add_query_to_pack(pack_id, query)
        else:
            pack = state.api.add_to_pack(pack_id, _parse_ids([ids]))
    except (KeyError, ValueError, CatalogMirrorError) as exc:
        _fail(str(exc))
    console.print(f"Pack #{pack.id} now points at {pack.content_sha256}.", style="green")


@pack_app.command("remove", help="Remove set ids from a static pack.")
def pack_remove(
    ctx: typer.Context,
    pack_id: int = typer.Argument(...),
    ids: str = typer.Argument(..., help="Comma separated set ids."),
) -> None:
    state = _get_state(ctx)
    try:
        pack = state.api.remove_from_pack(pack_id, _parse_ids([ids]))
    except (KeyError, ValueError, CatalogMirrorError) as exc:
        _fail(str(exc))
    console.print(f"Pack #{pack.id} now points at {pack.content_sha256}.", style="green")


@pack_app.command("delete", help="Delete a pack.")
def pack_delete(
    ctx: typer.Context,
    pack_id: int = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    state = _get_state(ctx)
    if not yes and not typer.confirm(f"Delete pack {pack_id}?", default=False):
        console.print("Cancelled.", style="yellow")
        raise typer.Exit(code=0)
    if not state.api.delete_pack(pack_id):
        _fail(f"Pack {pack_id} not found.")
    console.print(f"Pack {pack_id} deleted.", style="green")


# ----------------------------------------------------------------------
# scheduler
# ----------------------------------------------------------------------
@app.command("serve", help="Run the background jobs until interrupted.")
def serve(ctx: typer.Context) -> None:
    state = _get_state(ctx)

    async def _serve() -> None:
        jobs = CatalogJobs(state.api, state.settings.jobs)
        jobs.register(state.scheduler)
        state.scheduler.start()
        console.print(_render_jobs_table(state.scheduler.list_jobs()))
        try:
            await asyncio.Event().wait()
        finally:
            state.scheduler.shutdown()
            await state.api.aclose()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("Scheduler stopped.", style="yellow")


# ----------------------------------------------------------------------
# logs
# ----------------------------------------------------------------------
@log_app.command("list", help="List job log files.")
def log_list() -> None:
    logs = list(available_job_logs())
    if not logs:
        console.print("No job logs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("show", help="Show the tail of the main log or a job log.")
def log_show(
    job: Optional[str] = typer.Option(None, "--job", help="Job name, e.g. dump-import."),
    tail: int = typer.Option(100, "--tail", min=1, help="Number of lines."),
) -> None:
    lines = tail_log(log_path(job), tail)
    if not lines:
        console.print("No log lines yet.", style="dim")
        return
    console.print(f"{job or 'catalog'} · last {len(lines)} lines", style="cyan")
    console.print("".join(lines))


app.add_typer(import_app, name="import")
app.add_typer(pack_app, name="pack")
app.add_typer(log_app, name="log")


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
