"""Command line interface for wchtools."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import config
from .context import SyncContext
from .exceptions import WchError
from .helper import ArtifactHelper
from .models import SyncResult
from .registry import get_helper, list_artifact_types
from .session import LoginSession

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

LOCAL_TYPES = list_artifact_types(local_only=True)


def _event_printer(quiet: bool) -> Callable[[str, Any], None]:
    """Create an event callback printing per-item progress."""

    def on_event(event: str, payload: Any) -> None:
        if quiet:
            return
        if isinstance(payload, dict) and "error" in payload:
            err_console.print(
                f"[red]{event}[/red] {payload.get('name')}: {payload['error']}"
            )
        elif isinstance(payload, dict):
            label = payload.get("name") or payload.get("id") or payload.get("path")
            console.print(f"[cyan]{event}[/cyan] {label}")
        else:
            console.print(f"[green]{event}[/green] {payload}")

    return on_event


def _build_opts(**kwargs: Any) -> dict[str, Any]:
    """Drop unset CLI options so lower-precedence sources apply."""
    return {key: value for key, value in kwargs.items() if value not in (None, False)}


def _run(
    ctx: Any,
    work: Callable[[SyncContext], Awaitable[Any]],
    working_dir: Optional[str] = None,
) -> Any:
    """Run an async operation inside a logged-in sync context."""
    settings = ctx.obj

    async def runner() -> Any:
        context = SyncContext(
            base_url=settings["base_url"],
            working_dir=Path(working_dir or Path.cwd()),
            tenant_id=settings.get("tenant_id"),
            on_event=_event_printer(settings["quiet"]),
        )
        async with context:
            if settings.get("user") or config.username:
                session = LoginSession(settings.get("user"), settings.get("password"))
                await session.login(context)
                session.start_relogin(context)
            return await work(context)

    try:
        return asyncio.run(runner())
    except WchError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        ctx.exit(1)


def _selected_types(types: tuple[str, ...]) -> list[str]:
    return list(types) if types else LOCAL_TYPES


def _print_results(operation: str, results: dict[str, SyncResult]) -> bool:
    """Print a summary table; returns True if every type succeeded."""
    table = Table(title=f"{operation.capitalize()} summary")
    table.add_column("Type")
    table.add_column("Succeeded", justify="right")
    table.add_column("Failed", justify="right")
    ok = True
    for name, result in results.items():
        table.add_row(name, str(len(result.succeeded)), str(len(result.failed)))
        ok = ok and result.ok
        for failure in result.failed:
            err_console.print(f"[red]{name}[/red] {failure}")
    console.print(table)
    return ok


@click.group()
@click.option("--url", envvar="WCHTOOLS_BASE_URL", help="Authoring service base URL")
@click.option("--user", "-u", envvar="WCHTOOLS_USERNAME", help="Login user name")
@click.option("--password", "-p", envvar="WCHTOOLS_PASSWORD", help="Login password")
@click.option("--tenant", envvar="WCHTOOLS_TENANT_ID", help="Tenant id")
@click.option("--quiet", "-q", is_flag=True, help="Suppress per-item output")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pywchtools")
@click.pass_context
def main(
    ctx: Any,
    url: Optional[str],
    user: Optional[str],
    password: Optional[str],
    tenant: Optional[str],
    quiet: bool,
    verbose: bool,
) -> None:
    """wchtools - Sync artifacts between a local folder and the authoring service."""
    ctx.ensure_object(dict)
    ctx.obj["base_url"] = url
    ctx.obj["user"] = user
    ctx.obj["password"] = password
    ctx.obj["tenant_id"] = tenant
    ctx.obj["quiet"] = quiet

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pywchtools").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


type_option = click.option(
    "--type",
    "-t",
    "types",
    multiple=True,
    type=click.Choice(LOCAL_TYPES),
    help="Artifact type (repeatable, default: all)",
)
dir_option = click.option(
    "--dir",
    "-d",
    "working_dir",
    type=click.Path(file_okay=False),
    help="Local working directory (default: current directory)",
)
status_options = [
    click.option("--ready", "filter_ready", is_flag=True, help="Only ready items"),
    click.option("--draft", "filter_draft", is_flag=True, help="Only draft items"),
]


def _apply(options: list) -> Callable:
    def decorator(f: Callable) -> Callable:
        for option in reversed(options):
            f = option(f)
        return f

    return decorator


@main.command()
@type_option
@dir_option
@_apply(status_options)
@click.option("--modified", "-m", is_flag=True, help="Only new or changed items")
@click.option("--force-override", "-f", is_flag=True, help="Override remote conflicts")
@click.option("--create-only", is_flag=True, help="Never update existing items")
@click.option("--path", "filter_path", help="Only items below this path")
@click.option("--site", "site_id", help="Site context name for pages")
@click.option("--tag", "set_tag", help="Tag to add to pushed items")
@click.option("--concurrency", "-c", type=int, help="Concurrent requests")
@click.pass_context
def push(
    ctx: Any,
    types: tuple[str, ...],
    working_dir: Optional[str],
    filter_ready: bool,
    filter_draft: bool,
    modified: bool,
    force_override: bool,
    create_only: bool,
    filter_path: Optional[str],
    site_id: Optional[str],
    set_tag: Optional[str],
    concurrency: Optional[int],
) -> None:
    """Push local artifacts to the authoring service."""
    opts = _build_opts(
        filter_ready=filter_ready,
        filter_draft=filter_draft,
        force_override=force_override,
        create_only=create_only,
        filter_path=filter_path,
        site_id=site_id,
        set_tag=set_tag,
        concurrent_limit=concurrency,
    )

    async def work(context: SyncContext) -> dict[str, SyncResult]:
        results = {}
        for name in _selected_types(types):
            helper = get_helper(name)
            if modified:
                results[name] = await helper.push_modified_items(context, opts)
            else:
                results[name] = await helper.push_all_items(context, opts)
        return results

    results = _run(ctx, work, working_dir)
    if not _print_results("push", results):
        ctx.exit(1)


@main.command()
@type_option
@dir_option
@_apply(status_options)
@click.option("--modified", "-m", is_flag=True, help="Only items changed remotely")
@click.option("--deletions", is_flag=True, help="Report local items deleted remotely")
@click.option("--path", "filter_path", help="Only items below this path")
@click.option("--site", "site_id", help="Site context name for pages")
@click.option("--concurrency", "-c", type=int, help="Concurrent requests")
@click.pass_context
def pull(
    ctx: Any,
    types: tuple[str, ...],
    working_dir: Optional[str],
    filter_ready: bool,
    filter_draft: bool,
    modified: bool,
    deletions: bool,
    filter_path: Optional[str],
    site_id: Optional[str],
    concurrency: Optional[int],
) -> None:
    """Pull artifacts from the authoring service into the local folder."""
    opts = _build_opts(
        filter_ready=filter_ready,
        filter_draft=filter_draft,
        deletions=deletions,
        filter_path=filter_path,
        site_id=site_id,
        concurrent_limit=concurrency,
    )

    async def work(context: SyncContext) -> dict[str, SyncResult]:
        results = {}
        for name in _selected_types(types):
            helper = get_helper(name)
            if modified:
                results[name] = await helper.pull_modified_items(context, opts)
            else:
                results[name] = await helper.pull_all_items(context, opts)
        return results

    results = _run(ctx, work, working_dir)
    if not _print_results("pull", results):
        ctx.exit(1)


@main.command(name="list")
@type_option
@dir_option
@_apply(status_options)
@click.option("--remote", is_flag=True, help="List remote items instead of local ones")
@click.option("--modified", "-m", is_flag=True, help="Only new or changed items")
@click.option("--deleted", is_flag=True, help="Only tracked items that were deleted")
@click.option("--site", "site_id", help="Site context name for pages")
@click.pass_context
def list_items(
    ctx: Any,
    types: tuple[str, ...],
    working_dir: Optional[str],
    filter_ready: bool,
    filter_draft: bool,
    remote: bool,
    modified: bool,
    deleted: bool,
    site_id: Optional[str],
) -> None:
    """List local or remote artifacts."""
    opts = _build_opts(filter_ready=filter_ready, filter_draft=filter_draft, site_id=site_id)

    async def names_for(helper: ArtifactHelper, context: SyncContext) -> list[dict]:
        if remote:
            if deleted:
                return await helper.list_remote_deleted_names(context, opts)
            if modified:
                return await helper.list_modified_remote_item_names(context, opts)
            return await helper.list_remote_item_names(context, opts)
        if deleted:
            return await helper.list_local_deleted_names(context, opts)
        if modified:
            return await helper.list_modified_local_item_names(context, opts)
        return await helper.list_local_item_names(context, opts)

    async def work(context: SyncContext) -> dict[str, list[dict]]:
        return {
            name: await names_for(get_helper(name), context)
            for name in _selected_types(types)
        }

    listing = _run(ctx, work, working_dir)
    table = Table(title="Remote items" if remote else "Local items")
    table.add_column("Type")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Path")
    for name, proxies in listing.items():
        for proxy in proxies:
            table.add_row(
                name,
                str(proxy.get("id") or ""),
                str(proxy.get("name") or ""),
                str(proxy.get("path") or ""),
            )
    console.print(table)


@main.command()
@click.option(
    "--type",
    "-t",
    "type_name",
    required=True,
    type=click.Choice(list_artifact_types()),
    help="Artifact type",
)
@click.option("--id", "item_ids", multiple=True, help="Remote item id (repeatable)")
@click.option("--local", "local_names", multiple=True, help="Local item path (repeatable)")
@dir_option
@click.option("--site", "site_id", help="Site context name for pages")
@click.pass_context
def delete(
    ctx: Any,
    type_name: str,
    item_ids: tuple[str, ...],
    local_names: tuple[str, ...],
    working_dir: Optional[str],
    site_id: Optional[str],
) -> None:
    """Delete remote items by id and/or local items by path."""
    if not item_ids and not local_names:
        raise click.UsageError("Specify at least one --id or --local item")
    opts = _build_opts(site_id=site_id)
    helper = get_helper(type_name)

    async def work(context: SyncContext) -> SyncResult:
        result = SyncResult()
        for name in local_names:
            item = await helper.delete_local_item(context, name, opts)
            if item is not None:
                result.succeeded.append(item)
        if item_ids:
            remote = await helper.delete_remote_items(
                context, [{"id": item_id} for item_id in item_ids], opts
            )
            result.succeeded.extend(remote.succeeded)
            result.failed.extend(remote.failed)
        return result

    result = _run(ctx, work, working_dir)
    if not _print_results("delete", {type_name: result}):
        ctx.exit(1)


@main.command()
@click.option("--source", "-s", required=True, help="Source folder or service URL")
@click.option("--target", "-T", required=True, help="Target folder or service URL")
@type_option
@click.pass_context
def compare(ctx: Any, source: str, target: str, types: tuple[str, ...]) -> None:
    """Compare artifacts of two folders or services."""

    async def work(context: SyncContext) -> dict:
        return {
            name: await get_helper(name).compare(context, target, source)
            for name in _selected_types(types)
        }

    results = _run(ctx, work)
    table = Table(title="Compare summary")
    table.add_column("Type")
    table.add_column("Added", justify="right")
    table.add_column("Removed", justify="right")
    table.add_column("Changed", justify="right")
    table.add_column("Total", justify="right")
    diff_count = 0
    for name, result in results.items():
        table.add_row(
            name,
            str(len(result.added)),
            str(len(result.removed)),
            str(len(result.changed)),
            str(result.total_count),
        )
        diff_count += result.diff_count
    console.print(table)
    if diff_count:
        ctx.exit(1)


if __name__ == "__main__":
    main()
