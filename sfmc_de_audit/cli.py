"""CLI entry point for the SFMC Data Extension dependency audit."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import httpx
import orjson
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .analysis import AnalysisOptions, analyze
from .cache import CacheStore, CacheType
from .clients import DEFAULT_RETRY_POLICY, MetadataSources, RESTClient, SOAPClient, TokenManager
from .core.config import AuditSettings, SFMCConfig, get_config, get_settings
from .core.errors import PlatformConnectionError, SourceUnavailableError, TransientNetworkError
from .loader import BulkDataLoader
from .output import ReportWriter
from .types.models import AnalysisReport, TargetEntity

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# CLI app
app = typer.Typer(
    name="sfmc-de-audit",
    help="SFMC Data Extension dependency audit - find what still uses a Data Extension before deleting it",
    add_completion=False,
)

console = Console()

HTTP_TIMEOUT = 120.0
OUTPUT_FORMATS = {
    "json": ("json",),
    "csv": ("csv",),
    "both": ("json", "csv"),
}

# Keys-file JSON fields -> TargetEntity fields
ENTITY_FIELDS = {
    "customerKey": "customer_key",
    "name": "name",
    "objectId": "object_id",
    "folderPath": "folder_path",
    "rowCount": "row_count",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sfmc-de-audit version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        help="Show version and exit",
    ),
) -> None:
    """SFMC Data Extension dependency audit."""
    pass


def _require_config() -> SFMCConfig:
    config = get_config()
    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        console.print("\nPlease set environment variables or create a .env file.")
        raise typer.Exit(1)
    return config


def _entity_from_json(item: Any) -> TargetEntity:
    if isinstance(item, str):
        return TargetEntity(customer_key=item)
    if isinstance(item, dict):
        values = {field: item.get(key) for key, field in ENTITY_FIELDS.items() if item.get(key) is not None}
        return TargetEntity(**values)
    raise ValueError(f"Unsupported entry in keys file: {item!r}")


def read_entities(keys: Optional[list[str]], keys_file: Optional[Path]) -> list[TargetEntity]:
    """Collect the Data Extensions to audit.

    A keys file is either JSON (a list of CustomerKeys or of objects with
    customerKey, name, objectId, folderPath, rowCount) or plain text with one
    CustomerKey per line; blank lines and ``#`` comments are ignored.
    Duplicate keys are dropped, first occurrence wins.
    """
    entities: list[TargetEntity] = [TargetEntity(customer_key=key.strip()) for key in keys or [] if key.strip()]

    if keys_file is not None:
        raw = keys_file.read_bytes()
        if keys_file.suffix.lower() == ".json":
            items = orjson.loads(raw)
            if not isinstance(items, list):
                raise ValueError("JSON keys file must contain a list")
            entities.extend(_entity_from_json(item) for item in items)
        else:
            for line in raw.decode("utf-8").splitlines():
                line = line.strip()
                if line and not line.startswith("#"):
                    entities.append(TargetEntity(customer_key=line))

    unique: dict[str, TargetEntity] = {}
    for entity in entities:
        unique.setdefault(entity.customer_key, entity)
    return list(unique.values())


async def resolve_entities(entities: list[TargetEntity], sources: MetadataSources) -> list[TargetEntity]:
    """Fill in Name and ObjectID for entities given only by CustomerKey.

    ObjectID is what filter activities reference, so an unresolved entity can
    miss filter dependencies. Lookup failures keep the entity as given.
    """
    resolved = []
    for entity in entities:
        if entity.name and entity.object_id:
            resolved.append(entity)
            continue
        try:
            record = await sources.get_data_extension(entity.customer_key)
        except (SourceUnavailableError, TransientNetworkError) as e:
            logger.warning(f"Could not look up Data Extension {entity.customer_key}: {e}")
            resolved.append(entity)
            continue

        if record is None:
            logger.warning(f"Data Extension {entity.customer_key} not found, matching by key only")
            resolved.append(entity)
            continue

        resolved.append(entity.model_copy(update={
            "name": entity.name or record.get("Name"),
            "object_id": entity.object_id or record.get("ObjectID"),
        }))
    return resolved


def build_cache_store(settings: AuditSettings) -> CacheStore:
    return CacheStore(settings.cache_dir, default_max_age=settings.cache_max_age_seconds)


def build_sources(config: SFMCConfig, settings: AuditSettings, http_client: httpx.AsyncClient) -> MetadataSources:
    """Wire the token manager and both API clients around one HTTP client."""
    token_manager = TokenManager(config, http_client=http_client)
    rest = RESTClient(
        config,
        token_manager,
        retry_policy=DEFAULT_RETRY_POLICY,
        request_delay=settings.api_rate_limit_delay,
        http_client=http_client,
    )
    soap = SOAPClient(
        config,
        token_manager,
        retry_policy=DEFAULT_RETRY_POLICY,
        request_delay=settings.api_rate_limit_delay,
        http_client=http_client,
    )
    return MetadataSources(rest, soap, settings)


@app.command("analyze")
def analyze_cmd(
    keys: Optional[list[str]] = typer.Argument(
        None,
        help="Data Extension CustomerKeys to audit",
    ),
    keys_file: Optional[Path] = typer.Option(
        None,
        "--keys-file",
        "-k",
        exists=True,
        dir_okay=False,
        help="File with CustomerKeys (one per line) or a JSON list",
    ),
    stale_days: Optional[int] = typer.Option(
        None,
        "--stale-days",
        min=1,
        help="Days without a run before an automation counts as stale",
    ),
    refresh: bool = typer.Option(
        False,
        "--refresh",
        help="Ignore cached metadata and reload from SFMC",
    ),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--output-dir",
        "-o",
        help="Write reports under this directory",
    ),
    output_format: str = typer.Option(
        "both",
        "--format",
        "-f",
        help="Report format: json, csv, or both",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose logging",
    ),
) -> None:
    """Analyze dependencies of one or more Data Extensions."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if output_format not in OUTPUT_FORMATS:
        console.print(f"[red]Unknown format: {output_format}[/red] (use json, csv, or both)")
        raise typer.Exit(1)

    try:
        entities = read_entities(keys, keys_file)
    except (ValueError, ValidationError, orjson.JSONDecodeError) as e:
        console.print(f"[red]Could not read keys:[/red] {e}")
        raise typer.Exit(1)

    if not entities:
        console.print("[yellow]No Data Extension keys given.[/yellow]")
        console.print("Pass CustomerKeys as arguments or use --keys-file.")
        raise typer.Exit(1)

    config = _require_config()
    settings = get_settings()
    if stale_days is not None:
        settings.stale_days = stale_days

    try:
        report, entities = asyncio.run(
            run_analysis(entities, config, settings, force_refresh=refresh)
        )
    except PlatformConnectionError as e:
        console.print(f"[red]Could not connect to SFMC:[/red] {e}")
        raise typer.Exit(2)

    print_report(report)

    if output_dir is not None:
        writer = ReportWriter(output_dir, account_id=config.account_id)
        written = writer.write(report, entities, OUTPUT_FORMATS[output_format])
        console.print()
        for label, path in written.items():
            console.print(f"[bold]{label}:[/bold] {path}")


async def run_analysis(
    entities: list[TargetEntity],
    config: SFMCConfig,
    settings: AuditSettings,
    force_refresh: bool = False,
) -> tuple[AnalysisReport, list[TargetEntity]]:
    """Resolve entities, load metadata and analyze, with a progress display."""
    console.print("\n[bold]SFMC Data Extension Dependency Audit[/bold]")
    console.print(f"Data Extensions: {len(entities)}")
    console.print(f"Stale after: {settings.stale_days} days")
    console.print()

    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as http_client:
        sources = build_sources(config, settings, http_client)
        loader = BulkDataLoader(
            sources,
            build_cache_store(settings),
            account_id=config.cache_account_key,
            settings=settings,
        )

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Resolving Data Extensions...", total=None)
            entities = await resolve_entities(entities, sources)

            def on_progress(stage: str, current: int, total: int, message: str) -> None:
                progress.update(task, description=message)

            report = await analyze(
                entities,
                loader,
                AnalysisOptions(
                    stale_days=settings.stale_days,
                    force_refresh=force_refresh,
                    on_progress=on_progress,
                ),
            )

    return report, entities


def print_report(report: AnalysisReport) -> None:
    """Print the summary and per-type tables."""
    summary = report.summary

    console.print()
    table = Table(title="Dependency Summary")
    table.add_column("Classification", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("[green]Safe to delete[/green]", str(summary.safe_to_delete))
    table.add_row("[yellow]Requires review[/yellow]", str(summary.requires_review))
    table.add_row("[red]Unknown[/red]", str(summary.unknown))
    table.add_row("[bold]Unique dependencies[/bold]", str(summary.unique_dependencies))
    console.print(table)

    if summary.by_type:
        by_type = Table(title="By Type")
        by_type.add_column("Type", style="cyan")
        by_type.add_column("Total", justify="right")
        by_type.add_column("Safe", justify="right", style="green")
        by_type.add_column("Review", justify="right", style="yellow")
        by_type.add_column("Unknown", justify="right", style="red")
        for type_name, counts in sorted(summary.by_type.items()):
            by_type.add_row(
                type_name,
                str(counts.total),
                str(counts.safe_to_delete),
                str(counts.requires_review),
                str(counts.unknown),
            )
        console.print(by_type)

    if report.requires_review:
        review = Table(title="Blocking Dependencies")
        review.add_column("Type", style="cyan")
        review.add_column("Name")
        review.add_column("Reason")
        review.add_column("Affected", justify="right")
        for dep in report.requires_review:
            review.add_row(dep.type.value, dep.name or "", dep.verdict.reason, str(len(dep.affected_entities)))
        console.print(review)

    source_errors = report.data_load_summary.get("sourceErrors") or {}
    if source_errors:
        console.print("\n[yellow]Some metadata sources could not be loaded:[/yellow]")
        for name, error in source_errors.items():
            console.print(f"  - {name}: {error}")

    console.print()
    console.print(f"[bold]Data Extensions:[/bold] {summary.total_entities}")
    console.print(f"[bold]Raw matches:[/bold] {summary.total_raw_dependencies}")


@app.command("cache-status")
def cache_status() -> None:
    """Show persisted metadata cache files."""
    settings = get_settings()
    store = build_cache_store(settings)
    infos = store.list_all()

    console.print(f"[bold]Cache directory:[/bold] {store.cache_dir}\n")
    if not infos:
        console.print("No cache files.")
        return

    table = Table(title="Cache Files")
    table.add_column("Type", style="cyan")
    table.add_column("Account")
    table.add_column("Age")
    table.add_column("Items", justify="right")
    table.add_column("Size", justify="right")

    for info in infos:
        counts = info.metadata.get("itemCounts")
        items = sum(counts.values()) if isinstance(counts, dict) else info.item_count
        table.add_row(
            info.cache_type or "?",
            info.account_id or "?",
            info.age_string or "?",
            str(items),
            f"{(info.file_size or 0) / 1024:.1f} KB",
        )
    console.print(table)


@app.command("cache-clear")
def cache_clear(
    all_accounts: bool = typer.Option(
        False,
        "--all",
        help="Clear cache files of every account",
    ),
) -> None:
    """Delete persisted metadata cache files."""
    settings = get_settings()
    store = build_cache_store(settings)

    if all_accounts:
        cleared = 0
        for info in store.list_all():
            if info.cache_type and info.account_id and store.clear(info.cache_type, info.account_id):
                cleared += 1
        console.print(f"Cleared {cleared} cache file(s).")
        return

    account = get_config().cache_account_key
    if store.clear(CacheType.BULK_DATA, account):
        console.print(f"Cleared bulk data cache for account {account}.")
    else:
        console.print(f"No bulk data cache for account {account}.")


@app.command("check")
def check_config() -> None:
    """Check configuration and connectivity."""
    console.print("[bold]Configuration Check[/bold]\n")
    config = _require_config()
    settings = get_settings()

    console.print(f"[green]Subdomain:[/green] {config.subdomain}")
    console.print(f"[green]Client ID:[/green] {config.client_id[:8]}...")
    if config.account_id:
        console.print(f"[green]Account ID:[/green] {config.account_id}")
    console.print(f"[green]Cache directory:[/green] {settings.cache_dir}")

    console.print("\n[bold]Testing authentication...[/bold]")

    async def fetch_token() -> str:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as http_client:
            return await TokenManager(config, http_client=http_client).get_token()

    try:
        with console.status("Authenticating..."):
            token = asyncio.run(fetch_token())
    except PlatformConnectionError as e:
        console.print(f"[red]Authentication failed:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]Authentication successful![/green]")
    console.print(f"Token: {token[:20]}...")


if __name__ == "__main__":
    app()
