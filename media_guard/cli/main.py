"""
CLI interface for Media Guard.

Inspects daily usage, limits and outstanding provider jobs.
"""

import asyncio
import json
import logging
import sys
import time
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from media_guard.config.loader import Settings, load_settings
from media_guard.core.cache import ContentAddressedCache
from media_guard.core.ledger import UsageLedger
from media_guard.core.pricing import format_cost
from media_guard.storage.models import PendingJobRecord
from media_guard.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1  # Failing error

_LIMIT_LABELS = {
    "images": "Images",
    "videos": "Videos",
    "speech_minutes": "Speech minutes",
    "music_minutes": "Music minutes",
    "total_cost": "Total cost",
}


def _format_amount(limit_type: str, value: float) -> str:
    if limit_type == "total_cost":
        return format_cost(value)
    if limit_type in ("images", "videos"):
        return str(int(value))
    return f"{value:.1f}"


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML settings file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    )
):
    """Media Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )

    try:
        settings = load_settings(config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading settings:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    ctx.obj = {"settings": settings}
    if ctx.invoked_subcommand is None:
        console.print("Media Guard - Use --help to see available commands")


@app.command()
def status(ctx: typer.Context):
    """Show today's usage against the configured daily limits."""
    settings = _settings(ctx)
    if not settings.tracking_enabled:
        console.print("[yellow]Usage tracking is disabled[/] (MEDIA_GUARD_TRACK_USAGE)")
        sys.exit(EXIT_CODE_PASS)

    ledger = UsageLedger.from_settings(settings)
    asyncio.run(ledger.load())

    console.print(f"\n[bold]Usage for {ledger.daily_state.date}[/bold]")
    if not ledger.has_limits():
        console.print("[dim]No daily limits configured.[/]")
    else:
        table = Table()
        table.add_column("Limit")
        table.add_column("Used", justify="right")
        table.add_column("Limit", justify="right")
        table.add_column("%", justify="right")

        for limit_status in ledger.limit_statuses():
            if limit_status.current >= limit_status.limit:
                style = "red"
            elif limit_status.percent >= 80:
                style = "yellow"
            else:
                style = "green"
            table.add_row(
                _LIMIT_LABELS[limit_status.limit_type],
                _format_amount(limit_status.limit_type, limit_status.current),
                _format_amount(limit_status.limit_type, limit_status.limit),
                f"[{style}]{limit_status.percent}%[/]",
            )
        console.print(table)

    hours, minutes = ledger.time_until_reset()
    console.print(f"Resets in {hours}h {minutes}m (at {settings.limits.reset_hour_utc:02d}:00 UTC)")


@app.command()
def usage(
    ctx: typer.Context,
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the raw usage document"
    )
):
    """Show today's usage counters."""
    settings = _settings(ctx)
    ledger = UsageLedger.from_settings(settings)
    asyncio.run(ledger.load())
    state = ledger.daily_state

    if as_json:
        console.print_json(json.dumps(state.to_dict()))
        sys.exit(EXIT_CODE_PASS)

    console.print(f"\n[bold]Usage for {state.date}[/bold]")
    console.print("-" * 40)
    console.print(f"Images: {state.images}")
    console.print(f"Videos: {state.videos} ({state.video_seconds:.0f}s)")
    console.print(f"Speech: {state.speech_minutes:.1f} min")
    console.print(f"Music: {state.music_minutes:.1f} min")
    console.print(f"Total cost: {format_cost(state.total_cost)}")

    unpriced = sum(1 for g in state.generations if g.pricing_unavailable)
    if unpriced:
        console.print(f"[yellow]{unpriced} generation(s) without pricing are not included in the cost[/]")


@app.command()
def history(
    ctx: typer.Context,
    days: int = typer.Option(
        7,
        "--days",
        "-d",
        help="Number of days to show"
    )
):
    """Show usage for recent days, newest first."""
    if days < 1:
        console.print("[red]Error:[/] --days must be at least 1")
        sys.exit(EXIT_CODE_FAIL)

    repository = UsageRepository(_settings(ctx).usage_dir)
    states = repository.get_usage_history(days)
    if not states:
        console.print("\n[bold yellow]No usage data found[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Daily usage")
    table.add_column("Date")
    table.add_column("Images", justify="right")
    table.add_column("Videos", justify="right")
    table.add_column("Speech min", justify="right")
    table.add_column("Music min", justify="right")
    table.add_column("Cost", justify="right")
    for state in states:
        table.add_row(
            state.date,
            str(state.images),
            str(state.videos),
            f"{state.speech_minutes:.1f}",
            f"{state.music_minutes:.1f}",
            format_cost(state.total_cost),
        )
    console.print(table)


async def _load_pending(cache: ContentAddressedCache):
    records = []
    for key in await cache.keys("pending_"):
        raw = await cache.get(key)
        if raw is None:
            continue
        try:
            records.append((key, PendingJobRecord.from_dict(raw)))
        except (KeyError, TypeError, ValueError):
            continue
    return records


@app.command()
def pending(ctx: typer.Context):
    """List jobs submitted but not yet confirmed complete."""
    cache = ContentAddressedCache(_settings(ctx).cache_dir)
    records = asyncio.run(_load_pending(cache))
    if not records:
        console.print("[green]✓[/] No pending jobs")
        sys.exit(EXIT_CODE_PASS)

    now_ms = int(time.time() * 1000)
    table = Table(title="Pending jobs")
    table.add_column("Fingerprint")
    table.add_column("Endpoint")
    table.add_column("Request ID")
    table.add_column("Age", justify="right")
    for key, record in records:
        age_minutes = max(0, now_ms - record.submitted_at) // 60000
        table.add_row(
            key[len("pending_"):][:12],
            record.endpoint_id,
            record.request_id,
            f"{age_minutes // 60}h {age_minutes % 60}m",
        )
    console.print(table)


if __name__ == "__main__":
    app()
