"""
Root Typer application for the stockwatch CLI.

Commands::

    stockwatch seed [--symbols JSON]
    stockwatch fetch [--seed] [--json]
    stockwatch run [--seed] [--enable] [--interval SECONDS]
    stockwatch symbols
    stockwatch prices
"""

from __future__ import annotations

import asyncio
import json
import signal

import typer
from rich.console import Console
from rich.table import Table

from stockwatch.app import StockwatchApp, build_app
from stockwatch.core.errors import CredentialUnavailableError, SeedError, StorageError
from stockwatch.core.logging import configure_logging
from stockwatch.core.settings import get_settings
from stockwatch.store import SymbolStore, create_store

app = typer.Typer(
    name="stockwatch",
    help="stockwatch — symbol price tracking and delta notifications.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("stockwatch")
        except PackageNotFoundError:
            from stockwatch import __version__ as v
        typer.echo(f"stockwatch {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """stockwatch CLI — seed symbols, fetch prices, run the pipeline."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json")


def _build() -> StockwatchApp:
    return build_app(get_settings())


def _open_store() -> SymbolStore:
    settings = get_settings()
    return create_store(settings.table_backend, settings.table_path)


def _seed_or_exit(pipeline: StockwatchApp, symbols: str | None = None) -> None:
    try:
        result = pipeline.seed(symbols)
    except SeedError as e:
        err_console.print(f"[bold red]Error[/bold red]: {e.message}")
        raise typer.Exit(code=1) from e

    table = Table(title="Seed", pad_edge=False)
    table.add_column("ticker")
    table.add_column("outcome")
    table.add_column("error", overflow="fold")
    for entry in result.entries:
        table.add_row(entry.ticker, entry.outcome.value, entry.error or "")
    console.print(table)
    if not result.success:
        raise typer.Exit(code=1)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def seed(
    symbols: str | None = typer.Option(
        None, "--symbols", "-s", help='JSON list, e.g. [{"name": "BTC", "symbol": "BINANCE:BTCUSDT"}]'
    ),
) -> None:
    """Create SYMBOL rows for the configured (or given) symbol list."""
    pipeline = _build()
    try:
        _seed_or_exit(pipeline, symbols)
    finally:
        pipeline.store.close()


@app.command()
def fetch(
    seed_first: bool = typer.Option(False, "--seed", help="Seed the symbol list first."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run one price fetch and drain the pipeline."""
    pipeline = _build()

    async def _run():
        try:
            return await pipeline.fetch_once()
        finally:
            await pipeline.aclose()

    if seed_first:
        _seed_or_exit(pipeline)
    try:
        result = asyncio.run(_run())
    except (CredentialUnavailableError, StorageError) as e:
        err_console.print(f"[bold red]Error[/bold red]: {e.message}")
        raise typer.Exit(code=1) from e

    dead_letters = pipeline.dead_letters.list_unresolved()
    if json_out:
        payload = result.to_dict()
        payload["dead_letters"] = [entry.to_dict() for entry in dead_letters]
        console.print_json(json.dumps(payload, default=str))
        return

    console.print(
        f"Run [bold]{result.run_id}[/bold]: {result.processed} processed, "
        f"{result.failed} failed"
    )
    if result.failures:
        table = Table(title="Failures", pad_edge=False)
        table.add_column("ticker")
        table.add_column("error")
        table.add_column("message", overflow="fold")
        for failure in result.failures:
            table.add_row(failure.ticker, failure.error_type, failure.message)
        console.print(table)
    if dead_letters:
        table = Table(title="Dead Letters", pad_edge=False)
        table.add_column("id")
        table.add_column("consumer")
        table.add_column("ticker")
        table.add_column("attempts")
        table.add_column("error", overflow="fold")
        for entry in dead_letters:
            table.add_row(
                entry.id, entry.consumer, entry.event.ticker or "", str(entry.attempts), entry.error or ""
            )
        console.print(table)


@app.command()
def run(
    seed_first: bool = typer.Option(False, "--seed", help="Seed the symbol list first."),
    enable: bool = typer.Option(False, "--enable", help="Enable the schedule regardless of settings."),
    interval: float | None = typer.Option(None, "--interval", help="Schedule interval in seconds."),
) -> None:
    """Run the scheduled pipeline until interrupted."""
    settings = get_settings()
    updates = {}
    if enable:
        updates["scheduler_enabled"] = True
    if interval is not None:
        updates["schedule_interval_seconds"] = interval
    pipeline = build_app(settings.model_copy(update=updates))

    if seed_first:
        _seed_or_exit(pipeline)

    async def _run() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            await pipeline.run_forever(stop)
        finally:
            await pipeline.aclose()

    asyncio.run(_run())


@app.command()
def symbols() -> None:
    """List registered symbols."""
    store = _open_store()
    try:
        rows = store.list_symbols()
    finally:
        store.close()
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title="Symbols", pad_edge=False)
    table.add_column("ticker")
    table.add_column("name")
    for symbol in rows:
        table.add_row(symbol.ticker, symbol.display_name)
    console.print(table)


@app.command()
def prices() -> None:
    """Show the latest price and delta per symbol."""
    store = _open_store()
    try:
        observations = store.list_prices()
        deltas = {delta.ticker: delta for delta in store.list_deltas()}
    finally:
        store.close()
    if not observations:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title="Prices", pad_edge=False)
    table.add_column("ticker")
    table.add_column("price", justify="right")
    table.add_column("observed_at")
    table.add_column("delta", justify="right")
    for observation in observations:
        delta = deltas.get(observation.ticker)
        table.add_row(
            observation.ticker,
            str(observation.price),
            observation.observed_at.isoformat(),
            str(delta.delta) if delta else "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
