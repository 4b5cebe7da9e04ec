#!/usr/bin/env python3
"""CLI for running the Polymarket copy trader."""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import click
from rich.console import Console
from rich.table import Table

from polycopy.config.settings import Settings
from polycopy.execution.service import run_service, sizing_config_from_settings
from polycopy.execution.sizing import PositionSizer, SizingMode
from polycopy.execution.state_store import JsonStateStore, StateStoreError
from polycopy.execution.trade_stats import TradeStatsRecorder
from polycopy.scrapers.data_api import PolymarketDataAPI
from polycopy.utils.logging import setup_logging


console = Console()


def _load_settings(config: Optional[str]) -> Settings:
    return Settings.load(Path(config) if config else None)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx, config_path: Optional[str]):
    """Polymarket copy trader."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--live", is_flag=True, help="Place real orders (overrides paper_trading)")
@click.pass_context
def run(ctx, log_level: str, live: bool):
    """Watch wallets, copy their trades and manage exits."""
    setup_logging(log_level)
    settings = _load_settings(ctx.obj["config_path"])

    if live:
        settings.copy_trading.paper_trading = False

    if not settings.copy_trading.wallets_to_track:
        console.print("[red]No wallets to track (set WALLETS_TO_TRACK)[/red]")
        sys.exit(1)
    if not settings.polymarket.funder_address:
        console.print("[red]POLYMARKET_FUNDER_ADDRESS is required[/red]")
        sys.exit(1)
    if not settings.copy_trading.paper_trading and not settings.polymarket.private_key:
        console.print("[red]POLYMARKET_PRIVATE_KEY is required for live trading[/red]")
        sys.exit(1)

    mode = "PAPER" if settings.copy_trading.paper_trading else "LIVE"
    console.print(f"\n[bold blue]Starting copy trader [{mode}][/bold blue]\n")

    asyncio.run(run_service(settings))


@cli.command()
@click.option("--wallet", default=None, help="Wallet address (defaults to funder address)")
@click.pass_context
def positions(ctx, wallet: Optional[str]):
    """Show open positions with unrealized PnL."""
    settings = _load_settings(ctx.obj["config_path"])
    address = wallet or settings.polymarket.funder_address
    if not address:
        console.print("[red]Pass --wallet or set POLYMARKET_FUNDER_ADDRESS[/red]")
        sys.exit(1)

    async def fetch():
        async with PolymarketDataAPI(settings) as api:
            return await asyncio.gather(
                api.get_positions(address),
                api.get_usdc_balance(address),
            )

    open_positions, cash = asyncio.run(fetch())

    table = Table(title=f"Positions for {address[:10]}...")
    table.add_column("Market", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Current", justify="right")
    table.add_column("Value", justify="right")
    table.add_column("PnL", justify="right")

    total_value = Decimal("0")
    total_pnl = Decimal("0")
    for p in sorted(open_positions, key=lambda p: p.size * p.current_price, reverse=True):
        value = p.size * p.current_price
        pnl = value - p.size * p.avg_price
        total_value += value
        total_pnl += pnl
        style = "green" if pnl >= 0 else "red"
        table.add_row(
            (p.market_slug or p.token_id)[:40],
            f"{p.size:,.2f}",
            f"{p.avg_price:.3f}",
            f"{p.current_price:.3f}",
            f"${value:,.2f}",
            f"[{style}]${pnl:+,.2f} ({p.profit_percent:+.1f}%)[/{style}]",
        )

    console.print(table)
    console.print(f"\nCash: ${cash:,.2f}")
    console.print(f"Positions value: ${total_value:,.2f}")
    console.print(f"Unrealized PnL: ${total_pnl:+,.2f}")


@cli.command()
@click.pass_context
def status(ctx):
    """Show the saved exit-engine table."""
    settings = _load_settings(ctx.obj["config_path"])
    store = JsonStateStore(settings.state.state_file)

    try:
        state = store.load()
    except StateStoreError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if not state or not state["positions"]:
        console.print(f"[yellow]No tracked positions in {settings.state.state_file}[/yellow]")
        return

    table = Table(title="Exit Engine")
    table.add_column("Market", style="cyan")
    table.add_column("State")
    table.add_column("Entry", justify="right")
    table.add_column("Peak", justify="right")
    table.add_column("Order", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Emergency", justify="right")

    for p in state["positions"]:
        table.add_row(
            (p.get("market_label") or p["token_id"])[:40],
            p.get("state", "tracking"),
            f"{Decimal(p['entry_price']):.3f}",
            f"{Decimal(p['highest_price_seen']):.3f}",
            f"{Decimal(p['active_order_price']):.3f}" if p.get("active_order_price") else "-",
            str(p.get("update_attempts", 0)),
            f"{p['emergency_reason']} x{p.get('emergency_failed_count', 0)}"
            if p.get("emergency_reason") else "-",
        )

    console.print(table)
    console.print(f"\nSaved at: {state.get('saved_at', 'unknown')}")


@cli.command()
@click.option("--reset", is_flag=True, help="Clear the saved counters")
@click.pass_context
def stats(ctx, reset: bool):
    """Show per-wallet trade statistics."""
    settings = _load_settings(ctx.obj["config_path"])
    recorder = TradeStatsRecorder(settings.state.stats_file)

    if reset:
        recorder.reset()
        console.print(f"[green]Reset {settings.state.stats_file}[/green]")
        return

    data = recorder.stats
    console.print(recorder.summary())
    copied = data["copied"]
    console.print(
        f"Copied: {copied.get('success', 0)} | Failed: {copied.get('failed', 0)} | "
        f"Skipped: {copied.get('skipped', 0)}"
    )

    table = Table(title="By Wallet")
    table.add_column("Wallet", style="cyan")
    table.add_column("Buys", justify="right")
    table.add_column("Sells", justify="right")
    table.add_column("Last Trade")
    for wallet, counts in data["by_wallet"].items():
        table.add_row(wallet, str(counts["buys"]), str(counts["sells"]), counts["last_trade"])
    console.print(table)


@cli.command()
@click.option("--amount", type=Decimal, required=True, help="Trader's bet in USDC")
@click.option("--trader-balance", type=Decimal, default=None, help="Trader's total balance")
@click.option("--my-balance", type=Decimal, default=Decimal("0"), help="Your balance")
@click.option("--mode", type=click.Choice([m.value for m in SizingMode]), default=None)
@click.pass_context
def size(ctx, amount: Decimal, trader_balance: Optional[Decimal], my_balance: Decimal, mode: Optional[str]):
    """Show how a trade would be sized."""
    settings = _load_settings(ctx.obj["config_path"])
    config = sizing_config_from_settings(settings)
    if mode:
        config.mode = SizingMode(mode)

    sizer = PositionSizer(config, my_balance)
    result = sizer.calculate(amount, trader_balance)

    table = Table(title="Position Sizing")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Mode", result.mode.value)
    table.add_row("Trader bet", f"${result.original_amount:,.2f}")
    table.add_row("Trader balance", f"${trader_balance:,.2f}" if trader_balance else "unknown")
    table.add_row("Your balance", f"${my_balance:,.2f}")
    table.add_row("Scaling factor", f"{result.scaling_factor:.6f}")
    table.add_row("Your stake", f"${result.amount:,.2f}" + (" (capped)" if result.capped else ""))

    console.print(table)
    console.print(f"\nReason: {result.reason}")


if __name__ == "__main__":
    cli()
