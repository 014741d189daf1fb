# main.py
import asyncio
import os
import signal
import sys
import time
import questionary
from rich.live import Live
from rich.table import Table
from rich.layout import Layout
from rich.console import Console
from rich.panel import Panel

from basis_hedge.config import BotConfig, load_config
from basis_hedge.exceptions import ConfigurationError
from basis_hedge.logger import setup_console_logger, TradeAuditLog
from basis_hedge.market_engine import MarketEngine
from basis_hedge.strategy import HedgeCoordinator
from basis_hedge.websocket_engine import WebSocketEngine

console = Console()

# --- UI HELPER FUNCTIONS ---

def print_banner(config: BotConfig):
    t = config.trading
    a, b = config.venue_names
    mode = "[bold yellow]DRY RUN (paper)[/bold yellow]" if config.system.dry_run else "[bold red]LIVE[/bold red]"
    console.print(Panel(
        f"[bold]BASIS HEDGE[/bold]  {a.upper()} <-> {b.upper()}  |  {t.symbol}\n"
        f"Mode: {mode}  |  Environment: {config.system.environment}\n"
        f"Entry gap: ${t.entry_gap_usd:.2f}  |  Exit gap: ${t.exit_gap_usd:.2f}  |  Size: {t.position_size_btc} BTC\n"
        f"Min hold: {t.min_hold_duration_seconds:.0f}s  |  Max hold: "
        f"{'-' if t.max_hold_duration_seconds is None else f'{t.max_hold_duration_seconds:.0f}s'}  |  "
        f"Max leverage: {config.risk.max_leverage}x",
        title="🚀 Startup",
    ))


def confirm_live_trading(config: BotConfig) -> bool:
    """Interactive confirmation before real orders go out."""
    if config.system.dry_run:
        return True
    answer = questionary.confirm(
        f"LIVE trading with real funds on {', '.join(config.venue_names)}. Continue?",
        default=False,
    ).ask()
    return bool(answer)


def generate_dashboard(bot: "BasisHedgeBot"):
    """
    Creates the Rich Console Dashboard layout.
    Shows live tops of book, the position and the running stats.
    """
    status = bot.coordinator.status()

    # 1. Price Table
    price_table = Table(title="📡 Live Market Feed")
    price_table.add_column("Venue", style="cyan")
    price_table.add_column("Bid", justify="right", style="green")
    price_table.add_column("Ask", justify="right", style="red")
    price_table.add_column("Age (s)", justify="right")

    for name in bot.config.venue_names:
        data = bot.coordinator.market_cache.get(name)
        if data is None:
            price_table.add_row(name.upper(), "-", "-", "-")
        else:
            price_table.add_row(name.upper(), f"${data.bid_price:,.2f}", f"${data.ask_price:,.2f}", f"{data.age:.1f}")

    # 2. Position Table
    pos_table = Table(title="⚖️ Hedge")
    pos_table.add_column("Field", style="magenta")
    pos_table.add_column("Value", justify="right")

    pos_table.add_row("State", status["state"])
    gap = status["last_gap_usd"]
    pos_table.add_row("Gap", "-" if gap is None else f"${gap:,.2f}")
    position = status["position"]
    if position is not None:
        pos_table.add_row("Long", f"{position.size} @ {position.cheap_price:,.2f} ({position.cheap_venue})")
        pos_table.add_row("Short", f"{position.size} @ {position.expensive_price:,.2f} ({position.expensive_venue})")
        pos_table.add_row("Hold", f"{status['hold_seconds']}s")
    funding = status["funding"]
    if funding is not None:
        pos_table.add_row("Net funding", f"{funding.net_per_hour * 100:.4f}%/hr")

    stats = status["stats"]
    pos_table.add_row("Trades", str(stats.count))
    pos_table.add_row("Total PnL", f"{stats.total_pnl:.6f} BTC")
    pos_table.add_row("Win rate", f"{stats.win_rate * 100:.1f}%")

    # Layout Construction
    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )

    layout["top"].split_row(
        Layout(Panel(price_table)),
        Layout(Panel(pos_table))
    )

    style = "white on red" if status["unhedged"] is not None else "white on blue"
    footer = Panel(status["last_status"], style=style)
    layout["bottom"].update(footer)
    layout["bottom"].size = 3

    return layout

# --- MAIN CONTROLLER ---

class BasisHedgeBot:
    def __init__(self, config: BotConfig):
        self.config = config
        self.logger = setup_console_logger("BasisHedge", config.system.log_level, config.system.log_file)
        self.audit_log = TradeAuditLog(config.audit.log_dir)

        self.ws_engine = WebSocketEngine(self.logger, testnet=config.system.environment == 'testnet')
        self.rest_engine = MarketEngine(config, self.logger, self.ws_engine)
        self.coordinator = None
        self.stop_event = asyncio.Event()
        self.tasks = []

    def request_stop(self):
        if not self.stop_event.is_set():
            self.logger.warning("🛑 Stop requested. Open positions will be left on the venues.")
            self.stop_event.set()

    async def _status_loop(self):
        interval = self.config.performance.status_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.coordinator.log_status()

    async def _subscribe_feeds(self):
        symbol = self.config.trading.symbol
        for name, venue in self.rest_engine.venues.items():
            if WebSocketEngine.supports(name):
                await venue.subscribe_to_market_data(symbol, self.coordinator.on_ticker_update)
            else:
                self.logger.warning(f"{name}: no push feed, using REST polling only")
        await self.ws_engine.start()

    async def run(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                pass

        try:
            console.print("Initializing Diagnostic Checks...")
            await self.audit_log.start()
            is_healthy = await self.rest_engine.initialize()
            if not is_healthy:
                console.print("[bold red]❌ Diagnostic Failed. Check API Keys and symbol.[/bold red]")
                return

            self.coordinator = HedgeCoordinator(
                self.config, dict(self.rest_engine.venues), self.logger, self.audit_log
            )
            console.print("Reconciling venue positions...")
            await self.coordinator.initialize()
            await self._subscribe_feeds()

            tick = self.config.performance.market_data_update_interval_ms / 1000
            self.tasks = [
                asyncio.create_task(self.coordinator.funding.run_loop(self.config.funding.check_interval_seconds)),
                asyncio.create_task(self._status_loop()),
            ]

            with Live(generate_dashboard(self), console=console, refresh_per_second=4) as live:
                while not self.stop_event.is_set():
                    start_tick = time.time()
                    await self.coordinator.on_market_update()
                    live.update(generate_dashboard(self))

                    elapsed = time.time() - start_tick
                    try:
                        await asyncio.wait_for(self.stop_event.wait(), max(0, tick - elapsed))
                    except asyncio.TimeoutError:
                        pass
        finally:
            console.print("Shutting down resources...")
            for t in self.tasks:
                t.cancel()
            await asyncio.gather(*self.tasks, return_exceptions=True)
            if self.coordinator is not None:
                self.coordinator.report_shutdown()
            await self.ws_engine.shutdown()
            await self.rest_engine.shutdown()
            await self.audit_log.stop()


if __name__ == "__main__":
    config_path = os.environ.get("BASIS_HEDGE_CONFIG", "config.yaml")
    try:
        cfg = load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error[/bold red] ({config_path}): {e}")
        sys.exit(1)

    print_banner(cfg)
    if not confirm_live_trading(cfg):
        console.print("Aborted by user.")
        sys.exit()

    try:
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(BasisHedgeBot(cfg).run())
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        sys.exit()
