#!/usr/bin/env python3
"""Main entry point for the dexarb monitoring service."""
import asyncio
import os
import signal
from typing import Dict, List
from loguru import logger
from rich.live import Live
from rich.console import Console

from dexarb.config import Config
from dexarb.models import Token, Venue
from dexarb.core import funding
from dexarb.core.coordinator import MonitoringCoordinator
from dexarb.core.price_source import CcxtPriceSource
from dexarb.core.settlement import PaperSettlementExecutor
from dexarb.infrastructure.database import ExecutionJournal
from dexarb.monitoring.monitor import OpportunityMonitor

# symbols as the venues list them, mapped to their mainnet token contracts
KNOWN_TOKENS: Dict[str, Token] = {
    "ETH": Token(funding.WETH, "ETH", 18),
    "USDC": Token(funding.USDC, "USDC", 6),
    "USDT": Token(funding.USDT, "USDT", 6),
    "DAI": Token(funding.DAI, "DAI", 18),
    "BTC": Token(funding.WBTC, "BTC", 8),
}


def parse_venues(value: str) -> List[Venue]:
    """"binance,kraken" -> venues whose ids are ccxt exchange ids."""
    return [
        Venue(id=name.strip(), name=name.strip().capitalize())
        for name in value.split(",") if name.strip()
    ]


def parse_pairs(value: str) -> List[tuple]:
    """"ETH/USDT,BTC/USDT" -> token tuples; unknown symbols are skipped."""
    pairs = []
    for item in value.split(","):
        if "/" not in item:
            continue
        a, b = (s.strip().upper() for s in item.split("/", 1))
        if a not in KNOWN_TOKENS or b not in KNOWN_TOKENS:
            logger.warning(f"Skipping pair {item.strip()}: unknown token")
            continue
        pairs.append((KNOWN_TOKENS[a], KNOWN_TOKENS[b]))
    return pairs


class DexArbService:
    """Wires the coordinator, console monitor and journal together."""

    def __init__(self, config: Config = None):
        """Initialise the service."""
        self.config = config or Config()
        self.console = Console()
        self.running = False
        self._stopped = False

        logger.add(
            "logs/dexarb_{time}.log",
            rotation="1 day",
            retention="7 days",
            level=self.config.log_level
        )

        self.journal = ExecutionJournal(self.config.database.path) if self.config.database.enabled else None
        self.monitor = OpportunityMonitor(self.console)
        self.coordinator = MonitoringCoordinator(
            price_source=CcxtPriceSource(),
            venues=parse_venues(os.getenv("VENUES", "binance,kraken")),
            config=self.config,
            settlement=PaperSettlementExecutor(),
            journal=self.journal,
        )

        for token_a, token_b in parse_pairs(os.getenv("PAIRS", "ETH/USDT,BTC/USDT,ETH/BTC")):
            self.coordinator.add_pair_to_monitor(token_a, token_b)

    def _execution_stats(self) -> dict:
        if self.journal is not None:
            return self.journal.get_statistics()
        return self.coordinator.manager.get_statistics()

    async def display_loop(self):
        """Display loop: update dashboard."""
        with Live(
            self.monitor.create_dashboard(None, []),
            console=self.console,
            refresh_per_second=2
        ) as live:
            while self.running:
                try:
                    dashboard = self.monitor.create_dashboard(
                        self.coordinator.get_stats(),
                        self.coordinator.get_pending_opportunities(),
                        self._execution_stats(),
                    )
                    live.update(dashboard)
                    await asyncio.sleep(0.5)
                except Exception as e:
                    logger.error(f"Display error: {e}")
                    await asyncio.sleep(1)

    async def run(self):
        """Run until stopped."""
        self.running = True

        mode = "AUTO-EXECUTE (paper)" if self.config.execution.auto_execute else "MONITOR ONLY"
        logger.warning(f"Mode: {mode}")
        logger.info(f"Min Profit Threshold: {self.config.execution.min_profit_percentage}%")
        logger.info(f"Strategy: {self.config.execution.strategy}")

        try:
            await self.coordinator.start_monitoring()
            await self.display_loop()
        except Exception as e:
            logger.error(f"Fatal error: {e}")
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Graceful shutdown."""
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        logger.info("Shutting down dexarb...")

        stats = self._execution_stats()
        if self.journal is not None:
            try:
                export_path = self.journal.export_to_csv()
                self.console.print(f"\n[green]Executions exported to: {export_path}[/]")
            except Exception as e:
                logger.error(f"Failed to export data: {e}")

        await self.coordinator.shutdown()

        self.console.print("\n[bold cyan]Final Statistics:[/]")
        self.console.print(f"Executions: {stats.get('total_executions', 0)}")
        self.console.print(f"Successful: {stats.get('successful_executions', 0)}")

        logger.success("Shutdown complete")


async def main():
    """Main entry point."""
    service = DexArbService()

    # stop the display loop on ctrl+c and kill signals; run() then shuts down
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: setattr(service, "running", False))

    await service.run()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
