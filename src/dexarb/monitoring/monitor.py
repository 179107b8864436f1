"""Real-time console display for monitoring state and opportunities."""
from datetime import datetime
from typing import List, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.layout import Layout

from dexarb.models import (
    ArbitrageOpportunity, MonitoringStats, RiskLevel
)

RISK_COLORS = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
}


class OpportunityMonitor:
    """Renders coordinator stats and pending opportunities with rich."""

    def __init__(self, console: Optional[Console] = None, max_rows: int = 10):
        """Initialise monitor."""
        self.console = console or Console()
        self.max_rows = max_rows
        self.start_time = datetime.now()

    def create_dashboard(
        self,
        stats: Optional[MonitoringStats],
        opportunities: List[ArbitrageOpportunity],
        execution_stats: Optional[dict] = None,
    ) -> Layout:
        """Create rich dashboard layout."""
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="opportunities", ratio=2),
            Layout(name="stats", size=12),
        )

        runtime = datetime.now() - self.start_time
        status = "RUNNING" if stats and stats.is_running else "STOPPED"
        header_text = (
            f"DEXARB - Cross-Venue Arbitrage Monitor | {status}\n"
            f"Runtime: {str(runtime).split('.')[0]} | "
            f"Pending Opportunities: {len(opportunities)}"
        )
        layout["header"].update(Panel(header_text, style="bold cyan"))

        if opportunities:
            table = self.create_opportunities_table(opportunities[:self.max_rows])
            layout["opportunities"].update(Panel(table, title="Pending Opportunities"))
        else:
            layout["opportunities"].update(
                Panel("No opportunities detected...", title="Pending Opportunities")
            )

        stats_table = self.create_stats_table(stats, execution_stats or {})
        layout["stats"].update(Panel(stats_table, title="Monitoring Statistics"))

        return layout

    def create_opportunities_table(self, opportunities: List[ArbitrageOpportunity]) -> Table:
        """Create table of opportunities."""
        table = Table(show_header=True, header_style="bold magenta")

        table.add_column("Pair", style="cyan", width=18)
        table.add_column("Route", width=24)
        table.add_column("Profit %", justify="right")
        table.add_column("Est. Profit", justify="right")
        table.add_column("Confidence", justify="right")
        table.add_column("Risk", justify="center")

        for opp in opportunities:
            pair = f"{opp.token_in.symbol or opp.token_in.address[:8]}/" \
                   f"{opp.token_out.symbol or opp.token_out.address[:8]}"
            profit_color = "green" if opp.profit_percentage > 1.0 else "yellow"
            risk_color = RISK_COLORS.get(opp.risk_level, "white")
            risk = opp.risk_level.value if opp.risk_level else "-"
            confidence = f"{opp.confidence_score:.2f}" if opp.confidence_score is not None else "-"

            table.add_row(
                pair,
                f"{opp.source_venue} → {opp.target_venue}",
                f"[{profit_color}]{opp.profit_percentage:.4f}%[/]",
                f"[{profit_color}]{opp.estimated_profit:.6f}[/]",
                confidence,
                f"[{risk_color}]{risk}[/]",
            )

        return table

    def create_stats_table(self, stats: Optional[MonitoringStats], execution_stats: dict) -> Table:
        """Create statistics table."""
        table = Table(show_header=False, box=None, padding=(0, 2))

        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right", style="yellow")

        if stats is not None:
            table.add_row("Pairs", str(stats.pair_count))
            table.add_row("Venues", str(stats.venue_count))
            table.add_row("Cycles / Scans", f"{stats.cycle_count} / {stats.scan_count}")
            table.add_row("Requests Remaining", str(stats.requests_remaining))
            table.add_row("Executing", str(stats.executing_count))
            if stats.auto_execution_halted:
                table.add_row("Auto-Execution", "[red]HALTED[/]")

        table.add_row("Executions", str(execution_stats.get('total_executions', 0)))
        table.add_row("Successful", str(execution_stats.get('successful_executions', 0)))
        table.add_row("Success Rate", f"{execution_stats.get('success_rate', 0):.2f}%")

        return table
