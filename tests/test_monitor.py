"""Unit tests for the console monitor."""
import pytest
from rich.console import Console
from rich.layout import Layout

from dexarb.monitoring.monitor import OpportunityMonitor
from dexarb.models import (
    ArbitrageOpportunity, MonitoringStats, RiskLevel, Token
)


@pytest.fixture
def monitor():
    return OpportunityMonitor(Console(record=True, width=120), max_rows=2)


@pytest.fixture
def opportunities():
    weth = Token("0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", "WETH")
    usdc = Token("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "USDC", 6)
    return [
        ArbitrageOpportunity(
            id=f"o{i}", token_in=weth, token_out=usdc, source_venue="v1", target_venue="v2",
            profit_percentage=3.0 - i, estimated_profit=0.03, gas_estimate=0.0, trade_size=1.0,
            confidence_score=0.9, risk_level=RiskLevel.LOW,
        )
        for i in range(3)
    ]


def stats(**overrides):
    values = dict(is_running=True, pair_count=2, venue_count=2, pending_count=3,
                  requests_remaining=50)
    values.update(overrides)
    return MonitoringStats(**values)


class TestOpportunityMonitor:
    """Test dashboard rendering."""

    def test_dashboard_layout(self, monitor, opportunities):
        """Test the dashboard has header, opportunities and stats sections."""
        layout = monitor.create_dashboard(stats(), opportunities, {'total_executions': 4})

        assert isinstance(layout, Layout)
        for name in ("header", "opportunities", "stats"):
            assert layout[name] is not None

    def test_dashboard_without_stats(self, monitor):
        """Test the initial empty dashboard renders."""
        monitor.console.print(monitor.create_dashboard(None, []))

        assert "STOPPED" in monitor.console.export_text()

    def test_opportunities_table(self, monitor, opportunities):
        """Test one row per opportunity."""
        table = monitor.create_opportunities_table(opportunities)

        assert table.row_count == 3
        assert len(table.columns) == 6

    def test_max_rows(self, monitor, opportunities):
        """Test the dashboard shows at most max_rows opportunities."""
        monitor.console.print(monitor.create_dashboard(stats(), opportunities))

        text = monitor.console.export_text()
        assert "3.0000%" in text
        assert "1.0000%" not in text

    def test_stats_table_halted(self, monitor):
        """Test a halted auto-execution is shown."""
        table = monitor.create_stats_table(stats(auto_execution_halted=True), {})
        monitor.console.print(table)

        assert "HALTED" in monitor.console.export_text()
