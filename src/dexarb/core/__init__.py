"""Core monitoring, scanning and execution components."""

from .coordinator import MonitoringCoordinator
from .opportunity_manager import OpportunityManager
from .scanner import OpportunityScanner, find_opportunities
from .offloader import ComputeOffloader
from .funding import FundingSelector, FeeScheduleProvider, default_providers
from .price_history import PriceHistory, PriceHistoryStore
from .price_source import CcxtPriceSource, Subscription
from .settlement import PaperSettlementExecutor

__all__ = [
    "MonitoringCoordinator",
    "OpportunityManager",
    "OpportunityScanner",
    "find_opportunities",
    "ComputeOffloader",
    "FundingSelector",
    "FeeScheduleProvider",
    "default_providers",
    "PriceHistory",
    "PriceHistoryStore",
    "CcxtPriceSource",
    "Subscription",
    "PaperSettlementExecutor",
]
