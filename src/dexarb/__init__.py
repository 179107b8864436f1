"""
dexarb - Cross-venue price monitoring and arbitrage detection for decentralised exchanges.
"""

from .config import Config, ExecutionConfig, MonitoringConfig, OffloadConfig
from .models import (
    Token,
    Venue,
    TokenPair,
    PricePoint,
    ArbitrageOpportunity,
    OpportunityStatus,
    RiskLevel,
)

__version__ = "1.0.0"
__all__ = [
    "Config",
    "ExecutionConfig",
    "MonitoringConfig",
    "OffloadConfig",
    "Token",
    "Venue",
    "TokenPair",
    "PricePoint",
    "ArbitrageOpportunity",
    "OpportunityStatus",
    "RiskLevel",
]
