"""Settlement executor interface and the paper-trading implementation."""
import asyncio
import uuid
from typing import List, Optional, Protocol, runtime_checkable
from loguru import logger

from dexarb.models import ArbitrageOpportunity, FundingQuote, SettlementResult


@runtime_checkable
class SettlementExecutor(Protocol):
    """Carries out a funded opportunity. Never raises for a rejected trade."""

    async def submit(
        self, opportunity: ArbitrageOpportunity, funding_quote: Optional[FundingQuote]
    ) -> SettlementResult:
        ...


class PaperSettlementExecutor:
    """Simulated settlement: logs the trade and returns a synthetic tx reference."""

    def __init__(self, latency: float = 0.0):
        """
        Initialise paper executor.

        Args:
            latency: Simulated settlement time in seconds
        """
        self.latency = latency
        self.submitted: List[str] = []

    async def submit(
        self, opportunity: ArbitrageOpportunity, funding_quote: Optional[FundingQuote]
    ) -> SettlementResult:
        if self.latency:
            await asyncio.sleep(self.latency)

        provider = funding_quote.provider if funding_quote else "none"
        logger.info(
            f"[PAPER] {opportunity} | size {opportunity.trade_size} | funding {provider}"
        )

        self.submitted.append(opportunity.id)
        return SettlementResult(success=True, tx_ref=f"paper-{uuid.uuid4().hex[:16]}")
