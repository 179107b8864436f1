"""Cross-venue arbitrage detection."""
import time
import uuid
from itertools import combinations
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TYPE_CHECKING
from loguru import logger

from dexarb.config import ExecutionConfig, MonitoringConfig
from dexarb.models import (
    ArbitrageOpportunity, PricePoint, RiskLevel, Token, TokenPair
)

if TYPE_CHECKING:
    from dexarb.core.offloader import ComputeOffloader

# venue id -> pair -> newest quote on that venue
QuoteSnapshot = Dict[str, Dict[TokenPair, PricePoint]]
# venue id -> pair key -> quoted price of token_a in token_b
QuoteMatrix = Dict[str, Dict[str, float]]
GasEstimator = Callable[[Dict[str, Any]], Awaitable[float]]


def gas_cost(gas_price_gwei: float, gas_units: int) -> float:
    """Gas cost in native units for a flat gas-unit assumption."""
    return gas_price_gwei * gas_units / 1e9


def find_opportunities(
    quotes: QuoteMatrix,
    min_profit_percentage: float,
    gas_price_gwei: float,
    assumed_gas_units: int = 200_000,
    trade_size: float = 1.0,
) -> List[Dict[str, Any]]:
    """
    Compare every quoted pair across every pair of venues.

    A pair is only compared between two venues that both quote it, using each
    venue's own quote as the ratio. The source venue is the one with the lower
    ratio.

    Returns plain dicts so the result can cross a process boundary.
    """
    venues = sorted(quotes)
    cost = gas_cost(gas_price_gwei, assumed_gas_units)
    candidates = []

    for venue_1, venue_2 in combinations(venues, 2):
        ratios_1 = quotes[venue_1]
        ratios_2 = quotes[venue_2]

        for pair_key in sorted(ratios_1.keys() & ratios_2.keys()):
            ratio_1 = ratios_1[pair_key]
            ratio_2 = ratios_2[pair_key]
            if ratio_1 <= 0 or ratio_2 <= 0:
                continue

            profit_percentage = abs(ratio_1 - ratio_2) / min(ratio_1, ratio_2) * 100
            estimated_profit = trade_size * profit_percentage / 100 - cost

            if profit_percentage < min_profit_percentage or estimated_profit <= 0:
                continue

            if ratio_1 <= ratio_2:
                source, target, source_ratio, target_ratio = venue_1, venue_2, ratio_1, ratio_2
            else:
                source, target, source_ratio, target_ratio = venue_2, venue_1, ratio_2, ratio_1

            token_a, _, token_b = pair_key.partition(":")
            candidates.append({
                "pair": pair_key,
                "token_a": token_a,
                "token_b": token_b,
                "source_venue": source,
                "target_venue": target,
                "source_ratio": source_ratio,
                "target_ratio": target_ratio,
                "profit_percentage": profit_percentage,
                "estimated_profit": estimated_profit,
                "gas_cost": cost,
                "trade_size": trade_size,
            })

    candidates.sort(key=lambda c: (-c["profit_percentage"], c["gas_cost"]))
    return candidates


def scan_payload_handler(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Worker entry point for `scan` requests."""
    return find_opportunities(
        quotes=payload["quotes"],
        min_profit_percentage=payload["min_profit_percentage"],
        gas_price_gwei=payload["gas_price_gwei"],
        assumed_gas_units=payload.get("assumed_gas_units", 200_000),
        trade_size=payload.get("trade_size", 1.0),
    )


def build_quote_matrix(snapshot: QuoteSnapshot) -> QuoteMatrix:
    """Per-venue quotes keyed by canonical pair key. Non-positive quotes are dropped."""
    matrix: QuoteMatrix = {}

    for venue_id, venue_quotes in snapshot.items():
        ratios = {pair.key: point.price for pair, point in venue_quotes.items() if point.price > 0}
        if ratios:
            matrix[venue_id] = ratios

    return matrix


class OpportunityScanner:
    """Builds scan requests and turns worker results into opportunities."""

    def __init__(
        self,
        offloader: Optional['ComputeOffloader'] = None,
        gas_estimator: Optional[GasEstimator] = None,
        stale_after: float = 120.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialise scanner.

        Args:
            offloader: Worker used for the matrix scan; scans run inline without one
            gas_estimator: Optional per-candidate gas cost estimate replacing the
                flat assumption
            stale_after: Quote age in seconds at which confidence reaches zero
            clock: Wall clock used for quote ages
        """
        self.offloader = offloader
        self.gas_estimator = gas_estimator
        self.stale_after = stale_after
        self._clock = clock
        self.last_scan_time: Optional[float] = None
        self.scan_count = 0

    def build_payload(
        self,
        snapshot: QuoteSnapshot,
        execution: ExecutionConfig,
        monitoring: MonitoringConfig,
    ) -> Dict[str, Any]:
        """Minimal serialisable payload for a scan."""
        return {
            "quotes": build_quote_matrix(snapshot),
            "min_profit_percentage": execution.min_profit_percentage,
            "gas_price_gwei": monitoring.gas_price_gwei * execution.gas_price_multiplier(),
            "assumed_gas_units": monitoring.assumed_gas_units,
            "trade_size": execution.max_trade_size,
        }

    async def run_scan(self, payload: Dict[str, Any], epoch: int = 0) -> Tuple[int, List[Dict[str, Any]]]:
        """Run the matrix scan, offloaded when possible. Returns (epoch, candidates)."""
        if self.offloader is None:
            return epoch, scan_payload_handler(payload)

        response = await self.offloader.submit("scan", payload, epoch=epoch)
        return response.epoch, self.offloader.unwrap(response)

    async def to_opportunities(
        self,
        candidates: Iterable[Dict[str, Any]],
        snapshot: QuoteSnapshot,
        tokens: Dict[str, Token],
        min_profit_percentage: float,
    ) -> List[ArbitrageOpportunity]:
        """Convert worker candidates into annotated opportunities."""
        now = self._clock()
        quote_times = {
            (venue_id, pair.key): point.timestamp
            for venue_id, venue_quotes in snapshot.items()
            for pair, point in venue_quotes.items()
        }

        opportunities = []
        for candidate in candidates:
            token_in = tokens.get(candidate["token_a"], Token(candidate["token_a"]))
            token_out = tokens.get(candidate["token_b"], Token(candidate["token_b"]))

            gas_estimate = candidate["gas_cost"]
            estimated_profit = candidate["estimated_profit"]

            if self.gas_estimator is not None:
                gas_estimate = await self.gas_estimator(candidate)
                estimated_profit = (
                    candidate["trade_size"] * candidate["profit_percentage"] / 100 - gas_estimate
                )
                if estimated_profit <= 0:
                    continue

            quote_age = now - min(
                quote_times.get((candidate["source_venue"], candidate["pair"]), now),
                quote_times.get((candidate["target_venue"], candidate["pair"]), now),
            )
            confidence, risk = self.annotate(candidate["profit_percentage"], quote_age)

            opportunities.append(ArbitrageOpportunity(
                id=uuid.uuid4().hex,
                token_in=token_in,
                token_out=token_out,
                source_venue=candidate["source_venue"],
                target_venue=candidate["target_venue"],
                profit_percentage=candidate["profit_percentage"],
                estimated_profit=estimated_profit,
                gas_estimate=gas_estimate,
                trade_size=candidate["trade_size"],
                timestamp=now,
                confidence_score=confidence,
                risk_level=risk,
            ))

        opportunities = [o for o in opportunities if o.profit_percentage >= min_profit_percentage]
        opportunities.sort(key=lambda o: (-o.profit_percentage, o.gas_estimate))
        return opportunities

    def annotate(self, profit_percentage: float, quote_age: float) -> Tuple[float, RiskLevel]:
        """Confidence falls with quote age; implausibly wide spreads are risky."""
        freshness = max(0.0, 1.0 - max(quote_age, 0.0) / self.stale_after)

        if profit_percentage > 10:
            spread_factor = 0.5
        elif profit_percentage > 5:
            spread_factor = 0.8
        else:
            spread_factor = 1.0

        confidence = round(freshness * spread_factor, 4)

        if profit_percentage > 10 or confidence < 0.3:
            risk = RiskLevel.HIGH
        elif profit_percentage > 3 or confidence < 0.6:
            risk = RiskLevel.MEDIUM
        else:
            risk = RiskLevel.LOW

        return confidence, risk

    async def scan(
        self,
        snapshot: QuoteSnapshot,
        tokens: Dict[str, Token],
        execution: ExecutionConfig,
        monitoring: MonitoringConfig,
        epoch: int = 0,
    ) -> Tuple[int, List[ArbitrageOpportunity]]:
        """Full scan: payload, (offloaded) detection, annotation."""
        venues_with_quotes = [v for v, quotes in snapshot.items() if quotes]
        if len(venues_with_quotes) < 2:
            logger.debug("Fewer than two venues quoted, skipping scan")
            return epoch, []

        payload = self.build_payload(snapshot, execution, monitoring)
        response_epoch, candidates = await self.run_scan(payload, epoch)
        opportunities = await self.to_opportunities(
            candidates, snapshot, tokens, execution.min_profit_percentage
        )

        self.last_scan_time = self._clock()
        self.scan_count += 1
        logger.info(f"Scan found {len(opportunities)} opportunities")

        return response_epoch, opportunities
