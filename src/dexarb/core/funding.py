"""Flash-funding providers and cheapest-provider selection."""
import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
from loguru import logger

from dexarb.models import (
    FundingOptions, FundingQuote, FundingResult, ProfitabilityCheck, Token
)
from dexarb.infrastructure.error_handling import (
    NoProviderForToken, TransientFetchError, async_retry_with_backoff
)

AAVE_FEE_RATE = 0.0009
UNISWAP_FEE_RATE = 0.003

WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
DAI = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
WBTC = "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599"

AAVE_TOKENS = [WETH, USDC, USDT, DAI, WBTC]
UNISWAP_TOKENS = [WETH, USDC, USDT, DAI]


class FundingProvider(ABC):
    """A source of flash-funded capital."""

    name: str = "provider"

    @property
    @abstractmethod
    def supported_tokens(self) -> List[str]:
        """Lowercased addresses this provider can lend."""

    def supports(self, token: Token) -> bool:
        return token.address in self.supported_tokens

    @abstractmethod
    async def get_fee(self, token: Token, amount: float) -> FundingQuote:
        """Quote the cost of borrowing `amount` of `token`."""

    @abstractmethod
    async def execute(self, options: FundingOptions) -> FundingResult:
        """Borrow, run the callback and repay in one operation."""


class FeeScheduleProvider(FundingProvider):
    """Provider with a flat fee rate over a fixed token list."""

    def __init__(self, name: str, fee_rate: float, supported_tokens: Iterable[str]):
        """
        Initialise provider.

        Args:
            name: Provider name used in quotes and logs
            fee_rate: Fee as a fraction of the borrowed amount (0.0009 = 0.09%)
            supported_tokens: Token addresses this provider lends
        """
        if fee_rate < 0:
            raise ValueError("fee_rate must not be negative")

        self.name = name
        self.fee_rate = fee_rate
        self._supported = [address.lower() for address in supported_tokens]

    @property
    def supported_tokens(self) -> List[str]:
        return list(self._supported)

    async def get_fee(self, token: Token, amount: float) -> FundingQuote:
        if not self.supports(token):
            raise NoProviderForToken(f"{self.name} does not lend {token.symbol or token.address}")

        fee_amount = amount * self.fee_rate
        return FundingQuote(
            provider=self.name,
            token=token,
            amount=amount,
            fee_percentage=self.fee_rate * 100,
            fee_amount=fee_amount,
            total_required=amount + fee_amount,
        )

    async def execute(self, options: FundingOptions) -> FundingResult:
        if not self.supports(options.token):
            return FundingResult(
                success=False,
                error=f"{self.name} does not lend {options.token.address}",
            )

        fee = options.amount * self.fee_rate
        logger.info(
            f"{self.name}: flash-funding {options.amount} of "
            f"{options.token.symbol or options.token.address} for {options.recipient}"
        )
        return FundingResult(success=True, fee=fee, tx_ref=f"0x{uuid.uuid4().hex}")


def default_providers() -> List[FundingProvider]:
    """The two providers the system ships with."""
    return [
        FeeScheduleProvider("aave", AAVE_FEE_RATE, AAVE_TOKENS),
        FeeScheduleProvider("uniswap", UNISWAP_FEE_RATE, UNISWAP_TOKENS),
    ]


class FundingSelector:
    """Picks the cheapest provider for a borrow and checks net profitability."""

    def __init__(self, providers: Optional[Iterable[FundingProvider]] = None):
        self._providers: Dict[str, FundingProvider] = {}
        for provider in default_providers() if providers is None else providers:
            self.register_provider(provider)

    def register_provider(self, provider: FundingProvider):
        self._providers[provider.name] = provider

    def get_provider(self, name: str) -> Optional[FundingProvider]:
        return self._providers.get(name)

    @property
    def providers(self) -> List[FundingProvider]:
        return list(self._providers.values())

    @async_retry_with_backoff(max_retries=2, initial_delay=0.5, exceptions=(TransientFetchError,))
    async def _quote_from(self, provider: FundingProvider, token: Token, amount: float) -> FundingQuote:
        """Fee quote from one provider, retried on transient failures."""
        return await provider.get_fee(token, amount)

    async def select_best(self, token: Token, amount: float) -> FundingQuote:
        """
        Cheapest quote among providers that lend the token.

        Raises:
            NoProviderForToken: if no provider supports the token
            TransientFetchError: if every supporting provider failed to quote
        """
        candidates = [p for p in self._providers.values() if p.supports(token)]
        if not candidates:
            raise NoProviderForToken(
                f"No funding provider supports {token.symbol or token.address}"
            )

        results = await asyncio.gather(
            *(self._quote_from(p, token, amount) for p in candidates),
            return_exceptions=True,
        )

        quotes = []
        for provider, result in zip(candidates, results):
            if isinstance(result, Exception):
                logger.warning(f"Fee quote from {provider.name} failed: {result}")
                continue
            quotes.append(result)

        if not quotes:
            raise TransientFetchError(
                f"All funding providers failed to quote {token.symbol or token.address}"
            )

        return min(quotes, key=lambda q: q.fee_amount)

    @staticmethod
    def net_profitability(expected_profit: float, quote: FundingQuote) -> ProfitabilityCheck:
        """Expected profit minus the funding fee; profitable only when strictly positive."""
        net_profit = expected_profit - quote.fee_amount
        return ProfitabilityCheck(
            is_profitable=net_profit > 0,
            net_profit=net_profit,
            provider=quote.provider,
            fee_amount=quote.fee_amount,
        )

    async def calculate_profitability(
        self,
        token: Token,
        amount: float,
        expected_profit: float,
        preferred_provider: Optional[str] = None,
    ) -> ProfitabilityCheck:
        """Quote (preferred provider or cheapest) and check the net result."""
        if preferred_provider is not None:
            provider = self._providers.get(preferred_provider)
            if provider is None or not provider.supports(token):
                raise NoProviderForToken(
                    f"{preferred_provider} cannot fund {token.symbol or token.address}"
                )
            quote = await self._quote_from(provider, token, amount)
        else:
            quote = await self.select_best(token, amount)

        return self.net_profitability(expected_profit, quote)

    async def execute(self, options: FundingOptions) -> FundingResult:
        """Dispatch a funding execution to the named provider."""
        provider = self._providers.get(options.provider)
        if provider is None:
            return FundingResult(success=False, error=f"Unknown funding provider: {options.provider}")

        try:
            return await provider.execute(options)
        except Exception as e:
            logger.error(f"Funding via {options.provider} failed: {e}")
            return FundingResult(success=False, error=str(e))
