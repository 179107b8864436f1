"""Unit tests for funding providers and selection."""
import pytest
from unittest.mock import AsyncMock, Mock

from dexarb.core.funding import (
    FeeScheduleProvider, FundingProvider, FundingSelector, default_providers
)
from dexarb.models import FundingOptions, FundingQuote, Token
from dexarb.infrastructure.error_handling import NoProviderForToken, TransientFetchError


def quote(fee_amount, provider="aave"):
    token = Token("0x01", "A")
    return FundingQuote(provider, token, 1.0, fee_amount * 100, fee_amount, 1.0 + fee_amount)


def failing_provider(name, supported, error):
    provider = Mock(spec=FundingProvider)
    provider.name = name
    provider.supports.side_effect = lambda token: token.address in supported
    provider.get_fee = AsyncMock(side_effect=error)
    return provider


class TestFeeScheduleProvider:
    """Test flat-fee providers."""

    @pytest.mark.asyncio
    async def test_fee_quote(self, weth):
        """Test fee arithmetic."""
        provider = FeeScheduleProvider("aave", 0.0009, [weth.address])

        result = await provider.get_fee(weth, 100.0)

        assert result.provider == "aave"
        assert result.fee_amount == pytest.approx(0.09)
        assert result.fee_percentage == pytest.approx(0.09)
        assert result.total_required == pytest.approx(100.09)

    def test_supports_is_case_insensitive(self, weth):
        """Test mixed-case configured addresses match lowercased tokens."""
        provider = FeeScheduleProvider("aave", 0.0009, ["0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"])

        assert provider.supports(weth)

    @pytest.mark.asyncio
    async def test_unsupported_token(self, weth):
        """Test quoting an unsupported token."""
        provider = FeeScheduleProvider("x", 0.001, [])

        with pytest.raises(NoProviderForToken):
            await provider.get_fee(weth, 1.0)

    @pytest.mark.asyncio
    async def test_execute(self, weth):
        """Test a funded execution reports its fee."""
        provider = FeeScheduleProvider("aave", 0.0009, [weth.address])

        result = await provider.execute(FundingOptions("aave", weth, 10.0, "0xrecipient"))

        assert result.success is True
        assert result.fee == pytest.approx(0.009)
        assert result.tx_ref.startswith("0x")

    def test_negative_fee_rejected(self):
        """Test negative fee rates are rejected."""
        with pytest.raises(ValueError):
            FeeScheduleProvider("x", -0.1, [])

    def test_default_providers(self, weth):
        """Test the shipped providers."""
        providers = {p.name: p for p in default_providers()}

        assert set(providers) == {"aave", "uniswap"}
        assert providers["aave"].fee_rate == 0.0009
        assert providers["uniswap"].fee_rate == 0.003
        assert providers["uniswap"].supports(weth)


class TestFundingSelector:
    """Test provider selection and profitability."""

    @pytest.fixture
    def selector(self):
        return FundingSelector()

    @pytest.mark.asyncio
    async def test_select_cheapest(self, selector, weth):
        """Test the lowest fee amount wins."""
        best = await selector.select_best(weth, 10.0)

        assert best.provider == "aave"
        assert best.fee_amount == pytest.approx(0.009)

    @pytest.mark.asyncio
    async def test_select_only_supporting_provider(self, selector):
        """Test tokens only one provider lends."""
        wbtc = Token("0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", "WBTC", 8)
        selector = FundingSelector([FeeScheduleProvider("uniswap", 0.003, ["0xdead"]),
                                    FeeScheduleProvider("aave", 0.0009, [wbtc.address])])

        assert (await selector.select_best(wbtc, 1.0)).provider == "aave"

    @pytest.mark.asyncio
    async def test_no_provider(self, selector):
        """Test unsupported tokens raise NoProviderForToken."""
        with pytest.raises(NoProviderForToken):
            await selector.select_best(Token("0x1234"), 1.0)

    @pytest.mark.asyncio
    async def test_failed_quote_skipped(self, weth):
        """Test a failing provider does not block the others."""
        broken = failing_provider("broken", {weth.address}, ValueError("boom"))
        selector = FundingSelector([broken, FeeScheduleProvider("uniswap", 0.003, [weth.address])])

        best = await selector.select_best(weth, 1.0)

        assert best.provider == "uniswap"

    @pytest.mark.asyncio
    async def test_provider_quote_retried_on_transient_error(self, weth):
        """Test a provider's fee quote is asked again after a transient failure."""
        flaky = failing_provider(
            "flaky", {weth.address}, [TransientFetchError("timeout"), quote(0.001, "flaky")]
        )
        selector = FundingSelector([flaky])

        best = await selector.select_best(weth, 1.0)

        assert best.provider == "flaky"
        assert flaky.get_fee.await_count == 2
        flaky.get_fee.assert_awaited_with(weth, 1.0)

    @pytest.mark.asyncio
    async def test_all_quotes_fail(self, weth):
        """Test a transient error when no provider could quote."""
        broken = failing_provider("broken", {weth.address}, ValueError("boom"))
        selector = FundingSelector([broken])

        with pytest.raises(TransientFetchError):
            await selector.select_best(weth, 1.0)

    def test_net_profitability_rejects_fee_above_profit(self):
        """Test 0.10 expected profit with a 0.12 fee is not profitable."""
        check = FundingSelector.net_profitability(0.10, quote(0.12))

        assert check.is_profitable is False
        assert check.net_profit == pytest.approx(-0.02)
        assert check.fee_amount == 0.12

    def test_net_profitability_zero_is_not_profitable(self):
        """Test break-even is rejected."""
        assert FundingSelector.net_profitability(0.12, quote(0.12)).is_profitable is False

    def test_net_profitability_positive(self):
        """Test a profitable trade after fees."""
        check = FundingSelector.net_profitability(0.5, quote(0.1))

        assert check.is_profitable is True
        assert check.net_profit == pytest.approx(0.4)
        assert check.provider == "aave"

    @pytest.mark.asyncio
    async def test_calculate_profitability(self, selector, weth):
        """Test selection and net check combined."""
        check = await selector.calculate_profitability(weth, 100.0, expected_profit=0.05)

        assert check.provider == "aave"
        assert check.is_profitable is False

    @pytest.mark.asyncio
    async def test_calculate_profitability_preferred(self, selector, weth):
        """Test a preferred provider is used even when not cheapest."""
        check = await selector.calculate_profitability(weth, 10.0, 1.0, preferred_provider="uniswap")

        assert check.provider == "uniswap"
        assert check.fee_amount == pytest.approx(0.03)

    @pytest.mark.asyncio
    async def test_calculate_profitability_unknown_preferred(self, selector, weth):
        """Test an unknown preferred provider."""
        with pytest.raises(NoProviderForToken):
            await selector.calculate_profitability(weth, 1.0, 1.0, preferred_provider="nope")

    @pytest.mark.asyncio
    async def test_execute_dispatch(self, selector, weth):
        """Test execution goes to the named provider."""
        result = await selector.execute(FundingOptions("uniswap", weth, 1.0, "0xrecipient"))

        assert result.success is True
        assert result.fee == pytest.approx(0.003)

    @pytest.mark.asyncio
    async def test_execute_unknown_provider(self, selector, weth):
        """Test execution with an unknown provider."""
        result = await selector.execute(FundingOptions("nope", weth, 1.0, "0xrecipient"))

        assert result.success is False
        assert "nope" in result.error

    def test_register_provider(self, selector):
        """Test providers can be added."""
        selector.register_provider(FeeScheduleProvider("custom", 0.0001, []))

        assert selector.get_provider("custom") is not None
        assert len(selector.providers) == 3
