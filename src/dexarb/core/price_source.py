"""Price source interfaces, price observers and the ccxt-backed REST source."""
import ccxt
import asyncio
import time
from typing import Callable, Dict, Optional, Protocol, runtime_checkable
from loguru import logger

from dexarb.models import PricePoint, Token, TokenPair, Venue
from dexarb.infrastructure.error_handling import TransientFetchError


@runtime_checkable
class PriceSource(Protocol):
    """Pull-based quotes: price of token_a expressed in token_b on one venue."""

    async def fetch_quote(self, venue: Venue, token_a: Token, token_b: Token) -> PricePoint:
        ...


class PriceObserver(Protocol):
    """Receives every accepted price update."""

    def on_price(self, pair: TokenPair, point: PricePoint) -> None:
        ...


class Subscription:
    """Handle for a registered observer or stream. Closing it is the owner's job."""

    def __init__(self, on_close: Callable[[], None]):
        self._on_close = on_close
        self.closed = False

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._on_close()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc):
        self.close()


@runtime_checkable
class PriceStreamSource(Protocol):
    """Push-based quotes, used alongside polling when a venue offers them."""

    def subscribe(self, venue: Venue, pair: TokenPair, observer: PriceObserver) -> Subscription:
        ...


class CcxtPriceSource:
    """
    REST price source backed by ccxt.

    Venue ids are ccxt exchange ids unless mapped otherwise. A pair is looked up as
    "A/B" first and then as "B/A", inverting the price for the latter.
    """

    def __init__(self, exchange_ids: Optional[Dict[str, str]] = None,
                 exchange_options: Optional[Dict] = None):
        """
        Initialise price source.

        Args:
            exchange_ids: Optional venue id -> ccxt exchange id mapping
            exchange_options: Extra options passed to every ccxt exchange
        """
        self.exchange_ids = exchange_ids or {}
        self.exchange_options = exchange_options or {}
        self._exchanges: Dict[str, ccxt.Exchange] = {}
        self._markets: Dict[str, Dict] = {}

    def _exchange_for(self, venue: Venue) -> ccxt.Exchange:
        exchange = self._exchanges.get(venue.id)
        if exchange is not None:
            return exchange

        exchange_id = self.exchange_ids.get(venue.id, venue.id)
        try:
            exchange_class = getattr(ccxt, exchange_id)
        except AttributeError:
            raise ValueError(f"Unknown ccxt exchange for venue {venue.id}: {exchange_id}")

        exchange = exchange_class({'enableRateLimit': True, **self.exchange_options})
        self._exchanges[venue.id] = exchange
        logger.info(f"Initialised ccxt client {exchange_id} for venue {venue.name}")
        return exchange

    async def _load_markets(self, venue: Venue, exchange: ccxt.Exchange) -> Dict:
        markets = self._markets.get(venue.id)
        if markets is None:
            markets = await asyncio.to_thread(exchange.load_markets)
            self._markets[venue.id] = markets
            logger.info(f"Loaded {len(markets)} markets from {venue.name}")
        return markets

    @staticmethod
    def _ticker_price(ticker: Dict) -> Optional[float]:
        last = ticker.get('last')
        if last:
            return float(last)

        bid, ask = ticker.get('bid'), ticker.get('ask')
        if bid and ask:
            return (float(bid) + float(ask)) / 2
        return None

    async def fetch_quote(self, venue: Venue, token_a: Token, token_b: Token) -> PricePoint:
        """
        Fetch the price of token_a in token_b.

        Raises:
            TransientFetchError: on network errors, missing markets or empty tickers
        """
        exchange = self._exchange_for(venue)

        try:
            markets = await self._load_markets(venue, exchange)

            direct = f"{token_a.symbol}/{token_b.symbol}"
            inverse = f"{token_b.symbol}/{token_a.symbol}"

            if direct in markets:
                symbol, inverted = direct, False
            elif inverse in markets:
                symbol, inverted = inverse, True
            else:
                raise TransientFetchError(f"{venue.name} has no market for {direct}")

            ticker = await asyncio.to_thread(exchange.fetch_ticker, symbol)

        except ccxt.BaseError as e:
            raise TransientFetchError(f"{venue.name} quote failed: {e}") from e

        price = self._ticker_price(ticker or {})
        if not price or price <= 0:
            raise TransientFetchError(f"{venue.name} returned no price for {symbol}")

        timestamp = ticker.get('timestamp')
        return PricePoint(
            price=1 / price if inverted else price,
            timestamp=timestamp / 1000 if timestamp else time.time(),
            venue_id=venue.id,
        )

    def close(self):
        """Close exchange connections."""
        for venue_id, exchange in self._exchanges.items():
            try:
                if hasattr(exchange, 'close'):
                    exchange.close()
            except Exception as e:
                logger.debug(f"Error closing exchange for {venue_id}: {e}")
        self._exchanges.clear()
        self._markets.clear()
