"""Monitoring coordinator: polling loop, price bookkeeping and scan dispatch."""
import asyncio
import time
from itertools import count
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from loguru import logger

from dexarb.config import Config, apply_overrides, split_overrides
from dexarb.models import (
    ArbitrageOpportunity, ExecutionResult, MonitoringStats, PricePoint, Token, TokenPair, Venue
)
from dexarb.core.funding import FundingSelector
from dexarb.core.offloader import ComputeOffloader
from dexarb.core.opportunity_manager import OpportunityManager
from dexarb.core.price_history import PriceHistoryStore
from dexarb.core.price_source import PriceObserver, PriceSource, PriceStreamSource, Subscription
from dexarb.core.scanner import OpportunityScanner, QuoteSnapshot
from dexarb.core.settlement import SettlementExecutor
from dexarb.infrastructure.cache import CacheKeys, TTLCache
from dexarb.infrastructure.database import ExecutionJournal
from dexarb.infrastructure.error_handling import (
    ErrorHandler, NoActiveVenues, OffloadError, RateLimitExceeded, StaleResponse,
    TransientFetchError
)
from dexarb.infrastructure.rate_limiter import RateLimiter


class MonitoringCoordinator:
    """
    Drives price monitoring for a set of venues and token pairs.

    Each polling cycle fetches a quote per (venue, pair) through the rate limiter,
    skipping pairs whose cached quote is still fresh. Every K cycles the current
    quote snapshot is scanned on the offloaded worker and the results are merged
    into the opportunity manager. Results from a previous monitoring run, or from
    a scan older than one already applied, are discarded.
    """

    def __init__(
        self,
        price_source: PriceSource,
        venues: Iterable[Venue],
        config: Optional[Config] = None,
        offloader: Optional[ComputeOffloader] = None,
        scanner: Optional[OpportunityScanner] = None,
        manager: Optional[OpportunityManager] = None,
        funding: Optional[FundingSelector] = None,
        settlement: Optional[SettlementExecutor] = None,
        journal: Optional[ExecutionJournal] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialise coordinator.

        Args:
            price_source: Quote provider; stream subscriptions are used when it
                also implements PriceStreamSource
            venues: Venues to monitor (inactive ones are skipped)
            config: Application configuration
            offloader: Worker for scans and analytics
            scanner: Opportunity scanner (built on the offloader if omitted)
            manager: Opportunity manager (built from the execution config if omitted)
            funding: Funding selector handed to a default manager
            settlement: Settlement executor handed to a default manager
            journal: Execution journal handed to a default manager
            clock: Wall clock
            monotonic: Monotonic clock for rate limiting and caching
        """
        self.config = config or Config()
        self.price_source = price_source
        self._venues: Dict[str, Venue] = {v.id: v for v in venues}
        self._clock = clock
        self._monotonic = monotonic

        monitoring = self.config.monitoring
        self.rate_limiter = self._build_rate_limiter()
        self.price_cache = TTLCache(
            max_size=monitoring.price_cache_size,
            ttl=monitoring.price_cache_ttl,
            name="prices",
            clock=monotonic,
        )
        self.history = PriceHistoryStore(monitoring.price_history_length)

        self.offloader = offloader or ComputeOffloader(self.config.offload)
        self.scanner = scanner or OpportunityScanner(self.offloader, clock=clock)
        self.manager = manager or OpportunityManager(
            config=self.config.execution,
            funding=funding,
            settlement=settlement,
            journal=journal,
            retention=monitoring.opportunity_retention,
            clock=clock,
        )

        self._pairs: Dict[str, TokenPair] = {}
        self._listeners: Dict[int, PriceObserver] = {}
        self._listener_ids = count()
        self._stream_subscriptions: Dict[Tuple[str, str], Subscription] = {}

        self.is_running = False
        self._epoch = 0
        self._scan_sequence = 0
        self._applied_scan = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._scan_tasks: set = set()

        self.cycle_count = 0
        self.error_handler = ErrorHandler()

    def _build_rate_limiter(self) -> RateLimiter:
        monitoring = self.config.monitoring
        return RateLimiter(
            max_requests=monitoring.max_requests_per_minute,
            time_window=monitoring.rate_limit_window,
            name="price-fetch",
            clock=self._monotonic,
        )

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def active_venues(self) -> List[Venue]:
        return [v for v in self._venues.values() if v.active]

    # ---- lifecycle ----

    async def start_monitoring(self) -> bool:
        """
        Start the polling loop.

        Returns False if monitoring is already running.

        Raises:
            NoActiveVenues: if no venue is active
        """
        if self.is_running:
            logger.warning("Monitoring already running")
            return False

        venues = self.active_venues
        if not venues:
            raise NoActiveVenues("Cannot start monitoring without an active venue")

        self._epoch += 1
        self.is_running = True

        logger.info(
            f"Starting monitoring on chain {self.config.monitoring.chain_id}: "
            f"{len(venues)} venues, {len(self._pairs)} pairs, "
            f"every {self.config.monitoring.polling_interval}s (epoch {self._epoch})"
        )

        for pair in self._pairs.values():
            self._subscribe_streams(pair)

        self._poll_task = asyncio.create_task(self._poll_loop(self._epoch))
        return True

    async def stop_monitoring(self):
        """Stop polling and close stream subscriptions. Safe to call repeatedly."""
        if not self.is_running:
            return

        self.is_running = False
        self._epoch += 1

        await self._cancel_poll_task()

        for subscription in self._stream_subscriptions.values():
            subscription.close()
        self._stream_subscriptions.clear()

        logger.info("Monitoring stopped")

    async def _cancel_poll_task(self):
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self):
        """Stop monitoring and release every owned resource."""
        await self.stop_monitoring()

        scans = list(self._scan_tasks)
        for task in scans:
            task.cancel()
        if scans:
            await asyncio.gather(*scans, return_exceptions=True)

        await self.manager.shutdown()
        await self.offloader.shutdown()

        close = getattr(self.price_source, "close", None)
        if callable(close):
            close()

        if self.manager.journal is not None:
            self.manager.journal.close()

    # ---- polling ----

    async def _poll_loop(self, epoch: int):
        while self.is_running and epoch == self._epoch:
            started = self._monotonic()

            try:
                await self.poll_once()
            except Exception as e:
                self.error_handler.record_error(e)
                logger.error(f"Polling cycle failed: {e}")

            elapsed = self._monotonic() - started
            await asyncio.sleep(max(0.0, self.config.monitoring.polling_interval - elapsed))

    async def poll_once(self):
        """One polling cycle: fetch every (venue, pair), then scan every K cycles."""
        self.cycle_count += 1
        epoch = self._epoch

        fetches = [
            self._fetch(venue, pair, epoch)
            for venue in self.active_venues
            for pair in list(self._pairs.values())
        ]
        if fetches:
            await asyncio.gather(*fetches)

        if self.cycle_count % self.config.monitoring.scan_every_cycles == 0:
            self._scan_sequence += 1
            task = asyncio.create_task(self._scan(epoch, self._scan_sequence))
            self._scan_tasks.add(task)
            task.add_done_callback(self._scan_tasks.discard)

        self.manager.sweep()

    async def _fetch(self, venue: Venue, pair: TokenPair, epoch: int):
        cache_key = CacheKeys.quote(venue.id, pair.key)
        if self.price_cache.get(cache_key) is not None:
            return

        try:
            if not self.rate_limiter.try_acquire():
                raise RateLimitExceeded(f"Skipping {pair} on {venue.name}: rate limit reached")

            point = await asyncio.wait_for(
                self.price_source.fetch_quote(venue, pair.token_a, pair.token_b),
                timeout=self.config.monitoring.fetch_timeout,
            )
        except RateLimitExceeded as e:
            self.error_handler.record_error(e)
            logger.warning(str(e))
            return
        except asyncio.TimeoutError:
            self.error_handler.record_error("TransientFetchError")
            logger.warning(f"Quote for {pair} on {venue.name} timed out")
            return
        except TransientFetchError as e:
            self.error_handler.record_error(e)
            logger.warning(f"Quote for {pair} on {venue.name} failed: {e}")
            return
        except Exception as e:
            self.error_handler.record_error(e)
            logger.error(f"Unexpected error fetching {pair} on {venue.name}: {e}")
            return

        if epoch != self._epoch:
            logger.debug(f"Dropping quote for {pair} from a previous monitoring run")
            return

        if point.venue_id != venue.id:
            point = PricePoint(price=point.price, timestamp=point.timestamp, venue_id=venue.id)

        self._accept_price(pair, point)

    def on_price(self, pair: TokenPair, point: PricePoint):
        """PriceObserver hook for streamed quotes."""
        if self.is_running:
            self._accept_price(pair, point)

    def _accept_price(self, pair: TokenPair, point: PricePoint):
        if pair.key not in self._pairs or point.price <= 0:
            return

        self.price_cache.put(CacheKeys.quote(point.venue_id, pair.key), point)
        self.history.record(pair, point)

        for listener_id, listener in list(self._listeners.items()):
            try:
                listener.on_price(pair, point)
            except Exception as e:
                logger.error(f"Price listener {listener_id} failed: {e}")

    # ---- scanning ----

    def _snapshot(self) -> QuoteSnapshot:
        snapshot: QuoteSnapshot = {}
        for venue in self.active_venues:
            quotes = {}
            for pair in self._pairs.values():
                point = self.price_cache.get(CacheKeys.quote(venue.id, pair.key))
                if point is not None:
                    quotes[pair] = point
            if quotes:
                snapshot[venue.id] = quotes
        return snapshot

    def _tokens(self) -> Dict[str, Token]:
        tokens = {}
        for pair in self._pairs.values():
            for token in pair.tokens:
                tokens[token.address] = token
        return tokens

    def _check_current(self, epoch: int, sequence: int):
        if not self.is_running or epoch != self._epoch:
            raise StaleResponse(f"Scan result from epoch {epoch}, current is {self._epoch}")
        if sequence <= self._applied_scan:
            raise StaleResponse(f"Scan {sequence} superseded by scan {self._applied_scan}")

    async def _scan(self, epoch: int, sequence: int) -> List[ArbitrageOpportunity]:
        try:
            response_epoch, opportunities = await self.scanner.scan(
                self._snapshot(),
                self._tokens(),
                self.config.execution,
                self.config.monitoring,
                epoch=epoch,
            )
        except TransientFetchError as e:
            self.error_handler.record_error(e)
            logger.warning(f"Scan {sequence} timed out: {e}")
            return []
        except OffloadError as e:
            self.error_handler.record_error(e)
            logger.error(f"Scan {sequence} failed: {e}")
            return []
        except Exception as e:
            self.error_handler.record_error(e)
            logger.error(f"Unexpected error in scan {sequence}: {e}")
            return []

        try:
            self._check_current(response_epoch, sequence)
        except StaleResponse as e:
            logger.debug(f"Discarding scan result: {e}")
            return []

        self._applied_scan = sequence
        return self.manager.ingest(opportunities)

    # ---- configuration ----

    def update_config(self, overrides: Dict):
        """
        Apply a partial configuration update.

        All sections are validated before anything is applied.

        Raises:
            ValueError: unknown field or invalid value
        """
        routed = split_overrides(overrides)
        old = self.config

        monitoring = apply_overrides(old.monitoring, routed["monitoring"])
        execution = apply_overrides(old.execution, routed["execution"])
        offload = apply_overrides(old.offload, routed["offload"])

        self.config = old.model_copy(update={
            "monitoring": monitoring,
            "execution": execution,
            "offload": offload,
        })

        if (monitoring.max_requests_per_minute != old.monitoring.max_requests_per_minute
                or monitoring.rate_limit_window != old.monitoring.rate_limit_window):
            self.rate_limiter = self._build_rate_limiter()

        if monitoring.price_history_length != old.monitoring.price_history_length:
            self.history.set_capacity(monitoring.price_history_length)

        self.price_cache.reconfigure(
            max_size=monitoring.price_cache_size, ttl=monitoring.price_cache_ttl
        )
        self.manager.retention = monitoring.opportunity_retention
        self.manager.update_config(execution)
        self.offloader.config = offload

        logger.info(f"Configuration updated: {', '.join(sorted(overrides))}")

        if self.is_running and monitoring.polling_interval != old.monitoring.polling_interval:
            # restart the timer on the same epoch so in-flight scans stay valid
            old_task = self._poll_task
            self._poll_task = asyncio.create_task(self._poll_loop(self._epoch))
            if old_task is not None:
                old_task.cancel()

    # ---- pairs, venues and listeners ----

    def add_pair_to_monitor(self, token_a: Token, token_b: Token) -> bool:
        """Start monitoring a pair. Returns False if it is already monitored."""
        pair = TokenPair.of(token_a, token_b)
        if pair.key in self._pairs:
            return False

        self._pairs[pair.key] = pair
        if self.is_running:
            self._subscribe_streams(pair)

        logger.info(f"Monitoring pair {pair}")
        return True

    def remove_pair_from_monitor(self, token_a: Token, token_b: Token) -> bool:
        """Stop monitoring a pair and forget its prices. Returns False if unknown."""
        pair = TokenPair.of(token_a, token_b)
        if self._pairs.pop(pair.key, None) is None:
            return False

        for venue_id in self._venues:
            self.price_cache.delete(CacheKeys.quote(venue_id, pair.key))
            subscription = self._stream_subscriptions.pop((venue_id, pair.key), None)
            if subscription is not None:
                subscription.close()
        self.history.remove(pair)

        logger.info(f"Stopped monitoring pair {pair}")
        return True

    def get_monitored_pairs(self) -> List[TokenPair]:
        return list(self._pairs.values())

    def set_venue_active(self, venue_id: str, active: bool) -> bool:
        venue = self._venues.get(venue_id)
        if venue is None:
            return False
        venue.active = active
        return True

    def _subscribe_streams(self, pair: TokenPair):
        if not isinstance(self.price_source, PriceStreamSource):
            return

        for venue in self.active_venues:
            key = (venue.id, pair.key)
            if key in self._stream_subscriptions:
                continue
            try:
                self._stream_subscriptions[key] = self.price_source.subscribe(venue, pair, self)
            except Exception as e:
                logger.warning(f"Stream subscription for {pair} on {venue.name} failed: {e}")

    def add_price_listener(self, listener: PriceObserver) -> Subscription:
        """Register an observer for accepted price updates. Close the handle to unsubscribe."""
        listener_id = next(self._listener_ids)
        self._listeners[listener_id] = listener
        return Subscription(lambda: self._listeners.pop(listener_id, None))

    # ---- opportunities ----

    def get_pending_opportunities(self) -> List[ArbitrageOpportunity]:
        return self.manager.get_pending_opportunities()

    async def execute_opportunity(self, opportunity_id: str) -> ExecutionResult:
        """
        Execute an opportunity manually, regardless of auto_execute.

        Raises:
            OpportunityNotFound: unknown id
            AlreadyTerminal: opportunity already completed or failed
        """
        return await self.manager.execute_opportunity(opportunity_id)

    # ---- read-only views ----

    def get_stats(self) -> MonitoringStats:
        return MonitoringStats(
            is_running=self.is_running,
            pair_count=len(self._pairs),
            venue_count=len(self.active_venues),
            pending_count=self.manager.pending_count,
            requests_remaining=self.rate_limiter.remaining(),
            executing_count=self.manager.executing_count,
            cycle_count=self.cycle_count,
            scan_count=self.scanner.scan_count,
            last_scan_at=self.scanner.last_scan_time,
            auto_execution_halted=self.manager.auto_execution_halted,
        )

    def get_price_history(self, token_a: Token, token_b: Token,
                          n: Optional[int] = None) -> List[PricePoint]:
        return self.history.recent(TokenPair.of(token_a, token_b), n)

    async def get_volatility(self, token_a: Token, token_b: Token,
                             venue_id: Optional[str] = None) -> float:
        """Annualised volatility of a pair's recorded prices, computed on the worker."""
        points = [
            p for p in self.get_price_history(token_a, token_b)
            if venue_id is None or p.venue_id == venue_id
        ]
        return await self.offloader.volatility(
            [p.price for p in points], [p.timestamp for p in points]
        )

    async def get_candles(self, token_a: Token, token_b: Token,
                          interval: str = "minute", venue_id: Optional[str] = None) -> List[Dict]:
        """OHLC candles of a pair's recorded prices, computed on the worker."""
        points = [
            {"price": p.price, "timestamp": p.timestamp}
            for p in self.get_price_history(token_a, token_b)
            if venue_id is None or p.venue_id == venue_id
        ]
        return await self.offloader.candleify(points, interval)
