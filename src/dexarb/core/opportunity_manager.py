"""Opportunity lifecycle, execution scheduling and safety valves."""
import asyncio
import time
from itertools import count
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, TYPE_CHECKING
from loguru import logger

from dexarb.config import ExecutionConfig, MIN_SLIPPAGE, MAX_SLIPPAGE
from dexarb.models import (
    ArbitrageOpportunity, ExecutionResult, FundingQuote, OpportunityStatus, RiskLevel
)
from dexarb.core.funding import FundingSelector
from dexarb.core.settlement import PaperSettlementExecutor, SettlementExecutor
from dexarb.infrastructure.error_handling import (
    AlreadyTerminal, CircuitBreaker, ErrorHandler, ExecutionFailure,
    NoProviderForToken, OpportunityNotFound, TransientFetchError, backoff_delay
)

if TYPE_CHECKING:
    from dexarb.infrastructure.database import ExecutionJournal

NaturalKey = Tuple[str, str, str, str]

# fields refreshed when a rescan supersedes a pending opportunity
MEASURED_FIELDS = (
    "profit_percentage", "estimated_profit", "gas_estimate", "trade_size",
    "timestamp", "confidence_score", "risk_level",
)


def _retrieve_exception(future: asyncio.Future):
    # keeps unawaited auto-execution futures from logging "exception never retrieved"
    if not future.cancelled():
        future.exception()


class OpportunityManager:
    """
    Owns the opportunity set and runs executions under the configured strategy.

    Single writer for opportunity state: scanners hand over results through
    ingest(), everyone else reads copies.
    """

    def __init__(
        self,
        config: Optional[ExecutionConfig] = None,
        funding: Optional[FundingSelector] = None,
        settlement: Optional[SettlementExecutor] = None,
        journal: Optional['ExecutionJournal'] = None,
        retention: float = 3600.0,
        recipient: str = "0x0000000000000000000000000000000000000000",
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialise opportunity manager.

        Args:
            config: Execution parameters
            funding: Flash-funding selector
            settlement: Executor that carries out funded trades
            journal: Optional persistent record of executions
            retention: Seconds a finished opportunity is kept before sweeping
            recipient: Address receiving borrowed funds
            clock: Wall clock for timestamps and retention
        """
        self.config = config or ExecutionConfig()
        self.funding = funding or FundingSelector()
        self.settlement = settlement or PaperSettlementExecutor()
        self.journal = journal
        self.retention = retention
        self.recipient = recipient
        self._clock = clock

        self._opportunities: Dict[str, ArbitrageOpportunity] = {}
        self._live_keys: Dict[NaturalKey, str] = {}
        self._discovery: Dict[str, int] = {}
        self._sequence = count()

        self._queue: List[str] = []
        self._executing: Set[str] = set()
        self._futures: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.circuit_breaker = CircuitBreaker(
            failure_threshold=self.config.circuit_breaker_threshold,
            window=self.config.circuit_breaker_window,
            recovery_timeout=None,
            name="auto-execution",
        )
        self.error_handler = ErrorHandler()
        self.emergency_stop = False
        self.emergency_reason = ""

        self.peak_executing = 0
        self.executed_count = 0
        self.successful_count = 0
        self.failed_count = 0

    # ---- configuration and safety valves ----

    def update_config(self, config: ExecutionConfig):
        """Swap in new execution parameters; a larger slot count takes effect immediately."""
        self.config = config
        self.circuit_breaker.failure_threshold = config.circuit_breaker_threshold
        self.circuit_breaker.window = config.circuit_breaker_window
        self._pump()

    def activate_emergency_stop(self, reason: str = "manual"):
        self.emergency_stop = True
        self.emergency_reason = reason
        logger.critical(f"🚨 EMERGENCY STOP ACTIVATED: {reason}")

    def deactivate_emergency_stop(self):
        self.emergency_stop = False
        self.emergency_reason = ""
        logger.warning("Emergency stop deactivated, executions resumed")
        self._pump()

    @property
    def auto_execution_halted(self) -> bool:
        return self.circuit_breaker.is_open

    def reenable_auto_execution(self):
        """Manually close the circuit breaker after consecutive failures."""
        self.circuit_breaker.reset()
        logger.info("Auto-execution re-enabled")

    # ---- ingestion ----

    def ingest(self, opportunities: Iterable[ArbitrageOpportunity]) -> List[ArbitrageOpportunity]:
        """
        Merge scan results into the live set.

        A candidate matching a live pending opportunity by natural key refreshes
        it in place, keeping its id. A candidate whose key is executing is
        ignored. Returns copies of the stored records that were added or refreshed.
        """
        touched = []

        for candidate in opportunities:
            key = candidate.natural_key
            existing_id = self._live_keys.get(key)

            if existing_id is not None:
                existing = self._opportunities[existing_id]
                if existing.status != OpportunityStatus.PENDING:
                    continue
                for name in MEASURED_FIELDS:
                    setattr(existing, name, getattr(candidate, name))
                stored = existing
                logger.debug(f"Refreshed opportunity {stored.id}: {stored}")
            else:
                stored = candidate.copy()
                stored.status = OpportunityStatus.PENDING
                self._opportunities[stored.id] = stored
                self._live_keys[key] = stored.id
                self._discovery[stored.id] = next(self._sequence)
                logger.info(f"New opportunity {stored.id}: {stored}")

            touched.append(stored.copy())

            if stored.id not in self._futures and self._should_auto_execute(stored):
                self._spawn(self._auto_execute(stored.id))

        return touched

    def _should_auto_execute(self, opportunity: ArbitrageOpportunity) -> bool:
        if not self.config.auto_execute or self.emergency_stop:
            return False

        if self.circuit_breaker.is_open:
            logger.debug(f"Auto-execution halted, leaving {opportunity.id} pending")
            return False

        if opportunity.profit_percentage < self.config.min_profit_percentage:
            return False

        if (opportunity.confidence_score is not None
                and opportunity.confidence_score < self.config.min_confidence_score):
            return False

        if self.config.risk_tolerance == "low" and opportunity.risk_level == RiskLevel.HIGH:
            return False

        return True

    async def _auto_execute(self, opportunity_id: str):
        opportunity = self._opportunities.get(opportunity_id)
        if opportunity is None or opportunity.status != OpportunityStatus.PENDING:
            return

        try:
            check = await self.funding.calculate_profitability(
                opportunity.token_in, opportunity.trade_size, opportunity.estimated_profit
            )
        except (NoProviderForToken, TransientFetchError) as e:
            logger.warning(f"Not auto-executing {opportunity_id}: {e}")
            return

        if not check.is_profitable:
            logger.info(
                f"Not auto-executing {opportunity_id}: net profit {check.net_profit:.6f} "
                f"after {check.provider} fee"
            )
            return

        if opportunity_id in self._futures or opportunity.status != OpportunityStatus.PENDING:
            return

        try:
            self.submit(opportunity_id)
        except ExecutionFailure as e:
            logger.warning(f"Auto-execution of {opportunity_id} refused: {e}")

    # ---- execution ----

    def submit(self, opportunity_id: str) -> asyncio.Future:
        """
        Queue an opportunity for execution.

        Returns a future resolving to the ExecutionResult. Submitting an
        opportunity that is already queued or executing returns its existing
        future.

        Raises:
            OpportunityNotFound: unknown id
            AlreadyTerminal: opportunity already completed or failed
            ExecutionFailure: emergency stop is active
        """
        opportunity = self._opportunities.get(opportunity_id)
        if opportunity is None:
            raise OpportunityNotFound(f"No opportunity with id {opportunity_id}")

        if opportunity.status.is_terminal:
            raise AlreadyTerminal(
                f"Opportunity {opportunity_id} is already {opportunity.status.value}"
            )

        existing = self._futures.get(opportunity_id)
        if existing is not None:
            return existing

        if self.emergency_stop:
            raise ExecutionFailure(f"Emergency stop active: {self.emergency_reason}")

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve_exception)
        self._futures[opportunity_id] = future
        self._queue.append(opportunity_id)
        self._pump()
        return future

    async def execute_opportunity(self, opportunity_id: str) -> ExecutionResult:
        """Queue (or join) an execution and wait for its result."""
        return await self.submit(opportunity_id)

    def _next_queued(self) -> str:
        if self.config.strategy == "priority":
            choice = min(
                self._queue,
                key=lambda i: (-self._opportunities[i].profit_percentage, self._discovery[i]),
            )
        else:
            choice = min(self._queue, key=lambda i: self._discovery[i])
        self._queue.remove(choice)
        return choice

    def _pump(self):
        """Start queued executions while free slots remain."""
        if self.emergency_stop:
            return

        while self._queue and len(self._executing) < self.config.execution_slots:
            opportunity_id = self._next_queued()
            opportunity = self._opportunities[opportunity_id]

            opportunity.status = OpportunityStatus.EXECUTING
            self._executing.add(opportunity_id)
            self.peak_executing = max(self.peak_executing, len(self._executing))

            self._spawn(self._run(opportunity_id))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, opportunity_id: str):
        opportunity = self._opportunities[opportunity_id]
        quote: Optional[FundingQuote] = None
        error: Optional[Exception] = None

        try:
            quote, tx_ref = await self._attempt(opportunity)
        except asyncio.CancelledError:
            self._executing.discard(opportunity_id)
            self._finish(opportunity, None, None, ExecutionFailure("Execution cancelled"))
            raise
        except Exception as e:
            error = e
        finally:
            self._executing.discard(opportunity_id)

        if error is None:
            self._finish(opportunity, quote, tx_ref, None)
        elif self._should_retry(opportunity, error):
            await self._retry_later(opportunity, error)
            return
        else:
            self._finish(opportunity, quote, None, error)

        self._pump()

    async def _attempt(self, opportunity: ArbitrageOpportunity) -> Tuple[FundingQuote, str]:
        opportunity.attempts += 1
        self._validate_trade(opportunity)

        quote = await self.funding.select_best(opportunity.token_in, opportunity.trade_size)
        check = self.funding.net_profitability(opportunity.estimated_profit, quote)
        if not check.is_profitable:
            raise ExecutionFailure(
                f"Net profit {check.net_profit:.6f} not positive after "
                f"{quote.provider} fee {quote.fee_amount:.6f}"
            )

        try:
            result = await self.settlement.submit(opportunity.copy(), quote)
        except Exception as e:
            raise ExecutionFailure(f"Settlement error: {e}", retryable=True) from e

        if not result.success:
            raise ExecutionFailure(result.error or "Settlement rejected", retryable=True)

        return quote, result.tx_ref

    def _validate_trade(self, opportunity: ArbitrageOpportunity):
        if opportunity.trade_size <= 0:
            raise ExecutionFailure("Trade size must be positive")

        if opportunity.trade_size > self.config.max_trade_size:
            raise ExecutionFailure(
                f"Trade size {opportunity.trade_size} exceeds max {self.config.max_trade_size}"
            )

        if not MIN_SLIPPAGE <= self.config.slippage_tolerance <= MAX_SLIPPAGE:
            raise ExecutionFailure(
                f"Slippage tolerance {self.config.slippage_tolerance} outside "
                f"{MIN_SLIPPAGE}-{MAX_SLIPPAGE}"
            )

    def _should_retry(self, opportunity: ArbitrageOpportunity, error: Exception) -> bool:
        retryable = isinstance(error, TransientFetchError) or (
            isinstance(error, ExecutionFailure) and error.retryable
        )
        return retryable and opportunity.attempts <= self.config.max_retries

    async def _retry_later(self, opportunity: ArbitrageOpportunity, error: Exception):
        delay = backoff_delay(opportunity.attempts, self.config.retry_delay)
        opportunity.status = OpportunityStatus.PENDING
        opportunity.status_reason = str(error)
        logger.warning(
            f"Execution of {opportunity.id} failed (attempt {opportunity.attempts}), "
            f"retrying in {delay:.1f}s: {error}"
        )
        self._pump()

        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._finish(opportunity, None, None, ExecutionFailure("Execution cancelled"))
            raise

        self._queue.append(opportunity.id)
        self._pump()

    def _finish(
        self,
        opportunity: ArbitrageOpportunity,
        quote: Optional[FundingQuote],
        tx_ref: Optional[str],
        error: Optional[Exception],
    ):
        if opportunity.status.is_terminal:
            return

        success = error is None
        opportunity.status = OpportunityStatus.COMPLETED if success else OpportunityStatus.FAILED
        opportunity.status_reason = "" if success else str(error)
        opportunity.finished_at = self._clock()
        opportunity.tx_ref = tx_ref
        self._live_keys.pop(opportunity.natural_key, None)
        if opportunity.id in self._queue:
            self._queue.remove(opportunity.id)

        self.executed_count += 1
        if success:
            self.successful_count += 1
            self.circuit_breaker.record_success()
            logger.success(f"✓ Executed {opportunity} | tx {tx_ref}")
        else:
            self.failed_count += 1
            self.error_handler.record_error(error)
            logger.error(f"✗ Execution of {opportunity.id} failed: {error}")
            if isinstance(error, ExecutionFailure) and error.retryable:
                self.circuit_breaker.record_failure()

        result = ExecutionResult(
            opportunity_id=opportunity.id,
            success=success,
            status=opportunity.status,
            tx_ref=tx_ref,
            error=opportunity.status_reason,
            funding_quote=quote,
            attempts=opportunity.attempts,
            executed_at=opportunity.finished_at,
        )

        if self.journal is not None:
            try:
                self.journal.record_execution(opportunity, result)
            except Exception as e:
                logger.error(f"Failed to journal execution {opportunity.id}: {e}")

        future = self._futures.pop(opportunity.id, None)
        if future is not None and not future.done():
            if isinstance(error, NoProviderForToken):
                future.set_exception(error)
            else:
                future.set_result(result)

    # ---- retention and accessors ----

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Drop finished opportunities older than the retention period, and
        pending ones nobody executed within it. Returns the number removed.
        """
        now = self._clock() if now is None else now
        cutoff = now - self.retention
        expired = []

        for opportunity_id, opportunity in self._opportunities.items():
            if opportunity.status.is_terminal:
                if (opportunity.finished_at or opportunity.timestamp) < cutoff:
                    expired.append(opportunity_id)
            elif (opportunity.status == OpportunityStatus.PENDING
                  and opportunity_id not in self._futures
                  and opportunity.timestamp < cutoff):
                expired.append(opportunity_id)

        for opportunity_id in expired:
            opportunity = self._opportunities.pop(opportunity_id)
            self._discovery.pop(opportunity_id, None)
            if self._live_keys.get(opportunity.natural_key) == opportunity_id:
                del self._live_keys[opportunity.natural_key]

        if expired:
            logger.debug(f"Swept {len(expired)} expired opportunities")
        return len(expired)

    def get_opportunity(self, opportunity_id: str) -> Optional[ArbitrageOpportunity]:
        opportunity = self._opportunities.get(opportunity_id)
        return opportunity.copy() if opportunity else None

    def get_pending_opportunities(self) -> List[ArbitrageOpportunity]:
        """Copies of pending opportunities, most profitable first."""
        pending = [
            o.copy() for o in self._opportunities.values()
            if o.status == OpportunityStatus.PENDING
        ]
        pending.sort(key=lambda o: (-o.profit_percentage, o.gas_estimate))
        return pending

    def get_opportunities(self, status: Optional[OpportunityStatus] = None) -> List[ArbitrageOpportunity]:
        return [
            o.copy() for o in self._opportunities.values()
            if status is None or o.status == status
        ]

    @property
    def pending_count(self) -> int:
        return sum(1 for o in self._opportunities.values() if o.status == OpportunityStatus.PENDING)

    @property
    def executing_count(self) -> int:
        return len(self._executing)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def get_statistics(self) -> Dict:
        """Execution counters, safety valve state and error counts."""
        stats = {
            'total_executions': self.executed_count,
            'successful_executions': self.successful_count,
            'failed_executions': self.failed_count,
            'success_rate': (
                self.successful_count / self.executed_count * 100 if self.executed_count else 0
            ),
            'pending': self.pending_count,
            'queued': self.queued_count,
            'executing': self.executing_count,
            'peak_executing': self.peak_executing,
            'emergency_stop': self.emergency_stop,
            'circuit_breaker': self.circuit_breaker.get_state(),
            'errors': self.error_handler.get_error_stats(),
        }
        if self.journal is not None:
            stats['journal'] = self.journal.get_statistics()
        return stats

    async def shutdown(self):
        """Cancel running executions and pending auto-execution checks."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # queued work and runs cancelled before they started
        for opportunity_id in list(self._futures):
            self._finish(
                self._opportunities[opportunity_id], None, None,
                ExecutionFailure("Execution cancelled"),
            )
