"""Message-passing offload of CPU-heavy analysis to a worker context."""
import asyncio
import time
import uuid
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from loguru import logger

from dexarb.config import OffloadConfig
from dexarb.core import analytics
from dexarb.core.scanner import scan_payload_handler
from dexarb.infrastructure.cache import TTLCache, payload_hash
from dexarb.infrastructure.error_handling import OffloadError, OffloadTimeout


@dataclass
class OffloadRequest:
    """Work item sent to the worker."""
    id: str
    kind: str
    payload: Any
    epoch: int = 0


@dataclass
class OffloadResponse:
    """Worker answer, correlated to its request by id."""
    id: str
    kind: str
    result: Any = None
    error: Optional[str] = None
    cached: bool = False
    epoch: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def _volatility_handler(payload: Dict[str, Any]) -> float:
    return analytics.calculate_volatility(payload["prices"], payload["timestamps"])


def _candleify_handler(payload: Dict[str, Any]) -> list:
    return analytics.candleify(payload["points"], payload.get("interval", "minute"))


def _analyze_handler(payload: Dict[str, Any]) -> dict:
    return analytics.analyze_prices(payload["prices"])


HANDLERS: Dict[str, Callable[[Any], Any]] = {
    "scan": scan_payload_handler,
    "volatility": _volatility_handler,
    "candleify": _candleify_handler,
    "analyze": _analyze_handler,
}


class OffloadWorker:
    """Worker side: dispatches requests and memoises results by payload hash."""

    def __init__(self, cache_size: int = 100, cache_ttl: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.cache = TTLCache(max_size=cache_size, ttl=cache_ttl, name="offload-results", clock=clock)
        self.computations = 0

    def handle(self, request: OffloadRequest) -> OffloadResponse:
        handler = HANDLERS.get(request.kind)
        if handler is None:
            return OffloadResponse(
                id=request.id, kind=request.kind, epoch=request.epoch,
                error=f"Unknown request kind: {request.kind}",
            )

        key = payload_hash(request.kind, request.payload)
        cached = self.cache.get(key)
        if cached is not None:
            return OffloadResponse(
                id=request.id, kind=request.kind, result=cached,
                cached=True, epoch=request.epoch,
            )

        try:
            result = handler(request.payload)
        except Exception as e:
            return OffloadResponse(
                id=request.id, kind=request.kind, epoch=request.epoch,
                error=f"{type(e).__name__}: {e}",
            )

        self.computations += 1
        self.cache.put(key, result)
        return OffloadResponse(id=request.id, kind=request.kind, result=result, epoch=request.epoch)


# one worker per child process, created by the pool initializer
_process_worker: Optional[OffloadWorker] = None


def _init_process_worker(cache_size: int, cache_ttl: float):
    global _process_worker
    _process_worker = OffloadWorker(cache_size=cache_size, cache_ttl=cache_ttl)


def _handle_in_process(request: OffloadRequest) -> OffloadResponse:
    return _process_worker.handle(request)


class ComputeOffloader:
    """
    Actor front-end for the analysis worker.

    Requests go through a single queue and a single consumer loop that hands
    each one to the worker executor. Callers await a future keyed by request
    id; answers for requests nobody waits on any more are dropped.
    """

    def __init__(self, config: Optional[OffloadConfig] = None):
        self.config = config or OffloadConfig()
        self._executor: Optional[Executor] = None
        self._call: Optional[Callable[[OffloadRequest], OffloadResponse]] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self.requests_sent = 0
        self.responses_dropped = 0

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self):
        """Spin up the worker and the consumer loop. Idempotent."""
        if self.is_running:
            return

        if self.config.use_processes:
            self._executor = ProcessPoolExecutor(
                max_workers=1,
                initializer=_init_process_worker,
                initargs=(self.config.cache_size, self.config.cache_ttl),
            )
            self._call = _handle_in_process
        else:
            worker = OffloadWorker(self.config.cache_size, self.config.cache_ttl)
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dexarb-offload")
            self._call = worker.handle

        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume())
        mode = "process" if self.config.use_processes else "thread"
        logger.info(f"Compute offloader started ({mode} worker)")

    async def _consume(self):
        loop = asyncio.get_running_loop()

        while True:
            request = await self._queue.get()
            if request is None:
                break

            try:
                response = await loop.run_in_executor(self._executor, self._call, request)
            except Exception as e:
                logger.error(f"Offloaded {request.kind} request {request.id} crashed: {e}")
                response = OffloadResponse(
                    id=request.id, kind=request.kind, epoch=request.epoch, error=str(e)
                )

            self._deliver(response)

    def _deliver(self, response: OffloadResponse):
        future = self._pending.pop(response.id, None)

        if future is None or future.done():
            self.responses_dropped += 1
            logger.debug(f"Dropping response {response.id}: no caller waiting")
            return

        future.set_result(response)

    async def submit(
        self,
        kind: str,
        payload: Any,
        epoch: int = 0,
        timeout: Optional[float] = None,
    ) -> OffloadResponse:
        """
        Send a request and wait for its response.

        Raises:
            OffloadTimeout: if no response arrives within the timeout
        """
        if not self.is_running:
            self.start()

        request = OffloadRequest(id=uuid.uuid4().hex, kind=kind, payload=payload, epoch=epoch)
        future = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future

        self.requests_sent += 1
        await self._queue.put(request)

        timeout = self.config.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise OffloadTimeout(f"Offloaded {kind} request timed out after {timeout}s")
        finally:
            self._pending.pop(request.id, None)

    @staticmethod
    def unwrap(response: OffloadResponse) -> Any:
        if not response.ok:
            raise OffloadError(f"Offloaded {response.kind} failed: {response.error}")
        return response.result

    async def volatility(self, prices: list, timestamps: list) -> float:
        response = await self.submit("volatility", {"prices": prices, "timestamps": timestamps})
        return self.unwrap(response)

    async def candleify(self, points: list, interval: str = "minute") -> list:
        response = await self.submit("candleify", {"points": points, "interval": interval})
        return self.unwrap(response)

    async def analyze(self, prices: list) -> dict:
        response = await self.submit("analyze", {"prices": prices})
        return self.unwrap(response)

    async def shutdown(self):
        """Stop the consumer, fail outstanding requests and release the worker."""
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(OffloadError("Offloader shut down"))
            self._pending.pop(request_id, None)

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

        logger.info("Compute offloader stopped")
