"""Unit tests for the compute offloader."""
import time
import pytest
import pytest_asyncio
from unittest.mock import patch

from dexarb.config import OffloadConfig
from dexarb.core import offloader as offloader_module
from dexarb.core.offloader import (
    ComputeOffloader, OffloadRequest, OffloadResponse, OffloadWorker
)
from dexarb.infrastructure.error_handling import OffloadError, OffloadTimeout

SCAN_PAYLOAD = {
    "quotes": {"v1": {"a:b": 1.00}, "v2": {"a:b": 1.03}},
    "min_profit_percentage": 2,
    "gas_price_gwei": 0,
}


class TestOffloadWorker:
    """Test the worker side."""

    @pytest.fixture
    def worker(self, clock):
        return OffloadWorker(cache_size=10, cache_ttl=60.0, clock=clock)

    def test_scan_request(self, worker):
        """Test a scan request is computed."""
        response = worker.handle(OffloadRequest(id="1", kind="scan", payload=SCAN_PAYLOAD, epoch=3))

        assert response.ok
        assert response.id == "1"
        assert response.epoch == 3
        assert len(response.result) == 1
        assert response.cached is False

    def test_identical_request_is_cached(self, worker):
        """Test repeated payloads skip recomputation within the TTL."""
        worker.handle(OffloadRequest(id="1", kind="scan", payload=SCAN_PAYLOAD))
        response = worker.handle(OffloadRequest(id="2", kind="scan", payload=SCAN_PAYLOAD))

        assert response.cached is True
        assert response.id == "2"
        assert worker.computations == 1

    def test_cache_expires(self, worker, clock):
        """Test results are recomputed once the TTL has passed."""
        worker.handle(OffloadRequest(id="1", kind="scan", payload=SCAN_PAYLOAD))
        clock.advance(61.0)

        response = worker.handle(OffloadRequest(id="2", kind="scan", payload=SCAN_PAYLOAD))

        assert response.cached is False
        assert worker.computations == 2

    def test_unknown_kind(self, worker):
        """Test unknown request kinds produce an error response."""
        response = worker.handle(OffloadRequest(id="1", kind="bogus", payload={}))

        assert not response.ok
        assert "bogus" in response.error

    def test_handler_error_not_cached(self, worker):
        """Test failing requests return an error and are not cached."""
        response = worker.handle(OffloadRequest(id="1", kind="volatility", payload={"prices": []}))

        assert not response.ok
        assert "KeyError" in response.error
        assert len(worker.cache) == 0

    def test_candleify_request(self, worker):
        """Test candle requests."""
        payload = {"points": [{"price": 1.0, "timestamp": 0}], "interval": "minute"}

        response = worker.handle(OffloadRequest(id="1", kind="candleify", payload=payload))

        assert response.result[0]["open"] == 1.0


class TestComputeOffloader:
    """Test the actor front-end."""

    @pytest_asyncio.fixture
    async def offloader(self):
        offloader = ComputeOffloader(OffloadConfig(use_processes=False, request_timeout=5.0))
        yield offloader
        await offloader.shutdown()

    @pytest.mark.asyncio
    async def test_submit_correlates_by_id(self, offloader):
        """Test a submitted request resolves with its own response."""
        response = await offloader.submit("scan", SCAN_PAYLOAD, epoch=7)

        assert response.ok
        assert response.kind == "scan"
        assert response.epoch == 7
        assert offloader.pending_count == 0

    @pytest.mark.asyncio
    async def test_start_is_lazy_and_idempotent(self, offloader):
        """Test the worker starts on first use."""
        assert offloader.is_running is False

        await offloader.volatility([1.0, 1.1], [0.0, 60.0])
        offloader.start()

        assert offloader.is_running is True

    @pytest.mark.asyncio
    async def test_helpers(self, offloader):
        """Test volatility, candle and analysis helpers."""
        volatility = await offloader.volatility([100.0, 101.0, 100.5], [0.0, 60.0, 120.0])
        candles = await offloader.candleify([{"price": 1.0, "timestamp": 0}], "minute")
        analysis = await offloader.analyze([1.0, 2.0, 3.0])

        assert volatility > 0
        assert len(candles) == 1
        assert analysis["trend"] in ("up", "down", "stable")

    @pytest.mark.asyncio
    async def test_error_response_unwraps_to_offload_error(self, offloader):
        """Test worker errors surface as OffloadError."""
        response = await offloader.submit("bogus", {})

        with pytest.raises(OffloadError):
            offloader.unwrap(response)

    @pytest.mark.asyncio
    async def test_timeout(self, offloader):
        """Test slow requests raise OffloadTimeout and are forgotten."""
        slow_handlers = {**offloader_module.HANDLERS, "slow": lambda payload: time.sleep(0.3)}

        with patch.dict(offloader_module.HANDLERS, slow_handlers):
            with pytest.raises(OffloadTimeout):
                await offloader.submit("slow", {}, timeout=0.05)

        assert offloader.pending_count == 0

    @pytest.mark.asyncio
    async def test_unmatched_response_dropped(self, offloader):
        """Test responses nobody waits for are discarded."""
        offloader._deliver(OffloadResponse(id="nobody", kind="scan"))

        assert offloader.responses_dropped == 1

    @pytest.mark.asyncio
    async def test_shutdown(self, offloader):
        """Test shutdown stops the consumer."""
        await offloader.submit("analyze", {"prices": [1.0, 2.0]})

        await offloader.shutdown()

        assert offloader.is_running is False

    @pytest.mark.asyncio
    async def test_process_worker(self):
        """Test requests run in a separate process."""
        offloader = ComputeOffloader(OffloadConfig(use_processes=True, request_timeout=60.0))
        try:
            response = await offloader.submit("scan", SCAN_PAYLOAD, epoch=2)
        finally:
            await offloader.shutdown()

        assert response.ok
        assert response.epoch == 2
        assert response.result[0]["source_venue"] == "v1"
