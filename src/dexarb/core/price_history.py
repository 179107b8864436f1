"""Bounded price history per token pair."""
from threading import Lock
from typing import Dict, List, Optional
import time

from dexarb.models import PricePoint, TokenPair


class PriceHistory:
    """Fixed-capacity circular buffer of price points."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")

        self.capacity = capacity
        self._slots: List[Optional[PricePoint]] = [None] * capacity
        self._head = 0  # next slot to write
        self._size = 0

    def push(self, point: PricePoint):
        """Append a point, overwriting the oldest slot once full. O(1)."""
        self._slots[self._head] = point
        self._head = (self._head + 1) % self.capacity
        self._size = min(self._size + 1, self.capacity)

    def __len__(self) -> int:
        return self._size

    def _in_insertion_order(self) -> List[PricePoint]:
        if self._size < self.capacity:
            return list(self._slots[:self._size])
        return self._slots[self._head:] + self._slots[:self._head]

    def recent(self, n: Optional[int] = None) -> List[PricePoint]:
        """
        Up to n most recent points, newest first.

        Points are ordered by their own timestamp, not by arrival, since
        concurrent fetches can complete out of order.
        """
        points = sorted(self._in_insertion_order(), key=lambda p: p.timestamp, reverse=True)
        return points if n is None else points[:max(n, 0)]

    def resize(self, capacity: int):
        """Change capacity, keeping the newest points that still fit."""
        if capacity <= 0:
            raise ValueError("capacity must be positive")

        points = self._in_insertion_order()[-capacity:]
        self.capacity = capacity
        self._slots = [None] * capacity
        self._head = 0
        self._size = 0
        for point in points:
            self.push(point)

    def drop_older_than(self, cutoff: float):
        """Discard points with a timestamp before cutoff."""
        kept = [p for p in self._in_insertion_order() if p.timestamp >= cutoff]
        self._slots = [None] * self.capacity
        self._head = 0
        self._size = 0
        for point in kept:
            self.push(point)


class PriceHistoryStore:
    """Owns one PriceHistory per monitored pair."""

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._histories: Dict[str, PriceHistory] = {}
        self._lock = Lock()

    def set_capacity(self, capacity: int):
        with self._lock:
            self.capacity = capacity
            for history in self._histories.values():
                history.resize(capacity)

    def record(self, pair: TokenPair, point: PricePoint):
        with self._lock:
            history = self._histories.get(pair.key)
            if history is None:
                history = self._histories[pair.key] = PriceHistory(self.capacity)
            history.push(point)

    def recent(self, pair: TokenPair, n: Optional[int] = None) -> List[PricePoint]:
        """Copy of up to n newest points for a pair, newest first."""
        with self._lock:
            history = self._histories.get(pair.key)
            return history.recent(n) if history else []

    def latest_price(self, pair: TokenPair, venue_id: Optional[str] = None) -> Optional[float]:
        """Most recent price, optionally restricted to one venue."""
        for point in self.recent(pair):
            if venue_id is None or point.venue_id == venue_id:
                return point.price
        return None

    def latest_by_venue(self, pair: TokenPair) -> Dict[str, PricePoint]:
        """Newest point per venue for a pair."""
        latest: Dict[str, PricePoint] = {}
        for point in self.recent(pair):
            latest.setdefault(point.venue_id, point)
        return latest

    def price_range_volatility(self, pair: TokenPair, time_window: float = 3600.0,
                               now: Optional[float] = None) -> float:
        """(max - min) / mean of prices inside the window, as a percentage."""
        now = time.time() if now is None else now
        prices = [p.price for p in self.recent(pair) if now - p.timestamp <= time_window]

        if len(prices) < 2:
            return 0.0

        avg = sum(prices) / len(prices)
        return (max(prices) - min(prices)) / avg * 100 if avg else 0.0

    def clear_old_data(self, max_age: float, now: Optional[float] = None):
        """Drop points older than max_age seconds and forget emptied pairs."""
        cutoff = (time.time() if now is None else now) - max_age
        with self._lock:
            for key in list(self._histories):
                history = self._histories[key]
                history.drop_older_than(cutoff)
                if len(history) == 0:
                    del self._histories[key]

    def remove(self, pair: TokenPair) -> bool:
        with self._lock:
            return self._histories.pop(pair.key, None) is not None

    def pair_count(self) -> int:
        return len(self._histories)
