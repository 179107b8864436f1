"""CPU-bound price statistics, run on the offloaded worker."""
from typing import Any, Dict, List, Sequence
import numpy as np

MINUTES_PER_YEAR = 525_600

CANDLE_INTERVALS = {
    "minute": 60,
    "hour": 60 * 60,
    "day": 24 * 60 * 60,
}


def calculate_volatility(prices: Sequence[float], timestamps: Sequence[float]) -> float:
    """
    Annualised volatility of log returns, as a percentage.

    Each return is normalised by the square root of its time step in minutes so
    irregular polling intervals are comparable. Steps with no elapsed time are
    skipped.
    """
    if len(prices) < 2 or len(prices) != len(timestamps):
        return 0.0

    price_arr = np.asarray(prices, dtype=float)
    time_arr = np.asarray(timestamps, dtype=float)

    order = np.argsort(time_arr, kind="stable")
    price_arr = price_arr[order]
    time_arr = time_arr[order]

    minutes = np.diff(time_arr) / 60.0
    valid = (minutes > 0) & (price_arr[:-1] > 0) & (price_arr[1:] > 0)
    if not valid.any():
        return 0.0

    log_returns = np.log(price_arr[1:][valid] / price_arr[:-1][valid])
    annualised = log_returns / np.sqrt(minutes[valid]) * np.sqrt(MINUTES_PER_YEAR)

    return float(np.std(annualised) * 100)


def candleify(points: List[Dict[str, Any]], interval: str = "minute") -> List[Dict[str, float]]:
    """Group {price, timestamp[, volume]} points into OHLC candles."""
    if interval not in CANDLE_INTERVALS:
        raise ValueError(f"Unknown candle interval: {interval}")

    if not points:
        return []

    bucket = CANDLE_INTERVALS[interval]
    candles: Dict[float, Dict[str, float]] = {}

    for point in sorted(points, key=lambda p: p["timestamp"]):
        start = (point["timestamp"] // bucket) * bucket
        price = point["price"]
        candle = candles.get(start)

        if candle is None:
            candles[start] = {
                "timestamp": start,
                "open": price,
                "high": price,
                "low": price,
                "close": price,
                "volume": point.get("volume", 0.0) or 0.0,
            }
        else:
            candle["high"] = max(candle["high"], price)
            candle["low"] = min(candle["low"], price)
            candle["close"] = price
            candle["volume"] += point.get("volume", 0.0) or 0.0

    return list(candles.values())


def sma(prices: np.ndarray, period: int) -> float:
    if len(prices) < period:
        return float(prices[-1])
    return float(prices[-period:].mean())


def ema(prices: np.ndarray, period: int) -> float:
    if len(prices) <= period:
        return float(prices[-1])

    k = 2 / (period + 1)
    value = float(prices[-period - 1])
    for price in prices[-period:]:
        value = float(price) * k + value * (1 - k)
    return value


def rsi(prices: np.ndarray, period: int = 14) -> float:
    changes = np.diff(prices)[-period:]
    if len(changes) == 0:
        return 50.0

    gains = np.clip(changes, 0, None).mean()
    losses = np.clip(-changes, 0, None).mean()

    if losses == 0:
        return 100.0
    return float(100 - 100 / (1 + gains / losses))


def analyze_prices(prices: Sequence[float]) -> Dict[str, Any]:
    """Moving averages, RSI, trend and a 0-1 confidence for a price series."""
    if len(prices) < 2:
        return {}

    arr = np.asarray(prices, dtype=float)
    returns = np.diff(arr) / arr[:-1]

    short_ma = sma(arr, 10)
    long_ma = sma(arr, 30)
    if short_ma > long_ma * 1.005:
        trend = "up"
    elif short_ma < long_ma * 0.995:
        trend = "down"
    else:
        trend = "stable"

    volatility = float(np.std(returns))
    trend_strength = float((returns > 0).mean())
    confidence = max(0.0, min(1.0, 1 - volatility * 2 + trend_strength))

    return {
        "sma20": sma(arr, 20),
        "ema12": ema(arr, 12),
        "ema26": ema(arr, 26),
        "rsi14": rsi(arr, 14),
        "trend": trend,
        "volatility": volatility,
        "confidence": confidence,
    }
