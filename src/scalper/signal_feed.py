"""
Crypto reference price + momentum signals

Sources (in priority order):
1. Binance 1m klines
2. Binance.us 1m klines
3. Coinbase spot price, folded into synthetic 15-second candles

Each provider is isolated: a failure logs and falls through to the next.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np
import requests

ASSET_SYMBOLS = {
    "BTC": {"binance": "BTCUSDT", "binance_us": "BTCUSD", "coinbase": "BTC-USD"},
    "ETH": {"binance": "ETHUSDT", "binance_us": "ETHUSD", "coinbase": "ETH-USD"},
    "SOL": {"binance": "SOLUSDT", "binance_us": "SOLUSD", "coinbase": "SOL-USD"},
}

MAX_CANDLES = 200
MIN_KLINE_CANDLES = 10
SYNTHETIC_INTERVAL_SECONDS = 15
KLINE_TIMEOUT = 8
SPOT_TIMEOUT = 5


def asset_for_series(series_ticker: str) -> str:
    """KXETH15M -> ETH. Unknown series fall back to BTC."""
    upper = (series_ticker or "").upper()
    for asset in ASSET_SYMBOLS:
        if asset in upper:
            return asset
    return "BTC"


@dataclass
class Candle:
    t: float  # open time, epoch seconds
    o: float
    h: float
    l: float
    c: float
    v: float = 0.0


@dataclass
class SignalSnapshot:
    """Point-in-time view of the reference asset"""
    asset: str
    price: float
    momentum_1m: float = 0.0     # % rate of change
    momentum_5m: float = 0.0
    momentum_15m: float = 0.0
    volatility_5m: float = 0.0   # ATR as % of price
    trend: str = "FLAT"          # STRONG_UP / UP / FLAT / DOWN / STRONG_DOWN
    direction: str = "NEUTRAL"   # UP / DOWN / NEUTRAL
    oscillator: float = 50.0     # RSI
    score: float = 0.0           # composite, -100..100
    confidence: float = 0.0
    source: str = ""
    candles: int = 0
    reasons: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "asset": self.asset,
            "price": self.price,
            "momentum_1m": round(self.momentum_1m, 4),
            "momentum_5m": round(self.momentum_5m, 4),
            "momentum_15m": round(self.momentum_15m, 4),
            "volatility_5m": round(self.volatility_5m, 4),
            "trend": self.trend,
            "direction": self.direction,
            "oscillator": round(self.oscillator, 1),
            "score": self.score,
            "confidence": self.confidence,
            "source": self.source,
            "candles": self.candles,
            "time": self.timestamp.isoformat(),
        }


# === Indicator math ===

def ema(values: np.ndarray, period: int) -> float:
    """EMA seeded with the SMA of the first `period` values."""
    if len(values) == 0:
        return 0.0
    if len(values) < period:
        return float(values[-1])
    k = 2 / (period + 1)
    e = float(np.mean(values[:period]))
    for v in values[period:]:
        e = float(v) * k + e * (1 - k)
    return e


def ema_series(values: np.ndarray, period: int) -> np.ndarray:
    out = np.zeros(len(values))
    if len(values) < period:
        return out
    k = 2 / (period + 1)
    out[period - 1] = np.mean(values[:period])
    for i in range(period, len(values)):
        out[i] = values[i] * k + out[i - 1] * (1 - k)
    return out


def rsi(closes: np.ndarray, period: int) -> float:
    if len(closes) < period + 1:
        return 50.0
    diffs = np.diff(closes[-(period + 1):])
    gain = diffs[diffs > 0].sum() / period
    loss = -diffs[diffs < 0].sum() / period
    if loss == 0:
        return 100.0
    return float(100 - 100 / (1 + gain / loss))


def atr(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int) -> float:
    if len(closes) < period + 1:
        return 0.0
    true_range = np.maximum.reduce([
        highs[1:] - lows[1:],
        np.abs(highs[1:] - closes[:-1]),
        np.abs(lows[1:] - closes[:-1]),
    ])
    return float(np.mean(true_range[-period:]))


def rate_of_change(closes: np.ndarray, lookback: int) -> float:
    """% change over `lookback` candles (or the whole series if shorter)."""
    n = len(closes)
    if n < 2:
        return 0.0
    base = closes[max(0, n - 1 - lookback)]
    if base == 0:
        return 0.0
    return float((closes[-1] - base) / base * 100)


def macd_histogram(closes: np.ndarray, fast: int, slow: int, signal: int) -> tuple:
    fast_ema = ema_series(closes, fast)
    slow_ema = ema_series(closes, slow)
    start = max(fast, slow) - 1
    line = fast_ema[start:] - slow_ema[start:]
    if len(line) == 0:
        return 0.0, 0.0, 0.0
    sig = ema_series(line, signal)
    return float(line[-1]), float(sig[-1]), float(line[-1] - sig[-1])


def bollinger_pct_b(closes: np.ndarray, period: int, mult: float = 2.0) -> float:
    window = closes[-min(period, len(closes)):]
    mid = np.mean(window)
    sd = np.std(window)
    upper, lower = mid + mult * sd, mid - mult * sd
    if upper == lower:
        return 0.5
    return float((closes[-1] - lower) / (upper - lower))


def vwap(highs, lows, closes, volumes, lookback: int = 60) -> float:
    typical = (highs[-lookback:] + lows[-lookback:] + closes[-lookback:]) / 3
    vol = np.where(volumes[-lookback:] > 0, volumes[-lookback:], 1.0)
    return float(np.sum(typical * vol) / np.sum(vol))


def trend_label(score: float) -> str:
    if score >= 40:
        return "STRONG_UP"
    if score >= 15:
        return "UP"
    if score <= -40:
        return "STRONG_DOWN"
    if score <= -15:
        return "DOWN"
    return "FLAT"


def compute_snapshot(asset: str, candles: List[Candle], source: str) -> Optional[SignalSnapshot]:
    """Indicators and composite score from 1m (or synthetic) candles."""
    if not candles:
        return None

    closes = np.array([c.c for c in candles], dtype=float)
    highs = np.array([c.h for c in candles], dtype=float)
    lows = np.array([c.l for c in candles], dtype=float)
    volumes = np.array([c.v for c in candles], dtype=float)
    price = float(closes[-1])
    n = len(closes)

    snapshot = SignalSnapshot(asset=asset, price=price, source=source, candles=n)
    if n < 3:
        return snapshot

    # Shorter periods when history is thin
    rsi_period = min(14, max(5, n // 3))
    ema_short = min(9, max(3, n // 5))
    ema_mid = min(21, max(5, n // 4))
    ema_long = min(50, max(10, n // 2))
    bb_period = min(20, max(5, n // 3))
    macd_fast = min(12, max(4, n // 5))
    macd_slow = min(26, max(8, n // 3))
    macd_signal = min(9, max(3, n // 8))

    e9, e21, e50 = ema(closes, ema_short), ema(closes, ema_mid), ema(closes, ema_long)
    osc = rsi(closes, rsi_period) if n > rsi_period + 1 else 50.0
    roc5 = rate_of_change(closes, 5) if n > 5 else 0.0
    roc15 = rate_of_change(closes, 15) if n > 5 else 0.0
    atr_value = atr(highs, lows, closes, min(14, n - 1)) if n > 5 else 0.0
    pct_b = bollinger_pct_b(closes, bb_period)
    vw = vwap(highs, lows, closes, volumes)
    if n > macd_slow + macd_signal:
        macd_line, macd_sig, macd_hist = macd_histogram(closes, macd_fast, macd_slow, macd_signal)
    else:
        macd_line = macd_sig = macd_hist = 0.0

    score = 0
    reasons = []

    if price > e9 > e21:
        score += 15
        reasons.append("EMA bull stack")
        if e21 > e50:
            score += 10
    elif price < e9 < e21:
        score -= 15
        reasons.append("EMA bear stack")
        if e21 < e50:
            score -= 10

    if osc > 70:
        score -= 8
        reasons.append(f"RSI OB {osc:.0f}")
    elif osc > 58:
        score += 10
        reasons.append(f"RSI bull {osc:.0f}")
    elif osc < 30:
        score += 8
        reasons.append(f"RSI OS {osc:.0f}")
    elif osc < 42:
        score -= 10
        reasons.append(f"RSI bear {osc:.0f}")
    if osc > 52 and roc5 > 0:
        score += 5
    if osc < 48 and roc5 < 0:
        score -= 5

    if macd_hist > 0:
        score += 10
        if macd_line > macd_sig and macd_line > 0:
            score += 5
        reasons.append("MACD +")
    elif macd_hist < 0:
        score -= 10
        if macd_line < macd_sig and macd_line < 0:
            score -= 5
        reasons.append("MACD -")

    if pct_b > 0.92:
        score -= 8
    elif pct_b > 0.70:
        score += 5
    elif pct_b < 0.08:
        score += 8
    elif pct_b < 0.30:
        score -= 5

    if price > vw * 1.0005:
        score += 5
    elif price < vw * 0.9995:
        score -= 5

    if roc5 > 0.05:
        score += 5
        reasons.append(f"ROC +{roc5:.2f}%")
    elif roc5 < -0.05:
        score -= 5
        reasons.append(f"ROC {roc5:.2f}%")

    score = max(-100, min(100, score))

    snapshot.momentum_1m = roc5 / 5
    snapshot.momentum_5m = roc5
    snapshot.momentum_15m = roc15
    snapshot.volatility_5m = atr_value / price * 100 if price else 0.0
    snapshot.oscillator = osc
    snapshot.score = score
    snapshot.confidence = min(100, abs(score))
    snapshot.trend = trend_label(score)
    snapshot.direction = "UP" if score >= 15 else "DOWN" if score <= -15 else "NEUTRAL"
    snapshot.reasons = reasons
    return snapshot


class SignalFeed:
    """Reference-price feed with provider fallback, one candle buffer per asset"""

    def __init__(self, session: requests.Session = None):
        self.session = session or requests.Session()
        self._synthetic: Dict[str, deque] = {}
        self._last: Dict[str, SignalSnapshot] = {}
        self.fetch_errors = deque(maxlen=20)
        self._lock = threading.Lock()

    def _klines(self, url: str) -> List[Candle]:
        resp = self.session.get(url, timeout=KLINE_TIMEOUT)
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict):
            raise ValueError(data.get("msg") or f"API error {data.get('code')}")
        return [Candle(t=k[0] / 1000, o=float(k[1]), h=float(k[2]), l=float(k[3]),
                       c=float(k[4]), v=float(k[5])) for k in data]

    def _binance(self, asset: str) -> List[Candle]:
        symbol = ASSET_SYMBOLS[asset]["binance"]
        return self._klines(f"https://api.binance.com/api/v3/klines?symbol={symbol}&interval=1m&limit={MAX_CANDLES}")

    def _binance_us(self, asset: str) -> List[Candle]:
        symbol = ASSET_SYMBOLS[asset]["binance_us"]
        return self._klines(f"https://api.binance.us/api/v3/klines?symbol={symbol}&interval=1m&limit={MAX_CANDLES}")

    def _coinbase_spot(self, asset: str) -> Optional[float]:
        pair = ASSET_SYMBOLS[asset]["coinbase"]
        resp = self.session.get(f"https://api.coinbase.com/v2/prices/{pair}/spot", timeout=SPOT_TIMEOUT)
        resp.raise_for_status()
        price = float(resp.json()["data"]["amount"])
        return price if price > 0 else None

    def _record_failure(self, provider: str, asset: str, error: Exception):
        message = f"{provider} {asset}: {error}"
        self.fetch_errors.append(message)
        print(f"[FEED] {message}")

    def _fold_synthetic(self, asset: str, price: float, now: float = None) -> List[Candle]:
        """Fold a spot print into 15-second synthetic candles."""
        now = now or time.time()
        candles = self._synthetic.setdefault(asset, deque(maxlen=MAX_CANDLES))
        if not candles or now - candles[-1].t > SYNTHETIC_INTERVAL_SECONDS:
            candles.append(Candle(t=now, o=price, h=price, l=price, c=price))
        else:
            last = candles[-1]
            last.c = price
            last.h = max(last.h, price)
            last.l = min(last.l, price)
        return list(candles)

    def get_snapshot(self, asset: str = "BTC") -> Optional[SignalSnapshot]:
        """Freshest snapshot for an asset, or None when every provider fails."""
        asset = asset.upper()
        if asset not in ASSET_SYMBOLS:
            print(f"[FEED] Unknown asset {asset}")
            return None

        with self._lock:
            for name, provider in (("Binance", self._binance), ("Binance.us", self._binance_us)):
                try:
                    candles = provider(asset)
                except (requests.RequestException, ValueError, KeyError, TypeError, IndexError) as e:
                    self._record_failure(name, asset, e)
                    continue
                if len(candles) < MIN_KLINE_CANDLES:
                    self._record_failure(name, asset, ValueError(f"only {len(candles)} candles"))
                    continue
                snapshot = compute_snapshot(asset, candles[-MAX_CANDLES:], name)
                self._last[asset] = snapshot
                return snapshot

            try:
                price = self._coinbase_spot(asset)
            except (requests.RequestException, ValueError, KeyError, TypeError) as e:
                self._record_failure("Coinbase", asset, e)
                price = None
            if price is None:
                return None

            snapshot = compute_snapshot(asset, self._fold_synthetic(asset, price), "Coinbase (synthetic)")
            self._last[asset] = snapshot
            return snapshot

    def last_snapshot(self, asset: str = "BTC") -> Optional[SignalSnapshot]:
        return self._last.get(asset.upper())

    def get_status(self) -> dict:
        return {
            "assets": {a: s.to_dict() for a, s in self._last.items()},
            "errors": list(self.fetch_errors)[-5:],
        }
