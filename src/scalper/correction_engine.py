"""
Correction Engine - adaptive feedback from resolved bets

Tracks rolling win/loss windows per context bucket (direction, price tier,
volatility regime, time of day) plus win/loss streaks, and derives:

- edge multiplier: scales the minimum edge a trade must clear
  (losing -> stricter, winning -> looser)
- stake multiplier: scales Kelly stake size
- per-bucket weights: buckets that keep losing demand more edge

Derived values are never persisted; they are recomputed from the raw
windows on restore.
"""

import json
import os
import threading
from collections import deque
from dataclasses import dataclass, asdict, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from ..core.config import ScalperConfig

EASTERN = ZoneInfo("America/New_York")

DIRECTIONS = ("UP", "DOWN", "NEUTRAL")
TIERS = ("safe", "moderate", "risky")
VOL_REGIMES = ("low", "medium", "high")
TIME_WINDOWS = ("morning", "midday", "afternoon", "evening")

# (upper bound on global win rate %, edge multiplier)
WIN_RATE_BANDS = ((25, 1.35), (35, 1.20), (45, 1.08), (55, 1.0), (65, 0.92), (75, 0.85))
WIN_RATE_FLOOR_MULT = 0.78
EDGE_MULT_MIN, EDGE_MULT_MAX = 0.55, 1.70
ADJUSTED_EDGE_MIN, ADJUSTED_EDGE_MAX = 0.40, 2.5

# (intercept, slope, lo, hi) applied to the bucket win rate (0-1)
DIRECTION_WEIGHT = (0.4, 1.4, 0.3, 1.6)
VOL_WEIGHT = (0.4, 1.3, 0.4, 1.5)
TIME_WEIGHT = (0.5, 1.1, 0.5, 1.4)

AVOID_MIN_SAMPLES = 5
AVOID_WIN_RATE = 0.20


def price_tier(price: int) -> str:
    """safe >= 70c, moderate >= 35c, else risky"""
    if price >= 70:
        return "safe"
    if price >= 35:
        return "moderate"
    return "risky"


def time_window(when: datetime = None) -> str:
    """Session bucket from the US/Eastern hour."""
    when = when or datetime.now(timezone.utc)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    hour = when.astimezone(EASTERN).hour
    if 6 <= hour < 10:
        return "morning"
    if 10 <= hour < 14:
        return "midday"
    if 14 <= hour < 18:
        return "afternoon"
    return "evening"


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


@dataclass(frozen=True)
class OutcomeRecord:
    """One resolved bet as seen by the correction engine"""
    ticker: str
    side: str
    entry_price: int
    contracts: int
    won: bool
    pnl: float
    direction: str = "NEUTRAL"
    tier: str = ""
    vol_regime: str = "medium"
    time_window: str = ""
    streak: int = 0
    exit_reason: str = "settled"
    resolved_at: str = ""


class CorrectionEngine:
    """Adaptive multipliers learned from resolved outcomes"""

    def __init__(self, config: ScalperConfig = None):
        self.config = config or ScalperConfig()
        self.window_size = self.config.correction_window
        self.min_samples = self.config.correction_min_samples
        self._lock = threading.RLock()
        self._listeners: List[Callable[[dict], None]] = []
        self._reset()
        print(f"[CORR] Engine ready (window={self.window_size}, min samples={self.min_samples})")

    def _reset(self):
        self.direction_outcomes: Dict[str, deque] = {k: deque(maxlen=self.window_size) for k in DIRECTIONS}
        self.tier_outcomes: Dict[str, deque] = {k: deque(maxlen=self.window_size) for k in TIERS}
        self.vol_outcomes: Dict[str, deque] = {k: deque(maxlen=self.window_size) for k in VOL_REGIMES}
        self.time_outcomes: Dict[str, deque] = {k: deque(maxlen=self.window_size) for k in TIME_WINDOWS}

        self.consecutive_wins = 0
        self.consecutive_losses = 0
        self.peak_win_streak = 0
        self.worst_loss_streak = 0

        self.total_bets = 0
        self.total_wins = 0
        self.total_losses = 0
        self.total_pnl = 0.0
        self.history: deque = deque(maxlen=self.config.correction_history_size)

        self.edge_multiplier = 1.0
        self.stake_multiplier = 1.0
        self.direction_weights = {k: 1.0 for k in DIRECTIONS}
        self.vol_weights = {k: 1.0 for k in VOL_REGIMES}
        self.time_weights = {k: 1.0 for k in TIME_WINDOWS}
        self.regime = "LEARNING"
        self.last_update: Optional[str] = None

    # === Listeners ===

    def add_listener(self, callback: Callable[[dict], None]):
        self._listeners.append(callback)

    def _notify(self, event: dict):
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                print(f"[CORR] Listener error: {e}")

    # === Recording ===

    def _bucket(self, buckets: Dict[str, deque], key: str) -> deque:
        if key not in buckets:
            buckets[key] = deque(maxlen=self.window_size)
        return buckets[key]

    def record_outcome(self, outcome: OutcomeRecord) -> dict:
        """
        Fold one resolved bet into every bucket, streaks and totals, then
        recompute derived state. Returns the change event.
        """
        with self._lock:
            won = bool(outcome.won)
            direction = outcome.direction or "NEUTRAL"
            tier = outcome.tier or price_tier(outcome.entry_price)
            vol = outcome.vol_regime or "medium"
            window = outcome.time_window or time_window()

            self._bucket(self.direction_outcomes, direction).append(won)
            self._bucket(self.tier_outcomes, tier).append(won)
            self._bucket(self.vol_outcomes, vol).append(won)
            self._bucket(self.time_outcomes, window).append(won)

            if won:
                self.consecutive_wins += 1
                self.consecutive_losses = 0
                self.peak_win_streak = max(self.peak_win_streak, self.consecutive_wins)
                self.total_wins += 1
            else:
                self.consecutive_losses += 1
                self.consecutive_wins = 0
                self.worst_loss_streak = max(self.worst_loss_streak, self.consecutive_losses)
                self.total_losses += 1
            self.total_bets += 1
            self.total_pnl += outcome.pnl

            streak = self.consecutive_wins if won else -self.consecutive_losses
            self.history.append(replace(
                outcome,
                direction=direction,
                tier=tier,
                vol_regime=vol,
                time_window=window,
                pnl=round(outcome.pnl, 2),
                streak=streak,
                resolved_at=outcome.resolved_at or datetime.now(timezone.utc).isoformat(),
            ))

            self._recalculate()
            event = {
                "type": "WIN" if won else "LOSS",
                "pnl": round(outcome.pnl, 2),
                "direction": direction,
                "streak": streak,
                "edge_multiplier": round(self.edge_multiplier, 2),
                "stake_multiplier": round(self.stake_multiplier, 2),
                "regime": self.regime,
            }

        print(f"[CORR] {'WIN' if won else 'LOSS'} {direction} {tier} | streak:{streak} | "
              f"edge x{self.edge_multiplier:.2f} size x{self.stake_multiplier:.2f}")
        self._notify(event)
        return event

    # === Derived state ===

    def _win_rate(self, outcomes) -> Optional[float]:
        """Bucket win rate (0-1), None below the minimum sample count."""
        if outcomes is None or len(outcomes) < self.min_samples:
            return None
        return sum(1 for v in outcomes if v) / len(outcomes)

    @staticmethod
    def _weight(win_rate: Optional[float], params: tuple) -> float:
        if win_rate is None:
            return 1.0
        intercept, slope, lo, hi = params
        return _clamp(intercept + slope * win_rate, lo, hi)

    def _win_rate_multiplier(self) -> float:
        if self.total_bets == 0:
            return 1.0
        pct = self.total_wins / self.total_bets * 100
        for bound, mult in WIN_RATE_BANDS:
            if pct < bound:
                return mult
        return WIN_RATE_FLOOR_MULT

    def _streak_multiplier(self) -> float:
        if self.consecutive_losses >= 5:
            return 1.30
        if self.consecutive_losses >= 3:
            return 1.15
        if self.consecutive_wins >= 5:
            return 0.82
        if self.consecutive_wins >= 3:
            return 0.90
        return 1.0

    def _stake_multiplier(self) -> float:
        if self.consecutive_losses >= 5:
            return 0.35
        if self.consecutive_losses >= 3:
            return 0.55
        if self.consecutive_wins >= 7:
            return 1.40
        if self.consecutive_wins >= 5:
            return 1.25
        if self.consecutive_wins >= 3:
            return 1.12
        return 1.0

    def _recalculate(self):
        self.edge_multiplier = _clamp(self._win_rate_multiplier() * self._streak_multiplier(),
                                      EDGE_MULT_MIN, EDGE_MULT_MAX)
        self.stake_multiplier = self._stake_multiplier()
        self.direction_weights = {k: self._weight(self._win_rate(o), DIRECTION_WEIGHT)
                                  for k, o in self.direction_outcomes.items()}
        self.vol_weights = {k: self._weight(self._win_rate(o), VOL_WEIGHT)
                            for k, o in self.vol_outcomes.items()}
        self.time_weights = {k: self._weight(self._win_rate(o), TIME_WEIGHT)
                             for k, o in self.time_outcomes.items()}

        if self.total_bets < self.min_samples:
            self.regime = "LEARNING"
        elif self.edge_multiplier > 1.15:
            self.regime = "DEFENSIVE"
        elif self.edge_multiplier < 0.88:
            self.regime = "AGGRESSIVE"
        else:
            self.regime = "NORMAL"
        self.last_update = datetime.now(timezone.utc).isoformat()

    # === Queries ===

    def get_adjusted_edge(self, base_edge: float, context=None) -> float:
        """
        Minimum edge for a trade in this context.

        Each bucket weight w contributes a factor (2 - w): a weak bucket
        (w < 1) raises the bar, a strong one lowers it.
        """
        with self._lock:
            mult = self.edge_multiplier
            if context is not None:
                direction = getattr(context, "direction", None)
                vol = getattr(context, "vol_regime", None)
                window = getattr(context, "time_window", None)
                if direction in self.direction_weights:
                    mult *= 2.0 - self.direction_weights[direction]
                if vol in self.vol_weights:
                    mult *= 2.0 - self.vol_weights[vol]
                if window in self.time_weights:
                    mult *= 2.0 - self.time_weights[window]
            return base_edge * _clamp(mult, ADJUSTED_EDGE_MIN, ADJUSTED_EDGE_MAX)

    def get_stake_multiplier(self) -> float:
        return self.stake_multiplier

    def get_direction_weight(self, direction: str) -> float:
        return self.direction_weights.get(direction, 1.0)

    def should_avoid_direction(self, direction: str) -> bool:
        """Veto a direction with >= 5 recent samples and < 20% wins."""
        with self._lock:
            outcomes = self.direction_outcomes.get(direction)
            if outcomes is None or len(outcomes) < AVOID_MIN_SAMPLES:
                return False
            return sum(1 for v in outcomes if v) / len(outcomes) < AVOID_WIN_RATE

    def current_time_window(self) -> str:
        return time_window()

    def get_status(self) -> dict:
        """Snapshot for the dashboard"""
        def buckets(outcomes: Dict[str, deque], weights: Dict[str, float] = None) -> dict:
            result = {}
            for key, o in outcomes.items():
                wr = self._win_rate(o)
                entry = {"win_rate": round(wr * 100, 1) if wr is not None else None, "n": len(o)}
                if weights is not None:
                    entry["weight"] = round(weights.get(key, 1.0), 3)
                result[key] = entry
            return result

        with self._lock:
            if self.consecutive_wins > 0:
                current = f"{self.consecutive_wins}W"
            elif self.consecutive_losses > 0:
                current = f"{self.consecutive_losses}L"
            else:
                current = "-"
            return {
                "regime": self.regime,
                "edge_multiplier": round(self.edge_multiplier, 2),
                "stake_multiplier": round(self.stake_multiplier, 2),
                "streak": {
                    "current": current,
                    "peak_win": self.peak_win_streak,
                    "worst_loss": self.worst_loss_streak,
                },
                "overall": {
                    "bets": self.total_bets,
                    "wins": self.total_wins,
                    "losses": self.total_losses,
                    "win_rate": round(self.total_wins / self.total_bets * 100) if self.total_bets else 0,
                    "pnl": round(self.total_pnl, 2),
                },
                "directions": buckets(self.direction_outcomes, self.direction_weights),
                "tiers": buckets(self.tier_outcomes),
                "vol": buckets(self.vol_outcomes, self.vol_weights),
                "time": buckets(self.time_outcomes, self.time_weights),
                "recent": [asdict(r) for r in reversed(list(self.history)[-12:])],
                "last_update": self.last_update,
            }

    # === Persistence ===

    def serialize(self) -> str:
        """Raw counts only; derived multipliers are recomputed on restore."""
        with self._lock:
            data = {
                "version": 1,
                "directions": {k: [int(v) for v in o] for k, o in self.direction_outcomes.items()},
                "tiers": {k: [int(v) for v in o] for k, o in self.tier_outcomes.items()},
                "vol": {k: [int(v) for v in o] for k, o in self.vol_outcomes.items()},
                "time": {k: [int(v) for v in o] for k, o in self.time_outcomes.items()},
                "consecutive_wins": self.consecutive_wins,
                "consecutive_losses": self.consecutive_losses,
                "peak_win_streak": self.peak_win_streak,
                "worst_loss_streak": self.worst_loss_streak,
                "total_bets": self.total_bets,
                "total_wins": self.total_wins,
                "total_losses": self.total_losses,
                "total_pnl": round(self.total_pnl, 4),
                "history": [asdict(r) for r in self.history],
            }
        return json.dumps(data)

    def restore(self, payload: str):
        """Replace state from serialize() output. Raises ValueError on malformed input."""
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("Correction snapshot must be a JSON object")

        with self._lock:
            self._reset()

            def load_buckets(target: Dict[str, deque], raw: dict):
                for key, values in (raw or {}).items():
                    bucket = self._bucket(target, key)
                    bucket.extend(bool(v) for v in values)

            load_buckets(self.direction_outcomes, data.get("directions"))
            load_buckets(self.tier_outcomes, data.get("tiers"))
            load_buckets(self.vol_outcomes, data.get("vol"))
            load_buckets(self.time_outcomes, data.get("time"))

            self.consecutive_wins = int(data.get("consecutive_wins", 0))
            self.consecutive_losses = int(data.get("consecutive_losses", 0))
            self.peak_win_streak = int(data.get("peak_win_streak", 0))
            self.worst_loss_streak = int(data.get("worst_loss_streak", 0))
            self.total_bets = int(data.get("total_bets", 0))
            self.total_wins = int(data.get("total_wins", 0))
            self.total_losses = int(data.get("total_losses", 0))
            self.total_pnl = float(data.get("total_pnl", 0.0))
            for entry in data.get("history", []):
                try:
                    self.history.append(OutcomeRecord(**entry))
                except TypeError:
                    print(f"[CORR] Skipping malformed history entry: {entry}")

            self._recalculate()
        print(f"[CORR] Restored {self.total_bets} outcomes (regime={self.regime})")

    def save(self, path: str = None):
        """Atomic write (tmp + replace)."""
        path = os.path.abspath(path or self.config.correction_state_file)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w") as f:
            f.write(self.serialize())
        os.replace(tmp_path, path)

    def load(self, path: str = None) -> bool:
        """Restore from disk. Missing or unreadable file = cold start (returns False)."""
        path = os.path.abspath(path or self.config.correction_state_file)
        if not os.path.exists(path):
            print("[CORR] No saved state, starting cold (LEARNING)")
            return False
        try:
            with open(path, "r") as f:
                self.restore(f.read())
            return True
        except (OSError, ValueError, TypeError) as e:
            print(f"[CORR] Could not restore {path}: {e} - starting cold")
            with self._lock:
                self._reset()
            return False
