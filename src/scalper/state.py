"""
Engine state owned by the scheduler and passed to every component.

Only the lifecycle manager (on resolution) and the balance refresh mutate
bankroll, peak and streak.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from .lifecycle import Position


@dataclass
class EngineState:
    bankroll: float
    starting_bankroll: float
    target_bankroll: float
    time_limit_hours: float
    peak: float = 0.0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # +N = N wins in a row, -N = N losses in a row
    streak: int = 0

    # Discovery pause (operator, loss-streak cooldown or emergency cooldown)
    paused_until: Optional[datetime] = None
    pause_reason: str = ""
    operator_paused: bool = False
    emergency_triggered: bool = False
    emergency_paused: bool = False

    # order_id -> Position
    positions: Dict[str, "Position"] = field(default_factory=dict)
    resolved: deque = field(default_factory=lambda: deque(maxlen=50))

    total_bets: int = 0
    wins: int = 0
    losses: int = 0
    total_wagered: float = 0.0
    micro_bets: int = 0
    micro_wins: int = 0
    cycle_count: int = 0
    terminal_reason: Optional[str] = None  # "TIME_UP" / "TARGET_HIT"

    def __post_init__(self):
        if self.peak < self.bankroll:
            self.peak = self.bankroll

    @property
    def drawdown(self) -> float:
        """Fractional drawdown from peak, rounded so 60.0% compares exactly."""
        if self.peak <= 0:
            return 0.0
        return round(max(0.0, (self.peak - self.bankroll) / self.peak), 6)

    @property
    def pnl(self) -> float:
        return self.bankroll - self.starting_bankroll

    @property
    def elapsed_hours(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds() / 3600

    @property
    def deadline(self) -> datetime:
        return self.started_at + timedelta(hours=self.time_limit_hours)

    @property
    def win_rate(self) -> float:
        resolved = self.wins + self.losses
        return self.wins / resolved if resolved else 0.0

    @property
    def loss_streak(self) -> int:
        return -self.streak if self.streak < 0 else 0

    @property
    def is_terminal(self) -> bool:
        return self.terminal_reason is not None

    def update_balance(self, balance: float):
        """Venue balance refresh; raises the high-water mark."""
        self.bankroll = balance
        self.raise_peak()

    def raise_peak(self):
        if self.bankroll > self.peak:
            self.peak = self.bankroll

    def apply_outcome(self, pnl: float, won: bool, micro: bool = False):
        """Bankroll, streak and counters for one resolved position."""
        self.bankroll = round(self.bankroll + pnl, 2)
        if won:
            self.wins += 1
            self.streak = self.streak + 1 if self.streak > 0 else 1
            if micro:
                self.micro_wins += 1
        else:
            self.losses += 1
            self.streak = self.streak - 1 if self.streak < 0 else -1
        self.raise_peak()

    def open_count(self, ticker: str) -> int:
        return sum(1 for p in self.positions.values() if p.ticker == ticker)

    def is_paused(self, now: datetime = None) -> bool:
        if self.operator_paused:
            return True
        if self.paused_until is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now < self.paused_until

    def pause_for(self, minutes: float, reason: str, now: datetime = None):
        now = now or datetime.now(timezone.utc)
        self.paused_until = now + timedelta(minutes=minutes)
        self.pause_reason = reason
