"""
Core data models for the Kalshi crypto scalper
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from enum import Enum


class Side(Enum):
    YES = "yes"
    NO = "no"

    @property
    def opposite(self) -> "Side":
        return Side.NO if self is Side.YES else Side.YES


# Kalshi lifecycle: active -> closed -> determined -> settled
CLOSED_STATUSES = ("closed", "determined", "settled", "finalized")


@dataclass
class OrderbookLevel:
    """Single price level in orderbook"""
    price: int      # cents (1-99)
    quantity: int   # contracts

    @property
    def price_pct(self) -> float:
        return self.price / 100


@dataclass
class Orderbook:
    """
    Orderbook for a binary contract.

    Kalshi only publishes bids: a YES ask at X is a NO bid at 100 - X.
    """
    ticker: str
    yes_bids: list[OrderbookLevel] = field(default_factory=list)
    no_bids: list[OrderbookLevel] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def best_bid(self, side: Side) -> Optional[int]:
        """Highest bid for a side - the price we can sell that side at."""
        levels = self.yes_bids if side == Side.YES else self.no_bids
        levels = [lvl for lvl in levels if lvl.quantity > 0]
        if not levels:
            return None
        return max(lvl.price for lvl in levels)

    def best_ask(self, side: Side) -> Optional[int]:
        """Lowest ask for a side = 100 - best bid on the other side."""
        other = self.best_bid(side.opposite)
        return 100 - other if other is not None else None

    @property
    def is_empty(self) -> bool:
        return not self.yes_bids and not self.no_bids


@dataclass
class Contract:
    """Kalshi binary contract with current quotes (fetched fresh every cycle)"""
    ticker: str
    series_ticker: str = ""
    title: str = ""

    # Current prices (cents, 0 = no quote)
    yes_bid: int = 0
    yes_ask: int = 0
    no_bid: int = 0
    no_ask: int = 0

    close_time: Optional[datetime] = None
    strike: Optional[float] = None
    status: str = "open"
    volume: int = 0

    def minutes_to_expiry(self, now: datetime = None) -> Optional[float]:
        if self.close_time is None:
            return None
        now = now or datetime.now(timezone.utc)
        close_time = self.close_time
        if close_time.tzinfo is None:
            close_time = close_time.replace(tzinfo=timezone.utc)
        return (close_time - now).total_seconds() / 60

    def ask(self, side: Side) -> Optional[int]:
        price = self.yes_ask if side == Side.YES else self.no_ask
        return price or None

    def bid(self, side: Side) -> Optional[int]:
        price = self.yes_bid if side == Side.YES else self.no_bid
        return price or None

    @property
    def has_quotes(self) -> bool:
        return bool(self.yes_ask or self.no_ask)


@dataclass
class ContractStatus:
    """Settlement status of a contract"""
    ticker: str
    status: str
    result: Optional[str] = None  # "yes" / "no" once determined

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    @property
    def is_resolved(self) -> bool:
        return self.is_closed and self.result in ("yes", "no")


@dataclass
class OrderHandle:
    """Accepted order as returned by the venue"""
    order_id: str
    ticker: str
    status: str = "resting"     # resting / executed / canceled
    fill_count: int = 0
    remaining_count: int = 0

    @property
    def is_filled(self) -> bool:
        return self.status == "executed" or (self.fill_count > 0 and self.remaining_count == 0)

    @classmethod
    def from_api(cls, order: dict) -> "OrderHandle":
        return cls(
            order_id=order.get("order_id", ""),
            ticker=order.get("ticker", ""),
            status=order.get("status", "resting"),
            fill_count=order.get("fill_count", 0) or 0,
            remaining_count=order.get("remaining_count", 0) or 0,
        )
