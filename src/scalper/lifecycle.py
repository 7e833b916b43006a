"""
Position Lifecycle Manager

Per position:  PLACED -> FILLED -> EARLY_EXIT | SETTLED | CANCELLED
               (ABANDONED when the contract disappears from the venue)

Every terminal transition goes through _finalize(), which does the
bookkeeping (bankroll, streak, correction engine, history) exactly once.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from ..core.client import KalshiClient
from ..core.config import ScalperConfig
from ..core.models import Contract, OrderHandle, Side
from .correction_engine import CorrectionEngine, OutcomeRecord
from .edge_model import Opportunity, OpportunityKind, TradeContext
from .errors import ErrorTracker, ErrorType
from .events import EventChannel, EventType
from .risk_sizer import StakeDecision
from .state import EngineState


class PositionStatus(Enum):
    PLACED = "placed"
    FILLED = "filled"
    EARLY_EXIT = "early_exit"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = (
    PositionStatus.EARLY_EXIT,
    PositionStatus.SETTLED,
    PositionStatus.CANCELLED,
    PositionStatus.ABANDONED,
)


class ExitReason(Enum):
    EMERGENCY = "emergency"
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TIME_EXIT = "time_exit"
    FAIR_VALUE = "fair_value"


@dataclass
class Position:
    order_id: str
    ticker: str
    side: Side
    entry_price: int
    contracts: int
    cost: float
    context: TradeContext
    kind: OpportunityKind = OpportunityKind.QUANT
    dry_run: bool = False
    status: PositionStatus = PositionStatus.PLACED
    placed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
    minutes_to_expiry_at_entry: float = 0.0
    title: str = ""
    # sized with the micro tiers because the edge was thin
    thin_edge: bool = False

    filled_count: int = 0
    remaining_count: int = 0

    exit_price: Optional[int] = None
    exit_reason: Optional[str] = None
    pnl: float = 0.0
    won: Optional[bool] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_micro(self) -> bool:
        return self.kind == OpportunityKind.MICRO

    @property
    def rides_to_settlement(self) -> bool:
        return self.is_micro or self.thin_edge

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def held(self) -> int:
        """Contracts we actually own."""
        return self.filled_count

    def minutes_remaining(self, now: datetime = None) -> float:
        if self.expires_at is None:
            return 99.0
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() / 60

    def age_seconds(self, now: datetime = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.placed_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "ticker": self.ticker,
            "title": self.title,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "contracts": self.contracts,
            "filled": self.filled_count,
            "cost": round(self.cost, 2),
            "kind": self.kind.value,
            "thin_edge": self.thin_edge,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "direction": self.context.direction,
            "vol_regime": self.context.vol_regime,
            "time_window": self.context.time_window,
            "tier": self.context.tier,
            "placed_at": self.placed_at.isoformat(),
            "minutes_left": round(self.minutes_remaining(), 1),
            "exit_price": self.exit_price,
            "exit_reason": self.exit_reason,
            "pnl": round(self.pnl, 2),
            "won": self.won,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


def stop_loss_threshold(drawdown: float, config: ScalperConfig) -> int:
    """Stop-loss in cents per contract; tightens as drawdown deepens."""
    if drawdown > config.stop_loss_tight_drawdown:
        return config.stop_loss_tight_cents
    if drawdown > config.stop_loss_mid_drawdown:
        return config.stop_loss_mid_cents
    return config.stop_loss_cents


def evaluate_exit(position: Position, bid: Optional[int], drawdown: float,
                  minutes_remaining: float, config: ScalperConfig) -> Optional[ExitReason]:
    """
    First exit trigger that applies, in priority order, or None.

    Micro and thin-edge positions ride to settlement unless the emergency applies.
    """
    emergency = drawdown >= config.emergency_drawdown
    if position.rides_to_settlement and not emergency:
        return None
    if bid is None:
        return None

    pnl_per_contract = bid - position.entry_price
    if emergency:
        return ExitReason.EMERGENCY
    if pnl_per_contract >= config.take_profit_cents:
        return ExitReason.TAKE_PROFIT
    if pnl_per_contract <= stop_loss_threshold(drawdown, config):
        return ExitReason.STOP_LOSS
    if minutes_remaining < config.time_exit_minutes and pnl_per_contract >= config.time_exit_min_profit_cents:
        return ExitReason.TIME_EXIT
    low, high = config.fair_value_band
    if pnl_per_contract >= config.fair_value_min_profit_cents and low <= bid <= high:
        return ExitReason.FAIR_VALUE
    return None


def settlement_pnl(entry_price: int, contracts: int, won: bool) -> float:
    """Dollars: a win pays 100 - entry per contract, a loss forfeits entry."""
    if won:
        return (100 - entry_price) * contracts / 100
    return -entry_price * contracts / 100


class PositionLifecycleManager:
    """Owns open positions from placement to a terminal state"""

    def __init__(self, client: KalshiClient, correction: CorrectionEngine,
                 events: EventChannel, config: ScalperConfig,
                 errors: ErrorTracker = None):
        self.client = client
        self.correction = correction
        self.events = events
        self.config = config
        self.errors = errors or ErrorTracker()

    def _log(self, message: str):
        self.events.log("SCALP", message)

    # === Placement ===

    def place(self, state: EngineState, opportunity: Opportunity, decision: StakeDecision,
              contract: Contract = None, now: datetime = None) -> Optional[Position]:
        """Submit a buy for an accepted stake. Returns the new position or None."""
        now = now or datetime.now(timezone.utc)
        if not decision.accepted or decision.contracts < 1:
            return None
        if state.open_count(opportunity.ticker) >= self.config.max_positions_per_ticker:
            self._log(f"Skip {opportunity.ticker}: already at position limit")
            return None

        side = opportunity.side
        expires_at = contract.close_time if contract is not None else None
        if expires_at is None:
            expires_at = now + timedelta(minutes=opportunity.minutes_left)

        position = Position(
            order_id="",
            ticker=opportunity.ticker,
            side=side,
            entry_price=opportunity.price,
            contracts=decision.contracts,
            cost=decision.cost,
            context=opportunity.context,
            kind=opportunity.kind,
            dry_run=self.config.dry_run,
            placed_at=now,
            expires_at=expires_at,
            minutes_to_expiry_at_entry=opportunity.minutes_left,
            title=opportunity.title,
            thin_edge=decision.regime == "micro" and not opportunity.is_micro,
        )

        label = "MICRO" if opportunity.is_micro else "BET"
        summary = (f"{side.value.upper()} {opportunity.ticker} @ {opportunity.price}c x{decision.contracts} "
                   f"(${decision.cost:.2f}) | {opportunity.reason} | {opportunity.minutes_left:.1f}min")

        if self.config.dry_run:
            position.order_id = f"dry-{uuid.uuid4().hex[:8]}"
            position.status = PositionStatus.FILLED
            position.filled_count = decision.contracts
            self._log(f"{label} [DRY RUN] {summary}")
        else:
            result = self.client.place_order(opportunity.ticker, side.value, "buy",
                                             decision.contracts, opportunity.price)
            if result.get("error"):
                self.errors.record_api_error(result, f"Order on {opportunity.ticker}",
                                             ticker=opportunity.ticker)
                return None
            handle = OrderHandle.from_api(result.get("order") or {})
            if not handle.order_id:
                self.errors.record(error_type=ErrorType.VALIDATION,
                                   message=f"Order on {opportunity.ticker} returned no order id",
                                   ticker=opportunity.ticker)
                return None
            position.order_id = handle.order_id
            self._apply_fill(position, handle)
            self._log(f"{label} {summary} | order {handle.order_id[:8]} {handle.status}")

        state.positions[position.order_id] = position
        state.total_bets += 1
        state.total_wagered += decision.cost
        if opportunity.is_micro:
            state.micro_bets += 1
        self.events.emit(EventType.BET_PLACED, **position.to_dict())
        return position

    def _apply_fill(self, position: Position, handle: OrderHandle):
        if handle.is_filled:
            position.filled_count = handle.fill_count or position.contracts
            position.remaining_count = 0
            position.status = PositionStatus.FILLED
        elif handle.fill_count > 0:
            position.filled_count = handle.fill_count
            position.remaining_count = handle.remaining_count
            position.status = PositionStatus.FILLED
        else:
            position.remaining_count = handle.remaining_count or position.contracts

    # === Per-tick passes ===

    def process(self, state: EngineState, now: datetime = None):
        """One lifecycle pass: fills, settlements, exits, stale orders."""
        now = now or datetime.now(timezone.utc)
        if not state.positions:
            return
        self.sync_fills(state)
        self.check_resolutions(state, now)
        self.manage_exits(state, now)
        self.cancel_stale(state, now)

    def sync_fills(self, state: EngineState):
        """Poll live orders that are not fully filled yet."""
        for position in list(state.positions.values()):
            if position.dry_run or position.is_terminal:
                continue
            if position.status != PositionStatus.PLACED and position.remaining_count == 0:
                continue
            try:
                order = self.client.get_order_status(position.order_id)
                if order is None:
                    continue
                handle = OrderHandle.from_api(order)
                before = position.filled_count
                self._apply_fill(position, handle)
                if position.filled_count != before:
                    self._log(f"Fill {position.ticker}: {position.filled_count}/{position.contracts}")
                if handle.status == "canceled" and position.filled_count == 0:
                    self._finalize(state, position, PositionStatus.CANCELLED, exit_reason="canceled by venue")
                elif handle.status == "canceled":
                    position.remaining_count = 0
            except Exception as e:
                self.errors.record(e, message=f"Fill sync {position.order_id}", ticker=position.ticker)

    def check_resolutions(self, state: EngineState, now: datetime = None):
        """Settle positions whose contract has a declared result."""
        now = now or datetime.now(timezone.utc)
        for position in list(state.positions.values()):
            try:
                status = self.client.get_market(position.ticker)
                if status is None:
                    continue  # transient, retry next tick

                if status.status == "not_found":
                    self._log(f"Market gone: {position.ticker} - removing from tracking")
                    self._finalize(state, position, PositionStatus.ABANDONED, now=now,
                                   exit_reason="market not found")
                    continue

                if status.is_resolved:
                    if position.held == 0:
                        self._finalize(state, position, PositionStatus.CANCELLED, now=now,
                                       exit_reason="settled unfilled")
                        continue
                    won = status.result == position.side.value
                    pnl = settlement_pnl(position.entry_price, position.held, won)
                    self._finalize(state, position, PositionStatus.SETTLED, pnl=pnl, won=won,
                                   now=now, exit_reason=f"settled {status.result}")
                elif status.is_closed:
                    self._log(f"Awaiting result: {position.ticker} status={status.status}")
            except Exception as e:
                self.errors.record(e, message=f"Resolution check {position.ticker}", ticker=position.ticker)

    def manage_exits(self, state: EngineState, now: datetime = None):
        """Take profit / stop loss / time / fair value / emergency exits on held positions."""
        now = now or datetime.now(timezone.utc)
        drawdown = state.drawdown
        emergency = drawdown >= self.config.emergency_drawdown

        if emergency and not state.emergency_triggered and state.positions:
            state.emergency_triggered = True
            self._log(f"EMERGENCY EXIT: drawdown {drawdown:.0%} - closing all positions")

        for position in list(state.positions.values()):
            if position.is_terminal or position.held == 0:
                continue
            if position.rides_to_settlement and not emergency:
                continue
            try:
                book = self.client.get_orderbook(position.ticker)
                if book is None:
                    continue
                bid = book.best_bid(position.side)
                reason = evaluate_exit(position, bid, drawdown, position.minutes_remaining(now), self.config)
                if reason is None:
                    continue
                self._exit(state, position, bid, reason, now)
            except Exception as e:
                self.errors.record(e, message=f"Exit check {position.ticker}", ticker=position.ticker)

        if state.emergency_triggered and not state.positions:
            state.emergency_triggered = False
            state.emergency_paused = True
            state.pause_for(self.config.emergency_cooldown_minutes, "emergency drawdown", now)
            self._log(f"EMERGENCY PAUSE: all positions closed, pausing "
                      f"{self.config.emergency_cooldown_minutes:.0f}min at ${state.bankroll:.2f}")
            self.events.emit(EventType.EMERGENCY_PAUSE_ENTERED,
                             until=state.paused_until.isoformat(), bankroll=state.bankroll)

    def _exit(self, state: EngineState, position: Position, bid: int,
              reason: ExitReason, now: datetime):
        pnl_per_contract = bid - position.entry_price
        self._log(f"EXIT {position.side.value.upper()} {position.ticker} | {reason.value} "
                  f"{pnl_per_contract:+d}c/ct | entry:{position.entry_price}c now:{bid}c")

        if not position.dry_run:
            result = self.client.place_order(position.ticker, position.side.value, "sell",
                                             position.held, bid)
            if result.get("error"):
                # Position stays open; re-evaluated next tick
                self.errors.record_api_error(result, f"Exit order on {position.ticker}",
                                             ticker=position.ticker)
                return

        pnl = pnl_per_contract * position.held / 100
        self._finalize(state, position, PositionStatus.EARLY_EXIT, pnl=pnl, won=pnl > 0,
                       exit_price=bid, exit_reason=reason.value, now=now)

    def cancel_stale(self, state: EngineState, now: datetime = None):
        """Cancel live orders still resting after stale_order_seconds."""
        now = now or datetime.now(timezone.utc)
        for position in list(state.positions.values()):
            if position.dry_run or position.is_terminal:
                continue
            resting = position.status == PositionStatus.PLACED or position.remaining_count > 0
            if not resting or position.age_seconds(now) <= self.config.stale_order_seconds:
                continue

            result = self.client.cancel_order(position.order_id)
            if result.get("error") and result.get("status") != 404:
                self.errors.record_api_error(result, f"Cancel stale {position.order_id}",
                                             ticker=position.ticker)
                continue

            if position.held == 0:
                self._log(f"Stale cancelled: {position.order_id[:8]} {position.ticker}")
                self._finalize(state, position, PositionStatus.CANCELLED, now=now,
                               exit_reason="stale")
            else:
                position.remaining_count = 0
                position.contracts = position.held
                position.cost = position.held * position.entry_price / 100
                self._log(f"Stale remainder cancelled: {position.ticker} keeping {position.held}")

    def reconcile_fills(self, state: EngineState) -> List[str]:
        """Log settlement fills for tickers we still track (informational only)."""
        if not state.positions or not self.client.authenticated:
            return []
        fills = self.client.get_fills(limit=50)
        tracked = {p.ticker for p in state.positions.values()}
        seen = []
        for fill in fills:
            ticker = fill.get("ticker")
            if ticker in tracked and fill.get("type") == "settlement" and ticker not in seen:
                seen.append(ticker)
                self._log(f"Settlement fill seen for {ticker}")
        return seen

    # === Terminal transition ===

    def _finalize(self, state: EngineState, position: Position, status: PositionStatus,
                  pnl: float = 0.0, won: bool = None, exit_price: int = None,
                  exit_reason: str = None, now: datetime = None) -> bool:
        """
        Move a position to a terminal state. Returns False (and does nothing
        else) when the position is already terminal.
        """
        if position.is_terminal:
            state.positions.pop(position.order_id, None)
            return False

        now = now or datetime.now(timezone.utc)
        position.status = status
        position.resolved_at = now
        position.exit_price = exit_price
        position.exit_reason = exit_reason
        state.positions.pop(position.order_id, None)

        if status in (PositionStatus.CANCELLED, PositionStatus.ABANDONED):
            self._log(f"{status.value.upper()} {position.ticker} ({exit_reason}) - not counted")
            return True

        position.pnl = round(pnl, 4)
        position.won = bool(won)
        state.apply_outcome(pnl, position.won, micro=position.is_micro)

        self.correction.record_outcome(OutcomeRecord(
            ticker=position.ticker,
            side=position.side.value,
            entry_price=position.entry_price,
            contracts=position.held,
            won=position.won,
            pnl=pnl,
            direction=position.context.direction,
            tier=position.context.tier,
            vol_regime=position.context.vol_regime,
            time_window=position.context.time_window,
            exit_reason=exit_reason or status.value,
            resolved_at=now.isoformat(),
        ))

        record = position.to_dict()
        state.resolved.append(record)
        self._log(f"{'WIN' if position.won else 'LOSS'} {position.ticker} {status.value} "
                  f"{pnl:+.2f} | bank:${state.bankroll:.2f} | streak:{state.streak:+d}"
                  f"{' [MICRO]' if position.is_micro else ''}")
        self.events.emit(EventType.BET_RESOLVED, **record)

        if not position.won:
            limit = self.config.micro_loss_streak_limit if position.is_micro else self.config.loss_streak_limit
            if state.loss_streak >= limit:
                state.pause_for(self.config.loss_cooldown_minutes, "loss streak", now)
                self._log(f"CIRCUIT BREAKER: {state.loss_streak} consecutive losses - "
                          f"pausing {self.config.loss_cooldown_minutes:.0f}min")
                self.events.emit(EventType.COOLDOWN, losses=state.loss_streak,
                                 until=state.paused_until.isoformat())
        return True
