"""
Edge model for 15-minute crypto contracts.

Two ways to get a fair probability for YES:

- Quantitative (strike known): how many per-minute standard deviations the
  reference price sits from the strike, mapped through a logistic
  approximation of the normal CDF. The side the price is on is favored.
- Heuristic (no strike): quote midpoint nudged by momentum, oscillator and
  trend, with the deviation from 50% amplified near expiry.

Plus the micro tier: near-expiry favorites confirmed by momentum.

All prices are in cents (1-99). Probabilities are 0-1.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from scipy.special import expit

from ..core.config import ScalperConfig
from ..core.models import Contract, Side
from .correction_engine import CorrectionEngine, price_tier, time_window
from .signal_feed import SignalSnapshot


class OpportunityKind(Enum):
    QUANT = "quant"
    HEURISTIC = "heuristic"
    MICRO = "micro"


@dataclass
class TradeContext:
    """Buckets the correction engine learns over"""
    direction: str      # UP / DOWN
    vol_regime: str     # low / medium / high
    time_window: str    # morning / midday / afternoon / evening
    tier: str           # safe / moderate / risky


@dataclass
class Opportunity:
    kind: OpportunityKind
    ticker: str
    side: Side
    price: int                  # ask we would pay, cents
    model_prob: float           # probability our side wins
    edge: float                 # model_prob - price/100
    fee: float                  # cents per contract
    net_edge: float             # edge - fee/100
    net_payout: float           # cents per contract if we win, after fee
    ev: float                   # cents per contract
    minutes_left: float
    reference_price: float
    context: TradeContext
    reason: str = ""
    title: str = ""
    min_edge: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_micro(self) -> bool:
        return self.kind == OpportunityKind.MICRO

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "ticker": self.ticker,
            "side": self.side.value,
            "price": self.price,
            "model_prob": round(self.model_prob, 4),
            "edge": round(self.edge, 4),
            "fee": round(self.fee, 2),
            "net_edge": round(self.net_edge, 4),
            "net_payout": round(self.net_payout, 2),
            "ev": round(self.ev, 2),
            "minutes_left": round(self.minutes_left, 1),
            "reference_price": self.reference_price,
            "direction": self.context.direction,
            "vol_regime": self.context.vol_regime,
            "time_window": self.context.time_window,
            "tier": self.context.tier,
            "reason": self.reason,
        }


def kalshi_fee(price: float, rate: float = 0.07) -> float:
    """Taker fee in cents per contract: rate * p * (1 - p), peaks at 50c."""
    return rate * price * (100 - price) / 100


def expected_value(prob: float, price: float, fee: float) -> Tuple[float, float]:
    """(net payout, EV) in cents per contract."""
    net_payout = 100 - price - fee
    return net_payout, prob * net_payout - (1 - prob) * price


def flip_probability(distance: float, minutes: float, volatility_5m: float,
                     scale: float = 1.702) -> float:
    """
    Probability the reference price crosses back over the strike before expiry.

    distance: (price - strike) / price
    volatility_5m: 5-minute volatility in % of price
    """
    sigma_per_minute = volatility_5m / 100 / math.sqrt(5)
    scaled = sigma_per_minute * math.sqrt(max(minutes, 0.0))
    if scaled <= 0:
        return 0.5 if distance == 0 else 0.0
    z = abs(distance) / scaled
    return float(1 - expit(scale * z))


def vol_regime(volatility_5m: float, config: ScalperConfig) -> str:
    if volatility_5m > config.vol_high_threshold:
        return "high"
    if volatility_5m > config.vol_medium_threshold:
        return "medium"
    return "low"


def direction_for(side: Side) -> str:
    return "UP" if side == Side.YES else "DOWN"


class EdgeModel:
    """Scores contracts against a signal snapshot"""

    def __init__(self, config: ScalperConfig, correction: CorrectionEngine):
        self.config = config
        self.correction = correction

    # === Probability models ===

    def quantitative_probability(self, reference_price: float, strike: float,
                                 minutes: float, volatility_5m: float) -> float:
        """P(YES) from strike distance."""
        vol = max(volatility_5m, self.config.min_volatility_5m)
        distance = (reference_price - strike) / reference_price
        flip = flip_probability(distance, minutes, vol, self.config.logistic_scale)
        favored = 1 - flip
        return favored if reference_price >= strike else 1 - favored

    def heuristic_probability(self, yes_ask: Optional[int], no_ask: Optional[int],
                              snapshot: SignalSnapshot, minutes: float) -> float:
        """P(YES) from the quote midpoint plus bounded signal nudges."""
        cfg = self.config
        if yes_ask and no_ask:
            prob = (yes_ask + (100 - no_ask)) / 200
        elif yes_ask:
            prob = yes_ask / 100
        else:
            prob = 1 - no_ask / 100

        momentum = snapshot.momentum_5m * cfg.momentum_coefficient
        prob += max(-cfg.momentum_nudge_cap, min(cfg.momentum_nudge_cap, momentum))

        # Stretched oscillator leans against the move
        osc = snapshot.oscillator
        if osc > cfg.oscillator_overbought:
            stretch = (osc - cfg.oscillator_overbought) / (100 - cfg.oscillator_overbought)
            prob -= min(cfg.oscillator_nudge_cap, stretch * cfg.oscillator_nudge_cap)
        elif osc < cfg.oscillator_oversold:
            stretch = (cfg.oscillator_oversold - osc) / cfg.oscillator_oversold
            prob += min(cfg.oscillator_nudge_cap, stretch * cfg.oscillator_nudge_cap)

        trend_nudges = {
            "STRONG_UP": cfg.trend_nudge_strong,
            "UP": cfg.trend_nudge_weak,
            "DOWN": -cfg.trend_nudge_weak,
            "STRONG_DOWN": -cfg.trend_nudge_strong,
        }
        prob += trend_nudges.get(snapshot.trend, 0.0)

        # Trends are stickier near expiry
        horizon = cfg.amplification_horizon_minutes
        amplify = 1 + cfg.expiry_amplification * max(0.0, (horizon - minutes) / horizon)
        prob = 0.5 + (prob - 0.5) * amplify
        return max(0.02, min(0.98, prob))

    # === Evaluation ===

    def _context(self, side: Side, price: int, snapshot: SignalSnapshot,
                 now: datetime = None) -> TradeContext:
        return TradeContext(
            direction=direction_for(side),
            vol_regime=vol_regime(snapshot.volatility_5m, self.config),
            time_window=time_window(now) if now else self.correction.current_time_window(),
            tier=price_tier(price),
        )

    def _quotes_ok(self, contract: Contract) -> bool:
        if contract.yes_ask and contract.no_ask and contract.yes_ask + contract.no_ask > self.config.max_vig_cents:
            return False
        return contract.has_quotes

    def evaluate(self, contract: Contract, snapshot: SignalSnapshot,
                 now: datetime = None) -> Optional[Opportunity]:
        """
        Best side of a contract if it clears every filter, else None.

        Filters: entry price band, context-adjusted minimum edge, dust
        minimum on net payout, positive EV, direction veto.
        """
        cfg = self.config
        minutes = contract.minutes_to_expiry(now)
        if minutes is None or minutes <= 0 or not snapshot or not snapshot.price:
            return None
        if not self._quotes_ok(contract):
            return None

        if contract.strike:
            kind = OpportunityKind.QUANT
            base_edge = cfg.quant_min_edge
            yes_prob = self.quantitative_probability(snapshot.price, contract.strike,
                                                     minutes, snapshot.volatility_5m)
        else:
            kind = OpportunityKind.HEURISTIC
            base_edge = cfg.heuristic_min_edge
            yes_prob = self.heuristic_probability(contract.yes_ask or None, contract.no_ask or None,
                                                  snapshot, minutes)

        best = None
        for side, prob in ((Side.YES, yes_prob), (Side.NO, 1 - yes_prob)):
            price = contract.ask(side)
            if price is None or not cfg.min_entry_price <= price <= cfg.max_entry_price:
                continue
            edge = prob - price / 100
            if best is None or edge > best[2]:
                best = (side, prob, edge, price)
        if best is None:
            return None

        side, prob, edge, price = best
        context = self._context(side, price, snapshot, now)
        min_edge = self.correction.get_adjusted_edge(base_edge, context)
        if edge < min_edge:
            return None

        fee = kalshi_fee(price, cfg.fee_rate)
        net_payout, ev = expected_value(prob, price, fee)
        if net_payout < cfg.min_net_payout_cents or ev <= 0:
            return None

        if self.correction.should_avoid_direction(context.direction):
            print(f"[EDGE] {contract.ticker}: {context.direction} vetoed by recent losses")
            return None

        return Opportunity(
            kind=kind,
            ticker=contract.ticker,
            side=side,
            price=price,
            model_prob=prob,
            edge=edge,
            fee=fee,
            net_edge=edge - fee / 100,
            net_payout=net_payout,
            ev=ev,
            minutes_left=minutes,
            reference_price=snapshot.price,
            context=context,
            reason=f"{kind.value} {side.value.upper()}@{price}c p={prob:.3f} edge={edge:.3f} min={min_edge:.3f}",
            title=contract.title,
            min_edge=min_edge,
        )

    def evaluate_micro(self, contract: Contract, snapshot: SignalSnapshot,
                       now: datetime = None) -> Optional[Opportunity]:
        """Near-expiry favorite, only when momentum agrees with it."""
        cfg = self.config
        minutes = contract.minutes_to_expiry(now)
        if minutes is None or not cfg.micro_min_minutes <= minutes <= cfg.micro_max_minutes:
            return None
        if not snapshot or not contract.yes_ask or not contract.no_ask:
            return None

        momentum = snapshot.momentum_5m
        side = None
        if cfg.micro_min_price <= contract.yes_ask <= cfg.micro_max_price:
            if momentum <= cfg.micro_momentum_threshold:
                return None
            side = Side.YES
        elif cfg.micro_min_price <= contract.no_ask <= cfg.micro_max_price:
            if momentum >= -cfg.micro_momentum_threshold:
                return None
            side = Side.NO
        if side is None:
            return None

        price = contract.ask(side)
        fee = kalshi_fee(price, cfg.fee_rate)
        win_rate = min(cfg.micro_max_win_rate, price / 100 + cfg.micro_win_rate_boost)
        net_payout, ev = expected_value(win_rate, price, fee)
        if net_payout < cfg.min_net_payout_cents or ev <= 0:
            return None

        edge = win_rate - price / 100
        return Opportunity(
            kind=OpportunityKind.MICRO,
            ticker=contract.ticker,
            side=side,
            price=price,
            model_prob=win_rate,
            edge=edge,
            fee=fee,
            net_edge=edge - fee / 100,
            net_payout=net_payout,
            ev=ev,
            minutes_left=minutes,
            reference_price=snapshot.price,
            context=self._context(side, price, snapshot, now),
            reason=f"MICRO {side.value.upper()}@{price}c payout={net_payout:.1f}c mom={momentum:+.3f}",
            title=contract.title,
        )
