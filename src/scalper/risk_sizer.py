"""
Risk Sizer - converts an opportunity into a bounded stake

Two regimes:
1. Fractional Kelly for normal opportunities
2. Fixed tiers for micro / thin-edge opportunities

Both end with an absolute cost ceiling as a fraction of bankroll,
independent of the sizing formula.
"""

import math
from dataclasses import dataclass

from ..core.config import ScalperConfig
from .edge_model import Opportunity


@dataclass
class StakeDecision:
    """Result of sizing one opportunity"""
    accepted: bool
    contracts: int = 0
    price: int = 0
    cost: float = 0.0            # dollars
    regime: str = "kelly"        # kelly / micro
    kelly_fraction: float = 0.0
    drawdown_multiplier: float = 1.0
    stake_multiplier: float = 1.0
    reason: str = ""


def drawdown_multiplier(drawdown: float, config: ScalperConfig) -> float:
    """1.0, halved past 30% drawdown, quartered past 50%."""
    if drawdown > config.drawdown_severe_threshold:
        return 0.25
    if drawdown > config.drawdown_reduce_threshold:
        return 0.5
    return 1.0


def kelly_fraction(prob: float, price: int, cap: float = 0.15) -> float:
    """Full-Kelly fraction for a binary contract bought at `price` cents, capped."""
    if price <= 0 or price >= 100:
        return 0.0
    b = (100 - price) / price
    q = 1 - prob
    f = (b * prob - q) / b
    return max(0.0, min(cap, f))


class RiskSizer:
    """Stake sizing with hard bankroll caps"""

    def __init__(self, config: ScalperConfig):
        self.config = config

    def size(self, opportunity: Opportunity, bankroll: float, drawdown: float = 0.0,
             stake_multiplier: float = 1.0) -> StakeDecision:
        if bankroll <= 0:
            return StakeDecision(accepted=False, price=opportunity.price, reason="No bankroll")
        if opportunity.is_micro or opportunity.net_edge < self.config.thin_edge_threshold:
            return self._size_micro(opportunity, bankroll)
        return self._size_kelly(opportunity, bankroll, drawdown, stake_multiplier)

    def _size_kelly(self, opp: Opportunity, bankroll: float, drawdown: float,
                    stake_multiplier: float) -> StakeDecision:
        cfg = self.config
        price = opp.price
        f = kelly_fraction(opp.model_prob, price, cfg.kelly_cap)
        dd_mult = drawdown_multiplier(drawdown, cfg)
        decision = StakeDecision(accepted=False, price=price, regime="kelly", kelly_fraction=f,
                                 drawdown_multiplier=dd_mult, stake_multiplier=stake_multiplier)
        if f <= 0:
            decision.reason = "Kelly fraction is zero"
            return decision

        bet = bankroll * f * cfg.kelly_damping * stake_multiplier * dd_mult
        bet = min(bet, bankroll * cfg.max_bet_fraction)
        bet = max(bet, cfg.min_bet_dollars)

        contracts = max(1, math.floor(bet * 100 / price))
        cost = contracts * price / 100
        decision.contracts = contracts
        decision.cost = cost

        if cost > bankroll * cfg.max_cost_fraction:
            decision.reason = f"Cost ${cost:.2f} exceeds {cfg.max_cost_fraction:.0%} of ${bankroll:.2f}"
            return decision

        decision.accepted = True
        decision.reason = f"kelly={f:.3f} x{cfg.kelly_damping} x{stake_multiplier:.2f} x{dd_mult}"
        return decision

    def _size_micro(self, opp: Opportunity, bankroll: float) -> StakeDecision:
        cfg = self.config
        price = opp.price
        decision = StakeDecision(accepted=False, price=price, regime="micro")

        count = 1
        for min_ev, tier_count in sorted(cfg.micro_tiers, key=lambda t: t[0], reverse=True):
            if opp.ev >= min_ev:
                count = int(tier_count)
                break

        risk_ceiling = min(cfg.micro_max_risk_dollars, bankroll * cfg.micro_risk_fraction)
        affordable = math.floor(risk_ceiling * 100 / price)
        contracts = max(1, min(count, affordable))
        cost = contracts * price / 100
        decision.contracts = contracts
        decision.cost = cost

        if cost > bankroll * cfg.micro_max_cost_fraction:
            decision.reason = f"Cost ${cost:.2f} exceeds {cfg.micro_max_cost_fraction:.0%} of ${bankroll:.2f}"
            return decision

        decision.accepted = True
        decision.reason = f"tier={count} ceiling=${risk_ceiling:.2f}"
        return decision
