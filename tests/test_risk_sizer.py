"""
Unit tests for stake sizing (Kelly + micro tiers + cost ceilings)
"""

import pytest

from src.core.config import ScalperConfig
from src.core.models import Side
from src.scalper.edge_model import Opportunity, OpportunityKind, TradeContext
from src.scalper.risk_sizer import RiskSizer, drawdown_multiplier, kelly_fraction


def opportunity(prob: float, price: int, net_edge: float = 0.10, ev: float = 5.0,
                kind: OpportunityKind = OpportunityKind.QUANT) -> Opportunity:
    return Opportunity(
        kind=kind,
        ticker="KXBTC15M-26OCT181215-15",
        side=Side.YES,
        price=price,
        model_prob=prob,
        edge=prob - price / 100,
        fee=1.75,
        net_edge=net_edge,
        net_payout=100 - price - 1.75,
        ev=ev,
        minutes_left=5.0,
        reference_price=65000.0,
        context=TradeContext("UP", "medium", "midday", "moderate"),
    )


@pytest.fixture
def sizer():
    return RiskSizer(ScalperConfig())


class TestKellyFraction:
    """Binary Kelly"""

    def test_even_money(self):
        assert kelly_fraction(0.6, 50, cap=1.0) == pytest.approx(0.2)

    def test_capped(self):
        assert kelly_fraction(0.9, 50, cap=0.15) == 0.15

    def test_no_edge_is_zero(self):
        assert kelly_fraction(0.4, 50) == 0.0
        assert kelly_fraction(0.5, 0) == 0.0


class TestDrawdownMultiplier:

    def test_bands(self):
        config = ScalperConfig()
        assert drawdown_multiplier(0.1, config) == 1.0
        assert drawdown_multiplier(0.35, config) == 0.5
        assert drawdown_multiplier(0.55, config) == 0.25


class TestKellySizing:
    """Normal opportunities"""

    def test_half_kelly(self, sizer):
        """Capped 15% Kelly, halved: $7.50 on $100 = 15 contracts at 50c"""
        decision = sizer.size(opportunity(0.65, 50), bankroll=100.0)
        assert decision.accepted
        assert decision.regime == "kelly"
        assert decision.contracts == 15, f"Contracts wrong: {decision.contracts}"
        assert decision.cost == pytest.approx(7.5)

    def test_drawdown_shrinks_stake(self, sizer):
        assert sizer.size(opportunity(0.65, 50), 100.0, drawdown=0.4).contracts == 7
        assert sizer.size(opportunity(0.65, 50), 100.0, drawdown=0.6).contracts == 3

    def test_stake_multiplier(self, sizer):
        decision = sizer.size(opportunity(0.65, 50), 100.0, stake_multiplier=0.55)
        assert decision.contracts == 8
        assert decision.stake_multiplier == 0.55

    def test_zero_kelly_rejected(self, sizer):
        decision = sizer.size(opportunity(0.4, 50), 100.0)
        assert not decision.accepted
        assert decision.kelly_fraction == 0.0

    def test_cost_ceiling(self, sizer):
        """$1 minimum bet buys one 60c contract, over 20% of a $2 bankroll"""
        decision = sizer.size(opportunity(0.8, 60), bankroll=2.0)
        assert not decision.accepted
        assert decision.contracts == 1
        assert "exceeds" in decision.reason

    def test_no_bankroll(self, sizer):
        assert not sizer.size(opportunity(0.65, 50), bankroll=0.0).accepted


class TestMicroSizing:
    """Micro and thin-edge opportunities use fixed tiers"""

    def test_thin_edge_uses_tiers(self, sizer):
        decision = sizer.size(opportunity(0.65, 50, net_edge=0.02, ev=5.0), 100.0)
        assert decision.accepted
        assert decision.regime == "micro"
        assert decision.contracts == 2
        assert decision.cost == pytest.approx(1.0)

    def test_low_ev_tier(self, sizer):
        decision = sizer.size(opportunity(0.83, 80, ev=2.0, kind=OpportunityKind.MICRO), 100.0)
        assert decision.regime == "micro"
        assert decision.contracts == 1

    def test_risk_ceiling_limits_count(self, sizer):
        """$1 ceiling only affords one 80c contract even in the top tier"""
        decision = sizer.size(opportunity(0.95, 80, ev=6.0, kind=OpportunityKind.MICRO), 100.0)
        assert decision.contracts == 1

    def test_backstop_rejects_small_bankroll(self, sizer):
        decision = sizer.size(opportunity(0.83, 80, ev=2.0, kind=OpportunityKind.MICRO), bankroll=5.0)
        assert not decision.accepted
        assert decision.contracts == 1
