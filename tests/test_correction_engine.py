"""
Unit tests for the correction engine (adaptive multipliers + persistence)
"""

import json
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from src.core.config import ScalperConfig
from src.scalper.correction_engine import (
    CorrectionEngine, OutcomeRecord, price_tier, time_window,
)


def outcome(won: bool, direction: str = "UP", pnl: float = None, price: int = 50) -> OutcomeRecord:
    if pnl is None:
        pnl = 0.5 if won else -0.5
    return OutcomeRecord(
        ticker="KXBTC15M-26OCT181215-15", side="yes", entry_price=price, contracts=1,
        won=won, pnl=pnl, direction=direction, vol_regime="medium", time_window="midday",
    )


@pytest.fixture
def engine():
    return CorrectionEngine(ScalperConfig())


class TestBuckets:
    """Price tier and session bucketing"""

    def test_price_tiers(self):
        """70c+ is safe, 35c+ moderate, anything lower risky"""
        assert price_tier(70) == "safe"
        assert price_tier(69) == "moderate"
        assert price_tier(35) == "moderate"
        assert price_tier(34) == "risky"

    def test_time_window_uses_eastern_hours(self):
        """15:00 UTC in January is 10:00 Eastern (midday)"""
        assert time_window(datetime(2026, 1, 15, 15, 0, tzinfo=timezone.utc)) == "midday"
        assert time_window(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)) == "morning"
        assert time_window(datetime(2026, 1, 15, 20, 0, tzinfo=timezone.utc)) == "afternoon"
        assert time_window(datetime(2026, 1, 15, 3, 0, tzinfo=timezone.utc)) == "evening"


class TestColdStart:
    """Fresh engine is neutral"""

    def test_neutral_multipliers(self, engine):
        """No outcomes: every multiplier is 1.0 and the regime is LEARNING"""
        assert engine.edge_multiplier == 1.0
        assert engine.get_stake_multiplier() == 1.0
        assert engine.regime == "LEARNING"
        assert engine.get_adjusted_edge(0.05) == pytest.approx(0.05)

    def test_no_direction_veto(self, engine):
        assert engine.should_avoid_direction("UP") is False
        assert engine.get_direction_weight("UP") == 1.0


class TestLosingStreak:
    """Losses make the engine stricter and smaller"""

    def test_three_losses(self, engine):
        """0% win rate (1.35) times 3-loss streak (1.15) = 1.5525"""
        for _ in range(3):
            engine.record_outcome(outcome(False))

        assert engine.consecutive_losses == 3
        assert engine.total_losses == 3
        assert engine.edge_multiplier == pytest.approx(1.5525), f"Edge mult wrong: {engine.edge_multiplier}"
        assert engine.get_stake_multiplier() == pytest.approx(0.55)
        assert engine.regime == "DEFENSIVE"

    def test_losses_never_grow_the_stake(self, engine):
        prev_stake = engine.get_stake_multiplier()
        prev_edge = engine.edge_multiplier
        for n in range(1, 9):
            engine.record_outcome(outcome(False))
            stake = engine.get_stake_multiplier()
            assert stake <= prev_stake, f"Stake grew after loss {n}: {prev_stake} -> {stake}"
            assert engine.edge_multiplier >= prev_edge, f"Edge bar dropped after loss {n}"
            assert engine.edge_multiplier <= 1.70
            prev_stake, prev_edge = stake, engine.edge_multiplier

    def test_edge_multiplier_clamped(self, engine):
        """Five losses would give 1.35 * 1.30 = 1.755, clamped to 1.70"""
        for _ in range(5):
            engine.record_outcome(outcome(False))
        assert engine.edge_multiplier == pytest.approx(1.70)
        assert engine.get_stake_multiplier() == pytest.approx(0.35)

    def test_direction_veto_needs_five_samples(self, engine):
        """A direction is avoided after >= 5 samples under 20% wins"""
        for _ in range(4):
            engine.record_outcome(outcome(False, direction="DOWN"))
        assert engine.should_avoid_direction("DOWN") is False

        engine.record_outcome(outcome(False, direction="DOWN"))
        assert engine.should_avoid_direction("DOWN") is True
        assert engine.should_avoid_direction("UP") is False

    def test_weak_direction_raises_adjusted_edge(self, engine):
        """Losing direction bucket raises the bar above the global multiplier alone"""
        for _ in range(3):
            engine.record_outcome(outcome(False, direction="UP"))

        base = 0.05
        plain = engine.get_adjusted_edge(base)
        with_context = engine.get_adjusted_edge(base, SimpleNamespace(direction="UP"))
        assert engine.get_direction_weight("UP") == pytest.approx(0.4)
        assert with_context > plain, f"Context should raise the bar: {with_context} vs {plain}"
        assert with_context <= base * 2.5


class TestWinningStreak:
    """Wins loosen the edge bar and grow the stake"""

    def test_five_wins(self, engine):
        """100% win rate (0.78) times 5-win streak (0.82)"""
        for _ in range(5):
            engine.record_outcome(outcome(True))

        assert engine.edge_multiplier == pytest.approx(0.78 * 0.82)
        assert engine.get_stake_multiplier() == pytest.approx(1.25)
        assert engine.regime == "AGGRESSIVE"
        assert engine.peak_win_streak == 5

    def test_wins_never_raise_the_edge_bar(self, engine):
        """Edge multiplier only falls over a winning run and stops at its 0.55 floor"""
        prev = engine.edge_multiplier
        for n in range(1, 9):
            engine.record_outcome(outcome(True))
            mult = engine.edge_multiplier
            assert mult <= prev, f"Edge multiplier rose after win {n}: {prev} -> {mult}"
            assert mult >= 0.55, f"Edge multiplier under floor after win {n}: {mult}"
            prev = mult

    def test_loss_resets_win_streak(self, engine):
        for _ in range(3):
            engine.record_outcome(outcome(True))
        event = engine.record_outcome(outcome(False))

        assert engine.consecutive_wins == 0
        assert engine.consecutive_losses == 1
        assert event["type"] == "LOSS"
        assert event["streak"] == -1


class TestListeners:
    """Change notifications"""

    def test_listener_receives_event(self, engine):
        seen = []
        engine.add_listener(seen.append)
        engine.record_outcome(outcome(True, pnl=1.234))

        assert len(seen) == 1
        assert seen[0]["type"] == "WIN"
        assert seen[0]["pnl"] == 1.23

    def test_failing_listener_does_not_break_recording(self, engine):
        def boom(event):
            raise RuntimeError("listener down")

        engine.add_listener(boom)
        engine.record_outcome(outcome(True))
        assert engine.total_bets == 1


class TestPersistence:
    """Raw counts survive a save/load; derived values are recomputed"""

    def test_save_and_load(self, engine, tmp_path):
        for won in (True, False, False, False, True):
            engine.record_outcome(outcome(won, direction="DOWN"))
        path = str(tmp_path / "correction.json")
        engine.save(path)

        restored = CorrectionEngine(ScalperConfig())
        assert restored.load(path) is True
        assert restored.total_bets == 5
        assert restored.total_wins == 2
        assert restored.consecutive_wins == 1
        assert restored.edge_multiplier == pytest.approx(engine.edge_multiplier)
        assert restored.get_stake_multiplier() == pytest.approx(engine.get_stake_multiplier())
        assert restored.regime == engine.regime
        assert len(restored.history) == 5

    def test_derived_values_not_serialized(self, engine):
        engine.record_outcome(outcome(True))
        data = json.loads(engine.serialize())
        assert "edge_multiplier" not in data
        assert "stake_multiplier" not in data
        assert data["directions"]["UP"] == [1]

    def test_missing_file_is_cold_start(self, engine, tmp_path):
        assert engine.load(str(tmp_path / "nope.json")) is False
        assert engine.regime == "LEARNING"

    def test_corrupt_file_is_cold_start(self, engine, tmp_path):
        path = tmp_path / "correction.json"
        path.write_text("{not json")
        engine.record_outcome(outcome(False))

        assert engine.load(str(path)) is False
        assert engine.total_bets == 0
        assert engine.edge_multiplier == 1.0

    def test_restore_rejects_non_object(self, engine):
        with pytest.raises(ValueError):
            engine.restore("[1, 2, 3]")
