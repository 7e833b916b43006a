"""
Unit tests for the scalper cycle (discovery, gating, terminal states, loop control)
"""

import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, FakeFeed, make_contract, make_snapshot
from src.core.models import Contract, ContractStatus, Side
from src.scalper.correction_engine import CorrectionEngine
from src.scalper.edge_model import TradeContext
from src.scalper.errors import ErrorType
from src.scalper.events import EventType
from src.scalper.lifecycle import Position, PositionStatus
from src.scalper.scheduler import ScalperEngine, is_crypto_15m


def make_engine(client, config, snapshots=None) -> ScalperEngine:
    feed = FakeFeed({"BTC": make_snapshot()} if snapshots is None else snapshots)
    return ScalperEngine(client, config, feed=feed, correction=CorrectionEngine(config))


def open_position(engine, ticker="KXBTC15M-OTHER", order_id="ord-9") -> Position:
    pos = Position(
        order_id=order_id, ticker=ticker, side=Side.YES, entry_price=50, contracts=1, cost=0.5,
        context=TradeContext("UP", "medium", "midday", "moderate"),
        status=PositionStatus.FILLED, placed_at=NOW, expires_at=NOW + timedelta(minutes=10),
        filled_count=1,
    )
    engine.state.positions[order_id] = pos
    return pos


class TestCrypto15mFilter:

    def test_matches(self):
        assert is_crypto_15m(Contract(ticker="KXBTC15M-26OCT181215-15"))
        assert is_crypto_15m(Contract(ticker="X-1", title="Ethereum price in 15 min?"))

    def test_rejects(self):
        assert not is_crypto_15m(Contract(ticker="KXBTCD-26OCT18", title="Bitcoin daily"))
        assert not is_crypto_15m(Contract(ticker="KXNBA15M-X", title="Lakers"))


class TestCycle:
    """Discovery through placement"""

    def test_places_best_opportunity(self, client, config):
        client.markets["KXBTC15M"] = [make_contract()]
        engine = make_engine(client, config)

        assert engine.run_cycle(now=NOW) is True
        assert len(engine.state.positions) == 1
        order = client.orders[0]
        assert order["action"] == "buy"
        assert order["side"] == "yes"
        assert order["price"] == 53
        assert order["count"] == 10, f"Kelly count wrong: {order['count']}"
        assert engine.state.total_bets == 1
        assert len(engine.events.recent(event_type=EventType.HEARTBEAT)) == 1

    def test_dry_run_never_orders(self, client, config):
        config.dry_run = True
        client.markets["KXBTC15M"] = [make_contract()]
        engine = make_engine(client, config)
        engine.run_cycle(now=NOW)

        assert client.orders == []
        (pos,) = engine.state.positions.values()
        assert pos.order_id.startswith("dry-")

    def test_live_balance_overwrites_bankroll(self, client, config):
        client.balance = 150.0
        engine = make_engine(client, config)
        engine.run_cycle(now=NOW)
        assert engine.state.bankroll == 150.0
        assert engine.state.peak == 150.0

    def test_missing_balance_keeps_bankroll(self, client, config):
        client.balance = None
        engine = make_engine(client, config)
        engine.run_cycle(now=NOW)
        assert engine.state.bankroll == 100.0

    def test_outside_window_skipped(self, client, config):
        client.markets["KXBTC15M"] = [make_contract(minutes=20)]
        engine = make_engine(client, config)
        engine.run_cycle(now=NOW)
        assert client.orders == []

    def test_snapshot_per_asset(self, client, config):
        eth = make_contract(ticker="KXETH15M-26OCT181215-15", series="KXETH15M", strike=2500.0)
        client.markets["KXETH15M"] = [eth]
        engine = make_engine(client, config, {"ETH": make_snapshot("ETH", price=2500.5)})
        engine.run_cycle(now=NOW)

        assert engine.feed.requests == ["ETH"]
        assert "ETH" in engine.get_status()["signals"]

    def test_no_snapshot_no_bet(self, client, config):
        client.markets["KXBTC15M"] = [make_contract()]
        engine = make_engine(client, config, snapshots={})
        assert engine.run_cycle(now=NOW) is True
        assert client.orders == []

    def test_missing_quotes_filled_from_book(self, client, config):
        contract = make_contract(yes_ask=0, no_ask=0)
        client.markets["KXBTC15M"] = [contract]
        client.set_bid(contract.ticker, yes_bid=52, no_bid=47)
        engine = make_engine(client, config)
        engine.run_cycle(now=NOW)

        assert client.orders and client.orders[0]["price"] == 53


class TestDiscovery:
    """Per-series fan-out with a broad fallback"""

    def test_fallback_to_broad_search(self, client, config):
        client.markets[None] = [
            make_contract(),
            Contract(ticker="KXNFL-GAME", title="Who wins?", yes_ask=50, no_ask=50,
                     close_time=NOW + timedelta(minutes=3)),
        ]
        engine = make_engine(client, config)
        engine.run_cycle(now=NOW)

        assert (None, 1000) in client.market_queries
        assert [o["ticker"] for o in client.orders] == ["KXBTC15M-26OCT181215-15"]

    def test_failed_series_recorded(self, client, config):
        client.failing_series.add("KXETH15M")
        client.markets["KXBTC15M"] = [make_contract()]
        engine = make_engine(client, config)
        engine.run_cycle(now=NOW)

        assert engine.errors.counts()[ErrorType.NETWORK] == 1
        assert len(engine.events.recent(event_type=EventType.ERROR)) == 1
        assert len(client.orders) == 1

    def test_cycle_survives_exceptions(self, client, config, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("discovery exploded")

        monkeypatch.setattr(client, "get_markets", boom)
        engine = make_engine(client, config)
        assert engine.run_cycle(now=NOW) is True
        assert len(engine.errors) == 1


class TestGating:
    """Position limit and pauses block discovery, not management"""

    def test_position_limit(self, client, config):
        config.max_open_positions = 1
        client.markets["KXBTC15M"] = [make_contract()]
        engine = make_engine(client, config)
        open_position(engine)
        engine.run_cycle(now=NOW)

        assert client.market_queries == []
        assert client.orders == []

    def test_operator_pause_and_resume(self, client, config):
        client.markets["KXBTC15M"] = [make_contract()]
        engine = make_engine(client, config)
        engine.pause()
        engine.run_cycle(now=NOW)
        assert client.market_queries == []
        assert engine.get_status()["paused"] is True

        engine.resume()
        engine.run_cycle(now=NOW)
        assert len(client.orders) == 1

    def test_paused_engine_still_settles(self, client, config):
        engine = make_engine(client, config)
        open_position(engine)
        client.statuses["KXBTC15M-OTHER"] = ContractStatus("KXBTC15M-OTHER", "settled", "yes")
        engine.pause()
        engine.run_cycle(now=NOW)

        assert engine.state.positions == {}
        assert engine.state.wins == 1

    def test_resume_keeps_emergency_pause(self, client, config):
        engine = make_engine(client, config)
        engine.state.emergency_paused = True
        engine.state.pause_for(30, "emergency drawdown", NOW)
        engine.resume()
        assert engine.state.is_paused(NOW)

    def test_resume_clears_loss_cooldown(self, client, config):
        engine = make_engine(client, config)
        engine.state.pause_for(10, "loss streak", NOW)
        engine.resume()
        assert not engine.state.is_paused(NOW)

    def test_emergency_pause_expires(self, client, config):
        client.markets["KXBTC15M"] = [make_contract()]
        engine = make_engine(client, config)
        engine.state.emergency_paused = True
        engine.state.pause_for(30, "emergency drawdown", NOW - timedelta(minutes=31))
        engine.run_cycle(now=NOW)

        assert engine.state.emergency_paused is False
        assert engine.state.paused_until is None
        assert len(engine.events.recent(event_type=EventType.EMERGENCY_PAUSE_EXITED)) == 1
        assert len(client.orders) == 1


class TestTerminal:
    """Time limit and target bankroll end the run"""

    def test_time_up(self, client, config):
        engine = make_engine(client, config)
        later = engine.state.started_at + timedelta(hours=48, seconds=1)

        assert engine.run_cycle(now=later) is False
        assert engine.state.terminal_reason == "TIME_UP"
        assert len(engine.events.recent(event_type=EventType.TIME_UP)) == 1
        assert engine.run_cycle(now=later) is False
        assert engine.start() is False

    def test_target_hit(self, client, config):
        config.dry_run = True
        engine = make_engine(client, config)
        engine.state.bankroll = 10000.0

        assert engine.run_cycle(now=NOW) is False
        assert engine.state.terminal_reason == "TARGET_HIT"
        assert client.market_queries == []


class TestCorrectionWiring:

    def test_resolution_emits_correction_update(self, client, config):
        engine = make_engine(client, config)
        open_position(engine)
        client.statuses["KXBTC15M-OTHER"] = ContractStatus("KXBTC15M-OTHER", "settled", "no")
        engine.run_cycle(now=NOW)

        updates = engine.events.recent(event_type=EventType.CORRECTION_UPDATED)
        assert len(updates) == 1
        assert updates[0].data["type"] == "LOSS"

    def test_stop_persists_correction(self, client, config):
        engine = make_engine(client, config)
        engine.correction.total_bets = 3
        engine.stop()

        restored = CorrectionEngine(config)
        assert restored.load() is True
        assert restored.total_bets == 3


class TestLoopControl:
    """Background thread lifecycle"""

    def test_start_and_stop(self, client, config):
        config.dry_run = True
        engine = make_engine(client, config)

        assert engine.start() is True
        assert engine.start() is False
        engine.stop(timeout=10)

        assert engine.running is False
        assert len(engine.events.recent(event_type=EventType.ENGINE_STARTED)) == 1
        assert len(engine.events.recent(event_type=EventType.ENGINE_STOPPED)) == 1

    def test_live_start_uses_venue_balance(self, client, config):
        client.balance = 250.0
        engine = make_engine(client, config)
        engine.start()
        engine.stop(timeout=10)

        assert engine.state.starting_bankroll == 250.0

    def test_time_limit_counts_from_start(self, client, config):
        """Idle time between construction and start() does not eat into the time limit"""
        config.dry_run = True
        engine = make_engine(client, config)
        built_at = engine.state.started_at
        time.sleep(0.05)
        before = datetime.now(timezone.utc)
        engine.start()
        engine.stop(timeout=10)

        assert engine.state.started_at >= before, \
            f"Clock started at build time {built_at}, not at start()"
        assert engine.state.deadline - engine.state.started_at == timedelta(hours=config.time_limit_hours)

    def test_restart_keeps_original_clock(self, client, config):
        config.dry_run = True
        engine = make_engine(client, config)
        engine.state.total_bets = 1
        started_at = engine.state.started_at
        engine.start()
        engine.stop(timeout=10)

        assert engine.state.started_at == started_at


class TestStatus:

    def test_status_shape(self, client, config):
        engine = make_engine(client, config)
        open_position(engine)
        status = engine.get_status()

        assert status["bankroll"] == 100.0
        assert status["target"] == 10000.0
        assert set(status["countdown"]) == {"h", "m", "s", "total"}
        assert status["stats"]["bets"] == 0
        assert status["positions"][0]["ticker"] == "KXBTC15M-OTHER"
        assert status["correction"]["regime"] == "LEARNING"
