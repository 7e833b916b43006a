"""
Shared fakes: an in-memory venue client and a fixed signal feed
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.core.config import ScalperConfig
from src.core.models import Contract, ContractStatus, Orderbook, OrderbookLevel
from src.scalper.signal_feed import SignalSnapshot

NOW = datetime(2026, 10, 18, 16, 0, tzinfo=timezone.utc)


class FakeClient:
    """Stands in for KalshiClient; every call is recorded"""

    def __init__(self):
        self.authenticated = True
        self.balance = 100.0
        self.markets = {}           # series ticker (or None) -> [Contract]
        self.failing_series = set()
        self.statuses = {}          # ticker -> ContractStatus
        self.books = {}             # ticker -> Orderbook
        self.order_results = []     # queued place_order responses
        self.order_statuses = {}    # order_id -> order dict
        self.cancel_result = {"order": {"status": "canceled"}}
        self.fills = []
        self.orders = []
        self.cancels = []
        self.market_queries = []

    def get_balance(self):
        return self.balance

    def get_markets(self, series_ticker=None, status="open", limit=200):
        self.market_queries.append((series_ticker, limit))
        if series_ticker in self.failing_series:
            return None
        return list(self.markets.get(series_ticker, []))

    def get_market(self, ticker):
        return self.statuses.get(ticker, ContractStatus(ticker=ticker, status="active"))

    def get_orderbook(self, ticker, depth=10):
        return self.books.get(ticker)

    def place_order(self, ticker, side, action, count, price):
        self.orders.append({"ticker": ticker, "side": side, "action": action,
                            "count": count, "price": price})
        if self.order_results:
            return self.order_results.pop(0)
        return {"order": {"order_id": f"ord-{len(self.orders):04d}", "ticker": ticker,
                          "status": "executed", "fill_count": count, "remaining_count": 0}}

    def cancel_order(self, order_id):
        self.cancels.append(order_id)
        return self.cancel_result

    def get_order_status(self, order_id):
        return self.order_statuses.get(order_id)

    def get_fills(self, ticker=None, limit=100):
        return list(self.fills)

    def set_bid(self, ticker, yes_bid=None, no_bid=None):
        self.books[ticker] = Orderbook(
            ticker=ticker,
            yes_bids=[OrderbookLevel(yes_bid, 10)] if yes_bid else [],
            no_bids=[OrderbookLevel(no_bid, 10)] if no_bid else [],
        )


class FakeFeed:
    """Returns a fixed snapshot per asset"""

    def __init__(self, snapshots=None):
        self.snapshots = snapshots or {}
        self.requests = []

    def get_snapshot(self, asset="BTC"):
        self.requests.append(asset)
        return self.snapshots.get(asset)


def make_contract(ticker="KXBTC15M-26OCT181215-15", yes_ask=53, no_ask=48, minutes=3.0,
                  strike=65000.0, series="KXBTC15M", now=NOW) -> Contract:
    return Contract(
        ticker=ticker,
        series_ticker=series,
        title="BTC price up in next 15 mins?",
        yes_bid=max(yes_ask - 2, 0),
        yes_ask=yes_ask,
        no_bid=max(no_ask - 2, 0),
        no_ask=no_ask,
        close_time=now + timedelta(minutes=minutes),
        strike=strike,
    )


def make_snapshot(asset="BTC", price=65010.0, **kwargs) -> SignalSnapshot:
    return SignalSnapshot(asset=asset, price=price, volatility_5m=kwargs.pop("volatility_5m", 0.10),
                          source="test", **kwargs)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def config(tmp_path):
    return ScalperConfig(
        candidate_delay_seconds=0,
        correction_state_file=str(tmp_path / "correction_state.json"),
    )
