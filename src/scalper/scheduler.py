"""
Cycle Scheduler - drives the scalper one tick at a time

Each tick:
1. Terminal checks (time limit, target bankroll)
2. Balance refresh (live only) + high-water mark
3. Lifecycle pass: fills, settlements, early exits, stale orders
4. Discovery + scoring + sizing + placement, unless at the position
   limit or paused (operator, loss-streak cooldown, emergency cooldown)

Ticks never overlap: run_cycle() holds a lock, and the loop thread is the
only caller besides operator commands.
"""

import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..core.client import KalshiClient
from ..core.config import ScalperConfig, get_scalper_config
from ..core.models import Contract, Side
from .correction_engine import CorrectionEngine
from .edge_model import EdgeModel, Opportunity
from .errors import ErrorRecord, ErrorTracker, ErrorType
from .events import EventChannel, EventType
from .lifecycle import PositionLifecycleManager
from .risk_sizer import RiskSizer
from .signal_feed import SignalFeed, SignalSnapshot, asset_for_series
from .state import EngineState

CRYPTO_WORDS = ("BTC", "ETH", "SOL", "BITCOIN", "ETHEREUM", "SOLANA")


def is_crypto_15m(contract: Contract) -> bool:
    """Broad-search filter for 15-minute crypto contracts."""
    ticker = contract.ticker.upper()
    title = contract.title.upper()
    is_15m = "15M" in ticker or "15 MIN" in title
    return is_15m and any(w in ticker or w in title for w in CRYPTO_WORDS)


class ScalperEngine:
    """
    Kalshi 15-minute crypto scalper.

    Owns the EngineState and wires the feed, edge model, sizer, correction
    engine and lifecycle manager together.
    """

    def __init__(self, client: KalshiClient, config: ScalperConfig = None,
                 feed: SignalFeed = None, correction: CorrectionEngine = None,
                 events: EventChannel = None, state: EngineState = None):
        self.config = config or get_scalper_config()
        self.client = client
        self.feed = feed or SignalFeed()
        self.events = events or EventChannel(self.config.event_log_size)
        self.errors = ErrorTracker()

        if correction is None:
            correction = CorrectionEngine(self.config)
            correction.load()
        self.correction = correction
        self.correction.add_listener(self._on_correction_update)

        self.edge_model = EdgeModel(self.config, self.correction)
        self.sizer = RiskSizer(self.config)
        self.lifecycle = PositionLifecycleManager(client, self.correction, self.events,
                                                  self.config, self.errors)

        self.state = state or EngineState(
            bankroll=self.config.starting_bankroll,
            starting_bankroll=self.config.starting_bankroll,
            target_bankroll=self.config.target_bankroll,
            time_limit_hours=self.config.time_limit_hours,
        )
        if self.state.resolved.maxlen != self.config.resolved_history_size:
            self.state.resolved = deque(self.state.resolved, maxlen=self.config.resolved_history_size)

        self.running = False
        self._cycle_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_correction_save = time.time()
        self._last_snapshots: Dict[str, SignalSnapshot] = {}

    def _log(self, message: str):
        self.events.log("SCALP", message)

    def _on_correction_update(self, event: dict):
        self.events.emit(EventType.CORRECTION_UPDATED, **event)

    def record_error(self, error: Exception = None, error_type: ErrorType = None,
                     message: str = "", ticker: str = None) -> ErrorRecord:
        record = self.errors.record(error, error_type=error_type, message=message, ticker=ticker)
        self.events.emit(EventType.ERROR, type=record.error_type.value,
                         message=record.message[:200], ticker=ticker)
        return record

    # === Tick ===

    def run_cycle(self, now: datetime = None) -> bool:
        """Run one tick. Returns False once the engine reached a terminal state."""
        with self._cycle_lock:
            state = self.state
            if state.is_terminal:
                return False
            now = now or datetime.now(timezone.utc)
            state.cycle_count += 1
            try:
                if self._check_terminal(now):
                    return False

                self._refresh_balance()
                self.lifecycle.process(state, now)
                if state.positions and state.cycle_count % 5 == 0:
                    self.lifecycle.reconcile_fills(state)
                self._check_pause_expiry(now)

                self.events.emit(EventType.HEARTBEAT, cycle=state.cycle_count,
                                 bankroll=round(state.bankroll, 2), drawdown=state.drawdown,
                                 streak=state.streak, open=len(state.positions))

                if len(state.positions) >= self.config.max_open_positions:
                    if state.cycle_count % 4 == 0:
                        self._log(f"At position limit ({len(state.positions)}), managing only")
                    return True
                if state.is_paused(now):
                    if state.cycle_count % 4 == 0:
                        self._log(f"Paused ({state.pause_reason or 'operator'})")
                    return True

                self._find_and_bet(now)
            except Exception as e:
                self.record_error(e, message="Trading cycle")
            finally:
                self._maybe_save_correction()
            return not state.is_terminal

    def _check_terminal(self, now: datetime) -> bool:
        state = self.state
        reason = None
        if now >= state.deadline:
            reason = EventType.TIME_UP
            self._log(f"TIME UP: final bankroll ${state.bankroll:.2f}")
        elif state.bankroll >= state.target_bankroll:
            reason = EventType.TARGET_HIT
            self._log(f"TARGET HIT: ${state.bankroll:.2f} >= ${state.target_bankroll:.2f}")
        if reason is None:
            return False

        state.terminal_reason = reason.name
        self.events.emit(reason, bankroll=round(state.bankroll, 2), pnl=round(state.pnl, 2))
        self._stop_event.set()
        return True

    def _refresh_balance(self):
        if self.config.dry_run:
            self.state.raise_peak()
            return
        balance = self.client.get_balance()
        if balance is None:
            self._log(f"Balance unavailable, keeping ${self.state.bankroll:.2f}")
            return
        self.state.update_balance(balance)

    def _check_pause_expiry(self, now: datetime):
        state = self.state
        if state.paused_until is None or now < state.paused_until:
            return
        reason = state.pause_reason
        state.paused_until = None
        state.pause_reason = ""
        if state.emergency_paused:
            state.emergency_paused = False
            self._log("Emergency pause over, resuming discovery")
            self.events.emit(EventType.EMERGENCY_PAUSE_EXITED, bankroll=round(state.bankroll, 2))
        else:
            self._log(f"Cooldown over ({reason})")

    # === Discovery ===

    def _discover(self) -> List[Contract]:
        """Fan out over series, fan in before anything touches state."""
        series = list(self.config.series)
        contracts: List[Contract] = []
        if series:
            with ThreadPoolExecutor(max_workers=len(series)) as executor:
                results = list(executor.map(
                    lambda s: self.client.get_markets(s, "open", self.config.markets_per_series),
                    series,
                ))
            for s, found in zip(series, results):
                if found is None:
                    self.record_error(error_type=ErrorType.NETWORK, message=f"Discovery {s} failed")
                    continue
                contracts.extend(found)

        if not contracts:
            found = self.client.get_markets(None, "open", 1000)
            contracts = [c for c in found or [] if is_crypto_15m(c)]
            if contracts:
                self._log(f"Fallback: {len(contracts)} crypto 15m markets")
        return contracts

    def _snapshot(self, contract: Contract, cache: Dict[str, Optional[SignalSnapshot]]) -> Optional[SignalSnapshot]:
        asset = asset_for_series(contract.series_ticker or contract.ticker)
        if asset not in cache:
            snapshot = self.feed.get_snapshot(asset)
            cache[asset] = snapshot
            if snapshot is None:
                self._log(f"No {asset} price this cycle")
            else:
                self._last_snapshots[asset] = snapshot
        return cache[asset]

    def _ensure_quotes(self, contract: Contract) -> Contract:
        """Fill missing asks from the orderbook."""
        if contract.yes_ask and contract.no_ask:
            return contract
        book = self.client.get_orderbook(contract.ticker)
        if book is None or book.is_empty:
            return contract
        return replace(
            contract,
            yes_ask=contract.yes_ask or book.best_ask(Side.YES) or 0,
            no_ask=contract.no_ask or book.best_ask(Side.NO) or 0,
            yes_bid=contract.yes_bid or book.best_bid(Side.YES) or 0,
            no_bid=contract.no_bid or book.best_bid(Side.NO) or 0,
        )

    def _find_and_bet(self, now: datetime):
        cfg = self.config
        state = self.state
        contracts = self._discover()
        if not contracts:
            self._log("No crypto 15m markets")
            return

        in_window = []
        for c in contracts:
            minutes = c.minutes_to_expiry(now)
            if minutes is None or not cfg.min_minutes_to_expiry <= minutes <= cfg.max_minutes_to_expiry:
                continue
            if state.open_count(c.ticker) >= cfg.max_positions_per_ticker:
                continue
            in_window.append(c)
        if not in_window:
            self._log(f"All {len(contracts)} markets outside {cfg.min_minutes_to_expiry}-"
                      f"{cfg.max_minutes_to_expiry}min window")
            return

        snapshots: Dict[str, Optional[SignalSnapshot]] = {}

        # Micro first: these are the most time-sensitive
        micro = [c for c in in_window
                 if cfg.micro_min_minutes <= c.minutes_to_expiry(now) <= cfg.micro_max_minutes]
        for contract in micro[:cfg.micro_max_candidates]:
            if len(state.positions) >= cfg.max_open_positions:
                return
            snapshot = self._snapshot(contract, snapshots)
            if snapshot is None:
                continue
            try:
                contract = self._ensure_quotes(contract)
                opp = self.edge_model.evaluate_micro(contract, snapshot, now)
                if opp is not None:
                    self._size_and_place(opp, contract, now)
            except Exception as e:
                self.record_error(e, message=f"Micro analyze {contract.ticker}", ticker=contract.ticker)
            self._pace()

        scored = []
        candidates = [c for c in in_window if state.open_count(c.ticker) < cfg.max_positions_per_ticker]
        for contract in candidates[:cfg.max_candidates_scored]:
            snapshot = self._snapshot(contract, snapshots)
            if snapshot is None:
                continue
            try:
                contract = self._ensure_quotes(contract)
                opp = self.edge_model.evaluate(contract, snapshot, now)
                if opp is not None:
                    scored.append((opp, contract))
            except Exception as e:
                self.record_error(e, message=f"Analyze {contract.ticker}", ticker=contract.ticker)
            self._pace()

        if not scored:
            self._log(f"No opportunities in {min(len(candidates), cfg.max_candidates_scored)} markets")
            return

        scored.sort(key=lambda pair: (pair[0].ev, pair[0].edge), reverse=True)
        for opp, contract in scored:
            if len(state.positions) >= cfg.max_open_positions:
                break
            self._size_and_place(opp, contract, now)

    def _pace(self):
        if self.config.candidate_delay_seconds > 0:
            time.sleep(self.config.candidate_delay_seconds)

    def _size_and_place(self, opp: Opportunity, contract: Contract, now: datetime) -> bool:
        decision = self.sizer.size(opp, self.state.bankroll, self.state.drawdown,
                                   self.correction.get_stake_multiplier())
        if not decision.accepted:
            self._log(f"Sizing rejected {opp.ticker}: {decision.reason}")
            return False
        return self.lifecycle.place(self.state, opp, decision, contract, now) is not None

    def _maybe_save_correction(self, force: bool = False):
        if not force and time.time() - self._last_correction_save < self.config.correction_save_seconds:
            return
        self._last_correction_save = time.time()
        try:
            self.correction.save()
        except OSError as e:
            self.record_error(e, error_type=ErrorType.UNKNOWN, message="Saving correction state")

    # === Loop control ===

    def _init_bankroll(self):
        """Live mode starts from the venue balance."""
        if self.config.dry_run or self.state.total_bets > 0:
            return
        balance = self.client.get_balance()
        if balance is None:
            self._log(f"Balance unavailable at start, using ${self.state.bankroll:.2f}")
            return
        self.state.bankroll = balance
        self.state.starting_bankroll = balance
        self.state.peak = balance

    def start(self) -> bool:
        """Start the loop thread. Returns False if already running or finished."""
        with self._cycle_lock:
            if self.running or self.state.is_terminal:
                return False
            self._init_bankroll()
            self.running = True
            self._stop_event.clear()
            if self.state.total_bets == 0:
                self.state.started_at = datetime.now(timezone.utc)
            mode = "DRY RUN" if self.config.dry_run else "LIVE"
            self._log(f"Engine started [{mode}] bankroll ${self.state.bankroll:.2f} -> "
                      f"${self.state.target_bankroll:.2f} in {self.state.time_limit_hours:.0f}h")
            self.events.emit(EventType.ENGINE_STARTED, dry_run=self.config.dry_run,
                             bankroll=round(self.state.bankroll, 2))
            self._thread = threading.Thread(target=self.run, name="scalper-loop", daemon=True)
            self._thread.start()
            return True

    def run(self):
        """Loop until stopped or terminal. Blocks; start() runs it in a thread."""
        try:
            while not self._stop_event.is_set():
                if not self.run_cycle():
                    break
                self._stop_event.wait(self.config.cycle_interval_seconds)
        finally:
            self.running = False
            self._maybe_save_correction(force=True)
            self._log(f"Engine stopped at ${self.state.bankroll:.2f}")
            self.events.emit(EventType.ENGINE_STOPPED, bankroll=round(self.state.bankroll, 2),
                             reason=self.state.terminal_reason or "stopped")

    def stop(self, timeout: float = 30.0):
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)
        if thread is None:
            self._maybe_save_correction(force=True)
        self.running = False

    def pause(self, reason: str = "operator"):
        with self._cycle_lock:
            self.state.operator_paused = True
            self.state.pause_reason = reason
            self._log(f"Paused by {reason}")

    def resume(self):
        """Clear the operator pause and any loss-streak cooldown."""
        with self._cycle_lock:
            self.state.operator_paused = False
            if not self.state.emergency_paused:
                self.state.paused_until = None
                self.state.pause_reason = ""
            self._log("Resumed")

    # === Status ===

    def get_status(self) -> dict:
        """Point-in-time snapshot for the dashboard"""
        state = self.state
        now = datetime.now(timezone.utc)
        remaining = max(0, int((state.deadline - now).total_seconds()))
        span = state.target_bankroll - state.starting_bankroll
        progress = min(100.0, state.pnl / span * 100) if span > 0 else 0.0
        pnl_pct = state.pnl / state.starting_bankroll * 100 if state.starting_bankroll else 0.0

        return {
            "running": self.running,
            "paused": state.is_paused(now),
            "pause_reason": state.pause_reason,
            "dry_run": self.config.dry_run,
            "terminal": state.terminal_reason,
            "bankroll": round(state.bankroll, 2),
            "start": round(state.starting_bankroll, 2),
            "target": state.target_bankroll,
            "peak": round(state.peak, 2),
            "pnl": round(state.pnl, 2),
            "pnl_pct": round(pnl_pct, 1),
            "progress": round(progress, 1),
            "countdown": {
                "h": remaining // 3600,
                "m": (remaining % 3600) // 60,
                "s": remaining % 60,
                "total": remaining,
            },
            "stats": {
                "cycles": state.cycle_count,
                "bets": state.total_bets,
                "wins": state.wins,
                "losses": state.losses,
                "win_rate": round(state.win_rate * 100),
                "wagered": round(state.total_wagered, 2),
                "streak": state.streak,
                "drawdown": round(state.drawdown * 100, 1),
                "cooling_down": state.paused_until is not None and now < state.paused_until,
                "micro_bets": state.micro_bets,
                "micro_wins": state.micro_wins,
            },
            "positions": [p.to_dict() for p in state.positions.values()],
            "recent": list(reversed(list(state.resolved)))[:20],
            "signals": {asset: s.to_dict() for asset, s in self._last_snapshots.items()},
            "correction": self.correction.get_status(),
            "errors": self.errors.summary(),
            "log": [e.to_dict() for e in reversed(self.events.recent(40))],
        }
