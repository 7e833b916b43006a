"""
Centralized Configuration for the Kalshi Crypto Scalper

Every tuned constant used by the decision engine lives here so it can be
overridden from data/scalper_config.json or the environment.
"""

import json
import os
import threading
from dataclasses import dataclass, field, fields
from typing import Optional

_CONFIG_FILE = os.path.join(os.path.dirname(__file__), "..", "..", "data", "scalper_config.json")
_DATA_DIR = os.path.join(os.path.dirname(__file__), "..", "..", "data")

# Environment variable -> config field
_ENV_MAP = {
    "STARTING_BANKROLL": "starting_bankroll",
    "TARGET_BANKROLL": "target_bankroll",
    "TIME_LIMIT_HOURS": "time_limit_hours",
    "SCAN_INTERVAL_SECONDS": "cycle_interval_seconds",
    "MAX_SIMULTANEOUS_BETS": "max_open_positions",
    "MIN_EDGE": "quant_min_edge",
    "DRY_RUN": "dry_run",
}


@dataclass
class ScalperConfig:
    """Scalper engine configuration"""

    # === Run budget ===
    starting_bankroll: float = 100.0         # Paper bankroll / fallback when balance fetch fails
    target_bankroll: float = 10000.0         # Stop when bankroll reaches this
    time_limit_hours: float = 48.0           # Stop after this long
    cycle_interval_seconds: float = 25.0     # Scheduler cadence
    dry_run: bool = False                    # Log orders but don't execute

    # === Discovery ===
    series: list = field(default_factory=lambda: ["KXBTC15M", "KXETH15M", "KXSOL15M"])
    markets_per_series: int = 50
    min_minutes_to_expiry: float = 0.3       # Profitable band is narrow
    max_minutes_to_expiry: float = 15.0
    max_candidates_scored: int = 8           # Per tick
    candidate_delay_seconds: float = 0.2     # Throttle between sequential venue calls

    # === Positions ===
    max_open_positions: int = 4
    max_positions_per_ticker: int = 1

    # === Edge model ===
    fee_rate: float = 0.07                   # Kalshi taker fee: 0.07 * p * (1 - p)
    quant_min_edge: float = 0.05             # Base edge threshold when the strike is known
    heuristic_min_edge: float = 0.04         # Base edge threshold from quotes + momentum
    min_net_payout_cents: float = 5.0        # Dust filter
    max_vig_cents: int = 105                 # Reject when yes_ask + no_ask exceeds this
    min_entry_price: int = 5
    max_entry_price: int = 95
    logistic_scale: float = 1.702            # Logistic approximation of the normal CDF
    min_volatility_5m: float = 0.02          # Floor on 5m volatility (% of price)

    # Heuristic nudges (probability units)
    momentum_coefficient: float = 0.25       # Per 1% of 5m momentum
    momentum_nudge_cap: float = 0.05
    oscillator_overbought: float = 70.0
    oscillator_oversold: float = 30.0
    oscillator_nudge_cap: float = 0.03
    trend_nudge_strong: float = 0.03
    trend_nudge_weak: float = 0.015
    expiry_amplification: float = 0.5        # Up to 1.5x deviation at expiry
    amplification_horizon_minutes: float = 15.0

    # Micro (near-expiry favorite) model
    micro_min_minutes: float = 0.5
    micro_max_minutes: float = 4.0
    micro_min_price: int = 70
    micro_max_price: int = 92
    micro_momentum_threshold: float = 0.01
    micro_win_rate_boost: float = 0.03
    micro_max_win_rate: float = 0.95
    micro_max_candidates: int = 4

    # Context tagging
    vol_high_threshold: float = 0.15
    vol_medium_threshold: float = 0.05

    # === Risk sizer ===
    kelly_cap: float = 0.15
    kelly_damping: float = 0.5               # Half-Kelly
    max_bet_fraction: float = 0.15           # Hard cap on bet size
    max_cost_fraction: float = 0.20          # Final backstop on order cost
    min_bet_dollars: float = 1.0
    thin_edge_threshold: float = 0.03        # Net edge below this uses fixed-tier sizing
    micro_tiers: list = field(default_factory=lambda: [[4.0, 2], [0.0, 1]])  # [min EV cents, contracts]
    micro_max_risk_dollars: float = 1.0
    micro_risk_fraction: float = 0.05
    micro_max_cost_fraction: float = 0.08
    drawdown_reduce_threshold: float = 0.30
    drawdown_severe_threshold: float = 0.50

    # === Exits ===
    take_profit_cents: int = 6
    stop_loss_cents: int = -10
    stop_loss_mid_cents: int = -8            # Past 25% drawdown
    stop_loss_tight_cents: int = -6          # Past 40% drawdown
    stop_loss_mid_drawdown: float = 0.25
    stop_loss_tight_drawdown: float = 0.40
    time_exit_minutes: float = 2.0
    time_exit_min_profit_cents: int = 2
    fair_value_min_profit_cents: int = 3
    fair_value_band: list = field(default_factory=lambda: [47, 53])
    emergency_drawdown: float = 0.60
    emergency_cooldown_minutes: float = 30.0
    stale_order_seconds: float = 300.0

    # === Circuit breaker ===
    loss_streak_limit: int = 4
    micro_loss_streak_limit: int = 6
    loss_cooldown_minutes: float = 10.0

    # === Correction engine ===
    correction_window: int = 50
    correction_min_samples: int = 3
    correction_history_size: int = 200
    correction_save_seconds: float = 60.0
    correction_state_file: str = os.path.join(_DATA_DIR, "correction_state.json")

    # === Observability ===
    event_log_size: int = 100
    resolved_history_size: int = 50


# Global configuration instance
_scalper_config: Optional[ScalperConfig] = None
_config_lock = threading.Lock()


def get_scalper_config() -> ScalperConfig:
    """Get global scalper configuration (loads persisted config on first call)"""
    global _scalper_config
    if _scalper_config is None:
        with _config_lock:
            if _scalper_config is None:
                _scalper_config = load_config()
    return _scalper_config


def _coerce(value, current):
    """Coerce a raw JSON/env value to the type of the current field value."""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("true", "1", "yes")
    if isinstance(current, int):
        return int(float(value))
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return list(value)
    return str(value)


def load_config(config_path: str = None, environ: dict = None) -> ScalperConfig:
    """Build a ScalperConfig: defaults, then JSON file overrides, then environment."""
    config = ScalperConfig()
    config_path = os.path.abspath(config_path or _CONFIG_FILE)
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(ScalperConfig)}

    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                data = json.load(f)
            for key, value in data.items():
                if key not in known:
                    print(f"[CONFIG] Ignoring unknown key: {key}")
                    continue
                setattr(config, key, _coerce(value, getattr(config, key)))
            print(f"[CONFIG] Loaded scalper config from {config_path}")
        except (OSError, ValueError) as e:
            print(f"[CONFIG] Failed to load config: {e}")

    for env_key, attr in _ENV_MAP.items():
        raw = environ.get(env_key)
        if raw is None or raw == "":
            continue
        try:
            setattr(config, attr, _coerce(raw, getattr(config, attr)))
        except ValueError:
            print(f"[CONFIG] Bad value for {env_key}: {raw!r}")

    return config


def save_config(config: ScalperConfig, config_path: str = None):
    """Persist a config to JSON (atomic tmp+replace write)."""
    config_path = os.path.abspath(config_path or _CONFIG_FILE)
    data = {f.name: getattr(config, f.name) for f in fields(config)}
    os.makedirs(os.path.dirname(config_path), exist_ok=True)
    tmp_path = config_path + ".tmp"
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, config_path)
    print(f"[CONFIG] Saved scalper config to {config_path}")


def reset_config():
    """Drop the cached global config (next get_scalper_config() reloads)."""
    global _scalper_config
    with _config_lock:
        _scalper_config = None
