"""
Scalper status API

Read-only JSON endpoints for the dashboard plus operator controls
(start / stop / pause / resume). Mutating endpoints require a Bearer token
when DASHBOARD_SECRET is set.
"""

import functools
import os
from typing import Optional, Tuple

from flask import Flask, jsonify, request

from src.core.client import KalshiClient, CredentialsError
from src.core.config import ScalperConfig, get_scalper_config
from src.scalper.events import EventType
from src.scalper.scheduler import ScalperEngine


def load_credentials(environ: dict = None) -> Tuple[Optional[str], Optional[str]]:
    """
    API key + private key from the environment, else credentials.py.

    KALSHI_PRIVATE_KEY holds a PEM (escaped newlines allowed);
    KALSHI_PRIVATE_KEY_BASE64 holds a base64-encoded PEM.
    """
    environ = os.environ if environ is None else environ
    api_key = environ.get("KALSHI_API_KEY", "").strip()
    private_key = environ.get("KALSHI_PRIVATE_KEY", "").strip()
    if not private_key:
        private_key = environ.get("KALSHI_PRIVATE_KEY_BASE64", "").strip()

    # Hosted env vars may store \n literally
    if private_key and "\\n" in private_key:
        private_key = private_key.replace("\\n", "\n")

    if api_key and private_key:
        print(f"[AUTH] Using environment variables (key: ...{api_key[-4:]})")
        return api_key, private_key

    try:
        from credentials import KALSHI_API_KEY, KALSHI_PRIVATE_KEY
    except ImportError:
        print("[AUTH] No credentials found. Set KALSHI_API_KEY and KALSHI_PRIVATE_KEY "
              "(or KALSHI_PRIVATE_KEY_BASE64) env vars or create credentials.py")
        return None, None
    print("[AUTH] Using credentials.py")
    return KALSHI_API_KEY, KALSHI_PRIVATE_KEY


def build_engine(config: ScalperConfig = None) -> ScalperEngine:
    """
    Wire client + engine. Missing or unparseable credentials are fatal for
    live trading: the engine falls back to dry-run on a read-only client.
    """
    config = config or get_scalper_config()
    api_key, private_key = load_credentials()

    client = None
    if api_key and private_key:
        try:
            client = KalshiClient(api_key, private_key)
        except CredentialsError as e:
            print(f"[AUTH] ERROR: {e}")

    if client is None:
        if not config.dry_run:
            print("[SAFETY] No usable credentials - forcing DRY RUN on a read-only client")
        config.dry_run = True
        client = KalshiClient()

    return ScalperEngine(client, config)


def create_app(engine: ScalperEngine = None):
    app = Flask(__name__)
    engine = engine or build_engine()
    app.config["ENGINE"] = engine

    # --- Authentication ---
    # Set DASHBOARD_SECRET env var to require auth on all mutating endpoints.
    # Without it, endpoints are open (local dev only).
    DASHBOARD_SECRET = os.environ.get("DASHBOARD_SECRET", "").strip()

    def require_auth(f):
        """Decorator: require Bearer token on mutating requests when DASHBOARD_SECRET is set."""
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            if not DASHBOARD_SECRET:
                return f(*args, **kwargs)
            if request.method == "GET":
                return f(*args, **kwargs)
            auth = request.headers.get("Authorization", "")
            if auth == f"Bearer {DASHBOARD_SECRET}":
                return f(*args, **kwargs)
            if request.args.get("token") == DASHBOARD_SECRET:
                return f(*args, **kwargs)
            return jsonify({"error": "Unauthorized"}), 401
        return decorated

    @app.route('/api/status')
    def api_status():
        return jsonify(engine.get_status())

    @app.route('/api/stats')
    def api_stats():
        status = engine.get_status()
        return jsonify({
            "stats": status["stats"],
            "bankroll": status["bankroll"],
            "pnl": status["pnl"],
            "progress": status["progress"],
        })

    @app.route('/api/correction')
    def api_correction():
        return jsonify(engine.correction.get_status())

    @app.route('/api/events')
    def api_events():
        limit = request.args.get("limit", default=100, type=int)
        event_type = request.args.get("type")
        if event_type:
            try:
                kind = EventType(event_type)
            except ValueError:
                return jsonify({"error": f"Unknown event type: {event_type}"}), 400
        else:
            kind = None
        events = engine.events.recent(limit=limit, event_type=kind)
        return jsonify({"events": [e.to_dict() for e in reversed(events)]})

    @app.route('/api/start', methods=['POST'])
    @require_auth
    def api_start():
        started = engine.start()
        mode = "DRY RUN" if engine.config.dry_run else "LIVE"
        if not started:
            return jsonify({"success": False, "message": "Already running or finished"}), 409
        return jsonify({"success": True, "message": f"Scalper started ({mode} MODE)"})

    @app.route('/api/stop', methods=['POST'])
    @require_auth
    def api_stop():
        engine.stop()
        return jsonify({"success": True, "message": "Scalper stopped"})

    @app.route('/api/pause', methods=['POST'])
    @require_auth
    def api_pause():
        engine.pause("operator")
        return jsonify({"success": True, "message": "Discovery paused"})

    @app.route('/api/resume', methods=['POST'])
    @require_auth
    def api_resume():
        engine.resume()
        return jsonify({"success": True, "message": "Discovery resumed"})

    return app
