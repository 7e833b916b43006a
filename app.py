#!/usr/bin/env python3
"""
Kalshi Crypto Scalper - Main Entry Point

Usage:
    python app.py                 # Status API on port 5050 (gunicorn)
    python app.py --port 8080     # Custom port
    python app.py --start         # Start the scalper loop on boot
    python app.py --dev           # Flask dev server instead of gunicorn
"""

import os
import sys

from gunicorn.app.base import BaseApplication

# Add src to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


class StandaloneApplication(BaseApplication):
    def __init__(self, options=None, autostart: bool = False):
        self.options = options or {}
        self.autostart = autostart
        super().__init__()

    def load_config(self):
        for key, value in self.options.items():
            if key in self.cfg.settings and value is not None:
                self.cfg.set(key.lower(), value)

    def load(self):
        # create_app() runs inside the worker process (after fork) so the
        # scalper thread starts in the worker, not the master.
        return build_app(self.autostart)


def build_app(autostart: bool):
    from src.web.app import create_app
    app = create_app()
    if autostart:
        app.config["ENGINE"].start()
    return app


def main():
    # Railway/Heroku set PORT env var; fall back to 5050 for local dev
    port = int(os.environ.get('PORT', 5050))
    autostart = os.environ.get('AUTO_START', '0') == '1'
    dev = False

    for i, arg in enumerate(sys.argv):
        if arg == '--port' and i + 1 < len(sys.argv):
            port = int(sys.argv[i + 1])
        elif arg == '--start':
            autostart = True
        elif arg == '--dev':
            dev = True

    print(f"[STARTUP] Kalshi crypto scalper status API on http://localhost:{port}")

    if dev:
        app = build_app(autostart)
        app.run(host='0.0.0.0', port=port, debug=False, use_reloader=False)
        return

    options = {
        'bind': f'0.0.0.0:{port}',
        'workers': 1,          # Single worker: the engine lives in-process
        'threads': 4,          # Concurrent dashboard requests
        'timeout': 120,
    }
    StandaloneApplication(options, autostart=autostart).run()


if __name__ == '__main__':
    main()
