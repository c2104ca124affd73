"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time — this enables:
           - Multiple isolated test app instances
           - Clean separation between app creation and use of the ledger

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Initialise the SQLAlchemy extension via init_app()
  3. Configure the `splitspends` logger from LOG_LEVEL
  4. Register a custom JSON provider to serialise Decimal as string
     (monetary amounts never travel as floats)
  5. Expose LedgerSettings on app.extensions for callers of the services
  6. Register the `flask ledger` CLI group

The ledger deliberately registers no HTTP routes.

Note on model imports:
  All model classes are imported inside create_app() so that SQLAlchemy's
  metadata is populated before db.create_all() runs.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from flask import Flask
from flask.json.provider import DefaultJSONProvider

from splitspends.config import LedgerSettings, config_by_name, validate_production_config


# ── Custom JSON provider ───────────────────────────────────────────────────

class DecimalJSONProvider(DefaultJSONProvider):
    """
    Extends Flask's default JSON provider to serialise Decimal as str.

    Example: Decimal("10.50") → "10.50" (not 10.5 or 10.500000001)
    """

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
                     Defaults to "development".
    """
    app = Flask(__name__)
    app.json_provider_class = DecimalJSONProvider
    app.json = DecimalJSONProvider(app)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    _configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from splitspends.app.extensions import db
    db.init_app(app)

    app.extensions["ledger_settings"] = LedgerSettings.from_config(app.config)

    # ── Model registration ─────────────────────────────────────────────────
    # The imports are intentionally unused by name — side effect is the point.
    with app.app_context():
        from splitspends.app.models import (  # noqa: F401
            expense,
            expense_split,
            group,
            membership,
            user,
        )

    # ── CLI ────────────────────────────────────────────────────────────────
    from splitspends.app.cli import ledger_cli
    app.cli.add_command(ledger_cli)

    return app


def get_ledger_settings(app: Flask) -> LedgerSettings:
    """The LedgerSettings built for `app` by create_app()."""
    return app.extensions["ledger_settings"]


def _configure_logging(app: Flask) -> None:
    """
    Sets the package logger level from LOG_LEVEL.

    Service modules log through logging.getLogger(__name__), so everything
    under `splitspends.` follows this level and propagates to the root
    handlers (Flask's default handler in development, pytest's caplog in tests).
    """
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.getLogger("splitspends").setLevel(level)
    app.logger.setLevel(level)
