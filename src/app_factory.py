import logging
import os

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from extensions import db, migrate
from config import DevConfig, ProdConfig
from logging_setup import setup_logger


logger = logging.getLogger("app_factory")


def _register_error_handlers(app: Flask):
    from src.services.errors import EngineError

    @app.errorhandler(EngineError)
    def handle_engine_error(e: EngineError):
        logger.info(f"[api] {e.kind}: {e.message}")
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        kind = "not-found" if e.code == 404 else "http-error"
        return jsonify({"success": False, "kind": kind, "error": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        logger.exception(f"[api] unhandled error: {e}")
        return jsonify({"success": False, "kind": "internal-error", "error": "Internal server error"}), 500


def _register_cli(app: Flask):
    @app.cli.command("reconcile")
    def reconcile_command():
        """Run one reconciliation sweep and print its summary."""
        from src.services.reconciler import reconcile

        summary = reconcile()
        click.echo(
            f"expired={summary['expired']} no_show={summary['noShow']} reminded={summary['reminded']} "
            f"unresolved={len(summary['unresolvedCalls'])}"
        )


def create_app(config_object=None, config_overrides: dict | None = None) -> Flask:
    """Initialize Flask app with DB + configuration."""
    setup_logger()
    app = Flask(__name__)

    if config_object is not None:
        app.config.from_object(config_object)
    elif os.getenv("FLASK_ENV") == "production":
        app.config.from_object(ProdConfig)
    else:
        app.config.from_object(DevConfig)
    if config_overrides:
        app.config.update(config_overrides)

    db.init_app(app)
    migrate.init_app(app, db)

    from src.services.payment_gate import default_processors
    from src.services.notification_service import LoggingNotificationSink

    app.extensions.setdefault("payment_processors", default_processors())
    app.extensions.setdefault("notification_sink", LoggingNotificationSink())

    # Import models so SQLAlchemy registers tables.
    with app.app_context():
        from src.models import Patient, Doctor, AvailabilityEntry, Appointment, PaymentIntent  # noqa: F401
        # Ensure tables exist (useful for SQLite/dev). For production, prefer migrations.
        db.create_all()

    # Register HTTP blueprints
    from src.routes.appointments import appointments_bp
    from src.routes.video import video_bp
    from src.routes.doctors import doctors_bp

    app.register_blueprint(appointments_bp)
    app.register_blueprint(video_bp)
    app.register_blueprint(doctors_bp)

    _register_error_handlers(app)
    _register_cli(app)

    return app
