from __future__ import annotations

import logging
import os

from flask import Flask, jsonify
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from craftsmart.config import Config, production_errors
from craftsmart.extensions import db, migrate, cors, login_manager


def create_app(overrides: dict | None = None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    env = (app.config.get("ENV") or "dev").strip().lower()
    app.config["ENV"] = env

    # Production safety checks
    if env in ("prod", "production"):
        errors = production_errors()
        if errors:
            raise RuntimeError("; ".join(errors))

    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("craftsmart").setLevel(level)

    # Ensure instance dir exists for SQLite paths
    os.makedirs(Config.INSTANCE_DIR, exist_ok=True)

    cors_origins = (app.config.get("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # Models and the Flask-Login loaders register on import
    from craftsmart import models  # noqa: F401
    from craftsmart import auth  # noqa: F401

    from craftsmart.segments.segment_auth import auth_bp
    from craftsmart.segments.segment_craftsmen import craftsmen_bp
    from craftsmart.segments.segment_jobs import jobs_bp
    from craftsmart.segments.segment_applications import applications_bp
    from craftsmart.segments.segment_payments import payments_bp
    from craftsmart.segments.segment_escrow import escrow_bp
    from craftsmart.segments.segment_admin import admin_bp
    from craftsmart.segments.segment_blacklist import blacklist_bp
    from craftsmart.segments.segment_reports import reports_bp
    from craftsmart.segments.segment_reviews import reviews_bp
    from craftsmart.segments.segment_notifications import notifications_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(craftsmen_bp)
    app.register_blueprint(jobs_bp)
    app.register_blueprint(applications_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(escrow_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(blacklist_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(reviews_bp)
    app.register_blueprint(notifications_bp)

    _register_error_handlers(app)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        try:
            db.session.execute(text("SELECT 1"))
        except Exception as e:
            app.logger.error("health check: database unreachable: %s", e)
            db.session.rollback()
            db_state = "fail"
        return jsonify({
            "ok": db_state == "ok",
            "service": "craftsmart-backend",
            "env": env,
            "db": db_state,
        }), 200 if db_state == "ok" else 503

    return app


def _register_error_handlers(app: Flask) -> None:
    from craftsmart.escrow import EscrowError
    from craftsmart.utils.payment_gateway import UnknownProvider

    @app.errorhandler(EscrowError)
    def _escrow_error(e):
        db.session.rollback()
        return jsonify({"message": e.message}), e.status_code

    @app.errorhandler(UnknownProvider)
    def _unknown_provider(e):
        app.logger.error("payment provider misconfigured: %s", e)
        return jsonify({"message": str(e)}), 500

    @app.errorhandler(HTTPException)
    def _http_error(e):
        return jsonify({"message": e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def _unhandled(e):
        db.session.rollback()
        app.logger.exception("unhandled error: %s", e)
        body = {"message": "Internal server error"}
        if app.config.get("ENV") == "dev":
            body["detail"] = str(e)
        return jsonify(body), 500
