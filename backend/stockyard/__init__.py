import os

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from stockyard.extensions import db, migrate, cors
from stockyard.integrations.payments.factory import payment_health
from stockyard.segments.segment_admin_orders import admin_orders_bp
from stockyard.segments.segment_order_disputes import disputes_bp
from stockyard.segments.segment_order_fulfillment import orders_bp
from stockyard.segments.segment_payment_webhooks import webhooks_bp
from stockyard.services.engine_context import build_engine_context, current_engine
from stockyard.services.order_errors import ConflictAlreadyApplied, OrderEngineError
from stockyard.settings import _env_bool, _env_int, load_engine_settings
from stockyard.utils.auth import current_user
from stockyard.utils.observability import SERVICE_NAME, init_otel, init_sentry, install_request_observers
from stockyard.utils.order_payloads import order_envelope


def _with_trace(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def _database_url(env: str, instance_dir: str) -> str:
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        if env in ("prod", "production"):
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        database_url = f"sqlite:///{os.path.join(instance_dir, 'stockyard.db').replace(os.sep, '/')}"
    # Heroku-style URLs still use the deprecated scheme
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    return database_url


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    settings = load_engine_settings()
    env = settings.env

    # Production safety checks
    if settings.is_production:
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["JSON_SORT_KEYS"] = False

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = _database_url(env, instance_dir)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    if not origins and not settings.is_production:
        origins = ["*"]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    init_otel(app, enabled=_env_bool("OTEL_ENABLED", False))

    ctx = build_engine_context(app, settings)
    app.logger.info(
        "order_engine_ready env=%s payments=%s notify_mode=%s",
        env,
        ctx.payments_provider.name if ctx.payments_provider is not None else "unavailable",
        settings.notify_dispatch_mode,
    )

    @app.errorhandler(ConflictAlreadyApplied)
    def _already_applied(error: ConflictAlreadyApplied):
        db.session.rollback()
        if error.order is None:
            return jsonify(_with_trace({"ok": True, "already_applied": True, "message": error.message})), 200
        body = order_envelope(error.order, current_user(), already_applied=True)
        return jsonify(body), 200

    @app.errorhandler(OrderEngineError)
    def _order_engine_error(error: OrderEngineError):
        db.session.rollback()
        if error.http_status >= 500:
            app.logger.warning("order_engine_dependency_error code=%s path=%s msg=%s", error.code, request.path, error.message)
        return jsonify(_with_trace(error.to_dict())), int(error.http_status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_with_trace(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        db.session.rollback()
        app.logger.exception("unhandled_exception path=%s", request.path)
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_with_trace(payload)), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(admin_orders_bp)
    app.register_blueprint(webhooks_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            db_state = "fail"
            db_error = str(e)[:300]
        payload = {
            "ok": True,
            "service": SERVICE_NAME,
            "env": env,
            "db": db_state,
            "payments": dict(payment_health(current_engine().settings), available=current_engine().payments_configured),
            "notification_errors": len(current_engine().notifier.errors),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("run-order-sweeps")
    @click.option("--limit", default=200, show_default=True, help="Max orders per sweep")
    def run_order_sweeps_command(limit: int):
        from stockyard.jobs.order_sweeps import run_order_sweeps

        result = run_order_sweeps(current_engine(), limit=limit)
        click.echo(
            "order_sweeps_ok cancelled={} auto_completed={} released={} errors={}".format(
                result["abandoned_checkouts"]["cancelled"],
                result["completion"]["auto_completed"],
                result["auto_release"].get("released", 0),
                result["completion"]["errors"] + result["auto_release"].get("errors", 0),
            )
        )

    @app.cli.command("cancel-abandoned-checkouts")
    @click.option("--limit", default=50, show_default=True)
    @click.option("--dry-run", is_flag=True, default=False)
    @click.option("--force", is_flag=True, default=False, help="Cancel without checking session expiry")
    def cancel_abandoned_checkouts_command(limit: int, dry_run: bool, force: bool):
        from stockyard.services.checkout_sweep import cancel_abandoned_checkouts

        result = cancel_abandoned_checkouts(current_engine(), limit=limit, dry_run=dry_run, force=force)
        for item in result["results"]:
            click.echo(f"order={item['order_id']} action={item['action']}")
        click.echo(f"scanned={result['total_scanned']} cancelled={result['cancelled']} dry_run={result['dry_run']}")

    return app
