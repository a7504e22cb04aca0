import os

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from escrowhub.errors import DomainError
from escrowhub.extensions import cors, db, migrate
from escrowhub.integrations.payments.factory import payment_health
from escrowhub.models import User
from escrowhub.segments.segment_admin_ops import admin_ops_bp
from escrowhub.segments.segment_notifications import notifications_bp
from escrowhub.segments.segment_orders_api import orders_bp
from escrowhub.segments.segment_payments import payments_bp
from escrowhub.segments.segment_shipper import shipper_bp
from escrowhub.utils.config import current_env, env_int, is_production
from escrowhub.utils.observability import init_sentry, install_request_observers


def _resolve_git_sha() -> str:
    return (os.getenv("GIT_SHA") or "").strip() or "unknown"


def _error_payload(code: str, message: str, status: int, *, retryable: bool = False) -> dict:
    payload = {
        "ok": False,
        "error": code,
        "message": message,
        "status": int(status),
        "retryable": bool(retryable),
    }
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = current_env()

    # Production safety checks
    if is_production():
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret-change-me")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'escrowhub.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url

    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
            engine_options["pool_recycle"],
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if is_production():
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.errorhandler(DomainError)
    def _api_domain_error(error: DomainError):
        db.session.rollback()
        log = app.logger.warning if error.http_status >= 500 else app.logger.info
        log("domain_error code=%s status=%s path=%s msg=%s", error.code, error.http_status, request.path, error.message)
        payload = _error_payload(error.code, error.message, error.http_status, retryable=error.retryable)
        if error.details:
            payload["details"] = error.details
        return jsonify(payload), int(error.http_status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        return jsonify(_error_payload(error.name, error.description or error.name, status)), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        db.session.rollback()
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(shipper_bp)
    app.register_blueprint(admin_ops_bp)
    app.register_blueprint(notifications_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            db_error = str(e)[:300]
        payload = {
            "ok": db_state == "ok",
            "service": "escrowhub",
            "env": env,
            "db": db_state,
            "payments": payment_health(),
            "git_sha": _resolve_git_sha(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload), 200 if db_state == "ok" else 503

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("bootstrap-admin")
    @click.option("--email", "email", required=True, help="Admin email")
    @click.option("--name", "name", default="Admin", help="Display name")
    def bootstrap_admin(email: str, name: str):
        if is_production() and (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() != "1":
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1.")
        email = (email or "").strip().lower()
        u = User.query.filter_by(email=email).first()
        if u:
            u.role = "admin"
        else:
            u = User(name=name, email=email, role="admin")
            db.session.add(u)
        db.session.commit()
        click.echo(f"admin_bootstrap_ok id={u.id} email={u.email}")

    @app.cli.command("issue-token")
    @click.option("--user-id", "user_id", type=int, required=True)
    @click.option("--ttl", "ttl", type=int, default=3600, help="Token lifetime in seconds")
    def issue_token(user_id: int, ttl: int):
        from escrowhub.utils.jwt_utils import create_access_token

        if is_production():
            raise click.ClickException("issue-token is a development helper.")
        if db.session.get(User, user_id) is None:
            raise click.ClickException(f"User {user_id} not found.")
        click.echo(create_access_token(user_id, ttl_seconds=ttl))

    @app.cli.command("release-sweep")
    @click.option("--limit", "limit", type=int, default=200)
    def release_sweep_command(limit: int):
        from escrowhub.jobs.escrow_runner import run_release_sweep

        result = run_release_sweep(limit=limit)
        click.echo(f"release_sweep released={len(result['released'])} skipped={len(result['skipped'])}")

    @app.cli.command("expiry-sweep")
    @click.option("--limit", "limit", type=int, default=200)
    def expiry_sweep_command(limit: int):
        from escrowhub.jobs.escrow_runner import run_expiry_sweep

        result = run_expiry_sweep(limit=limit)
        click.echo(
            f"expiry_sweep orders={len(result['expired_orders'])} items={len(result['expired_items'])} skipped={len(result['skipped'])}"
        )

    return app
