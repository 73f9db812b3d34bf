import os
import subprocess
from pathlib import Path

import click
from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from kmarket.extensions import db, migrate, cors
from kmarket.models import User
from kmarket.segments.segment_orders_api import orders_bp
from kmarket.segments.segment_deals import deals_bp, seller_deals_bp
from kmarket.segments.segment_admin_disputes import admin_disputes_bp
from kmarket.services.errors import DomainError
from kmarket.utils.jwt_utils import create_token, decode_token, get_bearer_token
from kmarket.utils.observability import init_sentry, init_otel, install_request_observers


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _trace_payload(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("KMARKET_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        if env in ("prod", "production"):
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        database_url = f"sqlite:///{os.path.join(instance_dir, 'kmarket.db').replace(os.sep, '/')}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if database_url.startswith("sqlite://"):
        # Concurrent writers queue on the database lock instead of failing fast.
        engine_options["connect_args"] = {
            "timeout": _env_int("SQLITE_BUSY_TIMEOUT_SECONDS", 30, minimum=1, maximum=600),
            "check_same_thread": False,
        }
    else:
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
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

    # Order and escrow settings
    app.config["ESCROW_CURRENCY"] = (os.getenv("ESCROW_CURRENCY") or "GHS").strip().upper()[:8]
    app.config["MAX_ORDER_QUANTITY"] = _env_int("MAX_ORDER_QUANTITY", 20, minimum=1, maximum=10000)
    app.config["DEAL_ENDING_SOON_SECONDS"] = _env_int("DEAL_ENDING_SOON_SECONDS", 7200, minimum=60, maximum=7 * 86400)
    app.config["DELIVERY_PROOF_DIR"] = (os.getenv("DELIVERY_PROOF_DIR") or os.path.join(instance_dir, "delivery_proofs")).strip()
    app.config["MAX_PROOF_BYTES"] = _env_int("MAX_PROOF_BYTES", 5 * 1024 * 1024, minimum=1024, maximum=50 * 1024 * 1024)
    app.config["MAX_SIGNATURE_BYTES"] = _env_int("MAX_SIGNATURE_BYTES", 2 * 1024 * 1024, minimum=1024, maximum=20 * 1024 * 1024)
    # Multipart overhead on top of the largest accepted upload.
    app.config["MAX_CONTENT_LENGTH"] = app.config["MAX_PROOF_BYTES"] + 64 * 1024

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    with app.app_context():
        init_otel(app, enabled=(os.getenv("OTEL_ENABLED") or "").strip() == "1")

    @app.errorhandler(DomainError)
    def _api_domain_error(error: DomainError):
        if error.http_status >= 409:
            app.logger.info("domain_conflict code=%s path=%s msg=%s", error.code, request.path, error.message)
        return jsonify(_trace_payload(error.to_dict())), int(error.http_status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_trace_payload(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_trace_payload(payload)), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(deals_bp)
    app.register_blueprint(seller_deals_bp)
    app.register_blueprint(admin_disputes_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "kmarket-backend",
            "env": env,
            "db": db_state,
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/api/version")
    def version():
        return jsonify({
            "ok": True,
            "alembic_head": _resolve_alembic_head(),
            "git_sha": _resolve_git_sha(),
        })

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        token = get_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        try:
            uid = int(payload.get("sub"))
        except (TypeError, ValueError):
            return
        user = db.session.get(User, uid)
        if user is None or not bool(user.is_active):
            return
        g.auth_user_id = uid
        g.auth_role = (user.role or "buyer").strip().lower()
        try:
            import sentry_sdk

            sentry_sdk.set_user({"id": str(uid)})
            sentry_sdk.set_tag("auth_role", g.auth_role)
        except Exception:
            pass

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("bootstrap-admin")
    @click.option("--email", "email", required=False, help="Admin email")
    @click.option("--name", "name", default="Admin", show_default=True)
    def bootstrap_admin(email: str | None, name: str):
        """Create (or promote) an admin account and print a bearer token for it."""
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if env not in ("dev", "development", "local", "test") and not allow:
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or KMARKET_ENV=dev.")

        email = (email or os.getenv("ADMIN_EMAIL") or "").strip().lower()
        if not email:
            raise click.ClickException("Provide --email or set ADMIN_EMAIL.")

        u = User.query.filter_by(email=email).first()
        try:
            if u:
                u.role = "admin"
                u.is_active = True
            else:
                u = User(name=name, email=email, role="admin")
                db.session.add(u)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise click.ClickException("Failed to bootstrap admin.")
        click.echo(f"admin_bootstrap_ok {u.email}")
        click.echo(create_token(int(u.id)))

    return app
