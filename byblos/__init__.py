from __future__ import annotations

import os

from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from byblos.errors import MarketplaceError, RateLimited
from byblos.extensions import cors, db, migrate
from byblos.integrations.payments.factory import payment_health
from byblos.integrations.payouts.factory import payout_health
from byblos.segments.segment_payment_webhooks import GATE_EXTENSION, payments_bp
from byblos.services.webhook_security import WebhookSecurityGate
from byblos.utils.observability import init_sentry, install_request_observers
from byblos.utils.rate_limit import build_counter_store

_TRUTHY = ("1", "true", "yes", "on")


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 10_000_000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(maximum, value))


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in _TRUTHY


def _env_str(name: str, default: str | None = None, *fallbacks: str) -> str | None:
    for key in (name, *fallbacks):
        raw = os.getenv(key)
        if raw is not None and raw.strip():
            return raw.strip()
    return default


def _load_config(app: Flask, env: str) -> None:
    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    redis_url = _env_str("REDIS_URL")
    broker = _env_str("CELERY_BROKER_URL", redis_url or "redis://localhost:6379/0")
    app.config.update(
        BYBLOS_ENV=env,
        SECRET_KEY=_env_str("SECRET_KEY", "dev-secret"),
        SQLALCHEMY_DATABASE_URI=_env_str("SQLALCHEMY_DATABASE_URI", None, "DATABASE_URL")
        or f"sqlite:///{os.path.join(instance_dir, 'byblos.db').replace(os.sep, '/')}",
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        PLATFORM_COMMISSION_RATE=_env_str("PLATFORM_COMMISSION_RATE", "0.09"),
        # Unset and empty differ: empty fails closed everywhere.
        PAYD_ALLOWED_IPS=os.getenv("PAYD_ALLOWED_IPS"),
        WEBHOOK_RATE_LIMIT=_env_int("WEBHOOK_RATE_LIMIT", 100, minimum=1),
        WEBHOOK_RATE_WINDOW_SECONDS=_env_int("WEBHOOK_RATE_WINDOW_SECONDS", 60, minimum=1),
        WEBHOOK_STALE_SECONDS=_env_int("WEBHOOK_STALE_SECONDS", 300, minimum=1),
        RATE_LIMIT_REDIS_URL=_env_str("RATE_LIMIT_REDIS_URL", redis_url),
        RATE_LIMIT_CLEANUP_SECONDS=_env_int("RATE_LIMIT_CLEANUP_SECONDS", 300, minimum=1),
        TRUST_PROXY_HEADERS=_env_bool("TRUST_PROXY_HEADERS", False),
        SELLER_DROPOFF_HOURS=_env_int("SELLER_DROPOFF_HOURS", 48, minimum=1),
        BUYER_PICKUP_HOURS=_env_int("BUYER_PICKUP_HOURS", 48, minimum=1),
        SERVICE_RELEASE_HOURS=_env_int("SERVICE_RELEASE_HOURS", 24, minimum=1),
        PAYMENT_EXPIRY_HOURS=_env_int("PAYMENT_EXPIRY_HOURS", 24, minimum=1),
        PAYMENT_FUZZY_MATCH_ENABLED=_env_bool("PAYMENT_FUZZY_MATCH_ENABLED", False),
        PAYMENT_FUZZY_WINDOW_MINUTES=_env_int("PAYMENT_FUZZY_WINDOW_MINUTES", 30, minimum=1),
        RECONCILE_MAX_ATTEMPTS=_env_int("RECONCILE_MAX_ATTEMPTS", 3, minimum=1, maximum=10),
        WEBHOOK_STATEMENT_TIMEOUT_MS=_env_int("WEBHOOK_STATEMENT_TIMEOUT_MS", 5000, minimum=0, maximum=60000),
        PAYMENT_POLL_AFTER_MINUTES=_env_int("PAYMENT_POLL_AFTER_MINUTES", 10, minimum=1),
        NOTIFICATIONS_QUEUE=_env_bool("NOTIFICATIONS_QUEUE", True),
        NOTIFICATIONS_PROVIDER=_env_str("NOTIFICATIONS_PROVIDER", "log"),
        PAYMENT_PROVIDER=_env_str("PAYMENT_PROVIDER", "mock"),
        MOCK_PAYMENT_STATUS=_env_str("MOCK_PAYMENT_STATUS", "PENDING"),
        PAYOUT_PROVIDER=_env_str("PAYOUT_PROVIDER", "mock"),
        MOCK_PAYOUT_FORCE_FAIL=_env_bool("MOCK_PAYOUT_FORCE_FAIL", False),
        PAYD_API_URL=_env_str("PAYD_API_URL", "https://api.payd.money/api/v2"),
        PAYD_USERNAME=_env_str("PAYD_USERNAME", ""),
        PAYD_PASSWORD=_env_str("PAYD_PASSWORD", ""),
        PAYD_PAYOUT_CALLBACK_URL=_env_str("PAYD_PAYOUT_CALLBACK_URL", ""),
        EVENT_WITHDRAWAL_FEE_RATE=_env_str("EVENT_WITHDRAWAL_FEE_RATE", "0.06"),
        WITHDRAWAL_MIN_AMOUNT=_env_int("WITHDRAWAL_MIN_AMOUNT", 1000, minimum=1),
        WITHDRAWAL_MAX_AMOUNT=_env_int("WITHDRAWAL_MAX_AMOUNT", 15_000_000, minimum=1),
        DEADLINE_SWEEP_INTERVAL_SECONDS=_env_int("DEADLINE_SWEEP_INTERVAL_SECONDS", 1800, minimum=30),
        PAYMENT_REDRIVE_INTERVAL_SECONDS=_env_int("PAYMENT_REDRIVE_INTERVAL_SECONDS", 300, minimum=30),
        PAYMENT_POLL_INTERVAL_SECONDS=_env_int("PAYMENT_POLL_INTERVAL_SECONDS", 300, minimum=30),
        WITHDRAWAL_RECONCILE_INTERVAL_SECONDS=_env_int("WITHDRAWAL_RECONCILE_INTERVAL_SECONDS", 3600, minimum=30),
        CELERY_BROKER_URL=broker,
        CELERY_RESULT_BACKEND=_env_str("CELERY_RESULT_BACKEND", redis_url or broker),
        CORS_ORIGINS=_env_str("CORS_ORIGINS", ""),
        SENTRY_DSN=_env_str("SENTRY_DSN", ""),
        SENTRY_TRACES_SAMPLE_RATE=_env_str("SENTRY_TRACES_SAMPLE_RATE", "0.0"),
        SENTRY_RELEASE=_env_str("SENTRY_RELEASE", "unknown", "GIT_SHA"),
    )


def _check_production(app: Flask, *, database_configured: bool) -> None:
    if app.config["BYBLOS_ENV"] not in ("prod", "production"):
        return
    secret = (app.config.get("SECRET_KEY") or "").strip()
    if not secret or len(secret) < 16 or secret == "dev-secret":
        raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
    if not database_configured:
        raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")


def _engine_options(database_url: str) -> dict:
    options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite://"):
        options.update(
            {
                "pool_reset_on_return": "rollback",
                "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
    return options


def _error_payload(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(MarketplaceError)
    def _marketplace_error(error: MarketplaceError):
        response = jsonify(_error_payload(error.to_dict()))
        response.status_code = int(error.http_status)
        if isinstance(error, RateLimited):
            response.headers["Retry-After"] = str(error.retry_after)
        return response

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
        return jsonify(_error_payload(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_error_payload(payload)), 500


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__)

    env = (_env_str("BYBLOS_ENV", "dev", "NODE_ENV") or "dev").lower()
    _load_config(app, env)
    if overrides:
        app.config.update(overrides)
    app.config["BYBLOS_ENV"] = (app.config.get("BYBLOS_ENV") or "dev").strip().lower()
    _check_production(
        app,
        database_configured=bool(
            _env_str("SQLALCHEMY_DATABASE_URI", None, "DATABASE_URL") or (overrides or {}).get("SQLALCHEMY_DATABASE_URI")
        ),
    )

    database_url = str(app.config["SQLALCHEMY_DATABASE_URI"])
    if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
        os.makedirs(os.path.dirname(database_url[len("sqlite:///"):]) or ".", exist_ok=True)
    app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", _engine_options(database_url))

    cors_origins = [o.strip() for o in (app.config.get("CORS_ORIGINS") or "").split(",") if o.strip()]
    if not cors_origins and app.config["BYBLOS_ENV"] not in ("prod", "production"):
        cors_origins = ["*"]
    cors.init_app(app, resources={r"/api/*": {"origins": cors_origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    init_sentry(app)
    install_request_observers(app)

    counter_store = build_counter_store(
        app.config.get("RATE_LIMIT_REDIS_URL"),
        cleanup_interval_seconds=int(app.config.get("RATE_LIMIT_CLEANUP_SECONDS", 300)),
    )
    app.extensions[GATE_EXTENSION] = WebhookSecurityGate.from_config(app.config, counter_store)
    if app.config.get("PAYD_ALLOWED_IPS") is None:
        app.logger.warning("payd_allowlist_unset env=%s", app.config["BYBLOS_ENV"])

    _register_error_handlers(app)
    app.register_blueprint(payments_bp)

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
            "service": "byblos-core",
            "env": app.config["BYBLOS_ENV"],
            "db": db_state,
            "payments": payment_health(app.config),
            "payouts": payout_health(app.config),
            "rate_limit": app.extensions[GATE_EXTENSION].counter_store.stats(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload), 200 if db_state == "ok" else 503

    return app
