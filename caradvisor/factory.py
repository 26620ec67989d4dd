# -*- coding: utf-8 -*-
# ===================================================================
# 🚗 Car Advisor API – Turkey
# Credit-metered Gemini recommendations for the mobile app
# ===================================================================

import os, logging, uuid
import time as pytime
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

from flask import Flask, request, g
from werkzeug.exceptions import HTTPException, InternalServerError, RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix

from caradvisor.catalog import load_catalog
from caradvisor.exceptions import CarAdvisorError, RateLimitedError
from caradvisor.extensions import db, login_manager, migrate, GEMINI_RECOMMENDER_MODEL_ID
from caradvisor.identity import build_verifier, raise_for_auth_failure
from caradvisor.ledger import DEFAULT_INITIAL_CREDITS, InMemoryCreditLedger, SqlCreditLedger
from caradvisor.rate_limit import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SEC, SlidingWindowRateLimiter
from caradvisor.services.generation import AI_CALL_TIMEOUT_SEC, AI_EXECUTOR_WORKERS, build_generator
from caradvisor.services.purchase_service import PurchaseService
from caradvisor.services.recommendation_service import RecommendationService
from caradvisor.utils.http_helpers import api_error, get_request_id, log_rejection

_UNSET = object()


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


def load_settings() -> Dict[str, Any]:
    """Read every setting from the environment. Values here can be overridden
    by the ``config`` mapping passed to :func:`create_app`."""
    db_url = os.environ.get("DATABASE_URL", "").strip()
    # Normalize deprecated prefix for SQLAlchemy
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)

    return {
        "DATABASE_URL": db_url,
        "SECRET_KEY": os.environ.get("SECRET_KEY", "").strip(),
        "TRUSTED_PROXY_COUNT": int(os.environ.get("TRUSTED_PROXY_COUNT", "1")),
        "LEDGER_BACKEND": os.environ.get("LEDGER_BACKEND", "sql").strip().lower(),
        "INITIAL_CREDITS": int(os.environ.get("INITIAL_CREDITS", str(DEFAULT_INITIAL_CREDITS))),
        "RATE_LIMIT_WINDOW_SEC": float(os.environ.get("RATE_LIMIT_WINDOW_SEC", str(RATE_LIMIT_WINDOW_SEC))),
        "RATE_LIMIT_MAX_REQUESTS": int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", str(RATE_LIMIT_MAX_REQUESTS))),
        "REFUND_ON_UPSTREAM_FAILURE": _env_flag("REFUND_ON_UPSTREAM_FAILURE", "1"),
        "PRODUCT_CATALOG": os.environ.get("PRODUCT_CATALOG", ""),
        "GEMINI_API_KEY": os.environ.get("GEMINI_API_KEY", ""),
        "GEMINI_RECOMMENDER_MODEL_ID": GEMINI_RECOMMENDER_MODEL_ID,
        "AI_CALL_TIMEOUT_SEC": int(os.environ.get("AI_CALL_TIMEOUT_SEC", str(AI_CALL_TIMEOUT_SEC))),
        "AI_EXECUTOR_WORKERS": int(os.environ.get("AI_EXECUTOR_WORKERS", str(AI_EXECUTOR_WORKERS))),
        "IDENTITY_PROJECT_ID": os.environ.get("IDENTITY_PROJECT_ID", "").strip(),
        "IDENTITY_ISSUER": os.environ.get("IDENTITY_ISSUER", "").strip(),
        "IDENTITY_JWKS_PATH": os.environ.get("IDENTITY_JWKS_PATH", "").strip(),
        "IDENTITY_JWKS_JSON": os.environ.get("IDENTITY_JWKS_JSON", ""),
        "SKIP_CREATE_ALL": _env_flag("SKIP_CREATE_ALL", "0"),
    }


def _build_ledger(app: Flask, logger: logging.Logger):
    backend = app.config["LEDGER_BACKEND"]
    initial = app.config["INITIAL_CREDITS"]
    if backend == "memory":
        logger.warning("[LEDGER] in-memory ledger selected; balances are lost on restart (LOCAL DEV ONLY)")
        return InMemoryCreditLedger(initial_grant=initial)
    if backend == "sql":
        return SqlCreditLedger(initial_grant=initial)
    logger.error("[LEDGER] unknown LEDGER_BACKEND=%r; credit endpoints will fail closed", backend)
    return None


def create_app(config: Optional[Mapping[str, Any]] = None, *, ledger=_UNSET, verifier=_UNSET, generator=_UNSET, rate_limiter=_UNSET):
    app = Flask(__name__)

    # Structured logging to stdout
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger = logging.getLogger(__name__)

    settings = load_settings()
    if config:
        settings.update(config)
    app.config.update(settings)

    # Reverse proxy chain (Render / Cloudflare) sets X-Forwarded-*
    trusted_proxy_count = app.config["TRUSTED_PROXY_COUNT"]
    app.wsgi_app = ProxyFix(
        app.wsgi_app,
        x_for=trusted_proxy_count,
        x_proto=trusted_proxy_count,
        x_host=trusted_proxy_count,
        x_prefix=0
    )
    logger.info(f"ProxyFix configured with trusted_proxy_count={trusted_proxy_count}")

    # ======================
    # Database
    # ======================
    db_url = app.config["DATABASE_URL"]
    secret_key = app.config["SECRET_KEY"]
    is_render = os.environ.get("RENDER", "").strip() != ""
    if is_render and not db_url and app.config["LEDGER_BACKEND"] == "sql":
        raise RuntimeError(
            "DATABASE_URL is missing on Render. "
            "Set DATABASE_URL (Internal Postgres URL) in Render Environment Variables."
        )

    app.config["SQLALCHEMY_DATABASE_URI"] = db_url if db_url else "sqlite:///:memory:"
    app.config["SECRET_KEY"] = secret_key if secret_key else "dev-secret-key-that-is-not-secret"
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    # Cap JSON bodies (64 KB)
    app.config["MAX_CONTENT_LENGTH"] = 64 * 1024

    if db_url and "postgresql" in db_url:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "pool_pre_ping": True,
            "pool_recycle": 240,
            "pool_size": 5,
            "max_overflow": 10,
            "connect_args": {"connect_timeout": 10},
        }
        parsed_db_url = urlparse(db_url)
        safe_port = f":{parsed_db_url.port}" if parsed_db_url.port else ""
        safe_db = (parsed_db_url.path or "").lstrip("/")
        logger.info("[DB] DATABASE host=%s%s db=%s", parsed_db_url.hostname or "", safe_port, safe_db or "(default)")
    elif not db_url:
        logger.warning("[DB] DATABASE_URL not set. Using in-memory sqlite (LOCAL DEV ONLY).")
    if not secret_key:
        logger.warning("[BOOT] SECRET_KEY not set. Using dev fallback (LOCAL DEV ONLY).")

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # ======================
    # Components
    # ======================
    if ledger is _UNSET:
        ledger = _build_ledger(app, logger)
    if verifier is _UNSET:
        verifier = build_verifier(app.config)
    if generator is _UNSET:
        generator = build_generator(app.config)
    if rate_limiter is _UNSET:
        rate_limiter = SlidingWindowRateLimiter(
            max_requests=app.config["RATE_LIMIT_MAX_REQUESTS"],
            window_sec=app.config["RATE_LIMIT_WINDOW_SEC"],
        )

    app.extensions["credit_ledger"] = ledger
    app.extensions["token_verifier"] = verifier
    app.extensions["rate_limiter"] = rate_limiter
    app.extensions["recommendation_service"] = (
        RecommendationService(ledger, generator, refund_on_upstream_failure=app.config["REFUND_ON_UPSTREAM_FAILURE"])
        if ledger is not None else None
    )
    app.extensions["purchase_service"] = (
        PurchaseService(ledger, load_catalog(app.config["PRODUCT_CATALOG"])) if ledger is not None else None
    )

    if isinstance(ledger, SqlCreditLedger):
        with app.app_context():
            if is_render:
                logger.info("[DB] Render detected - skipping db.create_all(); run `flask db upgrade` via release/preDeploy")
            elif app.config["SKIP_CREATE_ALL"]:
                logger.info("[DB] SKIP_CREATE_ALL enabled - skipping db.create_all()")
            else:
                try:
                    db.create_all()
                    logger.info("[DB] create_all executed")
                except Exception:
                    logger.exception("[DB] create_all failed")

    # ======================
    # Request lifecycle
    # ======================
    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get("X-Request-ID", "")[:64] or str(uuid.uuid4())
        g.start_time = pytime.perf_counter()
        logger.info(f"[REQ] request_id={g.request_id} {request.method} {request.path}")

    @app.after_request
    def apply_headers_and_log(response):
        rid = get_request_id()
        response.headers.setdefault("X-Request-ID", rid)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Cache-Control", "no-store")
        duration_ms = (pytime.perf_counter() - g.start_time) * 1000 if hasattr(g, "start_time") else 0
        logger.info(
            f"[RESP] request_id={rid} method={request.method} path={request.path} "
            f"status={response.status_code} duration_ms={duration_ms:.2f} user={g.get('user_id') or 'anonymous'}"
        )
        return response

    @app.teardown_request
    def teardown_request_handler(exc):
        try:
            db.session.rollback()
        except Exception:
            logger.exception("[DB] teardown rollback failed")
        finally:
            db.session.remove()

    # ======================
    # Errors
    # ======================
    from caradvisor.routes.cars_routes import SERVER_ERROR_OVERRIDES

    def _server_error_for_endpoint(error: CarAdvisorError) -> CarAdvisorError:
        override = SERVER_ERROR_OVERRIDES.get(request.endpoint)
        return override() if override else error

    @login_manager.unauthorized_handler
    def unauthorized():
        raise_for_auth_failure()

    @app.errorhandler(CarAdvisorError)
    def handle_app_error(e):
        if e.status >= 500:
            logger.error(
                "[ERROR] request_id=%s endpoint=%s error=%s (%s)",
                get_request_id(), request.endpoint, type(e).__name__, e.code,
            )
            e = _server_error_for_endpoint(e)
        else:
            log_rejection(e.code, type(e).__name__)
        body = e.to_dict()
        resp = api_error(body.pop("error"), body.pop("message"), status=e.status, **body)
        if isinstance(e, RateLimitedError):
            resp.headers["Retry-After"] = str(e.retry_after)
        return resp

    @app.errorhandler(RequestEntityTooLarge)
    def handle_request_too_large(e):
        return api_error("payload_too_large", "Payload exceeds limit", status=413)

    @app.errorhandler(InternalServerError)
    def handle_internal_error(e):
        logger.error("[ERROR] request_id=%s unhandled exception", get_request_id(), exc_info=e.original_exception or e)
        error = _server_error_for_endpoint(CarAdvisorError())
        return api_error(error.code, error.message, status=500)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        code = (e.name or "error").lower().replace(" ", "_")
        return api_error(code, e.description or e.name, status=e.code or 500)

    # ------------------
    # ===== ROUTES =====
    # ------------------
    from caradvisor.routes.public_routes import bp as public_bp
    from caradvisor.routes.cars_routes import bp as cars_bp
    app.register_blueprint(public_bp)
    app.register_blueprint(cars_bp)

    @app.cli.command("init-db")
    def init_db_command():
        with app.app_context():
            db.create_all()
        print("Initialized the database tables.")

    return app
