import os
from flask import Flask, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, csrf, login_manager, limiter
from .security import init_security
from .observability import init_logging, init_sentry
from .utils.helpers import wants_json


def create_app():
    app = Flask(__name__)

    # ---- Rate limiting storage ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(get_config())
    app.config["APP_ENV"] = app_env

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")

    # --- Observability & Security ---
    init_logging(app)
    init_sentry(app)
    if app_env in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    csrf.init_app(app)
    login_manager.init_app(app)
    limiter.init_app(app)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "unauthorized", "code": 401}), 401

    # Blueprints (explicit, consistent prefixes)
    from .blueprints.auth import bp as auth_bp
    from .blueprints.library import bp as library_bp

    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(library_bp, url_prefix="/library")

    # Health
    @app.get("/healthz")
    @limiter.exempt
    def healthz():
        return {"status": "ok"}, 200

    # Error handlers: JSON for API callers, plain text otherwise
    def _error(code: int, key: str, text: str, headers=None):
        if wants_json():
            return jsonify({"error": key, "code": code}), code, headers or {}
        return text, code, headers or {}

    @app.errorhandler(401)
    def unauthorized_error(e):
        return _error(401, "unauthorized", "Unauthorized")

    @app.errorhandler(403)
    def forbidden(e):
        return _error(403, "forbidden", "Forbidden")

    @app.errorhandler(404)
    def not_found(e):
        return _error(404, "not_found", "Not Found")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error(405, "method_not_allowed", "Method Not Allowed")

    @app.errorhandler(500)
    def server_error(e):
        return _error(500, "server_error", "Internal Server Error")

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
        return _error(429, "rate_limited", "Too Many Requests", headers)

    # CSRF error handler (clean 400 instead of generic 500)
    from flask_wtf.csrf import CSRFError

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        if wants_json():
            return jsonify({"error": "csrf_failed", "message": e.description}), 400
        return (f"CSRF validation failed: {e.description}", 400)

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    return app
