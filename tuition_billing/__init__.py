import os
from flask import Flask, request, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=True)


from .config import get_config
from .errors import BillingError
from .extensions import db, migrate, limiter
from .observability import init_logging, init_sentry

REQUIRED_IN_PROD = (
    "SECRET_KEY",
    "DATABASE_URL",
    "STRIPE_MAHAD_SECRET_KEY",
    "STRIPE_MAHAD_WEBHOOK_SECRET",
    "STRIPE_DUGSI_SECRET_KEY",
    "STRIPE_DUGSI_WEBHOOK_SECRET",
    "ADMIN_API_TOKEN",
)


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

    app.config.from_object(get_config())
    app.config["APP_ENV"] = app_env

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        for name in REQUIRED_IN_PROD:
            _require(name)

    init_logging(app)
    init_sentry(app)

    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    limiter.init_app(app)

    from .blueprints.webhooks import bp as webhooks_bp
    from .blueprints.admin import bp as admin_bp

    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(admin_bp, url_prefix="/admin/billing")

    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    # Domain errors → JSON with the taxonomy's status code
    @app.errorhandler(BillingError)
    def billing_error(e):
        if e.status_code >= 500:
            app.logger.warning("billing_error: %s", e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "not_found", "code": 404}, 404

    @app.errorhandler(500)
    def server_error(e):
        return {"error": "internal_error", "code": 500}, 500

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "code": 429}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        app.logger.info("rate_limited path=%s", request.path)
        return (payload, 429, headers)

    from .cli import register_cli
    register_cli(app)

    return app
