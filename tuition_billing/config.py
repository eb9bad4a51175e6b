import os
from dotenv import dotenv_values

# Shell sessions that skip create_app still see DATABASE_URL from .env
_ENV_FALLBACK = dotenv_values(".env")


class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    # Database: env, then .env, then in-memory SQLite
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Stripe (one account per program) ---
    STRIPE_MAHAD_SECRET_KEY = os.getenv("STRIPE_MAHAD_SECRET_KEY")
    STRIPE_MAHAD_WEBHOOK_SECRET = os.getenv("STRIPE_MAHAD_WEBHOOK_SECRET")
    STRIPE_DUGSI_SECRET_KEY = os.getenv("STRIPE_DUGSI_SECRET_KEY")
    STRIPE_DUGSI_WEBHOOK_SECRET = os.getenv("STRIPE_DUGSI_WEBHOOK_SECRET")

    # Page size used when walking the subscription list during reconciliation
    STRIPE_LIST_PAGE_SIZE = int(os.getenv("STRIPE_LIST_PAGE_SIZE", "100"))

    # Shared bearer token for the admin JSON surface
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # REQUIRE env vars in production (fail fast if missing)
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    STRIPE_MAHAD_SECRET_KEY = "sk_test_mahad"
    STRIPE_MAHAD_WEBHOOK_SECRET = "whsec_test_mahad"
    STRIPE_DUGSI_SECRET_KEY = "sk_test_dugsi"
    STRIPE_DUGSI_WEBHOOK_SECRET = "whsec_test_dugsi"
    ADMIN_API_TOKEN = "admin-test-token"
    RATELIMIT_ENABLED = False

_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
