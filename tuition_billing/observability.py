import os
from logging.config import dictConfig

import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration

# Never ship these to Sentry: admin bearer token and Stripe webhook signatures
_SCRUBBED_HEADERS = {"authorization", "stripe-signature", "cookie"}


def _app_env() -> str:
    return (os.getenv("APP_ENV", "development") or "development").lower()


def init_logging(app):
    """JSON logs in staging/prod so the `{"event": ...}` billing payloads stay machine-readable."""
    level = app.config.get("LOG_LEVEL", "INFO")
    if _app_env() not in ("staging", "production"):
        app.logger.setLevel(level)
        return

    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "rename_fields": {"levelname": "level", "asctime": "ts"},
                "static_fields": {"service": "tuition_billing", "env": _app_env()},
            },
        },
        "handlers": {"stdout": {"class": "logging.StreamHandler", "formatter": "json"}},
        "root": {"level": level, "handlers": ["stdout"]},
    })


def _scrub_headers(event, hint):
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for key in list(headers):
            if key.lower() in _SCRUBBED_HEADERS:
                headers[key] = "[filtered]"
    return event


def init_sentry(app):
    """Wire Sentry if SENTRY_DSN is set."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
            environment=_app_env(),
            send_default_pii=False,
            before_send=_scrub_headers,
        )
    except Exception as exc:
        app.logger.warning("Sentry init skipped: %s", exc)
