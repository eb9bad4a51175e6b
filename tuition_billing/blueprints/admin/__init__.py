import hmac

from flask import Blueprint, current_app, jsonify, request

bp = Blueprint("admin", __name__)


@bp.before_request
def _require_admin_token():
    expected = current_app.config.get("ADMIN_API_TOKEN")
    header = request.headers.get("Authorization", "")
    token = header[len("Bearer "):] if header.startswith("Bearer ") else ""
    if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
        return jsonify({"error": "unauthorized", "code": 401}), 401
    return None


# Import submodules so their routes register on the same bp
from . import routes  # noqa: E402,F401
