from datetime import datetime

from flask import jsonify, request, current_app

from . import bp
from tuition_billing.billing.statuses import parse_account_type
from tuition_billing.errors import BillingError, NotFoundError, ValidationError, error_message
from tuition_billing.extensions import limiter
from tuition_billing.services import persistence
from tuition_billing.services.billing import link_subscription_to_profiles, unlink_subscription
from tuition_billing.services.reconciliation import (
    get_orphaned_subscriptions,
    get_potential_matches,
    link_subscription_to_student,
    search_profiles_for_linking,
)
from tuition_billing.services.status import (
    get_billing_status_by_email,
    get_billing_status_for_profiles,
    get_discount_eligible_families,
)
from tuition_billing.services.subscriptions import sync_subscription_from_stripe


def _jsonable(data):
    """Datetimes as ISO-8601; everything else unchanged."""
    if isinstance(data, dict):
        return {k: _jsonable(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_jsonable(v) for v in data]
    if isinstance(data, datetime):
        return data.isoformat()
    return data


def _failure(exc: Exception, status: int = 400):
    return jsonify({"success": False, "error": error_message(exc)}), status


def _int_list(values) -> list[int]:
    if not isinstance(values, list):
        raise ValidationError("profile_ids must be a list of integers")
    try:
        return [int(v) for v in values]
    except (TypeError, ValueError):
        raise ValidationError("profile_ids must be a list of integers") from None


# ----- Reconciliation -----

@bp.get("/orphans")
@limiter.limit("30 per minute")
def orphans():
    return jsonify({"orphans": _jsonable(get_orphaned_subscriptions())})


@bp.get("/matches")
@limiter.limit("120 per minute")
def matches():
    email = (request.args.get("email") or "").strip()
    program = request.args.get("program")
    if not program:
        raise ValidationError("program is required")
    return jsonify({"matches": get_potential_matches(email, program)})


@bp.get("/search")
@limiter.limit("120 per minute")
def search():
    program = request.args.get("program") or None
    return jsonify({"matches": search_profiles_for_linking(request.args.get("q"), program)})


@bp.post("/link")
@limiter.limit("30 per minute")
def link():
    """
    Confirms an operator-chosen match.
    Body: { subscription_id, profile_id, program }
    Returns: { success: bool, error?: str }
    """
    data = request.get_json(silent=True) or {}
    try:
        profile_id = int(data.get("profile_id"))
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "profile_id is required"}), 400

    result = link_subscription_to_student(
        str(data.get("subscription_id") or "").strip(), profile_id, data.get("program")
    )
    return jsonify(result), (200 if result["success"] else 400)


# ----- Split billing -----

@bp.post("/subscriptions/<int:subscription_id>/assignments")
@limiter.limit("60 per minute")
def create_assignments(subscription_id: int):
    """
    Body: { profile_ids: [int], amount?: int (minor units), notes?: str }
    Amount defaults to the subscription's own amount.
    """
    data = request.get_json(silent=True) or {}
    try:
        sub = persistence.get_subscription(subscription_id)
        if sub is None:
            raise NotFoundError("Subscription not found in database")
        amount = data.get("amount", sub.amount)
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError("amount must be an integer number of minor units")
        created = link_subscription_to_profiles(
            sub.id, _int_list(data.get("profile_ids")), amount, notes=data.get("notes")
        )
    except BillingError as exc:
        return _failure(exc, exc.status_code)
    return jsonify({"success": True, "created": created}), 200


@bp.delete("/subscriptions/<int:subscription_id>/assignments")
@limiter.limit("60 per minute")
def delete_assignments(subscription_id: int):
    if persistence.get_subscription(subscription_id) is None:
        return _failure(NotFoundError("Subscription not found in database"), 404)
    return jsonify({"success": True, "deactivated": unlink_subscription(subscription_id)}), 200


@bp.post("/subscriptions/<stripe_subscription_id>/sync")
@limiter.limit("30 per minute")
def sync(stripe_subscription_id: str):
    data = request.get_json(silent=True) or {}
    try:
        account_type = parse_account_type(data.get("account_type"))
        result = sync_subscription_from_stripe(stripe_subscription_id, account_type)
    except BillingError as exc:
        current_app.logger.warning(
            "admin.sync_failed",
            extra={"subscription_id": stripe_subscription_id, "error": error_message(exc)},
        )
        return _failure(exc, exc.status_code)
    return jsonify({"success": True, **result}), 200


# ----- Status -----

@bp.get("/status")
@limiter.limit("120 per minute")
def billing_status():
    email = (request.args.get("email") or "").strip()
    if not email:
        raise ValidationError("email is required")
    account_type = parse_account_type(request.args.get("program"))
    return jsonify(_jsonable(get_billing_status_by_email(email, account_type)))


@bp.get("/profiles/status")
@limiter.limit("120 per minute")
def profiles_status():
    raw = [v for v in (request.args.get("ids") or "").split(",") if v.strip()]
    ids = _int_list([v.strip() for v in raw])
    status = get_billing_status_for_profiles(ids)
    return jsonify({str(k): v for k, v in status.items()})


@bp.get("/discounts")
@limiter.limit("30 per minute")
def discount_families():
    program = request.args.get("program") or None
    return jsonify({"families": get_discount_eligible_families(program)})
