import json
from datetime import datetime, timezone
from typing import Dict

from flask import current_app

from tuition_billing.billing.statuses import EnrollmentStatus
from tuition_billing.errors import error_message
from tuition_billing.extensions import db
from tuition_billing.services import persistence


def handle_subscription_cancellation_enrollments(subscription_id: int, reason: str = "Subscription canceled") -> Dict:
    """
    Withdraw the active enrollment behind every active assignment of a canceled subscription.

    Each profile is handled on its own: a failure is recorded in ``errors`` and
    the rest are still processed.
    Returns: {"withdrawn": int, "errors": [{"profile_id": ..., "error": str}]}
    """
    result = {"withdrawn": 0, "errors": []}

    for assignment in persistence.get_billing_assignments_by_subscription(subscription_id):
        if not assignment.is_active:
            continue
        profile_id = assignment.program_profile_id
        try:
            enrollment = persistence.get_active_enrollment(profile_id)
            if enrollment is None:
                continue
            persistence.update_enrollment_status(
                enrollment.id,
                EnrollmentStatus.WITHDRAWN,
                reason,
                datetime.now(timezone.utc),
            )
            result["withdrawn"] += 1
        except Exception as exc:
            db.session.rollback()
            result["errors"].append({"profile_id": profile_id, "error": error_message(exc)})
            current_app.logger.exception(
                "enrollment.cascade_withdraw_failed",
                extra={"subscription_id": subscription_id, "profile_id": profile_id},
            )

    current_app.logger.info(json.dumps({
        "event": "subscription_cancellation_cascade",
        "subscription_id": subscription_id,
        "withdrawn": result["withdrawn"],
        "errors": len(result["errors"]),
    }))
    return result
