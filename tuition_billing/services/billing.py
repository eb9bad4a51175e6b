"""
Billing accounts and split billing.

One subscription can pay for several program profiles (siblings). Its amount
is divided with ``calculate_split_amounts`` and one BillingAssignment is
written per profile.
"""
import json
import math
from datetime import datetime, timezone
from typing import List

import sentry_sdk
from flask import current_app

from tuition_billing.billing.statuses import AccountType
from tuition_billing.errors import NotFoundError, ValidationError
from tuition_billing.services import persistence


def calculate_split_amounts(total_amount: int, count: int) -> List[int]:
    """
    Split ``total_amount`` (minor units) into ``count`` shares.

    Every share is ``total // count`` except the last, which absorbs the
    remainder, so the shares always sum to the total:

        calculate_split_amounts(1000, 3) -> [333, 333, 334]
    """
    if count <= 0:
        raise ValidationError("Count must be positive")
    if count == 1:
        return [total_amount]

    base = total_amount // count
    return [base] * (count - 1) + [total_amount - base * (count - 1)]


def split_percentage(count: int) -> float | None:
    """Nominal share stored on each assignment; None when there is nothing to split."""
    if count <= 1:
        return None
    # Halves round up: 8 profiles get 13% each
    return float(math.floor(100 / count + 0.5))


def create_or_update_billing_account(
    *,
    person_id: int | None,
    account_type: AccountType,
    stripe_customer_id: str | None = None,
    payment_method_captured: bool | None = None,
    payment_method_captured_at: datetime | None = None,
    payment_intent_id: str | None = None,
    session=None,
):
    return persistence.upsert_billing_account(
        person_id=person_id,
        account_type=account_type,
        stripe_customer_id=stripe_customer_id,
        payment_intent_id=payment_intent_id,
        payment_method_captured=payment_method_captured,
        payment_method_captured_at=payment_method_captured_at,
        session=session,
    )


def get_billing_account_by_customer_id(stripe_customer_id: str, account_type: AccountType):
    return persistence.get_billing_account_by_customer_id(stripe_customer_id, account_type)


def link_subscription_to_profiles(
    subscription_id: int,
    profile_ids: List[int],
    total_amount: int,
    notes: str | None = None,
    session=None,
) -> int:
    """
    Create one active assignment per profile not already linked to the subscription.

    Profiles with an active assignment are skipped and the amount is split over
    the rest. Returns the number of assignments created.
    """
    if not profile_ids:
        raise ValidationError("At least one profile ID is required")
    if total_amount is None or total_amount < 0:
        raise ValidationError("Total amount must be a non-negative integer")

    # Preserve caller order, drop duplicates
    ordered = list(dict.fromkeys(profile_ids))

    def _create(s) -> int:
        # Nothing is written unless every referenced row exists
        if persistence.get_subscription(subscription_id, session=s) is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        missing = persistence.get_missing_profile_ids(ordered, session=s)
        if missing:
            raise NotFoundError(f"Program profile not found: {', '.join(str(pid) for pid in missing)}")

        existing = persistence.get_active_assignment_profile_ids(subscription_id, ordered, session=s)
        remaining = [pid for pid in ordered if pid not in existing]
        if not remaining:
            return 0

        amounts = calculate_split_amounts(total_amount, len(remaining))
        percentage = split_percentage(len(remaining))
        for profile_id, amount in zip(remaining, amounts):
            persistence.create_billing_assignment(
                subscription_id=subscription_id,
                program_profile_id=profile_id,
                amount=amount,
                percentage=percentage,
                notes=notes,
                session=s,
            )
        return len(remaining)

    with sentry_sdk.start_span(op="db.transaction", name="billing.create_assignments_transaction") as span:
        span.set_data("subscription_id", subscription_id)
        span.set_data("num_profiles", len(ordered))
        span.set_data("total_amount", total_amount)
        if session is not None:
            created = _create(session)
        else:
            with persistence.unit_of_work() as s:
                created = _create(s)

    current_app.logger.info(json.dumps({
        "event": "subscription_linked_to_profiles",
        "subscription_id": subscription_id,
        "requested": len(ordered),
        "created": created,
    }))
    return created


def unlink_subscription(subscription_id: int) -> int:
    """Deactivate every active assignment of a subscription; returns how many changed."""
    now = datetime.now(timezone.utc)
    with persistence.unit_of_work() as s:
        count = 0
        for assignment in persistence.get_billing_assignments_by_subscription(subscription_id, session=s):
            if assignment.is_active:
                persistence.update_billing_assignment_status(assignment, False, now, session=s)
                count += 1

    current_app.logger.info(json.dumps({
        "event": "subscription_unlinked",
        "subscription_id": subscription_id,
        "deactivated": count,
    }))
    return count
