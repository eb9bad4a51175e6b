"""
Subscription lifecycle: validate against Stripe, mirror locally, keep the
mirror's status in step with the gateway.
"""
import json
from typing import Any, Dict

from flask import current_app

from tuition_billing.billing.statuses import ACTIVE_STATUSES, SUBSCRIPTION_STATUSES, AccountType, program_for_account
from tuition_billing.errors import ConflictError, NotFoundError, ValidationError
from tuition_billing.services import persistence
from tuition_billing.services.extractors import extract_customer_id, extract_period_dates, extract_price
from tuition_billing.services.gateway import get_gateway


def validate_subscription_id(subscription_id: str) -> str:
    sub_id = (subscription_id or "").strip()
    if not sub_id.startswith("sub_"):
        raise ValidationError('Invalid subscription ID format. Must start with "sub_"')
    return sub_id


def validate_stripe_subscription(subscription_id: str, account_type: AccountType) -> Dict[str, Any]:
    """
    Fetch a subscription from the account's gateway and normalize it.
    Returns: {subscription_id, customer_id, status, amount, currency, interval,
              current_period_start, current_period_end}
    """
    sub_id = validate_subscription_id(subscription_id)
    sub_obj = get_gateway(account_type).retrieve_subscription(sub_id)
    if not sub_obj:
        raise NotFoundError("Subscription not found in Stripe")

    customer_id = extract_customer_id(sub_obj)
    if not customer_id:
        raise ValidationError("Invalid customer ID in subscription")

    price = extract_price(sub_obj)
    period = extract_period_dates(sub_obj)
    return {
        "subscription_id": sub_obj.get("id") or sub_id,
        "customer_id": customer_id,
        "status": sub_obj.get("status") or "incomplete",
        "amount": price["amount"],
        "currency": price["currency"],
        "interval": price["interval"],
        "current_period_start": period.period_start,
        "current_period_end": period.period_end,
    }


def get_subscription_details(subscription_id: str):
    return persistence.get_subscription_by_stripe_id(subscription_id)


def sync_subscription_from_stripe(subscription_id: str, account_type: AccountType) -> Dict[str, Any]:
    """
    Pull the gateway's view of a subscription into its local mirror.

    Writes exactly once, and only when the status differs, so replaying the
    same webhook is harmless.
    """
    sub_id = validate_subscription_id(subscription_id)
    local = persistence.get_subscription_by_stripe_id(sub_id)
    if local is None:
        raise NotFoundError("Subscription not found in database")

    remote = validate_stripe_subscription(sub_id, account_type)
    current_status = local.status
    new_status = remote["status"]

    if current_status == new_status:
        return {"subscription_id": sub_id, "status": current_status, "updated": False}

    period_start, period_end = remote["current_period_start"], remote["current_period_end"]
    with persistence.unit_of_work() as s:
        persistence.update_subscription_status(
            local,
            new_status,
            current_period_start=period_start,
            current_period_end=period_end,
            paid_until=period_end,
            session=s,
        )
        # Profiles billed by this subscription follow its status
        profiles = persistence.get_profiles_billed_by(local, program_for_account(account_type).value, session=s)
        for profile in profiles:
            persistence.update_profile_subscription_state(
                profile,
                new_status,
                current_period_start=period_start,
                current_period_end=period_end,
                session=s,
            )
    current_app.logger.info(json.dumps({
        "event": "subscription_synced",
        "subscription_id": sub_id,
        "account_type": account_type.value,
        "from": current_status,
        "to": new_status,
        "profiles_updated": len(profiles),
    }))
    return {"subscription_id": sub_id, "status": new_status, "updated": True}


def create_subscription_from_stripe(sub_obj: Dict[str, Any], billing_account_id: int, account_type: AccountType, session=None):
    """Mirror a Stripe subscription object as a local Subscription row."""
    customer_id = extract_customer_id(sub_obj)
    if not customer_id:
        raise ValidationError("Invalid customer ID in subscription")

    price = extract_price(sub_obj)
    period = extract_period_dates(sub_obj)
    return persistence.create_subscription(
        billing_account_id=billing_account_id,
        account_type=account_type,
        stripe_subscription_id=sub_obj["id"],
        stripe_customer_id=customer_id,
        status=sub_obj.get("status") or "incomplete",
        amount=price["amount"],
        currency=price["currency"],
        interval=price["interval"],
        current_period_start=period.period_start,
        current_period_end=period.period_end,
        paid_until=period.period_end,
        session=session,
    )


def update_subscription_status(subscription_id: str, status: str, **period_data):
    """Manual status change (admin action or webhook); period fields are optional."""
    if status not in SUBSCRIPTION_STATUSES:
        raise ValidationError(f"Unknown subscription status: {status!r}")
    local = persistence.get_subscription_by_stripe_id(subscription_id)
    if local is None:
        raise NotFoundError("Subscription not found in database")
    return persistence.update_subscription_status(local, status, **period_data)


def cancel_subscription(
    subscription_id: str,
    cancel_in_stripe: bool = False,
    account_type: AccountType | None = None,
) -> Dict[str, bool]:
    """Mark the mirror canceled and optionally cancel at the gateway too."""
    if cancel_in_stripe and account_type is None:
        raise ConflictError("Account type required when canceling in Stripe")

    update_subscription_status(subscription_id, "canceled")

    canceled_in_stripe = False
    if cancel_in_stripe:
        get_gateway(account_type).cancel_subscription(subscription_id)
        canceled_in_stripe = True

    current_app.logger.info(json.dumps({
        "event": "subscription_canceled",
        "subscription_id": subscription_id,
        "canceled_in_stripe": canceled_in_stripe,
    }))
    return {"canceled": True, "canceled_in_stripe": canceled_in_stripe}


def is_subscription_active(subscription_id: str) -> bool:
    local = persistence.get_subscription_by_stripe_id(subscription_id)
    return bool(local and local.status in ACTIVE_STATUSES)
