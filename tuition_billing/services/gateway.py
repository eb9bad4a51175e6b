"""
Stripe gateway: one configured client per program account.

The engine only talks to Stripe through ``StripeGateway``; ``get_gateway``
picks the instance for an account type. SDK errors leave this module as
``GatewayError``.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, assert_never

import stripe
from flask import current_app
from stripe import StripeClient

from tuition_billing.billing.statuses import AccountType
from tuition_billing.errors import GatewayError


def to_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict from a Stripe object (or a dict already)."""
    if obj is None:
        return {}
    # Stripe objects may need converting to dicts
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


@dataclass
class SubscriptionPage:
    items: List[Dict[str, Any]]
    has_more: bool
    next_cursor: str | None


class StripeGateway:
    def __init__(self, account_type: AccountType, secret_key: str, webhook_secret: str | None = None):
        self.account_type = account_type
        self._client = StripeClient(secret_key)
        self._webhook_secret = webhook_secret

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            return to_dict(self._client.subscriptions.retrieve(subscription_id))
        except stripe.StripeError as exc:
            raise GatewayError.from_stripe(exc) from exc

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        try:
            return to_dict(self._client.customers.retrieve(customer_id))
        except stripe.StripeError as exc:
            raise GatewayError.from_stripe(exc) from exc

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        try:
            return to_dict(self._client.checkout.sessions.retrieve(session_id))
        except stripe.StripeError as exc:
            raise GatewayError.from_stripe(exc) from exc

    def list_subscriptions(self, cursor: str | None = None, limit: int = 100) -> SubscriptionPage:
        """One page of subscriptions (all statuses) with the customer expanded."""
        params: Dict[str, Any] = {"limit": limit, "status": "all", "expand": ["data.customer"]}
        if cursor:
            params["starting_after"] = cursor
        try:
            page = to_dict(self._client.subscriptions.list(params=params))
        except stripe.StripeError as exc:
            raise GatewayError.from_stripe(exc) from exc
        items = [to_dict(item) for item in (page.get("data") or [])]
        return SubscriptionPage(
            items=items,
            has_more=bool(page.get("has_more")),
            next_cursor=items[-1].get("id") if items else None,
        )

    def iter_subscriptions(self, limit: int = 100):
        cursor = None
        while True:
            page = self.list_subscriptions(cursor=cursor, limit=limit)
            yield from page.items
            if not page.has_more or not page.next_cursor:
                return
            cursor = page.next_cursor

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            return to_dict(self._client.subscriptions.cancel(subscription_id))
        except stripe.StripeError as exc:
            raise GatewayError.from_stripe(exc) from exc

    def verify_webhook_signature(self, body: bytes, signature: str) -> Dict[str, Any]:
        if not self._webhook_secret:
            raise GatewayError(f"Stripe webhook secret not configured for {self.account_type.value}")
        try:
            event = stripe.Webhook.construct_event(
                payload=body.decode("utf-8"),
                sig_header=signature,
                secret=self._webhook_secret,
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise GatewayError("Invalid Stripe signature", code="signature_invalid") from exc
        return to_dict(event)


def _account_keys(account_type: AccountType) -> tuple[str, str]:
    """Config keys (secret, webhook secret) for an account; youth and donations bill through Mahad."""
    if account_type is AccountType.MAHAD:
        return "STRIPE_MAHAD_SECRET_KEY", "STRIPE_MAHAD_WEBHOOK_SECRET"
    elif account_type is AccountType.DUGSI:
        return "STRIPE_DUGSI_SECRET_KEY", "STRIPE_DUGSI_WEBHOOK_SECRET"
    elif account_type is AccountType.YOUTH_EVENTS:
        return "STRIPE_MAHAD_SECRET_KEY", "STRIPE_MAHAD_WEBHOOK_SECRET"
    elif account_type is AccountType.GENERAL_DONATION:
        return "STRIPE_MAHAD_SECRET_KEY", "STRIPE_MAHAD_WEBHOOK_SECRET"
    else:
        assert_never(account_type)


def get_gateway(account_type: AccountType) -> StripeGateway:
    secret_name, webhook_name = _account_keys(account_type)
    key = current_app.config.get(secret_name)
    if not key:
        raise RuntimeError(f"{secret_name} is not configured")
    return StripeGateway(account_type, key, current_app.config.get(webhook_name))
