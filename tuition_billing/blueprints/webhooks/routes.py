import hashlib
import json
from datetime import datetime, timezone

from flask import request, jsonify, current_app

from . import bp
from tuition_billing.billing.statuses import parse_account_type
from tuition_billing.errors import GatewayError
from tuition_billing.extensions import db, limiter
from tuition_billing.models import WebhookEvent
from tuition_billing.services import persistence
from tuition_billing.services.billing import create_or_update_billing_account
from tuition_billing.services.enrollment import handle_subscription_cancellation_enrollments
from tuition_billing.services.extractors import relation_id, to_datetime
from tuition_billing.services.gateway import get_gateway
from tuition_billing.services.subscriptions import sync_subscription_from_stripe

SUBSCRIPTION_EVENTS = ("customer.subscription.created", "customer.subscription.updated")
INVOICE_EVENTS = ("invoice.paid", "invoice.payment_failed")


def _invoice_subscription_id(invoice: dict) -> str | None:
    sub_id = relation_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    # Newer API versions nest it under parent.subscription_details
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return relation_id(details.get("subscription"))


def _mark_payment_method_captured(gateway, account_type, session_obj: dict) -> None:
    checkout = gateway.retrieve_checkout_session(session_obj.get("id"))
    customer_id = relation_id(checkout.get("customer"))
    if not customer_id:
        return

    account = persistence.get_billing_account_by_customer_id(customer_id, account_type)
    if account is not None:
        person_id = account.person_id
    else:
        email = (checkout.get("customer_details") or {}).get("email") or checkout.get("customer_email")
        person = persistence.find_person_by_email(email) if email else None
        person_id = person.id if person else None

    create_or_update_billing_account(
        person_id=person_id,
        account_type=account_type,
        stripe_customer_id=customer_id,
        payment_method_captured=True,
        payment_method_captured_at=datetime.now(timezone.utc),
        payment_intent_id=relation_id(checkout.get("payment_intent")),
    )


def _sync_if_mirrored(sub_id: str | None, account_type):
    if not sub_id:
        return None
    local = persistence.get_subscription_by_stripe_id(sub_id)
    if local is None:
        # Not linked yet; reconciliation picks it up
        return None
    sync_subscription_from_stripe(sub_id, account_type)
    return local


# ----- Stripe Webhook (one endpoint per program account) -----
@limiter.exempt
@bp.post("/stripe/<account_type>")
def stripe_webhook(account_type: str):
    """
    Stripe → /webhooks/stripe/<account_type>
    Verifies signature, logs event, idempotently syncs the local subscription mirror.
    """
    # 1) Verify signature with the account's own webhook secret
    acct = parse_account_type(account_type)
    gateway = get_gateway(acct)

    raw_bytes = request.get_data(cache=False, as_text=False)
    sig_header = request.headers.get("Stripe-Signature", "")

    try:
        event = gateway.verify_webhook_signature(raw_bytes, sig_header)
    except GatewayError:
        # Log invalid attempts with a deterministic synthetic id (no payload trust)
        digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
        synthetic_id = f"invalid:{digest}"
        if not WebhookEvent.query.filter_by(stripe_event_id=synthetic_id).first():
            db.session.add(WebhookEvent(
                stripe_event_id=synthetic_id,
                type="signature_invalid",
                account_type=acct.value,
                signature_valid=False,
                payload={},
            ))
            db.session.commit()
        return jsonify({"error": "invalid_signature"}), 400

    # 2) Idempotency guard (short-circuit if already processed)
    ev_id = event.get("id")
    ev_type = event.get("type")
    if not ev_id or not ev_type:
        return jsonify({"error": "malformed_event"}), 400

    if WebhookEvent.query.filter_by(stripe_event_id=ev_id).first():
        return jsonify({"ok": True, "duplicate": True}), 200

    # 3) Persist raw payload to log (for audit/forensics)
    try:
        payload_json = json.loads(raw_bytes.decode("utf-8"))
    except ValueError:
        payload_json = {"_decode_error": True}

    log = WebhookEvent(
        stripe_event_id=ev_id,
        type=ev_type,
        account_type=acct.value,
        signature_valid=True,
        payload=payload_json,
    )
    db.session.add(log)
    db.session.commit()

    # 4) Handle event types
    obj = (event.get("data") or {}).get("object") or {}

    try:
        if ev_type == "checkout.session.completed":
            _mark_payment_method_captured(gateway, acct, obj)

        elif ev_type in SUBSCRIPTION_EVENTS:
            _sync_if_mirrored(obj.get("id"), acct)

        elif ev_type == "customer.subscription.deleted":
            local = _sync_if_mirrored(obj.get("id"), acct)
            if local is not None:
                handle_subscription_cancellation_enrollments(local.id)

        elif ev_type in INVOICE_EVENTS:
            local = _sync_if_mirrored(_invoice_subscription_id(obj), acct)
            if local is not None and ev_type == "invoice.paid":
                paid_at = to_datetime((obj.get("status_transitions") or {}).get("paid_at"))
                persistence.update_subscription_status(
                    local, local.status, last_payment_date=paid_at or datetime.now(timezone.utc)
                )

        # Other events: ignored
        log.processed_at = datetime.now(timezone.utc)
        db.session.commit()
    except Exception as e:
        # Failure is noted on the event row; Stripe still gets a 200
        db.session.rollback()
        log.notes = f"handler_error:{type(e).__name__}"
        db.session.commit()
        current_app.logger.exception("stripe_webhook_handler_error")

    current_app.logger.info(json.dumps({
        "event": "stripe_webhook",
        "account_type": acct.value,
        "type": ev_type,
        "stripe_event_id": ev_id,
    }))
    return jsonify({"ok": True}), 200
