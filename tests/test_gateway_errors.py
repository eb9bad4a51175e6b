import pytest
import stripe

from tuition_billing.billing.statuses import AccountType, customer_id_column, parse_account_type, profile_status_for
from tuition_billing.errors import (
    GENERIC_ERROR_MESSAGE,
    GatewayError,
    ValidationError,
    error_message,
)
from tuition_billing.services.gateway import get_gateway


@pytest.mark.parametrize("code,message", [
    ("payment_intent_unexpected_state", "This bank account has already been verified"),
    ("incorrect_code", "Incorrect verification code. Please check the code in the bank statement and try again"),
    ("resource_missing", "Resource not found in Stripe. It may have been deleted or expired"),
])
def test_known_stripe_codes_map_to_fixed_messages(code, message):
    err = GatewayError.from_stripe(stripe.InvalidRequestError("raw", "id", code=code))
    assert err.code == code
    assert err.message == message
    assert err.to_dict() == {"error": "gateway_error", "message": message, "code": code}


def test_unknown_stripe_code_passes_message_through():
    err = GatewayError.from_stripe(stripe.CardError("Your card was declined.", "card", "card_declined"))
    assert err.code == "card_declined"
    assert err.message == "Your card was declined."


def test_error_message_fallbacks():
    assert error_message(RuntimeError("boom")) == "boom"
    assert error_message(RuntimeError()) == GENERIC_ERROR_MESSAGE
    assert error_message("plain text") == "plain text"
    assert error_message(42) == GENERIC_ERROR_MESSAGE
    assert error_message(None) == GENERIC_ERROR_MESSAGE


def test_parse_account_type():
    assert parse_account_type("dugsi") is AccountType.DUGSI
    assert parse_account_type(AccountType.MAHAD) is AccountType.MAHAD
    with pytest.raises(ValidationError):
        parse_account_type("stripe")
    with pytest.raises(ValidationError):
        parse_account_type(None)


def test_every_account_type_has_a_customer_column():
    assert {customer_id_column(a) for a in AccountType} == {
        "stripe_customer_id_mahad",
        "stripe_customer_id_dugsi",
        "stripe_customer_id_youth",
        "stripe_customer_id_donation",
    }


@pytest.mark.parametrize("status,expected", [
    ("active", "ENROLLED"),
    ("past_due", "ENROLLED"),
    ("canceled", "WITHDRAWN"),
    ("unpaid", "WITHDRAWN"),
    ("trialing", "REGISTERED"),
    ("incomplete", "REGISTERED"),
])
def test_profile_status_for_subscription_status(status, expected):
    assert profile_status_for(status).value == expected


def test_gateway_wraps_sdk_errors(app, fake_stripe):
    with app.app_context():
        gateway = get_gateway(AccountType.DUGSI)
        with pytest.raises(GatewayError) as exc:
            gateway.retrieve_subscription("sub_absent")
        assert exc.value.code == "resource_missing"
        with pytest.raises(GatewayError):
            gateway.retrieve_checkout_session("cs_absent")


def test_gateway_requires_configured_key(app, monkeypatch):
    monkeypatch.setitem(app.config, "STRIPE_DUGSI_SECRET_KEY", None)
    with app.app_context():
        with pytest.raises(RuntimeError):
            get_gateway(AccountType.DUGSI)


def test_signature_verification_failure_is_a_gateway_error(app, fake_stripe, monkeypatch):
    def _reject(payload, sig_header, secret):
        raise stripe.SignatureVerificationError("no match", sig_header)
    monkeypatch.setattr(stripe.Webhook, "construct_event", staticmethod(_reject))

    with app.app_context():
        with pytest.raises(GatewayError) as exc:
            get_gateway(AccountType.MAHAD).verify_webhook_signature(b"{}", "t=1,v1=x")
    assert exc.value.code == "signature_invalid"
