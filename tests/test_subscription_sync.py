import pytest

from tuition_billing.billing.statuses import AccountType
from tuition_billing.errors import ConflictError, GatewayError, NotFoundError, ValidationError
from tuition_billing.extensions import db
from tuition_billing.models import ProgramProfile, Subscription
from tuition_billing.services import persistence, subscriptions


def _local(seed, stripe_id="sub_a", status="active"):
    person = seed.person(email="payer@example.com")
    account = seed.account(person, stripe_customer_id_mahad="cus_1")
    return seed.subscription(account, stripe_id=stripe_id, status=status)


def test_sync_requires_local_row(app, fake_stripe, stripe_sub):
    fake_stripe.add("MAHAD", stripe_sub("sub_missing"))
    with app.app_context():
        with pytest.raises(NotFoundError) as exc:
            subscriptions.sync_subscription_from_stripe("sub_missing", AccountType.MAHAD)
        assert str(exc.value) == "Subscription not found in database"
    # the gateway is never consulted for unknown subscriptions
    assert fake_stripe.retrieve_calls == []


def test_sync_writes_when_status_changes(app, fake_stripe, stripe_sub, seed):
    fake_stripe.add("MAHAD", stripe_sub("sub_a", status="past_due"))
    with app.app_context():
        _local(seed)
        result = subscriptions.sync_subscription_from_stripe("sub_a", AccountType.MAHAD)
        assert result == {"subscription_id": "sub_a", "status": "past_due", "updated": True}

    with app.app_context():
        sub = Subscription.query.filter_by(stripe_subscription_id="sub_a").one()
        assert sub.status == "past_due"
        assert sub.current_period_start is not None
        assert sub.current_period_end is not None
        assert sub.paid_until is not None


def test_sync_is_idempotent_without_gateway_change(app, fake_stripe, stripe_sub, seed, monkeypatch):
    fake_stripe.add("MAHAD", stripe_sub("sub_a", status="active"))
    with app.app_context():
        _local(seed, status="active")

        def _no_write(*args, **kwargs):
            raise AssertionError("sync must not write when the status is unchanged")
        monkeypatch.setattr(persistence, "update_subscription_status", _no_write)

        for _ in range(2):
            result = subscriptions.sync_subscription_from_stripe("sub_a", AccountType.MAHAD)
            assert result == {"subscription_id": "sub_a", "status": "active", "updated": False}


def test_sync_uses_the_account_gateway(app, fake_stripe, stripe_sub, seed):
    # Same id in the wrong account must not be found
    fake_stripe.add("DUGSI", stripe_sub("sub_a", status="canceled"))
    with app.app_context():
        _local(seed)
        with pytest.raises(GatewayError) as exc:
            subscriptions.sync_subscription_from_stripe("sub_a", AccountType.MAHAD)
        assert exc.value.code == "resource_missing"
        assert "not found in Stripe" in exc.value.message


def test_validate_rejects_bad_ids(app, fake_stripe):
    with app.app_context():
        with pytest.raises(ValidationError):
            subscriptions.validate_stripe_subscription("cus_123", AccountType.MAHAD)
        with pytest.raises(ValidationError):
            subscriptions.validate_stripe_subscription("", AccountType.MAHAD)


def test_validate_requires_customer(app, fake_stripe, stripe_sub):
    sub = stripe_sub("sub_nocust")
    sub["customer"] = None
    fake_stripe.add("MAHAD", sub)
    with app.app_context():
        with pytest.raises(ValidationError) as exc:
            subscriptions.validate_stripe_subscription("sub_nocust", AccountType.MAHAD)
        assert "customer" in str(exc.value)


def test_validate_normalizes_fields(app, fake_stripe, stripe_sub):
    fake_stripe.add("MAHAD", stripe_sub("sub_ok", customer="cus_9", amount=9900, on_item=True))
    with app.app_context():
        info = subscriptions.validate_stripe_subscription(" sub_ok ", AccountType.MAHAD)
    assert info["subscription_id"] == "sub_ok"
    assert info["customer_id"] == "cus_9"
    assert info["amount"] == 9900
    assert info["currency"] == "usd"
    assert info["interval"] == "month"
    assert info["current_period_end"] is not None


def test_youth_and_donation_accounts_use_mahad_gateway(app, fake_stripe, stripe_sub):
    fake_stripe.add("MAHAD", stripe_sub("sub_youth"))
    with app.app_context():
        for account_type in (AccountType.YOUTH_EVENTS, AccountType.GENERAL_DONATION):
            info = subscriptions.validate_stripe_subscription("sub_youth", account_type)
            assert info["status"] == "active"


def test_cancel_in_stripe_requires_account_type_before_any_write(app, fake_stripe, stripe_sub, seed):
    fake_stripe.add("MAHAD", stripe_sub("sub_a"))
    with app.app_context():
        _local(seed)
        with pytest.raises(ConflictError):
            subscriptions.cancel_subscription("sub_a", cancel_in_stripe=True)

    with app.app_context():
        assert Subscription.query.filter_by(stripe_subscription_id="sub_a").one().status == "active"
    assert fake_stripe.canceled == []


def test_cancel_locally_and_in_stripe(app, fake_stripe, stripe_sub, seed):
    fake_stripe.add("MAHAD", stripe_sub("sub_a"))
    with app.app_context():
        _local(seed)
        assert subscriptions.is_subscription_active("sub_a") is True

        result = subscriptions.cancel_subscription("sub_a", cancel_in_stripe=True, account_type=AccountType.MAHAD)
        assert result == {"canceled": True, "canceled_in_stripe": True}
        assert subscriptions.is_subscription_active("sub_a") is False
    assert fake_stripe.canceled == ["sub_a"]


def test_update_status_validates(app, seed):
    with app.app_context():
        _local(seed)
        with pytest.raises(ValidationError):
            subscriptions.update_subscription_status("sub_a", "bogus")
        with pytest.raises(NotFoundError):
            subscriptions.update_subscription_status("sub_nope", "active")
        sub = subscriptions.update_subscription_status("sub_a", "unpaid")
        assert sub.status == "unpaid"


def test_create_subscription_from_stripe_mirrors_fields(app, seed, stripe_sub):
    with app.app_context():
        person = seed.person(email="p@example.com")
        account = seed.account(person)
        sub = subscriptions.create_subscription_from_stripe(
            stripe_sub("sub_new", customer="cus_new", amount=4500, status="trialing"),
            account.id,
            AccountType.MAHAD,
        )
        db.session.refresh(sub)
        assert sub.stripe_customer_id == "cus_new"
        assert sub.amount == 4500
        assert sub.status == "trialing"
        assert sub.stripe_account_type == "MAHAD"
        assert subscriptions.get_subscription_details("sub_new").id == sub.id


def test_sync_carries_status_onto_assigned_profiles(app, fake_stripe, stripe_sub, seed):
    fake_stripe.add("MAHAD", stripe_sub("sub_a", status="canceled"))
    with app.app_context():
        sub = _local(seed)
        student = seed.profile(seed.person(name="Student"), status="ENROLLED", subscription_status="active")
        seed.assignment(sub, student)
        former = seed.profile(seed.person(name="Former"), status="ENROLLED", subscription_status="active")
        seed.assignment(sub, former, is_active=False)
        student_id, former_id = student.id, former.id

        assert subscriptions.sync_subscription_from_stripe("sub_a", AccountType.MAHAD)["updated"] is True

    with app.app_context():
        student = db.session.get(ProgramProfile, student_id)
        assert (student.subscription_status, student.status) == ("canceled", "WITHDRAWN")
        assert student.subscription_status_updated_at is not None
        assert student.paid_until is not None

        # a historical assignment no longer ties the profile to this subscription
        former = db.session.get(ProgramProfile, former_id)
        assert (former.subscription_status, former.status) == ("active", "ENROLLED")


def test_sync_updates_family_profiles_pointing_at_the_subscription(app, fake_stripe, stripe_sub, seed):
    fake_stripe.add("DUGSI", stripe_sub("sub_fam", status="past_due"))
    with app.app_context():
        guardian = seed.person(email="mom@example.com")
        seed.subscription(seed.account(guardian, account_type="DUGSI"), stripe_id="sub_fam", account_type="DUGSI")
        kids = [
            seed.profile(seed.person(name=f"Kid {i}"), program="DUGSI_PROGRAM", guardian_email="mom@example.com",
                         stripe_subscription_id="sub_fam", subscription_status="active", status="ENROLLED")
            for i in range(2)
        ]
        outsider = seed.profile(seed.person(name="Outsider"), program="MAHAD_PROGRAM",
                                stripe_subscription_id="sub_fam", subscription_status="active")
        kid_ids, outsider_id = [k.id for k in kids], outsider.id

        subscriptions.sync_subscription_from_stripe("sub_fam", AccountType.DUGSI)

    with app.app_context():
        for kid_id in kid_ids:
            kid = db.session.get(ProgramProfile, kid_id)
            assert (kid.subscription_status, kid.status) == ("past_due", "ENROLLED")
        assert db.session.get(ProgramProfile, outsider_id).subscription_status == "active"
