from tuition_billing.extensions import db
from tuition_billing.models import Enrollment
from tuition_billing.services import enrollment as cascade
from tuition_billing.services import persistence


def _subscription(seed):
    payer = seed.person(name="Payer", email="payer@example.com")
    account = seed.account(payer)
    return seed.subscription(account, stripe_id="sub_cascade")


def test_withdraws_enrollments_of_active_assignments(app, seed):
    with app.app_context():
        sub = _subscription(seed)

        billed = seed.profile(seed.person(name="Billed"))
        billed_enrollment = seed.enrollment(billed, status="ENROLLED")
        seed.assignment(sub, billed)

        historical = seed.profile(seed.person(name="Historical"))
        historical_enrollment = seed.enrollment(historical, status="ENROLLED")
        seed.assignment(sub, historical, is_active=False)

        no_enrollment = seed.profile(seed.person(name="Waiting"))
        seed.assignment(sub, no_enrollment)

        result = cascade.handle_subscription_cancellation_enrollments(sub.id)
        assert result == {"withdrawn": 1, "errors": []}

        billed_id, historical_id = billed_enrollment.id, historical_enrollment.id

    with app.app_context():
        withdrawn = db.session.get(Enrollment, billed_id)
        assert withdrawn.status == "WITHDRAWN"
        assert withdrawn.reason == "Subscription canceled"
        assert withdrawn.end_date is not None
        assert db.session.get(Enrollment, historical_id).status == "ENROLLED"


def test_custom_reason_and_already_withdrawn_are_skipped(app, seed):
    with app.app_context():
        sub = _subscription(seed)
        gone = seed.profile(seed.person(name="Gone"))
        seed.enrollment(gone, status="WITHDRAWN")
        seed.assignment(sub, gone)

        active = seed.profile(seed.person(name="Active"))
        e = seed.enrollment(active, status="REGISTERED")
        seed.assignment(sub, active)

        result = cascade.handle_subscription_cancellation_enrollments(sub.id, reason="Payment failed")
        assert result["withdrawn"] == 1
        db.session.refresh(e)
        assert e.reason == "Payment failed"


def test_one_failure_does_not_stop_the_rest(app, seed, monkeypatch):
    with app.app_context():
        sub = _subscription(seed)
        first = seed.profile(seed.person(name="First"))
        first_enrollment = seed.enrollment(first)
        seed.assignment(sub, first)

        second = seed.profile(seed.person(name="Second"))
        second_enrollment = seed.enrollment(second)
        seed.assignment(sub, second)

        failing_id = first_enrollment.id
        first_id, second_enrollment_id = first.id, second_enrollment.id
        original = persistence.update_enrollment_status

        def _flaky(enrollment_id, *args, **kwargs):
            if enrollment_id == failing_id:
                raise RuntimeError("storage unavailable")
            return original(enrollment_id, *args, **kwargs)

        monkeypatch.setattr(persistence, "update_enrollment_status", _flaky)

        result = cascade.handle_subscription_cancellation_enrollments(sub.id)
        assert result["withdrawn"] == 1
        assert result["errors"] == [{"profile_id": first_id, "error": "storage unavailable"}]

    with app.app_context():
        assert db.session.get(Enrollment, failing_id).status == "ENROLLED"
        assert db.session.get(Enrollment, second_enrollment_id).status == "WITHDRAWN"


def test_subscription_without_assignments(app, seed):
    with app.app_context():
        sub = _subscription(seed)
        assert cascade.handle_subscription_cancellation_enrollments(sub.id) == {"withdrawn": 0, "errors": []}
