from tuition_billing.models import Subscription


def test_cli_sync_reports_missing_subscription(app, fake_stripe):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["billing", "sync", "sub_nope", "--account-type", "MAHAD"])
    assert result.exit_code != 0
    assert "Subscription not found in database" in result.output


def test_cli_sync_updates_status(app, fake_stripe, stripe_sub, seed):
    fake_stripe.add("MAHAD", stripe_sub("sub_cli", status="past_due"))
    with app.app_context():
        seed.subscription(seed.account(seed.person(email="cli@example.com")), stripe_id="sub_cli")

    result = app.test_cli_runner().invoke(args=["billing", "sync", "sub_cli", "--account-type", "mahad"])
    assert result.exit_code == 0
    assert "Updated sub_cli: status=past_due" in result.output


def test_cli_reconcile_dry_run(app, fake_stripe, stripe_sub, tmp_path):
    fake_stripe.add("MAHAD", stripe_sub("sub_lonely", customer="cus_l"))
    result = app.test_cli_runner().invoke(args=["billing", "reconcile", "--dry-run", "--csv", str(tmp_path)])
    assert result.exit_code == 0
    assert "unmatched: no_email" in result.output
    assert "Linked: 0  Unmatched: 1  Errors: 0" in result.output
    assert list(tmp_path.glob("reconciliation-unmatched-*.csv"))


def test_cli_reconcile_nothing_to_do(app, fake_stripe):
    result = app.test_cli_runner().invoke(args=["billing", "reconcile"])
    assert result.exit_code == 0
    assert "No orphaned subscriptions to process." in result.output


def test_cli_cancel(app, fake_stripe, stripe_sub, seed):
    fake_stripe.add("MAHAD", stripe_sub("sub_c"))
    with app.app_context():
        seed.subscription(seed.account(seed.person(email="c@example.com")), stripe_id="sub_c")

    runner = app.test_cli_runner()
    refused = runner.invoke(args=["billing", "cancel", "sub_c", "--in-stripe"])
    assert refused.exit_code != 0
    assert "Account type required" in refused.output

    result = runner.invoke(args=["billing", "cancel", "sub_c", "--in-stripe", "--account-type", "MAHAD"])
    assert result.exit_code == 0
    assert "Canceled sub_c locally and in Stripe" in result.output
    assert fake_stripe.canceled == ["sub_c"]
    with app.app_context():
        assert Subscription.query.filter_by(stripe_subscription_id="sub_c").one().status == "canceled"
