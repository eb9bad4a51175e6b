import click
from flask.cli import with_appcontext

from tuition_billing.billing.statuses import parse_account_type
from tuition_billing.errors import BillingError
from tuition_billing.services.reconciliation import export_unmatched_csv, reconcile_orphaned_subscriptions
from tuition_billing.services.subscriptions import cancel_subscription, sync_subscription_from_stripe

ACCOUNT_CHOICES = ["MAHAD", "DUGSI", "YOUTH_EVENTS", "GENERAL_DONATION"]


@click.group()
def billing():
    """Subscription sync and reconciliation."""


@billing.command("sync")
@click.argument("subscription_id")
@click.option("--account-type", type=click.Choice(ACCOUNT_CHOICES, case_sensitive=False), required=True)
@with_appcontext
def billing_sync(subscription_id, account_type):
    try:
        result = sync_subscription_from_stripe(subscription_id, parse_account_type(account_type))
    except BillingError as exc:
        raise click.ClickException(exc.message)

    if result["updated"]:
        click.echo(f"Updated {subscription_id}: status={result['status']}")
    else:
        click.echo(f"No change for {subscription_id}: status={result['status']}")


@billing.command("reconcile")
@click.option("--dry-run", is_flag=True, help="Report matches without linking")
@click.option("--program", type=click.Choice(["MAHAD", "DUGSI"], case_sensitive=False), default=None)
@click.option("--csv", "csv_dir", type=click.Path(file_okay=False, writable=True), default=None,
              help="Directory for the unmatched-subscriptions CSV")
@with_appcontext
def billing_reconcile(dry_run, program, csv_dir):
    try:
        results = reconcile_orphaned_subscriptions(dry_run=dry_run, program=program)
    except BillingError as exc:
        raise click.ClickException(exc.message)

    if not results:
        click.echo("No orphaned subscriptions to process.")
        return

    stats = {"linked": 0, "unmatched": 0, "error": 0}
    for i, r in enumerate(results, start=1):
        sub = r["subscription"]
        stats[r["status"]] += 1
        label = f"[{i}/{len(results)}] {sub.get('customer_email') or 'no-email'} ({sub['program']})"
        if r["status"] == "linked":
            suffix = " (dry run)" if dry_run else ""
            click.echo(f"{label} linked to profile {r['match']['id']}{suffix}")
        else:
            click.echo(f"{label} {r['status']}: {r['reason']}")

    click.echo(f"Linked: {stats['linked']}  Unmatched: {stats['unmatched']}  Errors: {stats['error']}")

    if csv_dir:
        path = export_unmatched_csv(results, directory=csv_dir)
        if path:
            click.echo(f"Unmatched subscriptions written to {path}")


@billing.command("cancel")
@click.argument("subscription_id")
@click.option("--in-stripe", is_flag=True, help="Also cancel the subscription at Stripe")
@click.option("--account-type", type=click.Choice(ACCOUNT_CHOICES, case_sensitive=False), default=None)
@with_appcontext
def billing_cancel(subscription_id, in_stripe, account_type):
    try:
        result = cancel_subscription(
            subscription_id,
            cancel_in_stripe=in_stripe,
            account_type=parse_account_type(account_type) if account_type else None,
        )
    except BillingError as exc:
        raise click.ClickException(exc.message)

    where = "locally and in Stripe" if result["canceled_in_stripe"] else "locally"
    click.echo(f"Canceled {subscription_id} {where}")


def register_cli(app):
    app.cli.add_command(billing)
