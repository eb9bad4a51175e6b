from enum import Enum
from typing import assert_never

from tuition_billing.errors import ValidationError


class AccountType(str, Enum):
    """Stripe account a subscription lives in."""
    MAHAD = "MAHAD"
    DUGSI = "DUGSI"
    YOUTH_EVENTS = "YOUTH_EVENTS"
    GENERAL_DONATION = "GENERAL_DONATION"


class Program(str, Enum):
    MAHAD_PROGRAM = "MAHAD_PROGRAM"
    DUGSI_PROGRAM = "DUGSI_PROGRAM"
    YOUTH_EVENTS = "YOUTH_EVENTS"
    GENERAL_DONATION = "GENERAL_DONATION"


class EnrollmentStatus(str, Enum):
    REGISTERED = "REGISTERED"
    ENROLLED = "ENROLLED"
    ON_LEAVE = "ON_LEAVE"
    WITHDRAWN = "WITHDRAWN"
    COMPLETED = "COMPLETED"
    SUSPENDED = "SUSPENDED"


# Stripe subscription lifecycle states
SUBSCRIPTION_STATUSES = (
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "unpaid",
    "paused",
)
ACTIVE_STATUSES = {"active", "trialing"}
# Statuses still billing; anything else is terminal or negative for reconciliation
BILLING_STATUSES = {"active", "trialing", "past_due"}


def parse_account_type(value) -> AccountType:
    if isinstance(value, AccountType):
        return value
    try:
        return AccountType(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown account type: {value!r}") from None


def program_for_account(account_type: AccountType) -> Program:
    if account_type is AccountType.MAHAD:
        return Program.MAHAD_PROGRAM
    elif account_type is AccountType.DUGSI:
        return Program.DUGSI_PROGRAM
    elif account_type is AccountType.YOUTH_EVENTS:
        return Program.YOUTH_EVENTS
    elif account_type is AccountType.GENERAL_DONATION:
        return Program.GENERAL_DONATION
    else:
        assert_never(account_type)


def customer_id_column(account_type: AccountType) -> str:
    """BillingAccount column holding the Stripe customer id for this account."""
    if account_type is AccountType.MAHAD:
        return "stripe_customer_id_mahad"
    elif account_type is AccountType.DUGSI:
        return "stripe_customer_id_dugsi"
    elif account_type is AccountType.YOUTH_EVENTS:
        return "stripe_customer_id_youth"
    elif account_type is AccountType.GENERAL_DONATION:
        return "stripe_customer_id_donation"
    else:
        assert_never(account_type)


def is_family_program(program: Program | str) -> bool:
    """Family programs bill one subscription for every sibling (same bill, not split)."""
    return program == Program.DUGSI_PROGRAM


def profile_status_for(subscription_status: str) -> EnrollmentStatus:
    """Local profile status implied by a Stripe subscription status."""
    if subscription_status in ("active", "past_due"):
        # past_due keeps the student enrolled during the grace period
        return EnrollmentStatus.ENROLLED
    if subscription_status in ("canceled", "unpaid"):
        return EnrollmentStatus.WITHDRAWN
    return EnrollmentStatus.REGISTERED


def account_for_program(program: Program) -> AccountType:
    if program is Program.MAHAD_PROGRAM:
        return AccountType.MAHAD
    elif program is Program.DUGSI_PROGRAM:
        return AccountType.DUGSI
    elif program is Program.YOUTH_EVENTS:
        return AccountType.YOUTH_EVENTS
    elif program is Program.GENERAL_DONATION:
        return AccountType.GENERAL_DONATION
    else:
        assert_never(program)
