"""
Repository-style query layer for the billing engine.

Every write function takes an optional ``session``. Passing one means the
caller owns the transaction (see ``unit_of_work``) and the function only
flushes; leaving it out commits immediately.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator

from sqlalchemy import or_, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tuition_billing.billing.statuses import AccountType, EnrollmentStatus, customer_id_column, profile_status_for
from tuition_billing.errors import ConflictError, NotFoundError
from tuition_billing.extensions import db
from tuition_billing.models import (
    BillingAccount,
    BillingAssignment,
    CONTACT_EMAIL,
    ContactPoint,
    Enrollment,
    Person,
    ProgramProfile,
    Subscription,
)

# Marks "leave this column alone" for partial updates
_UNSET = object()


def _utcnow():
    return datetime.now(timezone.utc)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _session(session: Session | None) -> Session:
    return session if session is not None else db.session


def _commit(session: Session) -> None:
    try:
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise ConflictError("Record was modified concurrently; reload and try again") from exc


def _finish(session: Session | None) -> None:
    """Flush inside a caller-managed transaction, commit otherwise."""
    if session is not None:
        session.flush()
    else:
        _commit(db.session)


@contextmanager
def unit_of_work() -> Iterator[Session]:
    """One transaction: commit on success, roll everything back on error."""
    session = db.session
    try:
        yield session
        _commit(session)
    except Exception:
        session.rollback()
        raise


# ----- People & profiles -----

def find_person_by_email(email: str, session: Session | None = None) -> Person | None:
    s = _session(session)
    stmt = (
        select(Person)
        .join(ContactPoint, ContactPoint.person_id == Person.id)
        .where(
            ContactPoint.type == CONTACT_EMAIL,
            ContactPoint.is_active.is_(True),
            ContactPoint.value == normalize_email(email),
        )
        .order_by(Person.id)
        .limit(1)
    )
    return s.scalars(stmt).first()


def get_program_profile(profile_id: int, session: Session | None = None) -> ProgramProfile | None:
    return _session(session).get(ProgramProfile, profile_id)


def find_profiles_by_email(email: str, program: str, session: Session | None = None) -> list[ProgramProfile]:
    """Profiles in ``program`` whose own email or guardian email equals ``email`` exactly."""
    s = _session(session)
    value = normalize_email(email)
    own = (
        select(ProgramProfile.id)
        .join(ContactPoint, ContactPoint.person_id == ProgramProfile.person_id)
        .where(ContactPoint.type == CONTACT_EMAIL, ContactPoint.is_active.is_(True), ContactPoint.value == value)
    )
    stmt = (
        select(ProgramProfile)
        .where(ProgramProfile.program == program)
        .where((ProgramProfile.id.in_(own)) | (ProgramProfile.guardian_email == value))
        .order_by(ProgramProfile.id)
    )
    return list(s.scalars(stmt).unique())


def get_family_profiles(guardian_email: str, program: str, session: Session | None = None) -> list[ProgramProfile]:
    s = _session(session)
    stmt = (
        select(ProgramProfile)
        .where(ProgramProfile.program == program, ProgramProfile.guardian_email == normalize_email(guardian_email))
        .order_by(ProgramProfile.id)
    )
    return list(s.scalars(stmt).unique())


def get_missing_profile_ids(profile_ids: Iterable[int], session: Session | None = None) -> list[int]:
    """Requested ids with no ProgramProfile row, in request order."""
    ids = list(profile_ids)
    if not ids:
        return []
    found = set(_session(session).scalars(select(ProgramProfile.id).where(ProgramProfile.id.in_(ids))))
    return [pid for pid in ids if pid not in found]


def search_profiles(term: str, program: str | None = None, limit: int = 20, session: Session | None = None) -> list[ProgramProfile]:
    """Case-insensitive substring search over name, guardian email and active contact points; digits also match the id."""
    needle = term.strip()
    contacts = select(ContactPoint.person_id).where(
        ContactPoint.is_active.is_(True),
        ContactPoint.value.icontains(needle, autoescape=True),
    )
    conditions = [
        Person.name.icontains(needle, autoescape=True),
        ProgramProfile.guardian_email.icontains(needle, autoescape=True),
        ProgramProfile.person_id.in_(contacts),
    ]
    if needle.isdigit():
        conditions.append(ProgramProfile.id == int(needle))

    stmt = select(ProgramProfile).join(Person, Person.id == ProgramProfile.person_id).where(or_(*conditions))
    if program:
        stmt = stmt.where(ProgramProfile.program == program)
    stmt = stmt.order_by(Person.name, ProgramProfile.id).limit(limit)
    return list(_session(session).scalars(stmt).unique())


def get_profiles_billed_by(subscription: Subscription, program: str, session: Session | None = None) -> list[ProgramProfile]:
    """Profiles behind the subscription's active assignments, plus profiles in ``program`` pointing at it directly."""
    assigned = select(BillingAssignment.program_profile_id).where(
        BillingAssignment.subscription_id == subscription.id,
        BillingAssignment.is_active.is_(True),
    )
    direct = (ProgramProfile.program == program) & (
        ProgramProfile.stripe_subscription_id == subscription.stripe_subscription_id
    )
    stmt = select(ProgramProfile).where(ProgramProfile.id.in_(assigned) | direct).order_by(ProgramProfile.id)
    return list(_session(session).scalars(stmt).unique())


def update_profile_subscription_state(
    profile: ProgramProfile,
    status: str,
    *,
    current_period_start: datetime | None,
    current_period_end: datetime | None,
    now: datetime | None = None,
    session: Session | None = None,
) -> ProgramProfile:
    """Copy a subscription's status and period onto a profile; the status timestamp moves only on change."""
    if profile.subscription_status != status:
        profile.subscription_status_updated_at = now or _utcnow()
    profile.subscription_status = status
    profile.status = profile_status_for(status).value
    profile.current_period_start = current_period_start
    profile.current_period_end = current_period_end
    profile.paid_until = current_period_end
    _finish(session)
    return profile


def get_linked_profile_subscription_ids(stripe_ids: Iterable[str], program: str, session: Session | None = None) -> set[str]:
    ids = list(stripe_ids)
    if not ids:
        return set()
    stmt = select(ProgramProfile.stripe_subscription_id).where(
        ProgramProfile.program == program, ProgramProfile.stripe_subscription_id.in_(ids)
    )
    return {row for row in _session(session).scalars(stmt) if row}


# ----- Billing accounts -----

def get_billing_account_by_customer_id(
    stripe_customer_id: str, account_type: AccountType, session: Session | None = None
) -> BillingAccount | None:
    column = getattr(BillingAccount, customer_id_column(account_type))
    stmt = select(BillingAccount).where(column == stripe_customer_id).limit(1)
    return _session(session).scalars(stmt).first()


def get_billing_account_by_person(
    person_id: int, account_type: AccountType, session: Session | None = None
) -> BillingAccount | None:
    stmt = select(BillingAccount).where(
        BillingAccount.person_id == person_id, BillingAccount.account_type == account_type.value
    )
    return _session(session).scalars(stmt).first()


def upsert_billing_account(
    *,
    person_id: int | None,
    account_type: AccountType,
    stripe_customer_id: str | None = None,
    payment_intent_id: str | None = None,
    payment_method_captured: bool | None = None,
    payment_method_captured_at: datetime | None = None,
    session: Session | None = None,
) -> BillingAccount:
    """Create or update the (person, account type) billing account; only given fields change."""
    s = _session(session)
    account = None
    if person_id is not None:
        account = get_billing_account_by_person(person_id, account_type, session=s)
    if account is None and stripe_customer_id:
        account = get_billing_account_by_customer_id(stripe_customer_id, account_type, session=s)
    if account is None:
        account = BillingAccount(person_id=person_id, account_type=account_type.value, payment_method_captured=False)
        s.add(account)

    if stripe_customer_id:
        setattr(account, customer_id_column(account_type), stripe_customer_id)
    if payment_intent_id and account_type is AccountType.DUGSI:
        account.payment_intent_id_dugsi = payment_intent_id
    if payment_method_captured is not None:
        account.payment_method_captured = payment_method_captured
    if payment_method_captured_at is not None:
        account.payment_method_captured_at = payment_method_captured_at

    _finish(session)
    return account


# ----- Subscriptions -----

def get_subscription_by_stripe_id(stripe_subscription_id: str, session: Session | None = None) -> Subscription | None:
    stmt = select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    return _session(session).scalars(stmt).first()


def get_subscription(subscription_id: int, session: Session | None = None) -> Subscription | None:
    return _session(session).get(Subscription, subscription_id)


def get_linked_subscription_ids(stripe_ids: Iterable[str], account_type: AccountType, session: Session | None = None) -> set[str]:
    """Stripe ids mirrored locally with at least one active assignment."""
    ids = list(stripe_ids)
    if not ids:
        return set()
    stmt = (
        select(Subscription.stripe_subscription_id)
        .join(BillingAssignment, BillingAssignment.subscription_id == Subscription.id)
        .where(
            Subscription.stripe_account_type == account_type.value,
            Subscription.stripe_subscription_id.in_(ids),
            BillingAssignment.is_active.is_(True),
        )
        .distinct()
    )
    return set(_session(session).scalars(stmt))


def create_subscription(
    *,
    billing_account_id: int,
    account_type: AccountType,
    stripe_subscription_id: str,
    stripe_customer_id: str,
    amount: int,
    status: str = "incomplete",
    currency: str = "usd",
    interval: str = "month",
    current_period_start: datetime | None = None,
    current_period_end: datetime | None = None,
    paid_until: datetime | None = None,
    last_payment_date: datetime | None = None,
    session: Session | None = None,
) -> Subscription:
    sub = Subscription(
        billing_account_id=billing_account_id,
        stripe_account_type=account_type.value,
        stripe_subscription_id=stripe_subscription_id,
        stripe_customer_id=stripe_customer_id,
        status=status or "incomplete",
        amount=amount,
        currency=currency or "usd",
        interval=interval or "month",
        current_period_start=current_period_start,
        current_period_end=current_period_end,
        paid_until=paid_until,
        last_payment_date=last_payment_date,
    )
    _session(session).add(sub)
    _finish(session)
    return sub


def update_subscription_status(
    subscription: Subscription,
    status: str,
    *,
    current_period_start=_UNSET,
    current_period_end=_UNSET,
    paid_until=_UNSET,
    last_payment_date=_UNSET,
    session: Session | None = None,
) -> Subscription:
    subscription.status = status
    for field, value in (
        ("current_period_start", current_period_start),
        ("current_period_end", current_period_end),
        ("paid_until", paid_until),
        ("last_payment_date", last_payment_date),
    ):
        if value is not _UNSET:
            setattr(subscription, field, value)
    _finish(session)
    return subscription


# ----- Billing assignments -----

def create_billing_assignment(
    *,
    subscription_id: int,
    program_profile_id: int,
    amount: int,
    percentage: float | None = None,
    notes: str | None = None,
    session: Session | None = None,
) -> BillingAssignment:
    assignment = BillingAssignment(
        subscription_id=subscription_id,
        program_profile_id=program_profile_id,
        amount=amount,
        percentage=percentage,
        notes=notes,
        is_active=True,
        start_date=_utcnow(),
    )
    _session(session).add(assignment)
    _finish(session)
    return assignment


def update_billing_assignment_status(
    assignment: BillingAssignment,
    is_active: bool,
    end_date: datetime | None = None,
    session: Session | None = None,
) -> BillingAssignment:
    assignment.is_active = is_active
    assignment.end_date = end_date
    _finish(session)
    return assignment


def get_billing_assignments_by_subscription(subscription_id: int, session: Session | None = None) -> list[BillingAssignment]:
    """All assignments, active and historical, oldest first."""
    stmt = (
        select(BillingAssignment)
        .where(BillingAssignment.subscription_id == subscription_id)
        .order_by(BillingAssignment.id)
    )
    return list(_session(session).scalars(stmt))


def get_billing_assignments_by_profile(profile_id: int, session: Session | None = None) -> list[BillingAssignment]:
    stmt = (
        select(BillingAssignment)
        .where(BillingAssignment.program_profile_id == profile_id)
        .order_by(BillingAssignment.is_active.desc(), BillingAssignment.id.desc())
    )
    return list(_session(session).scalars(stmt))


def get_active_assignment_profile_ids(
    subscription_id: int, profile_ids: Iterable[int], session: Session | None = None
) -> set[int]:
    stmt = select(BillingAssignment.program_profile_id).where(
        BillingAssignment.subscription_id == subscription_id,
        BillingAssignment.program_profile_id.in_(list(profile_ids)),
        BillingAssignment.is_active.is_(True),
    )
    return set(_session(session).scalars(stmt))


# ----- Enrollments -----

def get_active_enrollment(profile_id: int, session: Session | None = None) -> Enrollment | None:
    """Latest enrollment that is neither withdrawn nor ended."""
    stmt = (
        select(Enrollment)
        .where(
            Enrollment.program_profile_id == profile_id,
            Enrollment.status != EnrollmentStatus.WITHDRAWN.value,
            Enrollment.end_date.is_(None),
        )
        .order_by(Enrollment.start_date.desc(), Enrollment.id.desc())
        .limit(1)
    )
    return _session(session).scalars(stmt).first()


def update_enrollment_status(
    enrollment_id: int,
    status: EnrollmentStatus,
    reason: str | None = None,
    end_date=_UNSET,
    session: Session | None = None,
) -> Enrollment:
    s = _session(session)
    enrollment = s.get(Enrollment, enrollment_id)
    if enrollment is None:
        raise NotFoundError(f"Enrollment not found: {enrollment_id}")

    if end_date is _UNSET:
        end_date = _utcnow() if status is EnrollmentStatus.WITHDRAWN else enrollment.end_date

    enrollment.status = status.value
    enrollment.end_date = end_date
    if reason is not None:
        enrollment.reason = reason
    _finish(session)
    return enrollment
