"""Read-only billing projections used for display and feature gating."""
from collections import defaultdict
from typing import Dict, Iterable, List

from sqlalchemy import select

from tuition_billing.billing.statuses import ACTIVE_STATUSES, AccountType, EnrollmentStatus
from tuition_billing.errors import NotFoundError
from tuition_billing.extensions import db
from tuition_billing.models import ProgramProfile, Subscription
from tuition_billing.services import persistence

# Siblings needed for the family discount
DISCOUNT_MIN_MEMBERS = 2


def get_billing_status_by_email(email: str, account_type: AccountType) -> Dict:
    person = persistence.find_person_by_email(persistence.normalize_email(email))
    if person is None:
        raise NotFoundError("Person not found with this email address")

    status = {
        "has_payment_method": False,
        "has_active_subscription": False,
        "stripe_customer_id": None,
        "subscription_status": None,
        "paid_until": None,
        "current_period_start": None,
        "current_period_end": None,
    }

    account = persistence.get_billing_account_by_person(person.id, account_type)
    if account is None:
        return status

    status["has_payment_method"] = bool(account.payment_method_captured)
    status["stripe_customer_id"] = account.customer_id_for(account_type)

    subs = db.session.scalars(
        select(Subscription)
        .where(Subscription.billing_account_id == account.id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
    ).all()
    active = next((s for s in subs if s.status in ACTIVE_STATUSES), None)
    latest = active or (subs[0] if subs else None)
    if latest is not None:
        status.update(
            has_active_subscription=active is not None,
            subscription_status=latest.status,
            paid_until=latest.paid_until,
            current_period_start=latest.current_period_start,
            current_period_end=latest.current_period_end,
        )
    return status


def get_billing_status_for_profiles(profile_ids: Iterable[int]) -> Dict[int, Dict]:
    """{profile_id: {has_subscription, amount}} from active assignments only."""
    result: Dict[int, Dict] = {}
    for profile_id in profile_ids:
        active = next(
            (a for a in persistence.get_billing_assignments_by_profile(profile_id) if a.is_active),
            None,
        )
        result[profile_id] = {
            "has_subscription": active is not None,
            "amount": active.amount if active else None,
        }
    return result


def is_discount_eligible(members: List[Dict]) -> bool:
    """A family qualifies once enough members are both enrolled and billed."""
    qualifying = [m for m in members if m.get("enrolled") and m.get("has_subscription")]
    return len(qualifying) >= DISCOUNT_MIN_MEMBERS


def get_discount_eligible_families(program: str | None = None) -> Dict[str, List[int]]:
    """Family reference id -> member profile ids, for families that qualify for the discount."""
    stmt = select(ProgramProfile).where(ProgramProfile.family_reference_id.is_not(None))
    if program:
        stmt = stmt.where(ProgramProfile.program == program)

    families: Dict[str, List[ProgramProfile]] = defaultdict(list)
    for profile in db.session.scalars(stmt.order_by(ProgramProfile.id)).unique():
        families[profile.family_reference_id].append(profile)

    eligible: Dict[str, List[int]] = {}
    for family_id, profiles in families.items():
        billing = get_billing_status_for_profiles([p.id for p in profiles])
        members = []
        for profile in profiles:
            enrollment = persistence.get_active_enrollment(profile.id)
            members.append({
                "profile_id": profile.id,
                "enrolled": bool(enrollment and enrollment.status == EnrollmentStatus.ENROLLED.value),
                "has_subscription": billing[profile.id]["has_subscription"],
            })
        if is_discount_eligible(members):
            eligible[family_id] = [p.id for p in profiles]
    return eligible
