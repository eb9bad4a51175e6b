"""
Orphan reconciliation: gateway subscriptions nobody in the local store points at.

``get_orphaned_subscriptions`` lists them per program, ``get_potential_matches``
proposes local profiles by exact email, and ``link_subscription_to_student``
is the operator's confirmation step. ``reconcile_orphaned_subscriptions``
runs the whole loop unattended and links only unambiguous matches.
"""
import csv
import json
import os
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from flask import current_app

from tuition_billing.billing.statuses import (
    BILLING_STATUSES,
    AccountType,
    Program,
    account_for_program,
    is_family_program,
    parse_account_type,
    program_for_account,
)
from tuition_billing.errors import NotFoundError, ValidationError, error_message
from tuition_billing.services import persistence
from tuition_billing.services.billing import link_subscription_to_profiles
from tuition_billing.services.extractors import (
    extract_customer_details,
    extract_customer_id,
    extract_period_dates,
    extract_price,
    to_datetime,
)
from tuition_billing.services.gateway import get_gateway
from tuition_billing.services.subscriptions import create_subscription_from_stripe, validate_subscription_id

RECONCILED_ACCOUNTS = (AccountType.MAHAD, AccountType.DUGSI)

# Operator search result cap
SEARCH_LIMIT = 20

UNMATCHED_CSV_HEADERS = [
    "stripe_subscription_id",
    "stripe_customer_id",
    "customer_email",
    "customer_name",
    "amount",
    "program",
    "status",
    "reason",
]


def _reconciled_account(program) -> AccountType:
    account_type = parse_account_type(program)
    if account_type not in RECONCILED_ACCOUNTS:
        raise ValidationError("Invalid program specified")
    return account_type


# ----- Orphans -----

def _billing_subscriptions(account_type: AccountType) -> List[Dict[str, Any]]:
    page_size = current_app.config.get("STRIPE_LIST_PAGE_SIZE", 100)
    gateway = get_gateway(account_type)
    return [s for s in gateway.iter_subscriptions(limit=page_size) if s.get("status") in BILLING_STATUSES]


def _orphan_record(sub: Dict[str, Any], account_type: AccountType, subscription_count: int) -> Dict[str, Any]:
    customer = extract_customer_details(sub)
    period = extract_period_dates(sub)
    return {
        "id": sub.get("id"),
        "status": sub.get("status"),
        "customer_id": customer["id"],
        "customer_email": customer["email"],
        "customer_name": customer["name"],
        "amount": extract_price(sub)["amount"],
        "created": to_datetime(sub.get("created")),
        "current_period_start": period.period_start,
        "current_period_end": period.period_end,
        "program": account_type.value,
        "metadata": dict(sub.get("metadata") or {}),
        "subscription_count": subscription_count,
    }


def get_orphaned_subscriptions_for(account_type: AccountType) -> List[Dict[str, Any]]:
    """Billing-state gateway subscriptions of one account that are linked to nothing locally."""
    program = program_for_account(account_type)
    subs = _billing_subscriptions(account_type)
    ids = [s.get("id") for s in subs]

    linked = persistence.get_linked_subscription_ids(ids, account_type)
    linked |= persistence.get_linked_profile_subscription_ids(ids, program.value)

    # One Mahad customer paying for several students shows up as several subscriptions
    per_customer: Counter = Counter()
    if account_type is AccountType.MAHAD:
        per_customer.update(cid for cid in (extract_customer_id(s) for s in subs) if cid)

    orphans = []
    for sub in subs:
        if sub.get("id") in linked:
            continue
        customer_id = extract_customer_id(sub)
        count = per_customer.get(customer_id, 1) if customer_id else 1
        orphans.append(_orphan_record(sub, account_type, count))
    return orphans


def get_orphaned_subscriptions() -> List[Dict[str, Any]]:
    orphans: List[Dict[str, Any]] = []
    for account_type in RECONCILED_ACCOUNTS:
        orphans.extend(get_orphaned_subscriptions_for(account_type))
    current_app.logger.info(json.dumps({"event": "orphaned_subscriptions_listed", "count": len(orphans)}))
    return orphans


# ----- Matching -----

def _profile_has_subscription(profile) -> bool:
    if profile.stripe_subscription_id:
        return True
    for assignment in persistence.get_billing_assignments_by_profile(profile.id):
        if not assignment.is_active:
            continue
        sub = persistence.get_subscription(assignment.subscription_id)
        if sub is not None and sub.status in BILLING_STATUSES:
            return True
    return False


def _match_record(profile) -> Dict[str, Any]:
    return {
        "id": profile.id,
        "name": profile.person.name if profile.person else None,
        "email": profile.contact_email,
        "phone": profile.person.phone if profile.person else None,
        "status": profile.status,
        "has_subscription": _profile_has_subscription(profile),
        "program": account_for_program(Program(profile.program)).value,
    }


def get_potential_matches(email: str | None, program) -> List[Dict[str, Any]]:
    """Profiles in ``program`` whose email (own or guardian) equals ``email``."""
    if not email:
        return []
    account_type = _reconciled_account(program)
    profiles = persistence.find_profiles_by_email(email, program_for_account(account_type).value)
    return [_match_record(p) for p in profiles]


def search_profiles_for_linking(query: str | None, program=None) -> List[Dict[str, Any]]:
    """
    Operator lookup for when the email match finds nobody or too many.

    Case-insensitive substring match on name, email and phone; a numeric
    query also matches the profile id. At most ``SEARCH_LIMIT`` results,
    ordered by name.
    """
    term = (query or "").strip()
    if not term:
        return []
    program_name = program_for_account(_reconciled_account(program)).value if program else None
    profiles = persistence.search_profiles(term, program_name, limit=SEARCH_LIMIT)
    return [_match_record(p) for p in profiles]


# ----- Linking -----

def _apply_linkage(profile, sub_id: str, customer_id: str, status: str, period, amount: int, now: datetime, session) -> None:
    previous = profile.stripe_subscription_id
    profile.stripe_subscription_id = sub_id
    profile.stripe_customer_id = customer_id
    profile.monthly_rate = amount

    if previous and previous != sub_id:
        # Reassign so the JSON column is flagged dirty
        profile.previous_subscription_ids = [*(profile.previous_subscription_ids or []), previous]

    persistence.update_profile_subscription_state(
        profile,
        status,
        current_period_start=period.period_start,
        current_period_end=period.period_end,
        now=now,
        session=session,
    )


def _mirror_subscription(sub_obj, account, account_type: AccountType, session):
    local = persistence.get_subscription_by_stripe_id(sub_obj["id"], session=session)
    if local is None:
        return create_subscription_from_stripe(sub_obj, account.id, account_type, session=session)

    period = extract_period_dates(sub_obj)
    return persistence.update_subscription_status(
        local,
        sub_obj.get("status") or local.status,
        current_period_start=period.period_start,
        current_period_end=period.period_end,
        paid_until=period.period_end,
        session=session,
    )


def link_subscription_to_student(subscription_id: str, profile_id: int, program) -> Dict[str, Any]:
    """
    Point a profile (or, for family programs, every sibling) at a gateway subscription.

    Returns {"success": True} or {"success": False, "error": str}; nothing raises.
    """
    try:
        account_type = _reconciled_account(program)
        program_name = program_for_account(account_type).value

        profile = persistence.get_program_profile(profile_id)
        if profile is None or profile.program != program_name:
            raise NotFoundError(f"Profile not found or not in {account_type.value} program")

        sub_id = validate_subscription_id(subscription_id)
        sub_obj = get_gateway(account_type).retrieve_subscription(sub_id)
        if not sub_obj:
            raise NotFoundError("Subscription not found in Stripe")
        customer_id = extract_customer_id(sub_obj)
        if not customer_id:
            raise ValidationError("Invalid customer ID in subscription")

        status = sub_obj.get("status") or "incomplete"
        period = extract_period_dates(sub_obj)
        amount = extract_price(sub_obj)["amount"]
        now = datetime.now(timezone.utc)

        if is_family_program(profile.program):
            if not profile.guardian_email:
                raise ValidationError("Parent email is required to link a family subscription")
            with persistence.unit_of_work() as s:
                guardian = persistence.find_person_by_email(profile.guardian_email, session=s)
                account = persistence.upsert_billing_account(
                    person_id=guardian.id if guardian else None,
                    account_type=account_type,
                    stripe_customer_id=customer_id,
                    session=s,
                )
                _mirror_subscription(sub_obj, account, account_type, s)
                family = persistence.get_family_profiles(profile.guardian_email, program_name, session=s)
                for member in family:
                    _apply_linkage(member, sub_id, customer_id, status, period, amount, now, s)
                s.flush()
            linked = len(family)
        else:
            with persistence.unit_of_work() as s:
                account = persistence.upsert_billing_account(
                    person_id=profile.person_id,
                    account_type=account_type,
                    stripe_customer_id=customer_id,
                    session=s,
                )
                local = _mirror_subscription(sub_obj, account, account_type, s)
                _apply_linkage(profile, sub_id, customer_id, status, period, amount, now, s)
                # A relinked profile stops being billed through its old subscription
                for assignment in persistence.get_billing_assignments_by_profile(profile.id, session=s):
                    if assignment.is_active and assignment.subscription_id != local.id:
                        persistence.update_billing_assignment_status(assignment, False, now, session=s)
                s.flush()
                link_subscription_to_profiles(
                    local.id, [profile.id], amount, notes="Linked via admin reconciliation", session=s
                )
            linked = 1
    except Exception as exc:
        current_app.logger.warning(
            "reconciliation.link_failed",
            extra={"subscription_id": subscription_id, "profile_id": profile_id, "error": error_message(exc)},
        )
        return {"success": False, "error": error_message(exc)}

    current_app.logger.info(json.dumps({
        "event": "subscription_linked_to_student",
        "subscription_id": sub_id,
        "profile_id": profile_id,
        "program": account_type.value,
        "profiles_updated": linked,
    }))
    return {"success": True}


# ----- Unattended run -----

def _reconcile_one(orphan: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
    result: Dict[str, Any] = {"subscription": orphan, "status": "unmatched", "match": None, "reason": None}

    if not orphan.get("customer_email"):
        result["reason"] = "no_email"
        return result

    matches = get_potential_matches(orphan["customer_email"], orphan["program"])
    available = [m for m in matches if not m["has_subscription"]]
    if not available:
        result["reason"] = "all_matches_have_subscriptions" if matches else "no_person_match"
        return result
    if len(available) > 1:
        result["reason"] = f"multiple_matches ({len(available)})"
        return result

    match = available[0]
    result["match"] = match
    if dry_run:
        result.update(status="linked", reason="dry_run")
        return result

    outcome = link_subscription_to_student(orphan["id"], match["id"], orphan["program"])
    if outcome["success"]:
        result["status"] = "linked"
    else:
        result.update(status="error", reason=outcome.get("error"))
    return result


def reconcile_orphaned_subscriptions(dry_run: bool = False, program=None) -> List[Dict[str, Any]]:
    """
    Link every orphan that has exactly one unbilled email match.

    Each orphan is processed on its own; one result per orphan:
    {"subscription", "status": linked|unmatched|error, "match", "reason"}.
    """
    if program:
        orphans = get_orphaned_subscriptions_for(_reconciled_account(program))
    else:
        orphans = get_orphaned_subscriptions()

    results = [_reconcile_one(orphan, dry_run) for orphan in orphans]

    stats = Counter(r["status"] for r in results)
    current_app.logger.info(json.dumps({
        "event": "reconciliation_run",
        "dry_run": dry_run,
        "program": program.value if isinstance(program, AccountType) else program,
        "total": len(results),
        "linked": stats.get("linked", 0),
        "unmatched": stats.get("unmatched", 0),
        "error": stats.get("error", 0),
    }))
    return results


def _format_amount(cents: int | None) -> str:
    return f"${(cents or 0) / 100:,.2f}"


def export_unmatched_csv(results: Iterable[Dict[str, Any]], directory: str = ".") -> str | None:
    """Write unmatched/error rows to a timestamped CSV; returns the path, or None when there are none."""
    rows = [r for r in results if r["status"] in ("unmatched", "error")]
    if not rows:
        return None

    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    path = os.path.join(directory, f"reconciliation-unmatched-{stamp}.csv")
    with open(path, "w", newline="", encoding="utf-8") as fh:
        w = csv.writer(fh, quoting=csv.QUOTE_ALL)
        w.writerow(UNMATCHED_CSV_HEADERS)
        for r in rows:
            sub = r["subscription"]
            w.writerow([
                sub.get("id"),
                sub.get("customer_id") or "",
                sub.get("customer_email") or "",
                sub.get("customer_name") or "",
                _format_amount(sub.get("amount")),
                sub.get("program"),
                r["status"],
                r.get("reason") or "",
            ])
    return path
