"""
Pure helpers that read ids and billing periods out of Stripe payloads.

Stripe returns relations either as a bare id or, when expanded, as the full
object. ``relation()`` turns that into ``Reference`` or ``Expanded`` so each
field has exactly one extraction path. Nothing here raises on missing data.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Union


@dataclass(frozen=True)
class Reference:
    id: str


@dataclass(frozen=True)
class Expanded:
    id: str | None
    obj: Dict[str, Any] = field(default_factory=dict)


Relation = Union[Reference, Expanded]


@dataclass(frozen=True)
class PeriodDates:
    period_start: datetime | None
    period_end: datetime | None


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def relation(value: Any) -> Relation | None:
    if not value:
        return None
    if isinstance(value, str):
        return Reference(value)
    if isinstance(value, Mapping) or hasattr(value, "id"):
        rel_id = _get(value, "id")
        obj = dict(value) if isinstance(value, Mapping) else {"id": rel_id}
        return Expanded(rel_id if isinstance(rel_id, str) else None, obj)
    return None


def relation_id(value: Any) -> str | None:
    rel = relation(value)
    if isinstance(rel, Reference):
        return rel.id
    if isinstance(rel, Expanded):
        return rel.id
    return None


def extract_customer_id(subscription: Any) -> str | None:
    if not subscription:
        return None
    return relation_id(_get(subscription, "customer"))


def extract_customer_details(subscription: Any) -> Dict[str, Any]:
    """Email/name of the customer when it was expanded; None values otherwise."""
    rel = relation(_get(subscription, "customer") if subscription else None)
    if isinstance(rel, Expanded):
        return {"id": rel.id, "email": rel.obj.get("email"), "name": rel.obj.get("name")}
    if isinstance(rel, Reference):
        return {"id": rel.id, "email": None, "name": None}
    return {"id": None, "email": None, "name": None}


def to_datetime(value: Any) -> datetime | None:
    """Stripe epoch seconds (or a datetime / ISO string) to an aware UTC datetime."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def first_item(subscription: Any) -> Dict[str, Any]:
    items = _get(subscription, "items") or {}
    data = _get(items, "data") or []
    return data[0] if data else {}


def extract_period_dates(subscription: Any) -> PeriodDates:
    """
    Current billing period of a subscription.

    Newer API versions moved the period onto subscription items, so the first
    item is consulted when the subscription itself has no period fields.
    """
    if not subscription:
        return PeriodDates(None, None)
    item = first_item(subscription)
    start = _get(subscription, "current_period_start") or _get(item, "current_period_start")
    end = _get(subscription, "current_period_end") or _get(item, "current_period_end")
    return PeriodDates(to_datetime(start), to_datetime(end))


def extract_price(subscription: Any) -> Dict[str, Any]:
    """Amount (minor units), currency and interval from the first line item."""
    price = _get(first_item(subscription), "price") or {}
    recurring = _get(price, "recurring") or {}
    return {
        "amount": _get(price, "unit_amount") or 0,
        "currency": _get(subscription, "currency") or _get(price, "currency") or "usd",
        "interval": _get(recurring, "interval") or "month",
    }
