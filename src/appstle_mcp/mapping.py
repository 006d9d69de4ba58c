"""Normalize raw Appstle payloads into stable DTOs.

Appstle names a billing attempt's fields inconsistently. The field called
``id`` is the canonical, reusable identifier and is exposed as ``order_id``.
``billingAttemptId`` looks like the right one but is usually null; it is only
surfaced as ``billing_attempt_ref``. ``orderId`` is the Shopify order created
from the attempt, if any.

Every skip/unskip mutates the attempt upstream and the ``order_id`` returned
by an earlier listing goes stale. Nothing here caches identifiers, so callers
must re-list orders before issuing another mutation.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from .errors import NormalizationError

logger = structlog.get_logger(__name__)

_GID_TAIL = re.compile(r"/(\d+)$")


@dataclass(slots=True)
class OrderItem:
    title: str
    quantity: int


@dataclass(slots=True)
class BillingAttempt:
    order_id: int
    billing_date: str | None
    status: str | None
    billing_attempt_ref: str | None = None
    shopify_order_id: int | None = None
    order_name: str | None = None
    items: list[OrderItem] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_absent(asdict(self))


@dataclass(slots=True)
class Subscription:
    subscription_contract_id: int
    subscription_contract_gid: str
    status: str | None
    plan_name: str
    next_billing_date: str | None
    items_summary: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_absent(asdict(self))


@dataclass(slots=True)
class SubscriptionPage:
    subscriptions: list[Subscription] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        page_info: dict[str, Any] = {"has_next_page": self.has_next_page}
        if self.end_cursor:
            page_info["end_cursor"] = self.end_cursor
        return {
            "subscriptions": [s.to_dict() for s in self.subscriptions],
            "page_info": page_info,
        }


@dataclass(slots=True)
class PastOrdersPage:
    past: list[BillingAttempt]
    page: int
    size: int
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "past": [attempt.to_dict() for attempt in self.past],
            "page": self.page,
            "size": self.size,
            "has_more": self.has_more,
        }


@dataclass(slots=True)
class ArrayPage:
    """Past orders returned as a bare JSON array."""

    records: list[Any]


@dataclass(slots=True)
class EnvelopePage:
    """Past orders returned inside a Spring-style page envelope."""

    records: list[Any]
    total_elements: int | None
    size: int | None
    number: int | None


def _drop_absent(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def parse_gid_tail(gid: str) -> int:
    """Extract the numeric id from a Shopify GID."""
    match = _GID_TAIL.search(gid or "")
    if not match:
        raise ValueError(f"Invalid Shopify GID format: {gid}")
    return int(match.group(1))


def build_pageable_query(page: int, size: int, sort: Sequence[str]) -> dict[str, str]:
    return {
        "pageable.page": str(page),
        "pageable.size": str(size),
        "pageable.sort": ",".join(sort),
    }


def validate_numeric_customer_id(value: Any) -> int:
    if isinstance(value, str) and value.startswith("gid://"):
        raise ValueError(
            "Customer ID must be numeric, not a Shopify GID. "
            "Use the numeric tail of the GID instead."
        )
    if isinstance(value, bool):
        raise ValueError("Customer ID must be a number")
    if isinstance(value, str):
        try:
            parsed = int(value, 10)
        except ValueError:
            raise ValueError("Customer ID must be a positive integer") from None
        if parsed <= 0:
            raise ValueError("Customer ID must be a positive integer")
        return parsed
    if isinstance(value, int):
        if value <= 0:
            raise ValueError("Customer ID must be a positive integer")
        return value
    raise ValueError("Customer ID must be a number")


def _items(variants: Any) -> list[OrderItem] | None:
    if not isinstance(variants, list) or not variants:
        return None
    items = []
    for variant in variants:
        if not isinstance(variant, Mapping):
            continue
        title = (
            _text(variant.get("variantTitle"))
            or _text(variant.get("title"))
            or _text(variant.get("productTitle"))
            or "Item"
        )
        items.append(OrderItem(title=title, quantity=_positive_int(variant.get("quantity")) or 1))
    return items or None


def normalize_billing_attempt(raw: Any) -> BillingAttempt | None:
    """Map one raw billing attempt; ``None`` when it has no canonical id."""
    if not isinstance(raw, Mapping):
        return None
    order_id = _positive_int(raw.get("id"))
    if order_id is None:
        logger.warning(
            "billing_attempt_dropped",
            reason="missing canonical id",
            billing_attempt_ref=raw.get("billingAttemptId"),
        )
        return None
    return BillingAttempt(
        order_id=order_id,
        billing_date=_text(raw.get("billingDate")),
        status=_text(raw.get("status")),
        billing_attempt_ref=_text(raw.get("billingAttemptId")),
        shopify_order_id=_positive_int(raw.get("orderId")),
        order_name=_text(raw.get("orderName")),
        items=_items(raw.get("variantList")),
    )


def _attempts(records: Sequence[Any]) -> list[BillingAttempt]:
    return [a for a in (normalize_billing_attempt(r) for r in records) if a is not None]


def normalize_upcoming_orders(raw: Any) -> list[BillingAttempt]:
    if isinstance(raw, Mapping) and isinstance(raw.get("content"), list):
        raw = raw["content"]
    if not isinstance(raw, list):
        raise NormalizationError(f"Expected a list of upcoming orders, got {type(raw).__name__}")
    return _attempts(raw)


def classify_past_orders(raw: Any) -> ArrayPage | EnvelopePage:
    """Resolve which of the two past-orders shapes the upstream sent."""
    if isinstance(raw, list):
        return ArrayPage(records=raw)
    if isinstance(raw, Mapping) and isinstance(raw.get("content"), list):
        return EnvelopePage(
            records=raw["content"],
            total_elements=_non_negative(raw.get("totalElements")),
            size=_non_negative(raw.get("size")),
            number=_non_negative(raw.get("number")),
        )
    raise NormalizationError("Past orders response is neither a list nor a page envelope")


def _non_negative(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value) if value >= 0 else None


def normalize_past_orders(raw: Any, requested_page: int = 0) -> PastOrdersPage:
    match classify_past_orders(raw):
        case ArrayPage(records=records):
            past = _attempts(records)
            # A bare array carries no totals, so never claim more pages.
            return PastOrdersPage(past=past, page=requested_page, size=len(past), has_more=False)
        case EnvelopePage(records=records, total_elements=total, size=size, number=number):
            past = _attempts(records)
            page = number if number is not None else requested_page
            page_size = size if size is not None else len(records)
            has_more = (
                total is not None
                and page_size > 0
                and len(records) == page_size
                and total > (page + 1) * page_size
            )
            return PastOrdersPage(past=past, page=page, size=page_size, has_more=has_more)
    raise NormalizationError("Unreachable past orders shape")  # pragma: no cover


def normalize_mutation(raw: Any, *, skipped: bool) -> dict[str, Any]:
    """Map a skip/unskip response. Missing ids are left for output validation."""
    attempt = normalize_billing_attempt(raw) if isinstance(raw, Mapping) else None
    if attempt is None:
        result: dict[str, Any] = {}
    else:
        result = attempt.to_dict()
        result.pop("items", None)
    result["message"] = (
        "Order skipped. Re-list orders before another change; this order_id is now stale."
        if skipped
        else "Order unskipped. Re-list orders before another change; this order_id is now stale."
    )
    return result


def _plan_name(policy: Any) -> str:
    if not isinstance(policy, Mapping):
        return "Subscription"
    interval = _text(policy.get("interval"))
    count = _positive_int(policy.get("intervalCount"))
    if not interval or not count:
        return "Subscription"
    return f"{count} {interval}{'s' if count > 1 else ''}"


def _items_summary(lines: Any) -> str | None:
    edges = lines.get("edges") if isinstance(lines, Mapping) else None
    if not isinstance(edges, list) or not edges:
        return None
    titles = []
    for edge in edges:
        node = edge.get("node") if isinstance(edge, Mapping) else None
        if not isinstance(node, Mapping):
            continue
        title = _text(node.get("variantTitle")) or _text(node.get("productTitle")) or "Item"
        quantity = _positive_int(node.get("quantity")) or 1
        titles.append(f"{quantity}x {title}" if quantity > 1 else title)
    if not titles:
        return None
    summary = ", ".join(titles[:3])
    if len(titles) > 3:
        summary += f" +{len(titles) - 3} more"
    return summary


def normalize_subscription(node: Any) -> Subscription | None:
    if not isinstance(node, Mapping):
        return None
    gid = _text(node.get("id"))
    try:
        contract_id = parse_gid_tail(gid or "")
    except ValueError:
        logger.warning("subscription_dropped", reason="unresolvable contract id", gid=gid)
        return None
    return Subscription(
        subscription_contract_id=contract_id,
        subscription_contract_gid=gid or "",
        status=_text(node.get("status")),
        plan_name=_plan_name(node.get("deliveryPolicy")),
        next_billing_date=_text(node.get("nextBillingDate")),
        items_summary=_items_summary(node.get("lines")),
        created_at=_text(node.get("createdAt")),
    )


def normalize_subscriptions(raw: Any) -> SubscriptionPage:
    if not isinstance(raw, Mapping):
        raise NormalizationError("Subscription customer response must be an object")
    contracts = raw.get("subscriptionContracts") or {}
    if not isinstance(contracts, Mapping):
        raise NormalizationError("subscriptionContracts must be an object")
    edges = contracts.get("edges") or []
    nodes = [edge.get("node") for edge in edges if isinstance(edge, Mapping)]
    subscriptions = [s for s in (normalize_subscription(n) for n in nodes) if s is not None]
    page_info = contracts.get("pageInfo") or {}
    return SubscriptionPage(
        subscriptions=subscriptions,
        has_next_page=bool(page_info.get("hasNextPage")) if isinstance(page_info, Mapping) else False,
        end_cursor=_text(page_info.get("endCursor")) if isinstance(page_info, Mapping) else None,
    )


__all__ = [
    "OrderItem",
    "BillingAttempt",
    "Subscription",
    "SubscriptionPage",
    "PastOrdersPage",
    "ArrayPage",
    "EnvelopePage",
    "parse_gid_tail",
    "build_pageable_query",
    "validate_numeric_customer_id",
    "normalize_billing_attempt",
    "normalize_upcoming_orders",
    "classify_past_orders",
    "normalize_past_orders",
    "normalize_mutation",
    "normalize_subscription",
    "normalize_subscriptions",
]
