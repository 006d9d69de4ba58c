import pytest

from appstle_mcp.errors import NormalizationError
from appstle_mcp.mapping import (
    ArrayPage,
    EnvelopePage,
    build_pageable_query,
    classify_past_orders,
    normalize_billing_attempt,
    normalize_mutation,
    normalize_past_orders,
    normalize_subscriptions,
    normalize_upcoming_orders,
    parse_gid_tail,
    validate_numeric_customer_id,
)


def attempt(id_, **extra):
    record = {"id": id_, "billingDate": "2025-02-01T10:00:00Z", "status": "QUEUED"}
    record.update(extra)
    return record


def test_parse_gid_tail():
    assert parse_gid_tail("gid://shopify/SubscriptionContract/123456789") == 123456789
    with pytest.raises(ValueError, match="Invalid Shopify GID format"):
        parse_gid_tail("gid://shopify/Contract/")


def test_build_pageable_query():
    assert build_pageable_query(1, 20, ["id,desc", "createdAt,asc"]) == {
        "pageable.page": "1",
        "pageable.size": "20",
        "pageable.sort": "id,desc,createdAt,asc",
    }


def test_validate_numeric_customer_id():
    assert validate_numeric_customer_id(123456) == 123456
    assert validate_numeric_customer_id("789012") == 789012
    with pytest.raises(ValueError, match="not a Shopify GID"):
        validate_numeric_customer_id("gid://shopify/Customer/123")
    for bad in (0, -1, "abc"):
        with pytest.raises(ValueError, match="positive integer"):
            validate_numeric_customer_id(bad)


def test_canonical_id_wins_over_null_reference():
    order = normalize_billing_attempt(attempt(7700, billingAttemptId=None))
    assert order is not None
    assert order.order_id == 7700
    assert order.billing_attempt_ref is None
    assert "billing_attempt_ref" not in order.to_dict()


def test_reference_and_shopify_ids_never_replace_canonical_id():
    order = normalize_billing_attempt(
        attempt(7700, billingAttemptId="ba-42", orderId=5550001, orderName="#1001")
    )
    assert order.to_dict() == {
        "order_id": 7700,
        "billing_date": "2025-02-01T10:00:00Z",
        "status": "QUEUED",
        "billing_attempt_ref": "ba-42",
        "shopify_order_id": 5550001,
        "order_name": "#1001",
    }


def test_record_without_canonical_id_is_dropped():
    assert normalize_billing_attempt({"billingAttemptId": "ba-1", "status": "QUEUED"}) is None
    orders = normalize_upcoming_orders([attempt(None), attempt(1), "junk"])
    assert [o.order_id for o in orders] == [1]


def test_variant_items_titles_and_quantities():
    order = normalize_billing_attempt(
        attempt(
            5,
            variantList=[
                {"variantTitle": "5kg Bag", "productTitle": "Dog Food", "quantity": 2},
                {"title": "Treats"},
                {"productTitle": "Chews", "quantity": 0},
                {},
            ],
        )
    )
    assert [(i.title, i.quantity) for i in order.items] == [
        ("5kg Bag", 2),
        ("Treats", 1),
        ("Chews", 1),
        ("Item", 1),
    ]


def test_past_orders_bare_array():
    page = normalize_past_orders([attempt(1), attempt(2), attempt(3)])
    assert page.page == 0
    assert page.size == 3
    assert page.has_more is False
    assert [o.order_id for o in page.past] == [1, 2, 3]


def test_past_orders_envelope_has_more():
    raw = {"content": [attempt(i) for i in range(1, 11)], "totalElements": 25, "size": 10, "number": 0}
    page = normalize_past_orders(raw)
    assert (page.page, page.size, page.has_more) == (0, 10, True)

    last = {"content": [attempt(21)], "totalElements": 25, "size": 10, "number": 2}
    page = normalize_past_orders(last)
    assert (page.page, page.size, page.has_more) == (2, 10, False)


def test_past_orders_envelope_without_totals_reports_no_more():
    page = normalize_past_orders({"content": [attempt(1)]}, requested_page=4)
    assert (page.page, page.size, page.has_more) == (4, 1, False)


def test_classify_past_orders_shapes():
    assert isinstance(classify_past_orders([]), ArrayPage)
    assert isinstance(classify_past_orders({"content": []}), EnvelopePage)
    with pytest.raises(NormalizationError):
        classify_past_orders({"items": []})


def test_upcoming_orders_rejects_unknown_shape():
    with pytest.raises(NormalizationError):
        normalize_upcoming_orders({"unexpected": True})


def test_mutation_uses_canonical_id_and_message():
    result = normalize_mutation(attempt(99, billingAttemptId=None, variantList=[{"title": "x"}]), skipped=True)
    assert result["order_id"] == 99
    assert "items" not in result
    assert result["message"].startswith("Order skipped")

    empty = normalize_mutation({}, skipped=False)
    assert "order_id" not in empty
    assert empty["message"].startswith("Order unskipped")


def test_subscriptions_summary():
    raw = {
        "subscriptionContracts": {
            "edges": [
                {
                    "node": {
                        "id": "gid://shopify/SubscriptionContract/123456789",
                        "status": "ACTIVE",
                        "nextBillingDate": "2025-01-15T10:00:00Z",
                        "createdAt": "2024-12-01T10:00:00Z",
                        "deliveryPolicy": {"interval": "WEEK", "intervalCount": 2},
                        "lines": {
                            "edges": [
                                {"node": {"productTitle": "Dog Food", "variantTitle": "5kg Bag", "quantity": 2}},
                                {"node": {"productTitle": "Treats", "quantity": 1}},
                                {"node": {"productTitle": "Chews", "quantity": 1}},
                                {"node": {"productTitle": "Toy", "quantity": 1}},
                            ]
                        },
                    }
                },
                {"node": {"id": "not-a-gid", "status": "ACTIVE"}},
            ],
            "pageInfo": {"hasNextPage": True, "endCursor": "cursor123"},
        }
    }

    page = normalize_subscriptions(raw)

    assert page.to_dict() == {
        "subscriptions": [
            {
                "subscription_contract_id": 123456789,
                "subscription_contract_gid": "gid://shopify/SubscriptionContract/123456789",
                "status": "ACTIVE",
                "plan_name": "2 WEEKs",
                "next_billing_date": "2025-01-15T10:00:00Z",
                "items_summary": "2x 5kg Bag, Treats, Chews +1 more",
                "created_at": "2024-12-01T10:00:00Z",
            }
        ],
        "page_info": {"has_next_page": True, "end_cursor": "cursor123"},
    }


def test_subscriptions_tolerate_missing_optional_fields():
    page = normalize_subscriptions({})
    assert page.to_dict() == {"subscriptions": [], "page_info": {"has_next_page": False}}
