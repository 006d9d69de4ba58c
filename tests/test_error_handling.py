import httpx
import pytest
import respx
from httpx import Response

from appstle_mcp.appstle_client import AppstleClient
from appstle_mcp.errors import FailureKind, UpstreamError, classify_status
from appstle_mcp.retry import RetryPolicy

BASE = "https://test.appstle.com"
TOP_ORDERS = "/api/external/v2/subscription-billing-attempts/top-orders"
CUSTOMER = "/api/external/v2/subscription-customers/123456"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
async def client(sleep):
    client = AppstleClient(
        "test-api-key", BASE, policy=RetryPolicy(jitter=lambda: 0.0), sleep=sleep
    )
    yield client
    await client.aclose()


@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (400, FailureKind.bad_request),
        (401, FailureKind.unauthorized),
        (403, FailureKind.forbidden),
        (404, FailureKind.not_found),
        (409, FailureKind.conflict),
        (422, FailureKind.client_error),
        (429, FailureKind.rate_limited),
        (500, FailureKind.internal_server_error),
        (501, FailureKind.server_error),
        (502, FailureKind.service_unavailable),
        (503, FailureKind.service_unavailable),
        (504, FailureKind.service_unavailable),
    ],
)
def test_classify_status(status, kind):
    assert classify_status(status) is kind


def test_upstream_error_defaults_detail_per_class():
    error = UpstreamError.from_status(503, None, "req_1")
    assert error.to_dict() == {
        "statusCode": 503,
        "title": "Service Unavailable",
        "detail": "Appstle service is temporarily unavailable",
        "correlationId": "req_1",
    }
    assert error.retryable is True
    assert UpstreamError.from_status(404).retryable is False


@pytest.mark.anyio
@respx.mock
async def test_successful_get_sends_headers(client):
    route = respx.route(method="GET", host="test.appstle.com", path=CUSTOMER).mock(
        return_value=Response(200, json={"subscriptionContracts": {"edges": []}})
    )

    result = await client.get_subscription_customer(123456, correlation_id="req_abc")

    assert result == {"subscriptionContracts": {"edges": []}}
    request = route.calls.last.request
    assert request.headers["X-API-Key"] == "test-api-key"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["User-Agent"] == "appstle-mcp/0.1.0"
    assert request.headers["X-Request-ID"] == "req_abc"
    assert "api_key" not in request.url.params


@pytest.mark.anyio
@respx.mock
async def test_put_with_query_params(client):
    route = respx.route(
        method="PUT",
        host="test.appstle.com",
        path="/api/external/v2/subscription-billing-attempts/skip-order/123",
    ).mock(return_value=Response(200, json={"id": 123, "status": "SKIPPED"}))

    result = await client.skip_billing_attempt(123, 456, True)

    assert result == {"id": 123, "status": "SKIPPED"}
    params = route.calls.last.request.url.params
    assert params["subscriptionContractId"] == "456"
    assert params["isPrepaid"] == "true"


@pytest.mark.anyio
@respx.mock
async def test_past_orders_pageable_query(client):
    route = respx.route(
        method="GET",
        host="test.appstle.com",
        path="/api/external/v2/subscription-billing-attempts/past-orders",
    ).mock(return_value=Response(200, json=[]))

    await client.get_past_orders(77, page=2, size=20, sort=["id,desc", "billingDate,asc"])

    params = route.calls.last.request.url.params
    assert params["contractId"] == "77"
    assert params["pageable.page"] == "2"
    assert params["pageable.size"] == "20"
    assert params["pageable.sort"] == "id,desc,billingDate,asc"


@pytest.mark.anyio
@respx.mock
async def test_not_found_uses_upstream_detail(client, sleep):
    route = respx.route(method="GET", host="test.appstle.com", path=CUSTOMER).mock(
        return_value=Response(404, text="Customer not found")
    )

    with pytest.raises(UpstreamError) as excinfo:
        await client.get_subscription_customer(123456)

    assert excinfo.value.kind is FailureKind.not_found
    assert excinfo.value.title == "Not Found"
    assert excinfo.value.detail == "Customer not found"
    assert route.call_count == 1
    assert sleep.delays == []


@pytest.mark.anyio
@respx.mock
async def test_json_error_body_message_is_detail(client):
    respx.route(method="GET", host="test.appstle.com", path=CUSTOMER).mock(
        return_value=Response(401, json={"message": "Bad credentials"})
    )

    with pytest.raises(UpstreamError, match="Unauthorized: Bad credentials"):
        await client.get_subscription_customer(123456)


@pytest.mark.anyio
@pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
@respx.mock
async def test_non_retryable_status_makes_one_attempt(client, sleep, status):
    route = respx.route(method="GET", host="test.appstle.com", path=TOP_ORDERS).mock(
        return_value=Response(status)
    )

    with pytest.raises(UpstreamError) as excinfo:
        await client.get_top_orders(123)

    assert excinfo.value.status_code == status
    assert route.call_count == 1
    assert sleep.delays == []


@pytest.mark.anyio
@pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
@respx.mock
async def test_retryable_status_gives_up_after_three_attempts(client, sleep, status):
    route = respx.route(method="GET", host="test.appstle.com", path=TOP_ORDERS).mock(
        return_value=Response(status)
    )

    with pytest.raises(UpstreamError) as excinfo:
        await client.get_top_orders(123)

    assert excinfo.value.status_code == status
    assert route.call_count == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.anyio
@respx.mock
async def test_rate_limit_then_success(client, sleep):
    route = respx.route(method="GET", host="test.appstle.com", path=TOP_ORDERS).mock(
        side_effect=[Response(429, text="Rate limited"), Response(200, json=[{"id": 1}])]
    )

    result = await client.get_top_orders(123)

    assert result == [{"id": 1}]
    assert route.call_count == 2
    assert sleep.delays == [1.0]


@pytest.mark.anyio
@respx.mock
async def test_connection_failure_is_retried_then_classified(client, sleep):
    route = respx.route(method="GET", host="test.appstle.com", path=TOP_ORDERS).mock(
        side_effect=httpx.ConnectError("Connection error")
    )

    with pytest.raises(UpstreamError) as excinfo:
        await client.get_top_orders(123)

    assert excinfo.value.kind is FailureKind.network_error
    assert excinfo.value.title == "Network Error"
    assert route.call_count == 3
    assert len(sleep.delays) == 2


@pytest.mark.anyio
@respx.mock
async def test_malformed_success_body_is_not_retried(client, sleep):
    route = respx.route(method="GET", host="test.appstle.com", path=TOP_ORDERS).mock(
        return_value=Response(200, text="<html>oops</html>")
    )

    with pytest.raises(UpstreamError) as excinfo:
        await client.get_top_orders(123)

    assert excinfo.value.kind is FailureKind.parse_error
    assert route.call_count == 1
    assert sleep.delays == []


@pytest.mark.anyio
@respx.mock
async def test_empty_success_body_is_empty_object(client):
    respx.route(
        method="PUT",
        host="test.appstle.com",
        path="/api/external/v2/subscription-billing-attempts/unskip-order/9",
    ).mock(return_value=Response(200))

    assert await client.unskip_billing_attempt(9) == {}


@pytest.mark.anyio
async def test_query_string_credential_is_rejected(client):
    with pytest.raises(ValueError, match="header"):
        await client.request("GET", TOP_ORDERS, query={"api_key": "secret"})
