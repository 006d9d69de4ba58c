"""Appstle REST API client."""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

import anyio
import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState

from .config import UpstreamConfig
from .errors import FailureKind, UpstreamError
from .mapping import build_pageable_query
from .retry import Attempting, RetryPolicy

logger = structlog.get_logger(__name__)

BILLING_ATTEMPTS = "/api/external/v2/subscription-billing-attempts"
SUBSCRIPTION_CUSTOMERS = "/api/external/v2/subscription-customers"


def new_correlation_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def _error_detail(response: httpx.Response) -> str | None:
    """Extract the upstream error message, if the body carries one."""
    text = response.text.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return text[:500]
    if isinstance(data, dict):
        for key in ("detail", "message", "title", "error"):
            if isinstance(data.get(key), str) and data[key]:
                return data[key]
    return text[:500]


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class AppstleClient:
    """Appstle API client with classified failures and bounded retries."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://subscription-admin.appstle.com",
        *,
        user_agent: str = "appstle-mcp/0.1.0",
        timeout: float = 30.0,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        http_client: httpx.AsyncClient | None = None,
        log: Any = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._log = log or logger
        self._headers = {
            "X-API-Key": api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": user_agent,
        }
        self._client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @classmethod
    def from_config(
        cls, config: UpstreamConfig, policy: RetryPolicy | None = None
    ) -> AppstleClient:
        if not config.api_key:
            raise ValueError("APPSTLE_API_KEY environment variable is required")
        return cls(
            config.api_key,
            config.base_url,
            user_agent=config.user_agent,
            timeout=config.timeout_seconds,
            policy=policy,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AppstleClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        query: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> Any:
        """Send one logical call, retrying transient failures per the policy."""
        if query and any(key.lower() in {"api_key", "apikey"} for key in query):
            raise ValueError("API credentials must be sent as a header, not a query parameter")
        correlation_id = correlation_id or new_correlation_id()
        params = {k: _query_value(v) for k, v in (query or {}).items() if v is not None}
        started = time.monotonic()

        loop = self.policy.loop()
        retrying = AsyncRetrying(
            sleep=self._sleep,
            wait=loop.wait,
            retry=loop.retry,
            before_sleep=self._log_retry(method, path, correlation_id),
            reraise=True,
        )
        result: Any = None
        async for attempt in retrying:
            with attempt:
                result = await self._attempt(
                    method,
                    path,
                    params,
                    body,
                    correlation_id,
                    attempt=attempt.retry_state.attempt_number - 1,
                    started=started,
                )
        return result

    async def _attempt(
        self,
        method: str,
        path: str,
        params: dict[str, str],
        body: Mapping[str, Any] | None,
        correlation_id: str,
        *,
        attempt: int,
        started: float,
    ) -> Any:
        log = self._log.bind(
            correlation_id=correlation_id, method=method, path=path, attempt=attempt + 1
        )
        log.debug("appstle_api_request", query=params)
        headers = {**self._headers, "X-Request-ID": correlation_id}
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                params=params or None,
                json=dict(body) if body is not None and method in {"POST", "PUT", "PATCH"} else None,
                headers=headers,
            )
        except httpx.RequestError as e:
            error = UpstreamError(
                FailureKind.network_error, 500, str(e) or None, correlation_id
            )
            log.error(
                "appstle_api_connection_failed",
                error=str(e),
                duration_ms=_elapsed_ms(started),
                will_retry=self.policy.will_retry(attempt, error),
            )
            raise error from e

        duration_ms = _elapsed_ms(started)
        if response.is_error:
            error = UpstreamError.from_status(
                response.status_code, _error_detail(response), correlation_id
            )
            log.error(
                "appstle_api_error",
                status=response.status_code,
                classification=error.kind.value,
                duration_ms=duration_ms,
                will_retry=self.policy.will_retry(attempt, error),
            )
            raise error

        if not response.content.strip():
            data: Any = {}
        else:
            try:
                data = response.json()
            except ValueError as e:
                log.error(
                    "appstle_api_parse_failed",
                    status=response.status_code,
                    duration_ms=duration_ms,
                    body_preview=response.text[:200],
                    will_retry=False,
                )
                raise UpstreamError(
                    FailureKind.parse_error, 500, None, correlation_id
                ) from e

        outcome = self.policy.advance(Attempting(attempt))
        log.info(
            "appstle_api_success",
            status=response.status_code,
            duration_ms=duration_ms,
            attempts=outcome.attempts,
        )
        return data

    def _log_retry(
        self, method: str, path: str, correlation_id: str
    ) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            self._log.info(
                "appstle_api_retry_scheduled",
                correlation_id=correlation_id,
                method=method,
                path=path,
                attempt=retry_state.attempt_number,
                delay_ms=round(delay * 1000),
            )

        return before_sleep

    async def get_subscription_customer(
        self, customer_id: int, cursor: str | None = None, *, correlation_id: str | None = None
    ) -> Any:
        return await self.request(
            "GET",
            f"{SUBSCRIPTION_CUSTOMERS}/{customer_id}",
            query={"cursor": cursor},
            correlation_id=correlation_id,
        )

    async def get_top_orders(self, contract_id: int, *, correlation_id: str | None = None) -> Any:
        return await self.request(
            "GET",
            f"{BILLING_ATTEMPTS}/top-orders",
            query={"contractId": contract_id},
            correlation_id=correlation_id,
        )

    async def get_past_orders(
        self,
        contract_id: int,
        page: int = 0,
        size: int = 10,
        sort: Sequence[str] = ("id,desc",),
        *,
        correlation_id: str | None = None,
    ) -> Any:
        query = {"contractId": contract_id, **build_pageable_query(page, size, sort)}
        return await self.request(
            "GET", f"{BILLING_ATTEMPTS}/past-orders", query=query, correlation_id=correlation_id
        )

    async def skip_upcoming_order(
        self, contract_id: int, *, correlation_id: str | None = None
    ) -> Any:
        return await self.request(
            "PUT",
            f"{BILLING_ATTEMPTS}/skip-upcoming-order",
            query={"subscriptionContractId": contract_id},
            correlation_id=correlation_id,
        )

    async def skip_billing_attempt(
        self,
        billing_attempt_id: int,
        contract_id: int | None = None,
        is_prepaid: bool | None = None,
        *,
        correlation_id: str | None = None,
    ) -> Any:
        return await self.request(
            "PUT",
            f"{BILLING_ATTEMPTS}/skip-order/{billing_attempt_id}",
            query={"subscriptionContractId": contract_id, "isPrepaid": is_prepaid},
            correlation_id=correlation_id,
        )

    async def unskip_billing_attempt(
        self,
        billing_attempt_id: int,
        contract_id: int | None = None,
        *,
        correlation_id: str | None = None,
    ) -> Any:
        return await self.request(
            "PUT",
            f"{BILLING_ATTEMPTS}/unskip-order/{billing_attempt_id}",
            query={"subscriptionContractId": contract_id},
            correlation_id=correlation_id,
        )


def _elapsed_ms(started: float) -> int:
    return round((time.monotonic() - started) * 1000)


__all__ = ["AppstleClient", "new_correlation_id"]
