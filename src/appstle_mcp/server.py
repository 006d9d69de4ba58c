"""Appstle subscription tools exposed over MCP."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import structlog

from .appstle_client import AppstleClient
from .config import ServerConfig, load_from_env, require_api_key
from .jsonrpc import Dispatcher
from .mapping import (
    normalize_mutation,
    normalize_past_orders,
    normalize_subscriptions,
    normalize_upcoming_orders,
)
from .retry import RetryPolicy
from .schemas import (
    ListPastOrdersInput,
    ListPastOrdersOutput,
    ListSubscriptionsForCustomerInput,
    ListSubscriptionsForCustomerOutput,
    ListUpcomingOrdersInput,
    ListUpcomingOrdersOutput,
    SkipOrderInput,
    SkipOrderOutput,
    SkipUpcomingOrderForContractInput,
    SkipUpcomingOrderForContractOutput,
    UnskipOrderInput,
    UnskipOrderOutput,
)
from .tools import InvocationContext, Tool, ToolPipeline, ToolRegistry

logger = structlog.get_logger(__name__)

_STALE_ID_NOTE = (
    "Each skip or unskip changes the order upstream and makes previously returned "
    "order_id values stale: list the orders again before making another change."
)


@dataclass(slots=True)
class SubscriptionTools:
    """Tool handlers. "Order" in tool names means an Appstle billing attempt."""

    client: AppstleClient

    async def list_subscriptions_for_customer(
        self, params: ListSubscriptionsForCustomerInput, ctx: InvocationContext
    ) -> dict[str, Any]:
        raw = await self.client.get_subscription_customer(
            params.shopify_customer_id, params.cursor, correlation_id=ctx.correlation_id
        )
        page = normalize_subscriptions(raw)
        logger.info(
            "subscriptions_listed",
            correlation_id=ctx.correlation_id,
            count=len(page.subscriptions),
            has_next_page=page.has_next_page,
        )
        return page.to_dict()

    async def list_upcoming_orders(
        self, params: ListUpcomingOrdersInput, ctx: InvocationContext
    ) -> dict[str, Any]:
        raw = await self.client.get_top_orders(
            params.subscription_contract_id, correlation_id=ctx.correlation_id
        )
        upcoming = normalize_upcoming_orders(raw)
        logger.info("upcoming_orders_listed", correlation_id=ctx.correlation_id, count=len(upcoming))
        return {"upcoming": [order.to_dict() for order in upcoming]}

    async def list_past_orders(
        self, params: ListPastOrdersInput, ctx: InvocationContext
    ) -> dict[str, Any]:
        raw = await self.client.get_past_orders(
            params.subscription_contract_id,
            params.page,
            params.size,
            params.sort,
            correlation_id=ctx.correlation_id,
        )
        page = normalize_past_orders(raw, requested_page=params.page)
        logger.info(
            "past_orders_listed",
            correlation_id=ctx.correlation_id,
            count=len(page.past),
            page=page.page,
            has_more=page.has_more,
        )
        return page.to_dict()

    async def skip_upcoming_order_for_contract(
        self, params: SkipUpcomingOrderForContractInput, ctx: InvocationContext
    ) -> dict[str, Any]:
        raw = await self.client.skip_upcoming_order(
            params.subscription_contract_id, correlation_id=ctx.correlation_id
        )
        return {"skipped": True, **normalize_mutation(raw, skipped=True)}

    async def skip_order(self, params: SkipOrderInput, ctx: InvocationContext) -> dict[str, Any]:
        raw = await self.client.skip_billing_attempt(
            params.order_id,
            params.subscription_contract_id,
            params.is_prepaid,
            correlation_id=ctx.correlation_id,
        )
        return normalize_mutation(raw, skipped=True)

    async def unskip_order(
        self, params: UnskipOrderInput, ctx: InvocationContext
    ) -> dict[str, Any]:
        raw = await self.client.unskip_billing_attempt(
            params.order_id, params.subscription_contract_id, correlation_id=ctx.correlation_id
        )
        return normalize_mutation(raw, skipped=False)

    def tools(self) -> list[Tool]:
        return [
            Tool(
                name="list_subscriptions_for_customer",
                description=(
                    "Step 1 of the skip workflow: list a customer's subscription contracts. "
                    "Requires the numeric Shopify customer ID (not a gid://). If there is more "
                    "than one subscription, ask the customer which one to manage. Returns "
                    "subscription_contract_id for the next step."
                ),
                input_model=ListSubscriptionsForCustomerInput,
                output_model=ListSubscriptionsForCustomerOutput,
                handler=self.list_subscriptions_for_customer,
            ),
            Tool(
                name="list_upcoming_orders",
                description=(
                    "Step 2 of the skip workflow: list upcoming deliveries for a subscription "
                    "contract. Ask the customer which delivery date to skip and keep the "
                    "order_id of that date. " + _STALE_ID_NOTE
                ),
                input_model=ListUpcomingOrdersInput,
                output_model=ListUpcomingOrdersOutput,
                handler=self.list_upcoming_orders,
            ),
            Tool(
                name="list_past_orders",
                description=(
                    "List past deliveries for a subscription contract, including skipped "
                    "ones, with pagination (page is 0-based, size 1-100, newest first by "
                    "default). Use for order history questions."
                ),
                input_model=ListPastOrdersInput,
                output_model=ListPastOrdersOutput,
                handler=self.list_past_orders,
            ),
            Tool(
                name="skip_upcoming_order_for_contract",
                description=(
                    "Skip the next upcoming delivery of a subscription contract. Confirm "
                    "the date with the customer first. " + _STALE_ID_NOTE
                ),
                input_model=SkipUpcomingOrderForContractInput,
                output_model=SkipUpcomingOrderForContractOutput,
                handler=self.skip_upcoming_order_for_contract,
            ),
            Tool(
                name="skip_order",
                description=(
                    "Step 3 of the skip workflow: skip one delivery by its order_id from a "
                    "fresh list_upcoming_orders call. Confirm with the customer before "
                    "calling and include subscription_contract_id. " + _STALE_ID_NOTE
                ),
                input_model=SkipOrderInput,
                output_model=SkipOrderOutput,
                handler=self.skip_order,
            ),
            Tool(
                name="unskip_order",
                description=(
                    "Restore a previously skipped delivery by its order_id from a fresh "
                    "list_past_orders or list_upcoming_orders call. " + _STALE_ID_NOTE
                ),
                input_model=UnskipOrderInput,
                output_model=UnskipOrderOutput,
                handler=self.unskip_order,
            ),
        ]


def build_registry(client: AppstleClient) -> ToolRegistry:
    return ToolRegistry(SubscriptionTools(client=client).tools())


def build_dispatcher(client: AppstleClient) -> Dispatcher:
    return Dispatcher(ToolPipeline(build_registry(client)))


def create_client(config: ServerConfig) -> AppstleClient:
    require_api_key(config)
    return AppstleClient.from_config(config.upstream, RetryPolicy.from_config(config.retry))


async def run_stdio() -> None:
    """Entry point."""
    config = load_from_env(os.environ)
    client = create_client(config)
    try:
        await build_dispatcher(client).serve_stdio()
    finally:
        await client.aclose()


__all__ = [
    "SubscriptionTools",
    "build_registry",
    "build_dispatcher",
    "create_client",
    "run_stdio",
]
