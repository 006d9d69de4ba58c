"""Pydantic models for MCP tool inputs and outputs."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PositiveInt, field_validator

from .mapping import validate_numeric_customer_id


_TIMESTAMP_RE = re.compile(
    r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})?"
)


def _iso_datetime(value: str) -> str:
    try:
        if not _TIMESTAMP_RE.fullmatch(value):
            raise ValueError(value)
        datetime.fromisoformat(value)
    except ValueError:
        raise ValueError(f"'{value}' is not an ISO 8601 datetime") from None
    return value


# Kept as the upstream string so a dump/parse cycle is lossless.
IsoDateTime = Annotated[str, AfterValidator(_iso_datetime)]


class ToolInput(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ToolOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ListSubscriptionsForCustomerInput(ToolInput):
    shopify_customer_id: PositiveInt = Field(
        description="Numeric Shopify Customer ID without gid:// prefix. Example: 987654321"
    )
    cursor: str | None = Field(
        default=None,
        description="Cursor from a previous call (page_info.end_cursor) to fetch the next page.",
    )

    @field_validator("shopify_customer_id", mode="before")
    @classmethod
    def _reject_gid(cls, value: Any) -> Any:
        if isinstance(value, str):
            return validate_numeric_customer_id(value)
        return value


class ContractInput(ToolInput):
    subscription_contract_id: PositiveInt = Field(
        description="subscription_contract_id from list_subscriptions_for_customer"
    )


class ListUpcomingOrdersInput(ContractInput):
    pass


class ListPastOrdersInput(ContractInput):
    page: int = Field(default=0, description="Page number (0-based). Default: 0")
    size: int = Field(
        default=10,
        description="Orders per page (1-100). Out-of-range values are corrected.",
        json_schema_extra={"minimum": 1, "maximum": 100},
    )
    sort: list[str] = Field(
        default_factory=lambda: ["id,desc"],
        description='Sort tokens. Default: ["id,desc"] for newest first',
    )

    @field_validator("page", mode="after")
    @classmethod
    def _clamp_page(cls, value: int) -> int:
        return max(0, value)

    @field_validator("size", mode="after")
    @classmethod
    def _clamp_size(cls, value: int) -> int:
        return max(1, min(100, value or 10))

    @field_validator("sort", mode="after")
    @classmethod
    def _default_sort(cls, value: list[str]) -> list[str]:
        return [token for token in value if token.strip()] or ["id,desc"]


class SkipUpcomingOrderForContractInput(ContractInput):
    pass


class SkipOrderInput(ToolInput):
    order_id: PositiveInt = Field(
        description="order_id of the chosen date from a fresh list_upcoming_orders call"
    )
    subscription_contract_id: PositiveInt | None = Field(
        default=None, description="Contract id from list_subscriptions_for_customer"
    )
    is_prepaid: bool = Field(default=False, description="Set for prepaid contracts")


class UnskipOrderInput(ToolInput):
    order_id: PositiveInt = Field(
        description="order_id of the skipped order from a fresh list_past_orders call"
    )
    subscription_contract_id: PositiveInt | None = Field(
        default=None, description="Contract id from list_subscriptions_for_customer"
    )


class OrderItemOut(ToolOutput):
    title: str
    quantity: PositiveInt


class OrderOut(ToolOutput):
    order_id: PositiveInt
    billing_attempt_ref: str | None = None
    shopify_order_id: int | None = None
    order_name: str | None = None
    billing_date: IsoDateTime
    status: str


class UpcomingOrderOut(OrderOut):
    items: list[OrderItemOut] | None = None


class SubscriptionOut(ToolOutput):
    subscription_contract_id: PositiveInt
    subscription_contract_gid: str
    status: str
    plan_name: str
    next_billing_date: IsoDateTime
    items_summary: str | None = None
    created_at: IsoDateTime | None = None


class PageInfoOut(ToolOutput):
    has_next_page: bool
    end_cursor: str | None = None


class ListSubscriptionsForCustomerOutput(ToolOutput):
    subscriptions: list[SubscriptionOut]
    page_info: PageInfoOut


class ListUpcomingOrdersOutput(ToolOutput):
    upcoming: list[UpcomingOrderOut]


class ListPastOrdersOutput(ToolOutput):
    past: list[UpcomingOrderOut]
    page: int = Field(ge=0)
    size: int = Field(ge=0)
    has_more: bool


class MutationOut(OrderOut):
    message: str


class SkipUpcomingOrderForContractOutput(MutationOut):
    skipped: Literal[True]


class SkipOrderOutput(MutationOut):
    pass


class UnskipOrderOutput(MutationOut):
    pass


def schema_for(model: type[BaseModel]) -> dict:
    """Return JSON schema for a model."""

    return model.model_json_schema()


__all__ = [
    "IsoDateTime",
    "ToolInput",
    "ToolOutput",
    "ListSubscriptionsForCustomerInput",
    "ListUpcomingOrdersInput",
    "ListPastOrdersInput",
    "SkipUpcomingOrderForContractInput",
    "SkipOrderInput",
    "UnskipOrderInput",
    "OrderItemOut",
    "OrderOut",
    "UpcomingOrderOut",
    "SubscriptionOut",
    "PageInfoOut",
    "ListSubscriptionsForCustomerOutput",
    "ListUpcomingOrdersOutput",
    "ListPastOrdersOutput",
    "SkipUpcomingOrderForContractOutput",
    "SkipOrderOutput",
    "UnskipOrderOutput",
    "schema_for",
]
