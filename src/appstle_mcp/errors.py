"""Failure taxonomy for upstream calls and tool invocations."""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    bad_request = "BadRequest"
    unauthorized = "Unauthorized"
    forbidden = "Forbidden"
    not_found = "NotFound"
    conflict = "Conflict"
    rate_limited = "RateLimited"
    internal_server_error = "InternalServerError"
    service_unavailable = "ServiceUnavailable"
    client_error = "ClientError"
    server_error = "ServerError"
    parse_error = "ParseError"
    network_error = "NetworkError"

    @property
    def title(self) -> str:
        return _TITLES[self]

    @property
    def default_detail(self) -> str:
        return _DEFAULT_DETAILS[self]

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_TITLES: dict[FailureKind, str] = {
    FailureKind.bad_request: "Bad Request",
    FailureKind.unauthorized: "Unauthorized",
    FailureKind.forbidden: "Forbidden",
    FailureKind.not_found: "Not Found",
    FailureKind.conflict: "Conflict",
    FailureKind.rate_limited: "Rate Limited",
    FailureKind.internal_server_error: "Internal Server Error",
    FailureKind.service_unavailable: "Service Unavailable",
    FailureKind.client_error: "Client Error",
    FailureKind.server_error: "Server Error",
    FailureKind.parse_error: "Parse Error",
    FailureKind.network_error: "Network Error",
}

_DEFAULT_DETAILS: dict[FailureKind, str] = {
    FailureKind.bad_request: "Invalid request parameters",
    FailureKind.unauthorized: "Invalid API key or authentication failed",
    FailureKind.forbidden: "Access denied to the requested resource",
    FailureKind.not_found: "The requested resource was not found",
    FailureKind.conflict: "Request conflicts with current state of the resource",
    FailureKind.rate_limited: "Too many requests, please retry later",
    FailureKind.internal_server_error: "Appstle server encountered an error",
    FailureKind.service_unavailable: "Appstle service is temporarily unavailable",
    FailureKind.client_error: "The request was rejected by Appstle",
    FailureKind.server_error: "Appstle returned an unexpected server error",
    FailureKind.parse_error: "Failed to parse API response as JSON",
    FailureKind.network_error: "Network request failed",
}

# Network failures share the transient schedule with 429 and 5xx.
_RETRYABLE = frozenset(
    {
        FailureKind.rate_limited,
        FailureKind.internal_server_error,
        FailureKind.service_unavailable,
        FailureKind.server_error,
        FailureKind.network_error,
    }
)


def classify_status(status_code: int) -> FailureKind:
    """Map a non-2xx HTTP status to its failure kind."""
    match status_code:
        case 400:
            return FailureKind.bad_request
        case 401:
            return FailureKind.unauthorized
        case 403:
            return FailureKind.forbidden
        case 404:
            return FailureKind.not_found
        case 409:
            return FailureKind.conflict
        case 429:
            return FailureKind.rate_limited
        case 500:
            return FailureKind.internal_server_error
        case 502 | 503 | 504:
            return FailureKind.service_unavailable
    if 400 <= status_code < 500:
        return FailureKind.client_error
    if status_code >= 500:
        return FailureKind.server_error
    raise ValueError(f"Status {status_code} is not an error status")


class UpstreamError(Exception):
    """Classified failure of a call to the Appstle API."""

    def __init__(
        self,
        kind: FailureKind,
        status_code: int,
        detail: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self.kind = kind
        self.status_code = status_code
        self.title = kind.title
        self.detail = detail or kind.default_detail
        self.correlation_id = correlation_id
        super().__init__(f"{self.title}: {self.detail}")

    @classmethod
    def from_status(
        cls, status_code: int, detail: str | None = None, correlation_id: str | None = None
    ) -> UpstreamError:
        return cls(classify_status(status_code), status_code, detail, correlation_id)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "statusCode": self.status_code,
            "title": self.title,
            "detail": self.detail,
            "correlationId": self.correlation_id,
        }


class ToolInputError(Exception):
    """Tool arguments failed the input contract; the handler never ran."""

    def __init__(self, tool: str, errors: list[dict[str, str]]) -> None:
        self.tool = tool
        self.errors = errors
        summary = "; ".join(f"{e['path']}: {e['message']}" for e in errors)
        super().__init__(f"Invalid arguments for {tool}: {summary}")


class OutputContractError(Exception):
    """A handler produced a result that violates its own output contract."""

    def __init__(self, tool: str, errors: list[dict[str, str]]) -> None:
        self.tool = tool
        self.errors = errors
        super().__init__(f"Result of {tool} failed output validation")


class NormalizationError(Exception):
    """Upstream payload has a shape the normalizer cannot interpret."""


__all__ = [
    "FailureKind",
    "classify_status",
    "UpstreamError",
    "ToolInputError",
    "OutputContractError",
    "NormalizationError",
]
