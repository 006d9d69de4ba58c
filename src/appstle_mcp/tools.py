"""Tool descriptors, the fixed registry, and the validated invocation pipeline."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from .appstle_client import new_correlation_id
from .errors import OutputContractError, ToolInputError, UpstreamError
from .schemas import schema_for

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[Any, "InvocationContext"], Awaitable[Mapping[str, Any]]]


@dataclass(frozen=True, slots=True)
class InvocationContext:
    """Per-call state; never shared between invocations."""

    tool: str
    correlation_id: str = field(default_factory=new_correlation_id)
    started_at: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> int:
        return round((time.monotonic() - self.started_at) * 1000)


def _errors(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {
            "path": ".".join(str(part) for part in err["loc"]) or "<root>",
            "constraint": err["type"],
            "message": err["msg"],
        }
        for err in exc.errors()
    ]


@dataclass(frozen=True, slots=True)
class Tool:
    name: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    handler: ToolHandler

    @property
    def input_schema(self) -> dict[str, Any]:
        return schema_for(self.input_model)

    @property
    def output_schema(self) -> dict[str, Any]:
        return schema_for(self.output_model)

    def validate_input(self, arguments: Any) -> BaseModel:
        try:
            return self.input_model.model_validate(arguments)
        except ValidationError as exc:
            raise ToolInputError(self.name, _errors(exc)) from None

    async def invoke(self, arguments: BaseModel, context: InvocationContext) -> Mapping[str, Any]:
        return await self.handler(arguments, context)

    def validate_output(self, result: Any) -> dict[str, Any]:
        try:
            model = self.output_model.model_validate(result)
        except ValidationError as exc:
            raise OutputContractError(self.name, _errors(exc)) from None
        return model.model_dump(mode="json", exclude_none=True)

    def describe(self, *, include_output: bool = False) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
        if include_output:
            entry["outputSchema"] = self.output_schema
        return entry


class ToolRegistry(Mapping[str, Tool]):
    """Read-only name -> tool mapping, fixed at construction."""

    def __init__(self, tools: list[Tool]) -> None:
        by_name: dict[str, Tool] = {}
        for tool in tools:
            if tool.name in by_name:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            by_name[tool.name] = tool
        self._tools = MappingProxyType(by_name)

    def __getitem__(self, name: str) -> Tool:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def describe(self, *, include_output: bool = False) -> list[dict[str, Any]]:
        return [tool.describe(include_output=include_output) for tool in self._tools.values()]


class ToolPipeline:
    """Validate input, run the handler, validate output."""

    def __init__(self, registry: ToolRegistry, log: Any = None) -> None:
        self.registry = registry
        self._log = log or logger

    async def invoke(
        self, tool_name: str, raw_arguments: Any, correlation_id: str | None = None
    ) -> dict[str, Any]:
        tool = self.registry[tool_name]
        context = InvocationContext(
            tool=tool_name, correlation_id=correlation_id or new_correlation_id()
        )
        log = self._log.bind(tool=tool_name, correlation_id=context.correlation_id)
        log.info("tool_call_start")
        try:
            arguments = tool.validate_input(raw_arguments)
            result = await tool.invoke(arguments, context)
            validated = tool.validate_output(result)
        except ToolInputError as exc:
            log.warning("tool_call_invalid_input", errors=exc.errors)
            raise
        except OutputContractError as exc:
            log.error(
                "tool_call_internal_error",
                reason="output contract violated",
                errors=exc.errors,
                duration_ms=context.elapsed_ms(),
            )
            raise
        except UpstreamError as exc:
            log.error(
                "tool_call_upstream_error",
                status=exc.status_code,
                title=exc.title,
                duration_ms=context.elapsed_ms(),
            )
            raise
        except Exception as exc:
            log.error(
                "tool_call_internal_error",
                error=str(exc),
                error_type=type(exc).__name__,
                duration_ms=context.elapsed_ms(),
            )
            raise
        log.info("tool_call_complete", duration_ms=context.elapsed_ms())
        return validated


__all__ = ["InvocationContext", "Tool", "ToolRegistry", "ToolPipeline", "ToolHandler"]
