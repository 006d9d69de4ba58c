"""Configuration loading for the MCP server."""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

DEFAULT_BASE_URL = "https://subscription-admin.appstle.com"
DEFAULT_USER_AGENT = "appstle-mcp/0.1.0"


@dataclass(slots=True)
class UpstreamConfig:
    """Appstle API connection settings."""

    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    timeout_seconds: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT


@dataclass(slots=True)
class RetryConfig:
    """Retry budget for transient upstream failures."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000


@dataclass(slots=True)
class ServerConfig:
    """Top level configuration for the MCP server."""

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    mcp_api_key: str | None = None
    log_level: str = "INFO"
    config_path: Path | None = None


def load_from_env(env: Mapping[str, str]) -> ServerConfig:
    upstream = UpstreamConfig(
        base_url=env.get("APPSTLE_API_BASE") or DEFAULT_BASE_URL,
        api_key=env.get("APPSTLE_API_KEY") or None,
        timeout_seconds=(
            float(env["APPSTLE_TIMEOUT"]) if env.get("APPSTLE_TIMEOUT") else 30.0
        ),
    )
    config_path = Path(env["APPSTLE_CONFIG"]) if env.get("APPSTLE_CONFIG") else None
    config = ServerConfig(
        upstream=upstream,
        mcp_api_key=env.get("MCP_API_KEY") or None,
        log_level=env.get("LOG_LEVEL", "INFO"),
        config_path=config_path,
    )
    if config_path is not None:
        config = merge_overrides(config, load_overrides(config_path))
    return config


def load_overrides(path: Path) -> Mapping[str, Any]:
    data = yaml.safe_load(path.read_text()) if path.exists() else {}
    if data is None:
        return {}
    if not isinstance(data, MutableMapping):
        raise ValueError("Config file must contain a mapping")
    return data


def merge_overrides(base: ServerConfig, overrides: Mapping[str, Any]) -> ServerConfig:
    upstream_data = overrides.get("upstream") or {}
    retry_data = overrides.get("retry") or {}
    upstream = replace(
        base.upstream,
        base_url=str(upstream_data.get("base_url", base.upstream.base_url)),
        timeout_seconds=float(
            upstream_data.get("timeout_seconds", base.upstream.timeout_seconds)
        ),
        user_agent=str(upstream_data.get("user_agent", base.upstream.user_agent)),
    )
    retry = RetryConfig(
        max_attempts=int(retry_data.get("max_attempts", base.retry.max_attempts)),
        base_delay_ms=int(retry_data.get("base_delay_ms", base.retry.base_delay_ms)),
        max_delay_ms=int(retry_data.get("max_delay_ms", base.retry.max_delay_ms)),
    )
    if retry.max_attempts < 1:
        raise ValueError("retry.max_attempts must be at least 1")
    log_level = str(overrides.get("log_level", base.log_level))
    return replace(base, upstream=upstream, retry=retry, log_level=log_level)


def require_api_key(config: ServerConfig) -> str:
    if not config.upstream.api_key:
        raise ValueError("APPSTLE_API_KEY environment variable is required")
    return config.upstream.api_key


__all__ = [
    "UpstreamConfig",
    "RetryConfig",
    "ServerConfig",
    "load_from_env",
    "load_overrides",
    "merge_overrides",
    "require_api_key",
]
