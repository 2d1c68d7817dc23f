"""Configuration models and loaders for toolgate.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "toolgate/config.yaml"

_RATE_LIMIT_RE = re.compile(r"^\s*(\d+)\s*/\s*([A-Za-z]+)\s*$")
_RATE_LIMIT_UNITS = {
    "s": 1.0,
    "sec": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
}


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class RateLimitRule(BaseModel):
    """Sliding-window budget for one plugin."""

    model_config = ConfigDict(frozen=True)

    limit: int
    window_seconds: float

    @classmethod
    def parse(cls, spec: str) -> "RateLimitRule":
        """Parse an `N/unit` rate limit such as `10/minute`."""
        match = _RATE_LIMIT_RE.match(spec)
        if not match:
            raise ValueError(f"Invalid rate limit '{spec}', expected 'N/unit' e.g. '10/minute'")
        limit = int(match.group(1))
        unit = match.group(2).lower()
        if unit not in _RATE_LIMIT_UNITS:
            raise ValueError(f"Unknown rate limit unit '{unit}' in '{spec}'")
        if limit <= 0:
            raise ValueError(f"Rate limit must be positive in '{spec}'")
        return cls(limit=limit, window_seconds=_RATE_LIMIT_UNITS[unit])


class ProviderModelConfig(BaseModel):
    """One model a provider offers to clients."""

    id: str
    display_name: str | None = None


class ProviderConfig(BaseModel):
    """Connection settings for one OpenAI-compatible completion provider.

    `models` is the catalog listed to clients; when empty, `default_model` is
    listed on its own.
    """

    name: str
    base_url: str
    display_name: str | None = None
    api_key: str | None = None
    default_model: str | None = None
    models: list[ProviderModelConfig] = Field(default_factory=list)
    connect_retries: int = 0
    retry_interval_ms: int = 1000

    def model_catalog(self) -> list[ProviderModelConfig]:
        if self.models:
            return list(self.models)
        if self.default_model:
            return [ProviderModelConfig(id=self.default_model)]
        return []


class PluginParameterConfig(BaseModel):
    """Parameter specification for one plugin input."""

    name: str
    type: Literal["string", "integer", "number", "boolean", "object", "array"] = "string"
    required: bool = True
    description: str | None = None


class PluginConfig(BaseModel):
    """Static plugin catalog entry."""

    name: str
    description: str = ""
    risk_tier: Literal["informational", "data_access", "system_modifying"] = "informational"
    handler: str
    url: str | None = None
    parameters: list[PluginParameterConfig] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        """Plugin names double as model-facing function names."""
        if not re.fullmatch(r"[A-Za-z0-9_-]{1,64}", value):
            raise ValueError(f"Invalid plugin name '{value}'")
        return value

    @model_validator(mode="after")
    def _validate_handler(self) -> "PluginConfig":
        """Require a URL for http handlers."""
        if self.handler == "http" and not self.url:
            raise ValueError(f"Plugin '{self.name}' uses handler 'http' but has no url")
        if self.handler != "http" and not self.handler.startswith("builtin:"):
            raise ValueError(f"Plugin '{self.name}' has unsupported handler '{self.handler}'")
        return self


class SecurityConfig(BaseModel):
    """Plugin access policy."""

    allowlist: list[str] | None = None
    require_confirmation: list[str] | None = None
    disabled: list[str] = Field(default_factory=list)
    rate_limits: dict[str, RateLimitRule] = Field(default_factory=dict)

    @field_validator("rate_limits", mode="before")
    @classmethod
    def _parse_rate_limits(cls, value: Any) -> Any:
        """Accept `N/unit` strings for rate limit values."""
        if value is None:
            return {}
        if not isinstance(value, dict):
            return value
        parsed: dict[str, Any] = {}
        for name, spec in value.items():
            parsed[name] = RateLimitRule.parse(spec) if isinstance(spec, str) else spec
        return parsed

    @field_validator("disabled", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` as an empty list."""
        if value is None:
            return []
        return value


class CircuitBreakerConfig(BaseModel):
    """Per-plugin circuit breaker thresholds."""

    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout_seconds: float = Field(default=30.0, ge=0)


class RetryConfig(BaseModel):
    """Transient-failure retry policy."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)


class OrchestrationConfig(BaseModel):
    """Limits applied to one streaming request."""

    max_call_depth: int = Field(default=10, ge=1)
    event_buffer_size: int = Field(default=64, ge=1)


class GatewayConfig(BaseModel):
    """Top-level toolgate configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8080"
    default_provider: str | None = None
    providers: list[ProviderConfig] = Field(default_factory=list)
    stream_keepalive_seconds: float | None = None
    plugin_call_timeout_seconds: float | None = None

    plugins: list[PluginConfig] | None = None
    security: SecurityConfig | None = None
    circuit_breaker: CircuitBreakerConfig | None = None
    retry: RetryConfig | None = None
    orchestration: OrchestrationConfig | None = None
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _apply_defaults(self) -> "GatewayConfig":
        """Validate bind address and fill section defaults."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
        names = [provider.name for provider in self.providers]
        if len(names) != len(set(names)):
            raise ValueError("provider names must be unique")
        if self.default_provider is None and self.providers:
            self.default_provider = self.providers[0].name
        if self.default_provider is not None and self.default_provider not in names:
            raise ValueError(f"default_provider '{self.default_provider}' is not configured")
        if self.plugins is not None:
            plugin_names = [plugin.name for plugin in self.plugins]
            if len(plugin_names) != len(set(plugin_names)):
                raise ValueError("plugin names must be unique")
        if self.stream_keepalive_seconds is None:
            self.stream_keepalive_seconds = 1.0
        if self.plugin_call_timeout_seconds is None:
            self.plugin_call_timeout_seconds = 30.0
        if self.security is None:
            self.security = SecurityConfig()
        if self.circuit_breaker is None:
            self.circuit_breaker = CircuitBreakerConfig()
        if self.retry is None:
            self.retry = RetryConfig()
        if self.orchestration is None:
            self.orchestration = OrchestrationConfig()
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("providers", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for list fields as an empty list."""
        if value is None:
            return []
        return value

    def provider(self, name: str | None = None) -> ProviderConfig:
        """Return the named provider, or the default one."""
        wanted = name or self.default_provider
        for provider in self.providers:
            if provider.name == wanted:
                return provider
        raise KeyError(f"Unknown provider '{wanted}'")


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    value = os.getenv("TOOLGATE_SERVICE_BASE_URL")
    if value is not None:
        out["service_base_url"] = value
    value = os.getenv("TOOLGATE_DEFAULT_PROVIDER")
    if value is not None:
        out["default_provider"] = value

    provider_env = {
        "base_url": os.getenv("TOOLGATE_PROVIDER_BASE_URL"),
        "api_key": os.getenv("TOOLGATE_PROVIDER_API_KEY"),
        "default_model": os.getenv("TOOLGATE_PROVIDER_MODEL"),
    }
    provider_env = {key: val for key, val in provider_env.items() if val is not None}
    if provider_env:
        providers = [dict(p) for p in (out.get("providers") or [])]
        target_name = out.get("default_provider") or (providers[0]["name"] if providers else "default")
        target = next((p for p in providers if p.get("name") == target_name), None)
        if target is None:
            target = {"name": target_name}
            providers.append(target)
        target.update(provider_env)
        out["providers"] = providers

    value = os.getenv("TOOLGATE_MAX_CALL_DEPTH")
    if value is not None:
        orchestration = dict(out.get("orchestration") or {})
        orchestration["max_call_depth"] = int(value)
        out["orchestration"] = orchestration

    value = os.getenv("TOOLGATE_LOG_LEVEL")
    if value is not None:
        out["logging"]["level"] = value
    value = os.getenv("TOOLGATE_LOG_JSON")
    if value is not None:
        out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}

    return out


def load_config(path: str | None = None) -> GatewayConfig:
    """Load, merge, and validate toolgate configuration."""
    final_path = path or os.getenv("TOOLGATE_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return GatewayConfig.model_validate(raw)
