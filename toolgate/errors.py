"""Error taxonomy shared by the governance pipeline and the orchestrator."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification carried by `FunctionFailed` events."""

    POLICY_REJECTED = "PolicyRejected"
    RATE_LIMITED = "RateLimited"
    CIRCUIT_OPEN = "CircuitOpen"
    TRANSIENT_PLUGIN_FAILURE = "TransientPluginFailure"
    PERMANENT_PLUGIN_FAILURE = "PermanentPluginFailure"
    MALFORMED_ARGUMENTS = "MalformedArguments"
    CHAIN_LIMIT_EXCEEDED = "ChainLimitExceeded"


class ToolgateError(Exception):
    """Base class for toolgate errors."""


class ConfigError(ToolgateError):
    """Raised when runtime configuration is inconsistent."""


class PluginError(ToolgateError):
    """Raised by plugin handlers; `transient` marks retryable failures."""

    def __init__(self, plugin: str, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.plugin = plugin
        self.transient = transient


class PluginNotFoundError(PluginError):
    """Raised when a call names a plugin the registry does not know."""

    def __init__(self, plugin: str) -> None:
        super().__init__(plugin, f"Unknown plugin '{plugin}'")


class PluginArgumentError(PluginError):
    """Raised when call arguments do not match the plugin parameter schema.

    Messages are authored by toolgate and are safe to show to the model.
    """


class CircuitOpenError(ToolgateError):
    """Raised when a plugin's circuit rejects a call without invoking it."""

    def __init__(self, plugin: str, retry_after: float) -> None:
        super().__init__(f"Circuit for plugin '{plugin}' is open, retry after {retry_after:.1f}s")
        self.plugin = plugin
        self.retry_after = retry_after
