"""Per-plugin access policy."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .config import RateLimitRule, SecurityConfig
from .plugin_registry import PluginRegistry, RiskTier

LOG = logging.getLogger(__name__)

ConfirmationPredicate = Callable[[str, dict[str, Any]], Awaitable[bool]]


@dataclass(frozen=True)
class SecurityPolicy:
    """Static access policy, loaded once at startup."""

    allowlist: frozenset[str] = frozenset()
    require_confirmation: frozenset[str] = frozenset()
    disabled: frozenset[str] = frozenset()
    rate_limits: dict[str, RateLimitRule] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: SecurityConfig, registry: PluginRegistry) -> "SecurityPolicy":
        """Resolve the configured policy, filling gaps from plugin risk tiers."""
        descriptors = registry.descriptors()
        if cfg.allowlist is None:
            allowlist = {d.name for d in descriptors if d.risk_tier is not RiskTier.SYSTEM_MODIFYING}
        else:
            allowlist = set(cfg.allowlist)
        if cfg.require_confirmation is None:
            confirmation = {d.name for d in descriptors if d.risk_tier is RiskTier.SYSTEM_MODIFYING}
        else:
            confirmation = set(cfg.require_confirmation)
        for name in sorted((allowlist | confirmation | set(cfg.disabled) | set(cfg.rate_limits)) - set(registry.names())):
            LOG.warning("security policy references unknown plugin name=%s", name)
        return cls(
            allowlist=frozenset(allowlist),
            require_confirmation=frozenset(confirmation),
            disabled=frozenset(cfg.disabled),
            rate_limits=dict(cfg.rate_limits),
        )


class SecurityValidator:
    """Decide whether a plugin may run and whether it needs confirmation."""

    def __init__(self, policy: SecurityPolicy) -> None:
        self.policy = policy

    def can_execute(self, plugin_name: str) -> bool:
        """Disabled beats allowlisted; anything not allowlisted is denied."""
        if plugin_name in self.policy.disabled:
            LOG.warning("security policy rejection plugin=%s reason=disabled", plugin_name)
            return False
        if plugin_name not in self.policy.allowlist:
            LOG.warning("security policy rejection plugin=%s reason=not_allowlisted", plugin_name)
            return False
        return True

    def requires_confirmation(self, plugin_name: str) -> bool:
        return plugin_name in self.policy.require_confirmation

    async def confirm_execution(
        self,
        plugin_name: str,
        arguments: dict[str, Any],
        confirm: ConfirmationPredicate | None,
    ) -> bool:
        """Run the confirmation gate; no predicate means deny."""
        if not self.requires_confirmation(plugin_name):
            return True
        if confirm is None:
            LOG.warning("security policy rejection plugin=%s reason=confirmation_unavailable", plugin_name)
            return False
        approved = bool(await confirm(plugin_name, arguments))
        if not approved:
            LOG.warning("security policy rejection plugin=%s reason=confirmation_denied", plugin_name)
        return approved
