"""Static plugin descriptor registry.

Descriptors are built once at startup from configuration (or the built-in
catalog) and never mutated. Dispatch is a plain `name -> descriptor` lookup.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from .config import PluginConfig
from .errors import ConfigError, PluginArgumentError

LOG = logging.getLogger(__name__)

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


class RiskTier(str, Enum):
    """Plugin sensitivity classification."""

    INFORMATIONAL = "informational"
    DATA_ACCESS = "data_access"
    SYSTEM_MODIFYING = "system_modifying"


@dataclass(frozen=True)
class ParameterSpec:
    """One named plugin parameter."""

    name: str
    type: str = "string"
    required: bool = True
    description: str | None = None


@dataclass(frozen=True)
class PluginDescriptor:
    """Immutable catalog entry for one callable plugin."""

    name: str
    description: str
    parameters: tuple[ParameterSpec, ...]
    risk_tier: RiskTier
    handler: str
    url: str | None = None

    def input_schema(self) -> dict[str, Any]:
        """JSON schema of the plugin arguments."""
        return {
            "type": "object",
            "properties": {
                param.name: {
                    "type": param.type,
                    "description": param.description or f"Parameter {param.name}",
                }
                for param in self.parameters
            },
            "required": [param.name for param in self.parameters if param.required],
        }

    def tool_definition(self) -> dict[str, Any]:
        """OpenAI-style tool definition offered to the model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema(),
            },
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check call arguments against the parameter schema."""
        known = {param.name for param in self.parameters}
        for param in self.parameters:
            if param.name not in arguments or arguments[param.name] is None:
                if param.required:
                    raise PluginArgumentError(self.name, f"Missing required parameter '{param.name}'")
                continue
            value = arguments[param.name]
            expected = _JSON_TYPES.get(param.type, (object,))
            # bool is an int subclass; keep booleans out of numeric parameters.
            if isinstance(value, bool) and param.type in {"integer", "number"}:
                raise PluginArgumentError(self.name, f"Parameter '{param.name}' must be of type {param.type}")
            if not isinstance(value, expected):
                raise PluginArgumentError(self.name, f"Parameter '{param.name}' must be of type {param.type}")
        unexpected = sorted(set(arguments) - known)
        if unexpected:
            raise PluginArgumentError(self.name, f"Unexpected parameters: {', '.join(unexpected)}")


def descriptor_from_config(cfg: PluginConfig) -> PluginDescriptor:
    """Build one descriptor from its configuration entry."""
    return PluginDescriptor(
        name=cfg.name,
        description=cfg.description,
        parameters=tuple(
            ParameterSpec(name=p.name, type=p.type, required=p.required, description=p.description)
            for p in cfg.parameters
        ),
        risk_tier=RiskTier(cfg.risk_tier),
        handler=cfg.handler,
        url=cfg.url,
    )


class PluginRegistry:
    """Read-only catalog of plugin descriptors keyed by name."""

    def __init__(self, descriptors: Iterable[PluginDescriptor]) -> None:
        self._descriptors: dict[str, PluginDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._descriptors:
                raise ConfigError(f"Duplicate plugin '{descriptor.name}'")
            self._descriptors[descriptor.name] = descriptor
        LOG.info(
            "plugin registry loaded count=%s plugins=%s",
            len(self._descriptors),
            ", ".join(sorted(self._descriptors)) or "(none)",
        )

    @classmethod
    def from_config(cls, plugins: Iterable[PluginConfig]) -> "PluginRegistry":
        return cls(descriptor_from_config(p) for p in plugins)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def get(self, name: str) -> PluginDescriptor | None:
        return self._descriptors.get(name)

    def names(self) -> list[str]:
        return sorted(self._descriptors)

    def descriptors(self) -> list[PluginDescriptor]:
        return [self._descriptors[name] for name in self.names()]

    def tool_definitions(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Tool definitions for the requested plugin names, unknown names skipped."""
        wanted = self.names() if names is None else list(dict.fromkeys(names))
        tools: list[dict[str, Any]] = []
        for name in wanted:
            descriptor = self._descriptors.get(name)
            if descriptor is None:
                LOG.debug("skipping unknown plugin in tool list name=%s", name)
                continue
            tools.append(copy.deepcopy(descriptor.tool_definition()))
        return tools
