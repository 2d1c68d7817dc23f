"""Built-in sample plugins and their default catalog entries."""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone, tzinfo
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import PluginConfig, PluginParameterConfig
from .context import ExecutionContext

PluginHandler = Callable[[dict[str, Any], ExecutionContext], Awaitable[Any]]

_WEATHER_CONDITIONS = ("sunny", "cloudy", "rainy", "snowy", "windy", "foggy")
_TIMEZONE_ALIASES = {
    "UTC": "UTC",
    "GMT": "Europe/London",
    "EST": "America/New_York",
    "PST": "America/Los_Angeles",
}
COMMON_TIMEZONES = (
    "UTC",
    "GMT",
    "EST",
    "PST",
    "America/New_York",
    "America/Los_Angeles",
    "America/Chicago",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Asia/Tokyo",
    "Asia/Shanghai",
    "Australia/Sydney",
)

_rng = random.Random()


async def current_weather(arguments: dict[str, Any], ctx: ExecutionContext) -> str:
    """Mock current weather for a location."""
    location = str(arguments["location"]).strip()
    await asyncio.sleep(0.05)
    condition = _rng.choice(_WEATHER_CONDITIONS)
    temperature = _rng.randint(-10, 34)
    return f"The current weather in {location} is {condition} with a temperature of {temperature}°C."


async def weather_forecast(arguments: dict[str, Any], ctx: ExecutionContext) -> str:
    """Mock multi-day forecast; `days` is clamped to 1..7."""
    location = str(arguments["location"]).strip()
    days = max(1, min(7, int(arguments.get("days") or 3)))
    await asyncio.sleep(0.05)
    lines = []
    for day in range(1, days + 1):
        low = _rng.randint(-10, 24)
        high = low + _rng.randint(5, 14)
        lines.append(f"Day {day}: {_rng.choice(_WEATHER_CONDITIONS)}, {low}°C to {high}°C")
    return f"Weather forecast for {location}:\n" + "\n".join(lines)


async def current_datetime(arguments: dict[str, Any], ctx: ExecutionContext) -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def resolve_timezone(name: str) -> tzinfo:
    """Resolve an IANA name or common alias; unknown zones fall back to UTC."""
    normalized = name.strip()
    key = _TIMEZONE_ALIASES.get(normalized.upper(), normalized)
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


async def current_time(arguments: dict[str, Any], ctx: ExecutionContext) -> str:
    zone = str(arguments.get("timezone") or "UTC")
    return datetime.now(resolve_timezone(zone)).strftime("%Y-%m-%d %H:%M:%S")


async def available_timezones(arguments: dict[str, Any], ctx: ExecutionContext) -> str:
    return ", ".join(COMMON_TIMEZONES)


BUILTIN_HANDLERS: dict[str, PluginHandler] = {
    "builtin:weather.current": current_weather,
    "builtin:weather.forecast": weather_forecast,
    "builtin:datetime.now": current_datetime,
    "builtin:time.now": current_time,
    "builtin:time.zones": available_timezones,
}


def default_plugin_configs() -> list[PluginConfig]:
    """Catalog registered when configuration lists no plugins."""
    return [
        PluginConfig(
            name="WeatherPlugin",
            description="Gets the current weather for a specified location",
            risk_tier="data_access",
            handler="builtin:weather.current",
            parameters=[
                PluginParameterConfig(
                    name="location",
                    type="string",
                    description="The location to get weather for (e.g. London, UK)",
                )
            ],
        ),
        PluginConfig(
            name="WeatherForecastPlugin",
            description="Gets a weather forecast for a specified location",
            risk_tier="data_access",
            handler="builtin:weather.forecast",
            parameters=[
                PluginParameterConfig(
                    name="location",
                    type="string",
                    description="The location to get the forecast for (e.g. London, UK)",
                ),
                PluginParameterConfig(
                    name="days",
                    type="integer",
                    required=False,
                    description="Number of days to forecast (1-7)",
                ),
            ],
        ),
        PluginConfig(
            name="DateTimePlugin",
            description="Gets the current local date and time",
            handler="builtin:datetime.now",
        ),
        PluginConfig(
            name="TimePlugin",
            description="Gets the current time in a timezone such as 'UTC' or 'Europe/London'",
            handler="builtin:time.now",
            parameters=[
                PluginParameterConfig(
                    name="timezone",
                    type="string",
                    required=False,
                    description="Timezone identifier (e.g. 'America/New_York', 'UTC')",
                )
            ],
        ),
        PluginConfig(
            name="TimezoneListPlugin",
            description="Lists common timezone identifiers accepted by TimePlugin",
            handler="builtin:time.zones",
        ),
    ]
