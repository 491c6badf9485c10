"""Fire-and-forget analytics for review actions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
from typing import Any

from .config import settings

logger = logging.getLogger(__name__)

TelemetryHandler = Callable[[str, dict[str, Any]], Awaitable[None] | None]


class Telemetry:
    """Dispatches ``record`` calls to registered handlers.

    A failing handler is logged and skipped; recording never fails the caller.
    """

    def __init__(self, enabled: bool | None = None) -> None:
        self.enabled = settings.analytics_enabled if enabled is None else enabled
        self._handlers: list[TelemetryHandler] = []

    def on_event(self, handler: TelemetryHandler) -> None:
        self._handlers.append(handler)

    async def record(self, event_name: str, attributes: dict[str, Any] | None = None) -> None:
        if not self.enabled:
            return
        attributes = attributes or {}
        for handler in self._handlers:
            try:
                result = handler(event_name, attributes)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("Telemetry handler error for %s: %s", event_name, exc)


def log_event_handler(event_name: str, attributes: dict[str, Any]) -> None:
    """Default handler: write the fact to the debug log."""
    logger.debug("telemetry %s %s", event_name, attributes)


def default_telemetry() -> Telemetry:
    telemetry = Telemetry()
    telemetry.on_event(log_event_handler)
    return telemetry
