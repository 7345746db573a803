"""Event bus package."""

from .bus import DeliveryReport, EventBus, read_persisted_state  # noqa: F401
from .web import EventBusWebApp, EventBusWebConfig  # noqa: F401

__all__ = ["DeliveryReport", "EventBus", "EventBusWebApp", "EventBusWebConfig", "read_persisted_state"]
