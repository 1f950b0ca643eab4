"""Session events and their WebSocket publisher."""

from perla.events.publisher import EventPublisher
from perla.events.types import EventType, SaleEvent, SessionEvent

__all__ = ["EventPublisher", "EventType", "SaleEvent", "SessionEvent"]
