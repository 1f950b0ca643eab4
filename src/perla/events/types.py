"""Event type definitions for WebSocket publishing.

The session publishes these whenever UI-visible state changes: the ledger,
the selection, a pending question, or a new assistant message.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from perla.models import EntityCandidate, SaleRecord


class EventType(str, Enum):
    """Types of events published by a sales session."""

    # Ledger changes
    SALE_CREATED = "sale.created"
    SALE_UPDATED = "sale.updated"
    SALE_DELETED = "sale.deleted"

    # Selection
    SELECTION_CHANGED = "selection.changed"

    # Conversation
    CLARIFICATION_REQUESTED = "clarification.requested"
    MATCH_CONFIRMATION_REQUESTED = "match.confirmation_requested"
    ASSISTANT_MESSAGE = "assistant.message"

    # Errors
    ERROR = "error"


@dataclass
class SessionEvent:
    """Base event structure for all session events."""

    event_type: EventType
    owner_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: UUID = field(default_factory=uuid4)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary for JSON transmission."""
        return {
            "id": str(self.event_id),
            "type": self.event_type.value,
            "owner": self.owner_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


@dataclass
class SaleEvent(SessionEvent):
    """Event carrying the affected sales."""

    sales: list[dict[str, Any]] = field(default_factory=list)
    sale_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["sales"] = self.sales
        base["sale_ids"] = self.sale_ids
        return base


# Factory functions for creating events


def sales_created(owner_id: str, records: list[SaleRecord]) -> SaleEvent:
    return SaleEvent(
        event_type=EventType.SALE_CREATED,
        owner_id=owner_id,
        sales=[r.to_dict() for r in records],
        sale_ids=[r.id for r in records],
    )


def sales_updated(owner_id: str, records: list[SaleRecord]) -> SaleEvent:
    return SaleEvent(
        event_type=EventType.SALE_UPDATED,
        owner_id=owner_id,
        sales=[r.to_dict() for r in records],
        sale_ids=[r.id for r in records],
    )


def sales_deleted(owner_id: str, ids: list[str]) -> SaleEvent:
    return SaleEvent(event_type=EventType.SALE_DELETED, owner_id=owner_id, sale_ids=list(ids))


def selection_changed(owner_id: str, ids: tuple[str, ...]) -> SessionEvent:
    return SessionEvent(
        event_type=EventType.SELECTION_CHANGED,
        owner_id=owner_id,
        data={"selected": list(ids)},
    )


def clarification_requested(owner_id: str, question: str, category: str) -> SessionEvent:
    """Create an event for a question the assistant needs answered."""
    return SessionEvent(
        event_type=EventType.CLARIFICATION_REQUESTED,
        owner_id=owner_id,
        data={"question": question, "category": category},
    )


def match_confirmation_requested(
    owner_id: str, candidates: list[EntityCandidate]
) -> SessionEvent:
    """Create an event listing normalizations waiting for a yes/no."""
    return SessionEvent(
        event_type=EventType.MATCH_CONFIRMATION_REQUESTED,
        owner_id=owner_id,
        data={
            "candidates": [
                {
                    "field": c.field,
                    "value": c.value,
                    "canonical": c.canonical,
                    "similarity": c.similarity,
                    "sale_ids": list(c.record_ids),
                }
                for c in candidates
            ]
        },
    )


def assistant_message(owner_id: str, message: str, kind: str) -> SessionEvent:
    return SessionEvent(
        event_type=EventType.ASSISTANT_MESSAGE,
        owner_id=owner_id,
        data={"message": message[:2000] if message else "", "kind": kind},
    )


def error_event(
    message: str, details: dict[str, Any] | None = None, owner_id: str = ""
) -> SessionEvent:
    """Create an error event."""
    return SessionEvent(
        event_type=EventType.ERROR,
        owner_id=owner_id,
        data={"message": message, "details": details or {}},
    )
