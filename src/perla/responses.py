"""Assistant response variants.

Every gateway call resolves to exactly one of these dataclasses. The session
dispatches on ``kind``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from perla.models import EntityCandidate


class ResponseKind(str, Enum):
    """Discriminator for AssistantResponse variants."""

    CREATE = "create"
    CREATE_MANY = "create_many"
    UPDATE = "update"
    DELETE_ONE = "delete_one"
    DELETE_MANY = "delete_many"
    CLARIFICATION = "clarification"
    ENTITY_MATCH = "entity_match"
    CONVERSATIONAL = "conversational"
    SUGGESTION = "suggestion"
    FAILURE = "failure"


class FailureReason(str, Enum):
    TRANSPORT_ERROR = "transport_error"
    MALFORMED_RESPONSE = "malformed_response"


class ClarificationCategory(str, Enum):
    PRODUCT_DETAILS = "product_details"
    QUANTITY = "quantity"
    PRICE = "price"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "ClarificationCategory":
        try:
            return cls(str(value))
        except ValueError:
            return cls.OTHER


@dataclass
class AssistantResponse:
    """Base for all variants. ``message`` is the assistant's reply text."""

    message: str = ""

    kind = ResponseKind.CONVERSATIONAL


@dataclass
class Create(AssistantResponse):
    """A single new sale. ``record`` is the raw, not yet validated payload."""

    record: dict[str, Any] = field(default_factory=dict)

    kind = ResponseKind.CREATE


@dataclass
class CreateMany(AssistantResponse):
    records: list[Any] = field(default_factory=list)

    kind = ResponseKind.CREATE_MANY


@dataclass
class Update(AssistantResponse):
    records: list[Any] = field(default_factory=list)

    kind = ResponseKind.UPDATE


@dataclass
class DeleteOne(AssistantResponse):
    id: str = ""

    kind = ResponseKind.DELETE_ONE


@dataclass
class DeleteMany(AssistantResponse):
    ids: list[str] = field(default_factory=list)

    kind = ResponseKind.DELETE_MANY


@dataclass
class ClarificationRequest(AssistantResponse):
    question: str = ""
    category: ClarificationCategory = ClarificationCategory.OTHER

    kind = ResponseKind.CLARIFICATION


@dataclass
class EntityMatchConfirmation(AssistantResponse):
    candidates: list[EntityCandidate] = field(default_factory=list)

    kind = ResponseKind.ENTITY_MATCH


@dataclass
class Conversational(AssistantResponse):
    kind = ResponseKind.CONVERSATIONAL

    @property
    def text(self) -> str:
        return self.message


@dataclass
class Suggestion(AssistantResponse):
    """The user sent product feedback rather than a sale."""

    text: str = ""

    kind = ResponseKind.SUGGESTION


@dataclass
class Failure(AssistantResponse):
    reason: FailureReason = FailureReason.TRANSPORT_ERROR
    detail: str = ""

    kind = ResponseKind.FAILURE
