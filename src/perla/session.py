"""Sales session: reconciles assistant responses with the local ledger.

A ``SalesSession`` owns one owner's conversation with the assistant. Each
``submit()`` sends the user's message through the gateway and applies the
resulting ``AssistantResponse`` to the ledger: creating, updating or deleting
sales, entering a clarification loop, or waiting for the user to confirm
normalized product/client names.

States:
    IDLE: Each message starts a fresh conversation.
    AWAITING_CLARIFICATION: The assistant asked a question; the next message is
        appended to the retained conversation.
    AWAITING_MATCH_CONFIRMATION: A yes/no decides pending name normalizations.
"""

import asyncio
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from perla.config import get_settings
from perla.errors import SessionBusyError, ValidationError
from perla.events import EventPublisher
from perla.events import types as events
from perla.gateway import AssistantGateway
from perla.intent import (
    NUMERIC_FIELDS,
    EditIntent,
    IntentClassifier,
    KeywordIntentClassifier,
    fold,
    numbers_in,
)
from perla.ledger import Ledger, LedgerSync
from perla.matching import (
    HIGH_CONFIDENCE_THRESHOLD,
    apply_normalization,
    normalization_candidates,
)
from perla.models import EDITABLE_FIELDS, WIRE_KEYS, ConversationTurn, EntityCandidate, SaleRecord
from perla.responses import (
    AssistantResponse,
    ClarificationRequest,
    Conversational,
    DeleteOne,
    EntityMatchConfirmation,
    Failure,
    FailureReason,
    ResponseKind,
    Suggestion,
    Update,
)
from perla.validation import (
    coerce_amount,
    coerce_number,
    generate_sale_id,
    generate_transaction_id,
    validate_sales,
)

logger = structlog.get_logger(__name__)

CONNECTION_ERROR_MESSAGE = (
    "Parece que hay un problema de conexión. Por favor, verifica tu internet e intenta nuevamente."
)
FORMAT_ERROR_MESSAGE = (
    "Lo siento, hubo un problema al procesar tu mensaje. ¿Puedes intentarlo de nuevo?"
)
SUGGESTION_THANKS = (
    "¡Gracias por tu sugerencia! La hemos registrado y la tomaremos en cuenta para mejorar Perla."
)
NOT_REGISTERED_MESSAGE = (
    "No pude registrar la venta porque faltan datos o hay valores inválidos. "
    "¿Puedes repetirla indicando producto, cantidad y precio?"
)
MATCHES_APPLIED_MESSAGE = "Listo, normalicé los datos."
MATCHES_DISCARDED_MESSAGE = "Perfecto, mantengo los datos originales."
SELECTED_SALE_MESSAGE = "Aquí está la información de la venta seleccionada: "

# Questions that only make sense when no sale is selected
_WHICH_SALE_QUESTION = re.compile(
    r"id de la venta|cu[aá]l es el id|qu[eé] venta|cu[aá]l venta|identificar la venta"
    r"|cu[aá]ntas unidades|cu[aá]ntos|qu[eé] cantidad|cu[aá]l es la cantidad",
    re.IGNORECASE,
)

# Wire keys the assistant sometimes uses instead of the canonical ones
_UPDATE_ALIASES = {"price": ("unitPrice",), "amount": ("quantity",), "product": ("name",)}


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    AWAITING_MATCH_CONFIRMATION = "awaiting_match_confirmation"


@dataclass
class TurnOutcome:
    """What one submission did. ``kind`` is None when no assistant call was made."""

    message: str
    state: SessionState
    kind: ResponseKind | None = None
    created: list[SaleRecord] = field(default_factory=list)
    updated: list[SaleRecord] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.kind is ResponseKind.FAILURE


def format_match_prompt(candidates: Sequence[EntityCandidate]) -> str:
    """Spanish yes/no prompt listing each proposed normalization."""
    lines = [f'{c.label}: "{c.value}" → "{c.canonical}"' for c in candidates]
    return (
        "¿Quieres normalizar los siguientes datos?\n"
        + "\n".join(lines)
        + "\n\nResponde 'sí' para confirmar todos, o 'no' para mantener los originales."
    )


class SalesSession:
    """Conversational state machine for one ledger owner.

    Usage:
        session = SalesSession(gateway, Ledger("local"), sync=LedgerSync(store, "local"))
        await session.load()
        outcome = await session.submit("Vendí 2 cookies a 3000")
        ...
        await session.close()
    """

    def __init__(
        self,
        gateway: AssistantGateway,
        ledger: Ledger,
        *,
        intent_classifier: IntentClassifier | None = None,
        sync: LedgerSync | None = None,
        publisher: EventPublisher | None = None,
        timeout: float | None = None,
    ):
        self._gateway = gateway
        self._ledger = ledger
        self._intent = intent_classifier or KeywordIntentClassifier()
        self._sync = sync
        self._publisher = publisher
        if publisher is not None:
            publisher.attach_ledger(ledger)
        self._timeout = timeout if timeout is not None else get_settings().session_timeout

        self._state = SessionState.IDLE
        self._conversation: list[ConversationTurn] = []
        self._pending_question: str | None = None
        self._pending_candidates: list[EntityCandidate] = []
        self._selection: list[str] = []

        self._busy = False
        self._inflight: asyncio.Task[AssistantResponse] | None = None

        self._logger = logger.bind(component="sales_session", owner_id=ledger.owner_id)

    # === State ===

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def conversation(self) -> list[ConversationTurn]:
        """Turns retained for the current clarification loop."""
        return list(self._conversation)

    @property
    def pending_question(self) -> str | None:
        return self._pending_question

    @property
    def pending_candidates(self) -> list[EntityCandidate]:
        return list(self._pending_candidates)

    @property
    def busy(self) -> bool:
        return self._busy

    # === Selection ===

    @property
    def selection(self) -> tuple[str, ...]:
        return tuple(self._selection)

    def select(self, sale_id: str) -> None:
        """Mark a sale as the target of the next edit.

        Raises:
            KeyError: If the sale is not in the ledger.
        """
        if not self._ledger.contains(sale_id):
            raise KeyError(sale_id)
        if sale_id not in self._selection:
            self._selection.append(sale_id)
            self._selection_changed()

    def deselect(self, sale_id: str) -> None:
        if sale_id in self._selection:
            self._selection.remove(sale_id)
            self._selection_changed()

    def toggle(self, sale_id: str) -> None:
        if sale_id in self._selection:
            self.deselect(sale_id)
        else:
            self.select(sale_id)

    def select_all(self) -> None:
        ids = self._ledger.ids()
        if ids != self._selection:
            self._selection = ids
            self._selection_changed()

    def clear_selection(self) -> None:
        if self._selection:
            self._selection = []
            self._selection_changed()

    def _selection_changed(self) -> None:
        self._logger.debug("selection_changed", selected=len(self._selection))
        self._publish(events.selection_changed(self._ledger.owner_id, self.selection))

    # === Lifecycle ===

    async def load(self) -> None:
        """Replace the local ledger with the store's contents."""
        if self._sync is None:
            return
        records = await self._sync.store.list_all(self._ledger.owner_id)
        self._ledger.load(records)
        self._selection = [i for i in self._selection if self._ledger.contains(i)]
        self._logger.info("ledger_loaded", sales=len(records))

    async def close(self) -> None:
        """Cancel any in-flight request and wait for pending persistence."""
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
            self._logger.info("inflight_request_cancelled")
        if self._sync is not None:
            await self._sync.drain()

    async def insights(self) -> str:
        return await self._gateway.insights(self._ledger.snapshot())

    # === Turn processing ===

    async def submit(self, text: str) -> TurnOutcome:
        """Process one user message.

        Raises:
            SessionBusyError: If a previous submission is still running.
        """
        text = text.strip()
        if not text:
            return TurnOutcome(message="", state=self._state)
        if self._busy:
            self._logger.warning("submission_rejected_busy")
            raise SessionBusyError("A request is already in progress for this session")

        self._busy = True
        try:
            outcome = await self._process(text)
        finally:
            self._busy = False

        if outcome.message:
            kind = outcome.kind.value if outcome.kind else "local"
            self._publish(events.assistant_message(self._ledger.owner_id, outcome.message, kind))
        return outcome

    async def _process(self, text: str) -> TurnOutcome:
        if self._state is SessionState.AWAITING_MATCH_CONFIRMATION:
            answer = self._intent.confirmation(text)
            if answer is True:
                return self._confirm_matches()
            if answer is False:
                return self._discard_matches()
            self._logger.info("match_confirmation_abandoned")
            self._reset()

        user_turn = ConversationTurn(role="user", content=text)
        if self._state is SessionState.AWAITING_CLARIFICATION:
            outgoing = [*self._conversation, user_turn]
        else:
            outgoing = [user_turn]

        response = await self._ask(outgoing)
        if isinstance(response, Failure):
            return self._handle_failure(response)

        response = self._resolve_with_selection(response, text)
        self._logger.info("assistant_responded", kind=response.kind.value)

        kind = response.kind
        if kind is ResponseKind.CREATE:
            return self._handle_create([response.record], response)
        if kind is ResponseKind.CREATE_MANY:
            return self._handle_create(response.records, response)
        if kind is ResponseKind.UPDATE:
            return self._handle_update(response, text)
        if kind is ResponseKind.DELETE_ONE:
            return self._handle_delete([response.id], response)
        if kind is ResponseKind.DELETE_MANY:
            return self._handle_delete(response.ids, response)
        if kind is ResponseKind.CLARIFICATION:
            return self._handle_clarification(response, outgoing)
        if kind is ResponseKind.ENTITY_MATCH:
            return self._handle_entity_match(response)
        if kind is ResponseKind.SUGGESTION:
            return self._handle_suggestion(response)
        return self._finish(response.message, kind)

    async def _ask(self, outgoing: list[ConversationTurn]) -> AssistantResponse:
        self._inflight = asyncio.create_task(
            self._gateway.ask(list(outgoing), self._ledger.snapshot(), self.selection)
        )
        try:
            return await asyncio.wait_for(self._inflight, timeout=self._timeout)
        except TimeoutError:
            self._logger.error("assistant_timeout", timeout=self._timeout)
            return Failure(reason=FailureReason.TRANSPORT_ERROR, detail="timeout")
        finally:
            self._inflight = None

    def _reset(self) -> None:
        self._state = SessionState.IDLE
        self._conversation = []
        self._pending_question = None
        self._pending_candidates = []

    def _finish(self, message: str, kind: ResponseKind | None, **changes: Any) -> TurnOutcome:
        """End a turn that does not wait on the user."""
        self._reset()
        return TurnOutcome(message=message, state=self._state, kind=kind, **changes)

    # === Selection guard ===

    def _resolve_with_selection(
        self, response: AssistantResponse, text: str
    ) -> AssistantResponse:
        """Answer "which sale?" questions locally when the user already selected one."""
        if not self._selection or not isinstance(response, ClarificationRequest):
            return response
        if not _WHICH_SALE_QUESTION.search(f"{response.question} {response.message}"):
            return response

        target = self._ledger.get(self._selection[0])
        if target is None:
            self._logger.warning("clarification_intercept_skipped", sale_id=self._selection[0])
            return response

        intent = self._intent.classify(text)
        self._logger.info(
            "clarification_intercepted",
            sale_id=target.id,
            delete=intent.delete,
            fields=sorted(intent.fields),
        )

        if intent.delete:
            return DeleteOne(message=f"He eliminado la venta de {target.product}.", id=target.id)

        changes = {
            WIRE_KEYS[name]: value
            for name, value in intent.fields.items()
            if value is not None and name in EDITABLE_FIELDS
        }
        if changes:
            return Update(
                message=f"He actualizado la venta de {target.product}.",
                records=[{**target.to_dict(), **changes}],
            )

        return Conversational(message=SELECTED_SALE_MESSAGE + target.summary())

    # === Handlers ===

    def _handle_failure(self, response: Failure) -> TurnOutcome:
        if response.reason is FailureReason.TRANSPORT_ERROR:
            message = CONNECTION_ERROR_MESSAGE
        else:
            message = FORMAT_ERROR_MESSAGE
        self._logger.error("turn_failed", reason=response.reason.value, detail=response.detail)
        self._publish(
            events.error_event(
                message, {"reason": response.reason.value}, owner_id=self._ledger.owner_id
            )
        )
        return TurnOutcome(message=message, state=self._state, kind=ResponseKind.FAILURE)

    def _handle_create(self, raws: Sequence[Any], response: AssistantResponse) -> TurnOutcome:
        records = validate_sales(raws)
        if not records:
            self._logger.warning("create_rejected", received=len(raws))
            return self._finish(NOT_REGISTERED_MESSAGE, response.kind)

        taken = set(self._ledger.ids())
        transaction_id = generate_transaction_id()
        unique = []
        for record in records:
            sale_id = record.id
            while sale_id in taken:
                sale_id = generate_sale_id()
            if sale_id != record.id:
                self._logger.info("duplicate_sale_id_replaced", old_id=record.id, new_id=sale_id)
            taken.add(sale_id)
            unique.append(
                record.copy(id=sale_id, transaction_id=record.transaction_id or transaction_id)
            )

        candidates = normalization_candidates(unique, self._ledger.records)
        confident = [c for c in candidates if (c.similarity or 0) >= HIGH_CONFIDENCE_THRESHOLD]
        uncertain = [c for c in candidates if (c.similarity or 0) < HIGH_CONFIDENCE_THRESHOLD]
        if confident:
            unique = [self._normalize(record, confident) for record in unique]
            self._logger.info("entities_auto_normalized", count=len(confident))

        self._ledger.prepend(unique)
        self._persist(unique)
        self._publish(events.sales_created(self._ledger.owner_id, unique))
        for record in unique:
            self._logger.info(
                "sale_created",
                sale_id=record.id,
                product=record.product,
                amount=record.amount,
                total_price=record.total_price,
            )

        message = response.message
        if uncertain:
            self._reset()
            self._await_match_confirmation(uncertain)
            message = f"{message}\n\n{format_match_prompt(uncertain)}".strip()
            return TurnOutcome(
                message=message, state=self._state, kind=response.kind, created=unique
            )
        return self._finish(message, response.kind, created=unique)

    def _handle_update(self, response: Update, text: str) -> TurnOutcome:
        intent = self._intent.classify(text)
        updated = []

        for raw in response.records:
            if not isinstance(raw, Mapping) or not raw.get("id"):
                self._logger.warning("update_skipped_without_id")
                continue
            original = self._ledger.get(str(raw["id"]))
            if original is None:
                self._logger.warning("update_unknown_sale", sale_id=str(raw["id"]))
                continue
            try:
                merged = self._merge_update(original, raw, intent, text)
            except ValidationError as e:
                self._logger.warning(
                    "update_rejected", sale_id=original.id, field=e.field, error=str(e)
                )
                continue
            if merged == original:
                continue
            self._ledger.replace(merged)
            updated.append(merged)
            self._logger.info("sale_updated", sale_id=merged.id)

        if updated:
            self._persist(updated)
            self._publish(events.sales_updated(self._ledger.owner_id, updated))
            self.clear_selection()
        return self._finish(response.message, response.kind, updated=updated)

    def _merge_update(
        self,
        original: SaleRecord,
        raw: Mapping[str, Any],
        intent: EditIntent,
        text: str,
    ) -> SaleRecord:
        """Apply only the changes the user's message accounts for."""
        proposed: dict[str, Any] = {}
        for name in EDITABLE_FIELDS:
            key = WIRE_KEYS[name]
            value = raw.get(key)
            for alias in _UPDATE_ALIASES.get(key, ()):
                if value is None:
                    value = raw.get(alias)
            if value is None:
                continue
            if name == "amount":
                value = coerce_amount(value, key)
            elif name in NUMERIC_FIELDS:
                value = coerce_number(value, key)
            else:
                value = str(value).strip()
                if not value:
                    continue
            if value != getattr(original, name):
                proposed[name] = value

        changes: dict[str, Any] = {}
        for name, value in proposed.items():
            if self._referenced(name, value, intent, text):
                changes[name] = value
            elif name == "total_price" and {"amount", "unit_price"} & changes.keys():
                continue  # recomputed below
            else:
                self._logger.warning(
                    "inconsistent_update_corrected",
                    sale_id=original.id,
                    field=name,
                    original=getattr(original, name),
                    proposed=value,
                )

        if "total_price" not in changes and {"amount", "unit_price"} & changes.keys():
            amount = changes.get("amount", original.amount)
            unit_price = changes.get("unit_price", original.unit_price)
            changes["total_price"] = amount * unit_price

        return original.copy(**changes) if changes else original

    def _referenced(self, name: str, value: Any, intent: EditIntent, text: str) -> bool:
        """Whether the message names the field or literally contains the new value.

        A number written in the message only vouches for a numeric field when
        no field keyword already claimed the message's numbers.
        """
        if intent.references(name):
            return True
        if name in NUMERIC_FIELDS:
            if any(intent.references(other) for other in NUMERIC_FIELDS):
                return False
            return value in numbers_in(text)
        return bool(value) and fold(str(value)) in fold(text)

    def _handle_delete(self, ids: Sequence[str], response: AssistantResponse) -> TurnOutcome:
        removed = self._ledger.remove(ids)
        unknown = [i for i in ids if i not in removed]
        if unknown:
            self._logger.warning("delete_unknown_sales", sale_ids=unknown)

        if removed:
            if self._sync is not None:
                self._sync.delete(removed)
            self._publish(events.sales_deleted(self._ledger.owner_id, removed))
            self._logger.info("sales_deleted", sale_ids=removed)
            self.clear_selection()
        return self._finish(response.message, response.kind, deleted_ids=removed)

    def _handle_clarification(
        self, response: ClarificationRequest, outgoing: list[ConversationTurn]
    ) -> TurnOutcome:
        message = response.message or response.question
        self._state = SessionState.AWAITING_CLARIFICATION
        self._pending_question = response.question
        self._conversation = [*outgoing, ConversationTurn(role="assistant", content=message)]
        self._logger.info(
            "clarification_requested",
            category=response.category.value,
            turns=len(self._conversation),
        )
        self._publish(
            events.clarification_requested(
                self._ledger.owner_id, response.question, response.category.value
            )
        )
        return TurnOutcome(message=message, state=self._state, kind=response.kind)

    def _handle_entity_match(self, response: EntityMatchConfirmation) -> TurnOutcome:
        candidates = []
        for candidate in response.candidates:
            if not candidate.record_ids:
                candidate.record_ids = [
                    r.id
                    for r in self._ledger
                    if getattr(r, candidate.field, None) == candidate.value
                ]
            candidates.append(candidate)

        self._reset()
        self._await_match_confirmation(candidates)
        message = response.message or format_match_prompt(candidates)
        return TurnOutcome(message=message, state=self._state, kind=response.kind)

    def _handle_suggestion(self, response: Suggestion) -> TurnOutcome:
        if self._sync is not None:
            self._sync.save_suggestion(response.text)
        self._logger.info("suggestion_received", length=len(response.text))
        return self._finish(SUGGESTION_THANKS, response.kind)

    # === Entity normalization ===

    def _await_match_confirmation(self, candidates: list[EntityCandidate]) -> None:
        self._state = SessionState.AWAITING_MATCH_CONFIRMATION
        self._pending_candidates = list(candidates)
        self._logger.info("match_confirmation_requested", candidates=len(candidates))
        self._publish(events.match_confirmation_requested(self._ledger.owner_id, candidates))

    def _normalize(self, record: SaleRecord, candidates: Sequence[EntityCandidate]) -> SaleRecord:
        for candidate in candidates:
            if record.id in candidate.record_ids:
                record = apply_normalization(record, candidate)
        return record

    def _confirm_matches(self) -> TurnOutcome:
        candidates = self._pending_candidates
        touched = {sale_id for c in candidates for sale_id in c.record_ids}

        updated = []
        for sale_id in touched:
            record = self._ledger.get(sale_id)
            if record is None:
                continue
            normalized = self._normalize(record, candidates)
            if normalized != record:
                self._ledger.replace(normalized)
                updated.append(normalized)

        if updated:
            self._persist(updated)
            self._publish(events.sales_updated(self._ledger.owner_id, updated))
        self._logger.info("matches_confirmed", candidates=len(candidates), sales=len(updated))
        return self._finish(MATCHES_APPLIED_MESSAGE, None, updated=updated)

    def _discard_matches(self) -> TurnOutcome:
        self._logger.info("matches_discarded", candidates=len(self._pending_candidates))
        return self._finish(MATCHES_DISCARDED_MESSAGE, None)

    # === Side effects ===

    def _persist(self, records: list[SaleRecord]) -> None:
        if self._sync is not None:
            self._sync.upsert(records)

    def _publish(self, event: events.SessionEvent) -> None:
        if self._publisher is not None:
            self._publisher.publish(event)
