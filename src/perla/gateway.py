"""Assistant gateway: one conversational turn against the language model.

The gateway owns everything between the session and the provider SDKs:
assembling the message list (system prompt, selected-sales context,
conversation), retrying transient failures with exponential backoff, falling
over to the next configured endpoint, and turning the model's JSON reply into
an ``AssistantResponse`` variant.
"""

import asyncio
import json
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from perla.clients.base import CompletionResult, LLMClient
from perla.clients.factory import EndpointConfig, build_client
from perla.config import FlatSettings, get_settings
from perla.errors import ProviderError, TransientProviderError
from perla.models import DEFAULT_CLIENT, EntityCandidate, SaleRecord
from perla.prompts import PromptSet, default_prompts
from perla.responses import (
    AssistantResponse,
    ClarificationCategory,
    ClarificationRequest,
    Conversational,
    Create,
    CreateMany,
    DeleteMany,
    DeleteOne,
    EntityMatchConfirmation,
    Failure,
    FailureReason,
    Suggestion,
    Update,
)

logger = structlog.get_logger(__name__)

_CONFIRMATION_PHRASES = ("venta registrada", "venta confirmada", "ventas registradas")

# "2 cookies a $3000", "3 bandejas de ravioles por 2.500"
_SALE_IN_MESSAGE = re.compile(
    r"(\d+)\s*([a-zA-ZáéíóúÁÉÍÓÚñÑüÜ\s]+?)\s+(?:a|por|en|de)\s+\$?\s*(\d{1,3}(?:\.\d{3})+|\d+)",
    re.IGNORECASE,
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

_POTENTIAL_MATCH_FIELDS = {
    "products": "product",
    "clients": "client",
    "paymentMethods": "payment_method",
}


@dataclass
class GatewayConfig:
    """Explicit gateway configuration.

    ``endpoints`` are tried in order: when one is exhausted the gateway moves
    to the next and keeps using it for later calls.
    """

    endpoints: list[EndpointConfig] = field(
        default_factory=lambda: [EndpointConfig(provider="openai")]
    )
    temperature: float = 0.7
    max_tokens: int = 500
    max_attempts: int = 3
    backoff_initial: float = 0.5
    request_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: FlatSettings | None = None) -> "GatewayConfig":
        settings = settings or get_settings()

        primary_url = settings.llm_base_url
        if settings.llm_provider == "ollama" and not primary_url:
            primary_url = settings.ollama_base_url
        endpoints = [EndpointConfig(provider=settings.llm_provider, base_url=primary_url)]
        for provider, base_url in settings.fallback_endpoints():
            endpoints.append(EndpointConfig(provider=provider, base_url=base_url))

        return cls(
            endpoints=endpoints,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            max_attempts=settings.llm_max_attempts,
            backoff_initial=settings.llm_backoff_seconds,
            request_timeout=settings.llm_request_timeout,
        )


class AssistantGateway:
    """Sends conversations to the assistant and parses its replies."""

    def __init__(
        self,
        config: GatewayConfig | None = None,
        clients: Sequence[LLMClient] | None = None,
        prompts: PromptSet | None = None,
    ):
        self._config = config or GatewayConfig.from_settings()
        self._prompts = prompts or default_prompts()

        # Pre-built clients (one per endpoint, same order) take precedence
        self._clients: dict[int, LLMClient] = dict(enumerate(clients or []))
        self._endpoint_count = max(len(self._config.endpoints), len(self._clients))
        if self._endpoint_count == 0:
            raise ValueError("AssistantGateway needs at least one endpoint")
        self._active = 0

        self._logger = logger.bind(component="assistant_gateway")

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def active_endpoint(self) -> int:
        """Index of the endpoint currently in use."""
        return self._active

    # === Message assembly ===

    def build_messages(
        self,
        conversation: Iterable[Any],
        ledger_snapshot: Iterable[SaleRecord] = (),
        selection: Sequence[str] = (),
    ) -> list[dict[str, str]]:
        """Build the provider message list. The inputs are not modified."""
        messages = [{"role": "system", "content": self._prompts.system}]
        if selection:
            messages.append(
                {"role": "system", "content": self._selection_message(selection, ledger_snapshot)}
            )
        for turn in conversation:
            if isinstance(turn, dict):
                messages.append({"role": turn["role"], "content": turn["content"]})
            else:
                messages.append({"role": turn.role, "content": turn.content})
        return messages

    def _selection_message(
        self, selection: Sequence[str], ledger_snapshot: Iterable[SaleRecord]
    ) -> str:
        by_id = {record.id: record for record in ledger_snapshot}
        found = [by_id[sale_id] for sale_id in selection if sale_id in by_id]
        missing = [sale_id for sale_id in selection if sale_id not in by_id]

        content = self._prompts.selection.format(count=len(selection), ids=", ".join(selection))
        if found:
            details = "\n".join(
                f"Sale {index}: {record.summary()}" for index, record in enumerate(found, start=1)
            )
            content += "\n" + self._prompts.selection_details.format(details=details)
        if missing:
            content += "\n" + self._prompts.selection_missing.format(ids=", ".join(missing))
        return content.strip()

    # === Transport ===

    def _client_for(self, index: int) -> LLMClient:
        if index not in self._clients:
            endpoint = self._config.endpoints[index]
            try:
                self._clients[index] = build_client(endpoint, timeout=self._config.request_timeout)
            except ValueError as e:
                raise ProviderError(str(e), provider=endpoint.provider) from e
        return self._clients[index]

    def _endpoint_label(self, index: int) -> str:
        if index < len(self._config.endpoints):
            return self._config.endpoints[index].label
        return self._clients[index].provider

    async def _complete_with_retry(
        self,
        client: LLMClient,
        messages: list[dict[str, str]],
        max_tokens: int,
        json_mode: bool,
        endpoint: str,
    ) -> CompletionResult:
        delay = self._config.backoff_initial
        last_error: TransientProviderError | None = None

        for attempt in range(1, self._config.max_attempts + 1):
            try:
                return await client.complete(
                    messages,
                    temperature=self._config.temperature,
                    max_tokens=max_tokens,
                    json_mode=json_mode,
                )
            except TransientProviderError as e:
                last_error = e
                self._logger.warning(
                    "gateway_attempt_failed",
                    endpoint=endpoint,
                    attempt=attempt,
                    max_attempts=self._config.max_attempts,
                    error=str(e),
                )
                if attempt < self._config.max_attempts:
                    self._logger.info("gateway_retry", delay=delay)
                    await asyncio.sleep(delay)
                    delay *= 2

        assert last_error is not None
        raise last_error

    async def _complete(
        self,
        messages: list[dict[str, str]],
        *,
        max_tokens: int,
        json_mode: bool = True,
    ) -> CompletionResult:
        last_error: ProviderError | None = None

        for index in range(self._active, self._endpoint_count):
            label = self._endpoint_label(index)
            try:
                client = self._client_for(index)
                result = await self._complete_with_retry(
                    client, messages, max_tokens, json_mode, label
                )
            except ProviderError as e:
                last_error = e
                self._logger.error("endpoint_failed", endpoint=label, error=str(e))
                continue

            if index != self._active:
                self._logger.warning(
                    "endpoint_switched",
                    previous=self._endpoint_label(self._active),
                    current=label,
                )
                self._active = index
            return result

        assert last_error is not None
        raise last_error

    # === Public API ===

    async def ask(
        self,
        conversation: Iterable[Any],
        ledger_snapshot: Iterable[SaleRecord] = (),
        selection: Sequence[str] = (),
        max_tokens: int | None = None,
    ) -> AssistantResponse:
        """Send one conversational turn and return the parsed response.

        Never raises for provider or format problems; those come back as
        ``Failure`` variants.
        """
        snapshot = list(ledger_snapshot)
        messages = self.build_messages(conversation, snapshot, selection)
        self._logger.info(
            "asking_assistant",
            turns=len(messages),
            selected=len(selection),
            ledger_size=len(snapshot),
        )

        try:
            result = await self._complete(
                messages, max_tokens=max_tokens or self._config.max_tokens
            )
        except ProviderError as e:
            self._logger.error("assistant_unreachable", error=str(e))
            return Failure(
                message="Error al comunicarse con el servicio de IA",
                reason=FailureReason.TRANSPORT_ERROR,
                detail=str(e),
            )

        return self.parse_response(result.content)

    async def insights(self, records: Sequence[SaleRecord]) -> str:
        """Short natural-language observation about the ledger, or ``""``."""
        if not records:
            return ""
        sales = json.dumps([r.to_dict() for r in records], ensure_ascii=False)
        messages = [{"role": "user", "content": self._prompts.insights.format(sales=sales)}]
        try:
            result = await self._complete(
                messages, max_tokens=self._config.max_tokens, json_mode=False
            )
        except ProviderError as e:
            self._logger.error("insights_failed", error=str(e))
            return ""
        return result.content.strip()

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()

    # === Parsing ===

    def parse_response(self, raw_text: str) -> AssistantResponse:
        """Turn the model's raw text into an AssistantResponse."""
        text = (raw_text or "").strip()
        if not text:
            self._logger.error("empty_response")
            return Failure(
                message="La respuesta no tiene un formato válido",
                reason=FailureReason.MALFORMED_RESPONSE,
                detail="empty response",
            )

        fenced = _CODE_FENCE.match(text)
        if fenced:
            text = fenced.group(1)

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            self._logger.warning("response_not_json", preview=text[:100])
            return Conversational(message=text)

        if isinstance(data, str) and data.strip():
            return Conversational(message=data.strip())
        if not isinstance(data, dict):
            self._logger.error("response_not_object", type=type(data).__name__)
            return Failure(
                message="La respuesta no tiene un formato válido",
                reason=FailureReason.MALFORMED_RESPONSE,
                detail=f"expected a JSON object, got {type(data).__name__}",
            )

        return self._dispatch(data)

    def _dispatch(self, data: dict[str, Any]) -> AssistantResponse:
        raw_message = data.get("message")
        message = raw_message if isinstance(raw_message, str) else ""
        pending = data.get("pendingAction")

        if data.get("fallback"):
            return Conversational(message=message)

        missing_info = data.get("missingInfo")
        if pending == "request_clarification" or isinstance(missing_info, dict):
            info = missing_info if isinstance(missing_info, dict) else {}
            question = info.get("question") or message or "Necesito más información."
            return ClarificationRequest(
                message=message or question,
                question=question,
                category=ClarificationCategory.parse(info.get("type")),
            )

        if pending == "confirm_entity_match":
            candidates = self._parse_potential_matches(data.get("potentialMatches"))
            if candidates:
                return EntityMatchConfirmation(message=message, candidates=candidates)

        if pending == "suggestion" and data.get("suggestion"):
            return Suggestion(message=message, text=str(data["suggestion"]))

        sales = data.get("sales")
        if isinstance(sales, list) and sales:
            return CreateMany(message=message, records=list(sales))

        sale = data.get("sale")
        if isinstance(sale, dict):
            return Create(message=message, record=dict(sale))

        updated = data.get("updatedSales")
        if isinstance(updated, list) and updated:
            return Update(message=message, records=list(updated))

        deleted_ids = data.get("deletedIds")
        if isinstance(deleted_ids, list) and deleted_ids:
            return DeleteMany(message=message, ids=[str(i) for i in deleted_ids])

        deleted_id = data.get("deletedId")
        if deleted_id:
            return DeleteOne(message=message, id=str(deleted_id))

        recovered = self._recover_missing_sale(data, message)
        if recovered is not None:
            return recovered

        if not message.strip():
            self._logger.error("response_without_content", keys=sorted(data))
            return Failure(
                message="La respuesta no tiene un formato válido",
                reason=FailureReason.MALFORMED_RESPONSE,
                detail="no recognized action and no message",
            )
        return Conversational(message=message)

    def _parse_potential_matches(self, raw: Any) -> list[EntityCandidate]:
        if not isinstance(raw, dict):
            return []
        candidates = []
        for key, field_name in _POTENTIAL_MATCH_FIELDS.items():
            for item in raw.get(key) or []:
                if not isinstance(item, dict):
                    continue
                original = item.get("original")
                potential = item.get("potential")
                if original and potential:
                    candidates.append(
                        EntityCandidate(
                            field=field_name, value=str(original), canonical=str(potential)
                        )
                    )
        return candidates

    def _recover_missing_sale(self, data: dict[str, Any], message: str) -> Create | None:
        """Rebuild a sale the model confirmed in prose but left out of the JSON."""
        lowered = message.lower()
        if data.get("success") is not True or not any(
            phrase in lowered for phrase in _CONFIRMATION_PHRASES
        ):
            return None

        self._logger.warning("sale_payload_missing", preview=message[:100])
        match = _SALE_IN_MESSAGE.search(message)
        if not match:
            self._logger.error("sale_recovery_failed", preview=message[:100])
            return None

        amount = int(match.group(1))
        product = match.group(2).strip()
        price = int(match.group(3).replace(".", ""))
        record = {
            "product": product,
            "amount": amount,
            "price": price,
            "totalPrice": amount * price,
            "client": DEFAULT_CLIENT,
        }
        self._logger.warning("sale_recovered_from_message", **record)
        return Create(message=message, record=record)
