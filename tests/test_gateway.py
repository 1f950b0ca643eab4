"""Tests for the assistant gateway."""

import json
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from perla.clients.base import CompletionResult, LLMClient
from perla.clients.factory import EndpointConfig
from perla.config.settings import FlatSettings
from perla.errors import ProviderError, TransientProviderError
from perla.gateway import AssistantGateway, GatewayConfig
from perla.models import ConversationTurn
from perla.responses import (
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
    ResponseKind,
    Suggestion,
    Update,
)


def _client(*results):
    client = MagicMock(spec=LLMClient)
    client.provider = "openai"
    client.complete = AsyncMock(side_effect=list(results))
    client.close = AsyncMock()
    return client


def _ok(payload) -> CompletionResult:
    content = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return CompletionResult(content=content)


def _gateway(*clients, **config) -> AssistantGateway:
    endpoints = [EndpointConfig(provider="openai") for _ in clients]
    return AssistantGateway(GatewayConfig(endpoints=endpoints, **config), clients=list(clients))


class TestGatewayConfig:
    def test_defaults(self):
        config = GatewayConfig()

        assert config.temperature == 0.7
        assert config.max_tokens == 500
        assert config.max_attempts == 3
        assert config.backoff_initial == 0.5

    def test_from_settings_builds_ordered_endpoints(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "ollama")
        monkeypatch.setenv("LLM_FALLBACK_ENDPOINTS", "openai@http://proxy:8080/v1,anthropic")
        monkeypatch.setenv("LLM_MAX_ATTEMPTS", "2")

        config = GatewayConfig.from_settings(FlatSettings())

        assert [e.provider for e in config.endpoints] == ["ollama", "openai", "anthropic"]
        assert config.endpoints[0].base_url == "http://localhost:11434"
        assert config.endpoints[1].base_url == "http://proxy:8080/v1"
        assert config.endpoints[2].base_url is None
        assert config.max_attempts == 2


class TestBuildMessages:
    def test_system_prompt_first_then_turns(self):
        gateway = _gateway(_client())
        conversation = [ConversationTurn(role="user", content="Vendí 2 cookies a 3000")]

        messages = gateway.build_messages(conversation)

        assert messages[0]["role"] == "system"
        assert "Perla" in messages[0]["content"]
        assert messages[1:] == [{"role": "user", "content": "Vendí 2 cookies a 3000"}]

    def test_conversation_not_mutated(self):
        gateway = _gateway(_client())
        conversation = [
            ConversationTurn(role="user", content="vendí 2kg a 8000"),
            ConversationTurn(role="assistant", content="¿De qué producto?"),
        ]
        before = list(conversation)

        gateway.build_messages(conversation)

        assert conversation == before

    def test_selection_turn_with_details(self, cookie_sale):
        gateway = _gateway(_client())

        messages = gateway.build_messages(
            [ConversationTurn(role="user", content="cambia el precio a 5000")],
            [cookie_sale],
            [cookie_sale.id],
        )

        assert len(messages) == 3
        selection = messages[1]
        assert selection["role"] == "system"
        assert "ATTENTION: The user has explicitly selected 1 sale(s)" in selection["content"]
        assert f"Selected Sales IDs: {cookie_sale.id}" in selection["content"]
        assert (
            f"Sale 1: ID={cookie_sale.id}, Product=cookies, Amount=2, Price=3000, "
            "TotalPrice=6000, Client=Cliente"
        ) in selection["content"]
        assert "WARNING" not in selection["content"]

    def test_selection_turn_states_unresolved_ids(self, cookie_sale):
        gateway = _gateway(_client())

        messages = gateway.build_messages(
            [ConversationTurn(role="user", content="bórrala")],
            [cookie_sale],
            [cookie_sale.id, "sale-ghost"],
        )

        content = messages[1]["content"]
        assert "Sale 1: ID=" in content
        assert "WARNING: Sale details for IDs [sale-ghost] were not found" in content
        assert "Use just the IDs" in content

    def test_no_selection_turn_without_selection(self, cookie_sale):
        gateway = _gateway(_client())

        messages = gateway.build_messages([{"role": "user", "content": "hola"}], [cookie_sale], [])

        assert [m["role"] for m in messages] == ["system", "user"]


class TestAskTransport:
    @pytest.mark.asyncio
    async def test_sends_json_request_with_config(self):
        client = _client(_ok({"success": True, "message": "¡Hola!"}))
        gateway = _gateway(client)

        response = await gateway.ask([ConversationTurn(role="user", content="hola")])

        assert isinstance(response, Conversational)
        assert response.text == "¡Hola!"
        kwargs = client.complete.await_args.kwargs
        assert kwargs == {"temperature": 0.7, "max_tokens": 500, "json_mode": True}

    @pytest.mark.asyncio
    async def test_max_tokens_override(self):
        client = _client(_ok({"message": "ok"}))
        gateway = _gateway(client)

        await gateway.ask([ConversationTurn(role="user", content="hola")], max_tokens=1000)

        assert client.complete.await_args.kwargs["max_tokens"] == 1000

    @pytest.mark.asyncio
    async def test_retries_transient_errors_with_backoff(self):
        client = _client(
            TransientProviderError("timeout"),
            TransientProviderError("503", status_code=503),
            _ok({"message": "ok"}),
        )
        gateway = _gateway(client)

        with patch("perla.gateway.asyncio.sleep", new_callable=AsyncMock) as sleep:
            response = await gateway.ask([ConversationTurn(role="user", content="hola")])

        assert isinstance(response, Conversational)
        assert client.complete.await_count == 3
        assert sleep.await_args_list == [call(0.5), call(1.0)]

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_transport_failure(self):
        client = _client(*[TransientProviderError("down")] * 3)
        gateway = _gateway(client)

        with patch("perla.gateway.asyncio.sleep", new_callable=AsyncMock) as sleep:
            response = await gateway.ask([ConversationTurn(role="user", content="hola")])

        assert isinstance(response, Failure)
        assert response.reason is FailureReason.TRANSPORT_ERROR
        assert client.complete.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_errors_not_retried(self):
        client = _client(ProviderError("invalid api key", status_code=401))
        gateway = _gateway(client)

        with patch("perla.gateway.asyncio.sleep", new_callable=AsyncMock) as sleep:
            response = await gateway.ask([ConversationTurn(role="user", content="hola")])

        assert isinstance(response, Failure)
        assert client.complete.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_over_to_next_endpoint_and_stays(self):
        primary = _client(*[TransientProviderError("down")] * 2)
        secondary = _client(_ok({"message": "uno"}), _ok({"message": "dos"}))
        gateway = _gateway(primary, secondary, max_attempts=2)

        with patch("perla.gateway.asyncio.sleep", new_callable=AsyncMock):
            first = await gateway.ask([ConversationTurn(role="user", content="hola")])
            second = await gateway.ask([ConversationTurn(role="user", content="hola")])

        assert first.message == "uno"
        assert second.message == "dos"
        assert primary.complete.await_count == 2
        assert gateway.active_endpoint == 1

    @pytest.mark.asyncio
    async def test_unbuildable_endpoint_is_skipped(self):
        fallback = _client(_ok({"message": "ok"}))
        config = GatewayConfig(
            endpoints=[EndpointConfig(provider="watson"), EndpointConfig(provider="openai")]
        )
        gateway = AssistantGateway(config, clients=[])
        gateway._clients[1] = fallback

        response = await gateway.ask([ConversationTurn(role="user", content="hola")])

        assert response.message == "ok"
        assert gateway.active_endpoint == 1

    @pytest.mark.asyncio
    async def test_does_not_retry_application_failure(self):
        client = _client(_ok({"success": False, "message": "No entendí"}))
        gateway = _gateway(client)

        response = await gateway.ask([ConversationTurn(role="user", content="???")])

        assert isinstance(response, Conversational)
        assert response.message == "No entendí"
        assert client.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_close_closes_clients(self):
        client = _client()
        gateway = _gateway(client)

        await gateway.close()

        client.close.assert_awaited_once()


class TestParseResponse:
    def setup_method(self):
        self.gateway = _gateway(_client())

    def test_plain_text_becomes_conversational(self):
        response = self.gateway.parse_response("¡Hola! ¿Qué vendiste hoy?")

        assert isinstance(response, Conversational)
        assert response.text == "¡Hola! ¿Qué vendiste hoy?"

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_is_malformed(self, raw):
        response = self.gateway.parse_response(raw)

        assert isinstance(response, Failure)
        assert response.reason is FailureReason.MALFORMED_RESPONSE

    @pytest.mark.parametrize(
        "raw", ["{}", '{"success": true}', '{"message": "  ", "sales": []}']
    )
    def test_object_without_action_or_message_is_malformed(self, raw):
        response = self.gateway.parse_response(raw)

        assert isinstance(response, Failure)
        assert response.reason is FailureReason.MALFORMED_RESPONSE

    @pytest.mark.parametrize("raw", ["[1, 2]", "42", "null"])
    def test_non_object_json_is_malformed(self, raw):
        response = self.gateway.parse_response(raw)

        assert response.kind is ResponseKind.FAILURE
        assert response.reason is FailureReason.MALFORMED_RESPONSE

    def test_code_fence_tolerated(self):
        raw = '```json\n{"success": true, "message": "hola"}\n```'

        assert self.gateway.parse_response(raw).message == "hola"

    def test_create(self):
        sale = {"product": "cookies", "amount": 2, "price": 3000, "totalPrice": 6000}
        response = self.gateway.parse_response(
            json.dumps({"success": True, "message": "¡Venta registrada!", "sale": sale})
        )

        assert isinstance(response, Create)
        assert response.record == sale
        assert response.message == "¡Venta registrada!"

    def test_create_many_even_for_single_element(self):
        response = self.gateway.parse_response(
            json.dumps({"success": True, "message": "ok", "sales": [{"product": "a"}]})
        )

        assert isinstance(response, CreateMany)
        assert response.records == [{"product": "a"}]

    def test_update(self):
        response = self.gateway.parse_response(
            json.dumps({"success": True, "message": "ok", "updatedSales": [{"id": "s1"}]})
        )

        assert isinstance(response, Update)
        assert response.records == [{"id": "s1"}]

    def test_delete_one(self):
        response = self.gateway.parse_response(json.dumps({"success": True, "deletedId": "s1"}))

        assert isinstance(response, DeleteOne)
        assert response.id == "s1"

    def test_delete_many(self):
        response = self.gateway.parse_response(
            json.dumps({"success": True, "deletedIds": ["s1", "s2"]})
        )

        assert isinstance(response, DeleteMany)
        assert response.ids == ["s1", "s2"]

    def test_clarification(self):
        response = self.gateway.parse_response(
            json.dumps(
                {
                    "success": False,
                    "message": "¿2kg de qué producto vendiste?",
                    "pendingAction": "request_clarification",
                    "missingInfo": {
                        "type": "product_details",
                        "question": "¿2kg de qué producto vendiste?",
                    },
                }
            )
        )

        assert isinstance(response, ClarificationRequest)
        assert response.category is ClarificationCategory.PRODUCT_DETAILS
        assert response.question == "¿2kg de qué producto vendiste?"

    def test_clarification_unknown_category(self):
        response = self.gateway.parse_response(
            json.dumps({"message": "¿Cuánto?", "missingInfo": {"type": "weird"}})
        )

        assert isinstance(response, ClarificationRequest)
        assert response.category is ClarificationCategory.OTHER
        assert response.question == "¿Cuánto?"

    def test_entity_match(self):
        response = self.gateway.parse_response(
            json.dumps(
                {
                    "success": True,
                    "message": "¿Normalizo?",
                    "pendingAction": "confirm_entity_match",
                    "potentialMatches": {
                        "products": [{"original": "cokies", "potential": "cookies"}],
                        "clients": [],
                        "paymentMethods": [{"original": "efectibo", "potential": "Efectivo"}],
                    },
                }
            )
        )

        assert isinstance(response, EntityMatchConfirmation)
        assert [(c.field, c.value, c.canonical) for c in response.candidates] == [
            ("product", "cokies", "cookies"),
            ("payment_method", "efectibo", "Efectivo"),
        ]

    def test_entity_match_without_candidates_is_conversational(self):
        response = self.gateway.parse_response(
            json.dumps(
                {"message": "hmm", "pendingAction": "confirm_entity_match", "potentialMatches": {}}
            )
        )

        assert isinstance(response, Conversational)

    def test_suggestion(self):
        response = self.gateway.parse_response(
            json.dumps(
                {
                    "success": True,
                    "message": "¡Gracias!",
                    "pendingAction": "suggestion",
                    "suggestion": "Agregar modo oscuro",
                }
            )
        )

        assert isinstance(response, Suggestion)
        assert response.text == "Agregar modo oscuro"

    def test_fallback_flag_is_conversational(self):
        response = self.gateway.parse_response(
            json.dumps({"success": True, "message": "Modo básico", "fallback": True, "sale": {}})
        )

        assert isinstance(response, Conversational)
        assert response.message == "Modo básico"


class TestMissingSaleRecovery:
    def setup_method(self):
        self.gateway = _gateway(_client())

    def test_recovers_sale_from_confirmation_message(self):
        message = "¡Venta registrada! Vendiste 2 cookies a $3000."
        response = self.gateway.parse_response(json.dumps({"success": True, "message": message}))

        assert isinstance(response, Create)
        assert response.record["product"] == "cookies"
        assert response.record["amount"] == 2
        assert response.record["price"] == 3000
        assert response.record["totalPrice"] == 6000

    def test_multiword_product_and_thousands_separator(self):
        response = self.gateway.parse_response(
            json.dumps(
                {
                    "success": True,
                    "message": "Venta confirmada: 3 bandejas de ravioles por $2.500",
                }
            )
        )

        assert isinstance(response, Create)
        assert response.record["product"] == "bandejas de ravioles"
        assert response.record["price"] == 2500

    def test_unextractable_message_passes_through(self):
        response = self.gateway.parse_response(
            json.dumps({"success": True, "message": "¡Venta registrada con éxito!"})
        )

        assert isinstance(response, Conversational)
        assert response.message == "¡Venta registrada con éxito!"

    def test_requires_success_flag(self):
        response = self.gateway.parse_response(
            json.dumps({"success": False, "message": "Venta registrada: 2 cookies a 3000"})
        )

        assert isinstance(response, Conversational)


class TestInsights:
    @pytest.mark.asyncio
    async def test_empty_ledger_skips_call(self):
        client = _client()
        gateway = _gateway(client)

        assert await gateway.insights([]) == ""
        client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_returns_plain_text(self, cookie_sale):
        client = _client(CompletionResult(content="  Las cookies son tu producto estrella.  "))
        gateway = _gateway(client)

        text = await gateway.insights([cookie_sale])

        assert text == "Las cookies son tu producto estrella."
        assert client.complete.await_args.kwargs["json_mode"] is False
        prompt = client.complete.await_args.args[0][0]["content"]
        assert cookie_sale.id in prompt

    @pytest.mark.asyncio
    async def test_failure_returns_empty(self, cookie_sale):
        client = _client(ProviderError("nope"))
        gateway = _gateway(client)

        assert await gateway.insights([cookie_sale]) == ""
