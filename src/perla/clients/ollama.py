"""Ollama chat client for local models."""

from typing import Any

import httpx
import structlog

from perla.clients.base import CompletionResult, LLMClient
from perla.config import get_settings
from perla.errors import ProviderError, TransientProviderError

logger = structlog.get_logger(__name__)


class OllamaClient(LLMClient):
    """Client for Ollama's /api/chat endpoint.

    JSON mode maps to Ollama's ``format: "json"`` option.
    """

    provider = "ollama"

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        settings = get_settings()
        self._base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self._model = model or settings.ollama_model
        self._timeout = timeout or settings.llm_request_timeout

        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)
        self._logger = logger.bind(client="ollama", model=self._model)

    @property
    def model(self) -> str:
        return self._model

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": False,
            "options": {
                "num_predict": max_tokens,
                "temperature": temperature,
            },
        }
        if json_mode:
            payload["format"] = "json"
        return payload

    def _parse_response(self, response_data: dict[str, Any]) -> CompletionResult:
        message = response_data.get("message", {})
        done_reason = response_data.get("done_reason", "")
        return CompletionResult(
            content=message.get("content", ""),
            stop_reason="max_tokens" if done_reason == "length" else "end_turn",
            usage={
                "input_tokens": response_data.get("prompt_eval_count", 0),
                "output_tokens": response_data.get("eval_count", 0),
            },
        )

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = True,
    ) -> CompletionResult:
        self._logger.debug("generating_response", message_count=len(messages))
        payload = self._build_payload(messages, temperature, max_tokens, json_mode)

        try:
            response = await self._client.post(f"{self._base_url}/api/chat", json=payload)
            response.raise_for_status()
            response_data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            self._logger.error("api_error", status=status, error=str(e))
            error_cls = TransientProviderError if status >= 500 else ProviderError
            raise error_cls(str(e), status_code=status, provider=self.provider) from e
        except httpx.RequestError as e:
            self._logger.warning("connection_error", error=str(e))
            raise TransientProviderError(str(e), provider=self.provider) from e
        except ValueError as e:
            # Body was not JSON at all: the server is not speaking the Ollama protocol
            raise ProviderError(f"Invalid response body: {e}", provider=self.provider) from e

        parsed = self._parse_response(response_data)
        self._logger.info(
            "response_generated",
            stop_reason=parsed.stop_reason,
            input_tokens=parsed.usage["input_tokens"],
            output_tokens=parsed.usage["output_tokens"],
        )
        return parsed

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
