"""OpenAI chat client with JSON-object output.

Also supports OpenAI-compatible APIs (LM Studio, a self-hosted proxy) via a
custom base_url.
"""

from typing import Any

import openai
import structlog

from perla.clients.base import CompletionResult, LLMClient
from perla.config import get_settings
from perla.errors import ProviderError, TransientProviderError

logger = structlog.get_logger(__name__)


class OpenAIClient(LLMClient):
    """Client for OpenAI's chat completions API."""

    provider = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        if api_key is None and settings.openai_api_key is not None:
            api_key = settings.openai_api_key.get_secret_value()
        self._api_key = api_key or "not-needed"  # local compatible servers ignore it
        self._base_url = base_url  # None means use OpenAI's default
        self._model = model or settings.openai_model
        self._timeout = timeout or settings.llm_request_timeout

        client_kwargs: dict[str, Any] = {
            "api_key": self._api_key,
            "timeout": self._timeout,
            # Retries are owned by the gateway
            "max_retries": 0,
        }
        if self._base_url:
            client_kwargs["base_url"] = self._base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        client_name = "openai_compatible" if self._base_url else "openai"
        self._logger = logger.bind(client=client_name, model=self._model)

    @property
    def model(self) -> str:
        return self._model

    def _build_request(
        self,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> dict[str, Any]:
        # GPT-5+ and o-series models use max_completion_tokens and fixed temperature
        is_reasoning = self._model.startswith(("gpt-5", "o1", "o3", "o4"))
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        }
        if is_reasoning:
            kwargs["max_completion_tokens"] = max_tokens
        else:
            kwargs["max_tokens"] = max_tokens
            kwargs["temperature"] = temperature
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def _parse_response(self, response: Any) -> CompletionResult:
        choice = response.choices[0]
        stop_reason_map = {
            "stop": "end_turn",
            "length": "max_tokens",
            "content_filter": "content_filter",
        }
        return CompletionResult(
            content=choice.message.content or "",
            stop_reason=stop_reason_map.get(choice.finish_reason or "stop", "end_turn"),
            usage={
                "input_tokens": response.usage.prompt_tokens if response.usage else 0,
                "output_tokens": response.usage.completion_tokens if response.usage else 0,
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
        kwargs = self._build_request(messages, temperature, max_tokens, json_mode)

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except (openai.APIConnectionError, openai.InternalServerError) as e:
            # APIConnectionError also covers APITimeoutError
            self._logger.warning("transient_api_error", error=str(e))
            raise TransientProviderError(
                str(e), status_code=getattr(e, "status_code", None), provider=self.provider
            ) from e
        except openai.APIError as e:
            self._logger.error("api_error", error=str(e))
            raise ProviderError(
                str(e), status_code=getattr(e, "status_code", None), provider=self.provider
            ) from e

        parsed = self._parse_response(response)
        self._logger.info(
            "response_generated",
            stop_reason=parsed.stop_reason,
            input_tokens=parsed.usage["input_tokens"],
            output_tokens=parsed.usage["output_tokens"],
        )
        return parsed

    async def close(self) -> None:
        await self._client.close()
