"""Claude (Anthropic) chat client."""

from typing import Any

import anthropic
import structlog

from perla.clients.base import CompletionResult, LLMClient, split_system_messages
from perla.config import get_settings
from perla.errors import ProviderError, TransientProviderError

logger = structlog.get_logger(__name__)


class ClaudeClient(LLMClient):
    """Client for Anthropic's Messages API.

    Claude has no JSON response mode; in JSON mode the assistant turn is
    prefilled with ``{`` so the reply continues a JSON object.
    """

    provider = "anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        if api_key is None and settings.anthropic_api_key is not None:
            api_key = settings.anthropic_api_key.get_secret_value()
        self._api_key = api_key
        self._model = model or settings.claude_model
        self._timeout = timeout or settings.llm_request_timeout

        self._client = anthropic.AsyncAnthropic(
            api_key=self._api_key, timeout=self._timeout, max_retries=0
        )
        self._logger = logger.bind(client="claude", model=self._model)

    @property
    def model(self) -> str:
        return self._model

    def _convert_messages_to_anthropic_format(
        self, messages: list[dict[str, Any]], json_mode: bool
    ) -> tuple[str, list[dict[str, Any]]]:
        """Split out the system text and merge consecutive same-role turns."""
        system, chat = split_system_messages(messages)
        anthropic_messages: list[dict[str, Any]] = []
        for msg in chat:
            if anthropic_messages and anthropic_messages[-1]["role"] == msg["role"]:
                anthropic_messages[-1]["content"] += "\n\n" + msg["content"]
            else:
                anthropic_messages.append({"role": msg["role"], "content": msg["content"]})
        if json_mode:
            anthropic_messages.append({"role": "assistant", "content": "{"})
        return system, anthropic_messages

    def _parse_response(self, response: Any, json_mode: bool) -> CompletionResult:
        content = "".join(block.text for block in response.content if block.type == "text")
        if json_mode:
            content = "{" + content
        return CompletionResult(
            content=content,
            stop_reason=response.stop_reason or "end_turn",
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
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
        system, anthropic_messages = self._convert_messages_to_anthropic_format(
            messages, json_mode
        )

        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": anthropic_messages,
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self._client.messages.create(**kwargs)
        except (anthropic.APIConnectionError, anthropic.InternalServerError) as e:
            self._logger.warning("transient_api_error", error=str(e))
            raise TransientProviderError(
                str(e), status_code=getattr(e, "status_code", None), provider=self.provider
            ) from e
        except anthropic.APIError as e:
            self._logger.error("api_error", error=str(e))
            raise ProviderError(
                str(e), status_code=getattr(e, "status_code", None), provider=self.provider
            ) from e

        parsed = self._parse_response(response, json_mode)
        self._logger.info(
            "response_generated",
            stop_reason=parsed.stop_reason,
            input_tokens=parsed.usage["input_tokens"],
            output_tokens=parsed.usage["output_tokens"],
        )
        return parsed

    async def close(self) -> None:
        await self._client.close()
