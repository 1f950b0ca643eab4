"""Google Gemini chat client.

Uses the google-genai SDK (v1.0+) async interface.
"""

from typing import Any, cast

import httpx
import structlog
from google import genai
from google.genai import errors, types

from perla.clients.base import CompletionResult, LLMClient, split_system_messages
from perla.config import get_settings
from perla.errors import ProviderError, TransientProviderError

logger = structlog.get_logger(__name__)


class GeminiClient(LLMClient):
    """Client for Google's Gemini API."""

    provider = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        if api_key is None and settings.google_api_key is not None:
            api_key = settings.google_api_key.get_secret_value()
        self._api_key = api_key
        self._model_name = model or settings.gemini_model
        self._timeout = timeout or settings.llm_request_timeout

        self._client = genai.Client(
            api_key=self._api_key,
            http_options=types.HttpOptions(timeout=int(self._timeout * 1000)),
        )
        self._logger = logger.bind(client="gemini", model=self._model_name)

    @property
    def model(self) -> str:
        return self._model_name

    def _convert_messages_to_gemini_format(
        self, messages: list[dict[str, Any]]
    ) -> list[types.Content]:
        """Convert chat turns to Gemini contents (assistant becomes ``model``)."""
        contents = []
        for msg in messages:
            role = "model" if msg["role"] == "assistant" else "user"
            contents.append(types.Content(role=role, parts=[types.Part(text=msg["content"])]))
        return contents

    def _parse_response(self, response: Any) -> CompletionResult:
        content = (response.text or "") if response.candidates else ""

        stop_reason = "end_turn"
        if response.candidates:
            finish_reason = str(response.candidates[0].finish_reason or "")
            if finish_reason.endswith("MAX_TOKENS"):
                stop_reason = "max_tokens"
            elif finish_reason.endswith(("SAFETY", "RECITATION")):
                stop_reason = "content_filter"

        usage = {"input_tokens": 0, "output_tokens": 0}
        if getattr(response, "usage_metadata", None):
            usage["input_tokens"] = response.usage_metadata.prompt_token_count or 0
            usage["output_tokens"] = response.usage_metadata.candidates_token_count or 0

        return CompletionResult(content=content, stop_reason=stop_reason, usage=usage)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = True,
    ) -> CompletionResult:
        self._logger.debug("generating_response", message_count=len(messages))
        system, chat = split_system_messages(messages)

        config = types.GenerateContentConfig(
            max_output_tokens=max_tokens,
            temperature=temperature,
            system_instruction=system or None,
        )
        if json_mode:
            config.response_mime_type = "application/json"

        contents = cast(list[Any], self._convert_messages_to_gemini_format(chat))

        try:
            response = await self._client.aio.models.generate_content(
                model=self._model_name,
                contents=contents,
                config=config,
            )
        except (errors.ServerError, httpx.RequestError) as e:
            self._logger.warning("transient_api_error", error=str(e))
            raise TransientProviderError(
                str(e), status_code=getattr(e, "code", None), provider=self.provider
            ) from e
        except errors.APIError as e:
            self._logger.error("api_error", error=str(e))
            raise ProviderError(str(e), status_code=e.code, provider=self.provider) from e

        parsed = self._parse_response(response)
        self._logger.info(
            "response_generated",
            stop_reason=parsed.stop_reason,
            input_tokens=parsed.usage["input_tokens"],
            output_tokens=parsed.usage["output_tokens"],
        )
        return parsed
