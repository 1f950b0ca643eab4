"""Build LLM clients from endpoint descriptions."""

from dataclasses import dataclass

from perla.clients.base import LLMClient
from perla.clients.claude import ClaudeClient
from perla.clients.gemini import GeminiClient
from perla.clients.ollama import OllamaClient
from perla.clients.openai_client import OpenAIClient

PROVIDERS = ("openai", "anthropic", "gemini", "ollama")


@dataclass(frozen=True)
class EndpointConfig:
    """One place the gateway can send a conversation to."""

    provider: str
    model: str | None = None
    base_url: str | None = None
    api_key: str | None = None

    @property
    def label(self) -> str:
        return f"{self.provider}@{self.base_url}" if self.base_url else self.provider


def build_client(endpoint: EndpointConfig, timeout: float | None = None) -> LLMClient:
    """Instantiate the client for an endpoint.

    Raises:
        ValueError: If the provider is unknown.
    """
    if endpoint.provider == "openai":
        return OpenAIClient(
            api_key=endpoint.api_key,
            base_url=endpoint.base_url,
            model=endpoint.model,
            timeout=timeout,
        )
    if endpoint.provider == "anthropic":
        return ClaudeClient(api_key=endpoint.api_key, model=endpoint.model, timeout=timeout)
    if endpoint.provider == "gemini":
        return GeminiClient(api_key=endpoint.api_key, model=endpoint.model, timeout=timeout)
    if endpoint.provider == "ollama":
        return OllamaClient(base_url=endpoint.base_url, model=endpoint.model, timeout=timeout)
    raise ValueError(f"Unknown LLM provider {endpoint.provider!r}; expected one of {PROVIDERS}")
