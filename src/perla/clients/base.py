"""Common contract for LLM chat clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class CompletionResult:
    """Text returned by a provider for one chat completion."""

    content: str
    stop_reason: str = "end_turn"
    usage: dict[str, int] = field(default_factory=lambda: {"input_tokens": 0, "output_tokens": 0})


class LLMClient(ABC):
    """A chat completion back-end.

    ``messages`` are ``{"role": ..., "content": ...}`` dicts where role is
    ``system``, ``user`` or ``assistant``. Implementations raise
    ``TransientProviderError`` for failures worth retrying (network, timeout,
    5xx) and ``ProviderError`` for everything else.
    """

    provider: str = ""

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier sent to the provider."""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = True,
    ) -> CompletionResult:
        """Run one chat completion."""

    async def close(self) -> None:
        """Release network resources."""
        return None


def split_system_messages(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Merge system turns into one instruction string for providers that take it separately."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    chat = [m for m in messages if m["role"] != "system"]
    return "\n\n".join(system_parts), chat
