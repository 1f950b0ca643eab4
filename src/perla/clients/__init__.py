"""LLM and transcription clients."""

from perla.clients.base import CompletionResult, LLMClient
from perla.clients.claude import ClaudeClient
from perla.clients.factory import EndpointConfig, build_client
from perla.clients.gemini import GeminiClient
from perla.clients.ollama import OllamaClient
from perla.clients.openai_client import OpenAIClient
from perla.clients.transcription import WhisperTranscriber

__all__ = [
    "CompletionResult",
    "LLMClient",
    "EndpointConfig",
    "build_client",
    "ClaudeClient",
    "OpenAIClient",
    "GeminiClient",
    "OllamaClient",
    "WhisperTranscriber",
]
