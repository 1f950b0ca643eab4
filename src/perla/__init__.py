"""Perla - conversational sales-tracking assistant."""

__version__ = "0.1.0"

from perla.clients import ClaudeClient, GeminiClient, OllamaClient, OpenAIClient
from perla.config import configure_logging, get_settings
from perla.gateway import AssistantGateway, GatewayConfig
from perla.intent import EditIntent, IntentClassifier, KeywordIntentClassifier
from perla.ledger import InMemoryLedgerStore, JsonFileLedgerStore, Ledger, LedgerStore, LedgerSync
from perla.models import ConversationTurn, EntityCandidate, SaleRecord
from perla.session import SalesSession, SessionState, TurnOutcome

__all__ = [
    # Version
    "__version__",
    # Models
    "SaleRecord",
    "ConversationTurn",
    "EntityCandidate",
    # Session
    "SalesSession",
    "SessionState",
    "TurnOutcome",
    # Gateway
    "AssistantGateway",
    "GatewayConfig",
    # Intent
    "EditIntent",
    "IntentClassifier",
    "KeywordIntentClassifier",
    # Ledger
    "Ledger",
    "LedgerStore",
    "LedgerSync",
    "InMemoryLedgerStore",
    "JsonFileLedgerStore",
    # LLM Clients
    "ClaudeClient",
    "OpenAIClient",
    "GeminiClient",
    "OllamaClient",
    # Config
    "get_settings",
    "configure_logging",
]
