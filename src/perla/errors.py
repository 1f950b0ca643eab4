"""Exception hierarchy for Perla."""

from typing import Any


class PerlaError(Exception):
    """Base exception for Perla errors."""

    pass


class ValidationError(PerlaError):
    """A raw sale object could not be turned into a SaleRecord."""

    NOT_AN_OBJECT = "not_an_object"
    MISSING_FIELD = "missing_field"
    INVALID_NUMBER = "invalid_number"

    def __init__(self, kind: str, message: str, field: str | None = None, raw: Any = None):
        super().__init__(message)
        self.kind = kind
        self.field = field
        self.raw = raw


class ProviderError(PerlaError):
    """The LLM provider rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None, provider: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class TransientProviderError(ProviderError):
    """Network failure, timeout or 5xx response. Safe to retry."""

    pass


class PromptError(PerlaError):
    """The prompt resource is missing or malformed."""

    pass


class SessionBusyError(PerlaError):
    """A request is already in flight for this session."""

    pass


class TranscriptionError(PerlaError):
    """Audio could not be transcribed."""

    pass
