"""
Exception taxonomy for the memory engine.
"""

from typing import Any, Dict, Optional


class MemoryEngineError(Exception):
    """Base exception for memory engine errors.

    Attributes:
        message: Error message
        context: Optional dictionary with additional context (scope, fact id, attempt, ...)
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ', '.join(f'{k}={v}' for k, v in self.context.items())
            return f'{self.message} (context: {context_str})'
        return self.message


class ExtractionParseError(MemoryEngineError):
    """LLM extraction output was malformed after the parse retry budget was exhausted."""
    pass


class StoreUnavailable(MemoryEngineError):
    """Graph or vector store failed (timeout, connection loss) after bounded retries."""
    pass


class ScopeIsolationViolation(MemoryEngineError):
    """A store operation was issued without a scope filter."""
    pass


class EmbeddingFailure(MemoryEngineError):
    """Embedding provider error (rate limit, timeout, malformed response)."""
    pass


class LLMProviderError(MemoryEngineError):
    """LLM provider call failed after transport retries."""
    pass
