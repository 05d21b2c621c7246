"""Custom exceptions for dotengine rendering engines."""

from typing import Optional


class DotEngineError(Exception):
    """Base exception for all dotengine errors."""
    pass


class ConfigurationError(DotEngineError):
    """Raised when no engine is bound or an engine is misconfigured."""
    pass


class MissingDependencyError(DotEngineError):
    """Raised when an interpreter, library or native artifact is absent.

    Attributes:
        artifact: Name of the missing package, file or executable
    """

    def __init__(self, message: str, artifact: str):
        super().__init__(message)
        self.artifact = artifact

    def __str__(self) -> str:
        return f"{self.args[0]} (missing: {self.artifact})"


class ExecutionError(DotEngineError):
    """Raised when a render fails inside an engine.

    Attributes:
        diagnostics: Original diagnostic text (interpreter message, stderr)
        context: The command line or script that was executed
    """

    def __init__(
        self,
        message: str,
        diagnostics: Optional[str] = None,
        context: Optional[str] = None,
    ):
        super().__init__(message)
        self.diagnostics = diagnostics
        self.context = context

    def __str__(self) -> str:
        parts = [str(self.args[0])]
        if self.diagnostics:
            parts.append(f"diagnostics: {self.diagnostics.strip()}")
        if self.context:
            parts.append(f"context: {_shorten(self.context)}")
        return "\n".join(parts)


class ExecutableNotFoundError(ExecutionError):
    """Raised when no candidate layout executable resolves on the search path."""
    pass


class EngineTimeoutError(DotEngineError, TimeoutError):
    """Raised when a bridge wait, evaluation or subprocess exceeds its deadline."""
    pass


class PoolExhaustionError(DotEngineError):
    """Raised when a fail-fast pool has no idle engine."""
    pass


# Failures that let the selector move on to the next fallback engine
RECOVERABLE_ERRORS = (ExecutionError, EngineTimeoutError, MissingDependencyError)


def _shorten(text: str, limit: int = 500) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
