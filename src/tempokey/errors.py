"""
Error taxonomy for TempoKey.

Estimators never raise for algorithmic failure; silent audio and backend
failures degrade to low-confidence results. Only orchestration-level
conditions reach the caller: resource exhaustion, cancellation and timeout.
"""

from typing import Any, Dict, Optional


class AnalysisError(Exception):
    """Base class for errors surfaced by the analysis orchestrator."""

    kind = "analysis"
    default_suggestion: Optional[str] = None
    retryable = False

    def __init__(
        self,
        message: str,
        stage: str = "unknown",
        elapsed_ms: float = 0.0,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.elapsed_ms = elapsed_ms
        self.suggestion = suggestion or self.default_suggestion

    @property
    def can_retry(self) -> bool:
        return self.retryable

    def __str__(self) -> str:
        return f"{self.message} (stage={self.stage}, elapsed={self.elapsed_ms:.0f}ms)"


class ResourceExhaustedError(AnalysisError):
    """Not enough memory headroom to analyze this buffer."""

    kind = "resource_exhausted"
    default_suggestion = "Close other applications or analyze a shorter excerpt."


class AnalysisCancelledError(AnalysisError):
    """The caller cancelled the analysis."""

    kind = "cancelled"
    default_suggestion = "Start the analysis again when ready."
    retryable = True


class AnalysisTimeoutError(AnalysisError):
    """The analysis did not finish within its time budget."""

    kind = "timeout"
    default_suggestion = "Try a shorter clip or increase the timeout."
    retryable = True


class BackendUnavailableError(Exception):
    """The primary DSP library could not be loaded."""
    pass


class BackendError(Exception):
    """A primary DSP call failed; callers recover via the fallback path."""
    pass


def describe_error(exc: BaseException) -> Dict[str, Any]:
    """
    Build a user-facing summary of an error.

    Args:
        exc: Any exception raised by an analysis call.

    Returns:
        Dict with type, message, stage, elapsed_ms, can_retry and suggestion.
    """
    if isinstance(exc, AnalysisError):
        return {
            "type": exc.kind,
            "message": exc.message,
            "stage": exc.stage,
            "elapsed_ms": round(exc.elapsed_ms, 1),
            "can_retry": exc.can_retry,
            "suggestion": exc.suggestion,
        }

    return {
        "type": "unknown",
        "message": str(exc) or exc.__class__.__name__,
        "stage": "unknown",
        "elapsed_ms": 0.0,
        "can_retry": True,
        "suggestion": "Try again; if the problem persists, check the input file.",
    }
