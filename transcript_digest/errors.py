"""
Error taxonomy
---------------
Every pipeline stage raises its own exception type so callers can report
precisely which stage (and, for the map stage, which chunk) failed.

    Loader      : SourceReadError, SourceFormatError
    Partitioner : ConfigurationError (pre-flight)
    Map         : AnalysisError (tagged with chunk_index)
    Reduce      : AggregationError
    Sink        : SinkWriteError
    Orchestrator: PipelineTimeoutError

The LLM* errors are raised by the analysis client adapters; only timeouts
and rate limits are considered safe to retry.
"""
from __future__ import annotations

from typing import Optional, Sequence


class DigestError(Exception):
    """Base class for every error raised by the digest pipeline."""

    stage: str = "pipeline"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# --- Loader -------------------------------------------------------------------

class SourceReadError(DigestError):
    """The transcript could not be read from storage."""

    stage = "loading"

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to read {path}: {reason}")
        self.path = path


class SourceFormatError(DigestError):
    """The transcript was read but does not have the expected shape."""

    stage = "loading"

    def __init__(self, path: str, errors: Sequence[str]) -> None:
        self.path = path
        self.errors = list(errors)
        detail = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            detail += f" (+{len(self.errors) - 5} more)"
        super().__init__(f"Invalid transcript {path}: {detail}")


# --- Configuration ------------------------------------------------------------

class ConfigurationError(DigestError):
    """A configuration value is missing or out of range."""

    stage = "configuration"

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Invalid configuration for {key}: {reason}")
        self.key = key
        self.reason = reason


# --- Map / Reduce -------------------------------------------------------------

class AnalysisError(DigestError):
    """The analysis capability failed for one chunk."""

    stage = "analyzing"

    def __init__(self, chunk_index: int, message: str) -> None:
        super().__init__(f"Analysis failed for chunk {chunk_index}: {message}")
        self.chunk_index = chunk_index


class AggregationError(DigestError):
    """The synthesis call over all partial analyses failed."""

    stage = "aggregating"

    def __init__(self, analysis_count: int, message: str) -> None:
        super().__init__(f"Failed to aggregate {analysis_count} analyses: {message}")
        self.analysis_count = analysis_count


# --- Sink / Orchestrator ------------------------------------------------------

class SinkWriteError(DigestError):
    """The final report could not be written."""

    stage = "persisting"

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to write {path}: {reason}")
        self.path = path


class PipelineTimeoutError(DigestError):
    """The overall run deadline expired."""

    def __init__(self, timeout_seconds: float, stage: str) -> None:
        super().__init__(f"Run exceeded {timeout_seconds:g}s deadline during {stage}")
        self.timeout_seconds = timeout_seconds
        self.stage = stage


# --- LLM client errors --------------------------------------------------------

class LLMError(DigestError):
    """Generic failure talking to the analysis model."""

    stage = "llm"


class LLMTimeoutError(LLMError):
    def __init__(self, operation: str, duration: Optional[float] = None) -> None:
        suffix = f" after {duration:g}s" if duration else ""
        super().__init__(f"LLM request timed out{suffix} (operation: {operation})")
        self.operation = operation
        self.duration = duration


class LLMRateLimitError(LLMError):
    def __init__(self, retry_after: Optional[float] = None) -> None:
        suffix = f". Retry after {retry_after:g}s" if retry_after else ""
        super().__init__(f"Rate limit exceeded{suffix}")
        self.retry_after = retry_after


class LLMAuthenticationError(LLMError):
    pass


def is_retryable(exc: BaseException) -> bool:
    """Only timeouts and rate limits are retried; everything else is final."""
    return isinstance(exc, (LLMTimeoutError, LLMRateLimitError))


def format_error(exc: BaseException, stage: Optional[str] = None) -> str:
    """Render an error as a single user-facing line."""
    where = stage or getattr(exc, "stage", None) or "pipeline"
    if isinstance(exc, DigestError):
        return f"[{where}] {exc.message}"
    return f"[{where}] {type(exc).__name__}: {exc}"
