"""Custom exception hierarchy for NEPSE-Ingest.

Errors are grouped by how the pipeline reacts to them:

    - Startup errors (configuration, logging, browser launch) stop the process.
    - Transient extraction errors are retried by the strategy chain; when the
      attempts run out they collapse into a terminal ``ExtractionFailed``.
    - Data-validity errors are rejected at the synchronizer boundary and are
      never retried.
    - Cache errors degrade gracefully; store errors fail the current job run.

Every exception carries a context dictionary that is rendered into the
message and forwarded to the structured logs.
"""

from datetime import UTC, datetime
from typing import Any


class NepseIngestError(Exception):
    """Base exception for all NEPSE-Ingest errors.

    Attributes:
        message: Human-readable error description.
        context: Optional dictionary with additional debugging information.
        timestamp: UTC timestamp when the exception was raised.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now(UTC)
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format exception message with context for logging."""
        base = f"[{self.timestamp.isoformat()}] {self.message}"
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base} | Context: {context_str}"
        return base


class ConfigValidationError(NepseIngestError):
    """Raised when a configuration value is unusable at startup."""

    def __init__(self, field: str, value: Any, reason: str) -> None:
        super().__init__(
            message=f"Configuration validation failed for '{field}': {reason}",
            context={"field": field, "value": value, "reason": reason},
        )


class LoggingInitializationError(NepseIngestError):
    """Raised when the logging system fails to initialize."""

    def __init__(self, log_dir: str, reason: str) -> None:
        super().__init__(
            message=f"Failed to initialize logging at '{log_dir}': {reason}",
            context={"log_dir": log_dir, "reason": reason},
        )


class LaunchError(NepseIngestError):
    """Raised when the headless browser cannot be launched.

    Typical causes are a missing executable or a sandbox failure. The
    session manager never retries a launch on its own; the scheduler's
    cadence decides when the next attempt happens.
    """

    def __init__(self, reason: str, executable_path: str | None = None) -> None:
        super().__init__(
            message=f"Failed to launch browser: {reason}",
            context={"reason": reason, "executable_path": executable_path or "bundled"},
        )
        self.reason = reason


class NavigationError(NepseIngestError):
    """Raised when page navigation fails or returns an error status."""

    def __init__(self, url: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(
            message=f"Navigation to '{url}' failed: {reason}",
            context={"url": url, "reason": reason, "status_code": status_code},
        )
        self.url = url
        self.status_code = status_code


class ExtractionError(NepseIngestError):
    """Raised when one extraction strategy cannot produce a result.

    This is a transient error: the strategy chain moves on to the next
    strategy and, after the last one, to the next attempt.
    """

    def __init__(self, strategy: str, url: str, reason: str) -> None:
        super().__init__(
            message=f"Strategy '{strategy}' failed: {reason}",
            context={"strategy": strategy, "url": url, "reason": reason},
        )
        self.strategy = strategy
        self.url = url
        self.reason = reason


class StrategyTimeout(ExtractionError):
    """Raised when a strategy exceeds its own timeout."""

    def __init__(self, strategy: str, url: str, timeout_sec: float) -> None:
        super().__init__(
            strategy=strategy,
            url=url,
            reason=f"Timed out after {timeout_sec:g}s",
        )
        self.timeout_sec = timeout_sec


class EmptyResultError(ExtractionError):
    """Raised when a strategy completes but yields no usable rows."""

    def __init__(self, strategy: str, url: str, detail: str = "No records extracted") -> None:
        super().__init__(strategy=strategy, url=url, reason=detail)


class SelectorNotFoundError(ExtractionError):
    """Raised when a required element never appears on the page."""

    def __init__(self, strategy: str, selector: str, url: str) -> None:
        super().__init__(
            strategy=strategy,
            url=url,
            reason=f"Selector '{selector}' matched zero elements - possible layout shift",
        )
        self.selector = selector


class LayoutShiftError(NepseIngestError):
    """Raised when the quality watchdog rejects a batch of extracted rows.

    Attributes:
        failure_ratio: The observed row failure ratio.
        threshold: The configured threshold that was exceeded.
        batch_size: Number of rows in the evaluated batch.
    """

    def __init__(self, failure_ratio: float, threshold: float, batch_size: int, url: str) -> None:
        super().__init__(
            message=(
                f"Layout shift detected. "
                f"Failure ratio {failure_ratio:.1%} exceeds threshold {threshold:.1%}"
            ),
            context={
                "failure_ratio": failure_ratio,
                "threshold": threshold,
                "batch_size": batch_size,
                "url": url,
            },
        )
        self.failure_ratio = failure_ratio
        self.threshold = threshold
        self.batch_size = batch_size


class ExtractionFailed(NepseIngestError):
    """Terminal failure of an extraction operation after all attempts.

    Attributes:
        product: Data product that was being extracted (e.g. ``today_prices``).
        attempts: Number of attempts made.
        last_error: The error raised by the last strategy tried.
    """

    def __init__(self, product: str, attempts: int, last_error: Exception | None) -> None:
        reason = getattr(last_error, "message", None) or str(last_error or "unknown error")
        super().__init__(
            message=f"Extraction of '{product}' failed after {attempts} attempt(s): {reason}",
            context={
                "product": product,
                "attempts": attempts,
                "last_error": type(last_error).__name__ if last_error else None,
            },
        )
        self.product = product
        self.attempts = attempts
        self.last_error = last_error


class DataValidityError(NepseIngestError):
    """Raised when a payload is implausible (e.g. a zero index or close).

    Rejected payloads leave the cache and the store untouched and are not
    retried; the message surfaces in the job status for an operator.
    """

    def __init__(self, entity: str, field: str, value: Any, reason: str) -> None:
        super().__init__(
            message=f"Rejected {entity}: {field}={value!r} ({reason})",
            context={"entity": entity, "field": field, "value": value, "reason": reason},
        )
        self.entity = entity
        self.field = field
        self.value = value


class CacheError(NepseIngestError):
    """Raised when the fast cache is unreachable or rejects a command."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            message=f"Cache operation '{operation}' failed: {reason}",
            context={"operation": operation, "reason": reason},
        )
        self.operation = operation


class StoreError(NepseIngestError):
    """Raised when the durable store rejects a read or write."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            message=f"Store operation '{operation}' failed: {reason}",
            context={"operation": operation, "reason": reason},
        )
        self.operation = operation


class JobNotFoundError(NepseIngestError):
    """Raised when a job name is not present in the scheduler registry."""

    def __init__(self, job_name: str) -> None:
        super().__init__(
            message=f"Unknown job '{job_name}'",
            context={"job_name": job_name},
        )
        self.job_name = job_name


class ExportError(NepseIngestError):
    """Raised when extracted records cannot be written to an output file."""

    def __init__(self, output_path: str, reason: str) -> None:
        super().__init__(
            message=f"Failed to export records to '{output_path}': {reason}",
            context={"output_path": output_path, "reason": reason},
        )
