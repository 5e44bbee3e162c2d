"""
Domain-specific exception hierarchy for the feedback job pipeline.

Exception hierarchy follows the retry semantics of the worker pool:
- Permanent failures (bad lane, bad payload, exhausted attempts) are never retried
- Transient failures (handler I/O, store outages, timeouts) are retried with backoff
- Producer-side errors surface synchronously to the calling request handler
- Worker-side errors stay inside the asynchronous pipeline (logs, audit records)
"""


# ============================================================================
# Base Exception Hierarchy
# ============================================================================


class FeedbackHubError(Exception):
    """
    Base exception for all feedback hub errors.

    Catching this catches every domain error while letting system errors
    (MemoryError, KeyboardInterrupt, CancelledError) propagate.
    """

    def __init__(self, message: str, details: dict = None):
        """
        Initialize exception with message and optional context.

        Args:
            message: Human-readable error description
            details: Additional context for debugging (job_id, lane, attempt, etc.)
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


# ============================================================================
# Operational Error Categories (transient vs permanent)
# ============================================================================


class TransientError(FeedbackHubError):
    """
    Transient error that may succeed on retry.

    RETRY STRATEGY: Backoff policy of the job (default exponential, 3 attempts).
    Examples: SMTP connection reset, broker unreachable, handler timeout.
    """
    pass


class PermanentError(FeedbackHubError):
    """
    Permanent error that will never succeed even with retries.

    ABORT: Fix the caller or the payload first.
    Examples: Unknown lane, payload fails schema, attempts exhausted.
    """
    pass


# ============================================================================
# Producer-side Errors (caller bugs, surfaced synchronously)
# ============================================================================


class InvalidLaneError(PermanentError):
    """
    Lane name is not one of the enumerated lanes.

    RECOVERY: Use a Lane member (send-email, notify-admin, analytics,
    send-report, notify-student).
    """
    pass


class ValidationError(PermanentError):
    """
    Job payload or enqueue options fail validation.

    Raised at enqueue time when validation is enabled, otherwise by the
    worker before the handler runs. Never retried.
    """

    def __init__(self, message: str, details: dict = None, errors: list = None):
        super().__init__(message, details)
        self.errors = errors or []


class StoreUnavailableError(TransientError):
    """
    Job store could not be reached.

    RECOVERY: The caller decides whether to drop the enqueue or retry it.
    """
    pass


# ============================================================================
# Worker-side Errors (asynchronous pipeline only)
# ============================================================================


class TransientHandlerError(TransientError):
    """
    I/O failure inside a handler (mail transport, file read, computation).

    Retried per backoff up to the job's max attempts.
    """
    pass


class HandlerTimeoutError(TransientHandlerError):
    """
    Handler exceeded its lane timeout. Counts toward the retry budget.
    """
    pass


class PermanentHandlerFailure(PermanentError):
    """
    Job failed for good: attempts exhausted or a permanent error was raised.

    Surfaced to operators through logs and a JOB_FAILED audit record.
    """
    pass


class MissingResourceError(PermanentError):
    """
    A referenced entity no longer exists (e.g. deleted before the job ran).

    Handlers raise this for a soft skip: the job completes with a skip result.
    """
    pass


class ClaimLostError(FeedbackHubError):
    """
    Worker no longer holds the claim on a job (lease expired and re-claimed).
    """
    pass


# ============================================================================
# Audit Errors
# ============================================================================


class AuditWriteError(FeedbackHubError):
    """
    Audit repository failed to append a record.

    Never propagated past the audit sink: audit writes are best effort.
    """
    pass
