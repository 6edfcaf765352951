"""Error taxonomy shared by ingestion, the case engine and the job layer.

Ingestion errors (``InvalidSignature``, ``MalformedPayload``) are surfaced to the
provider synchronously. Everything raised while processing a job is captured on
the Job/Event row: transient errors are retried with backoff, permanent errors
are dead-lettered straight away.
"""

import asyncio

import httpx
from pydantic import ValidationError


class RecoveryError(Exception):
    """Base class for all recovery engine errors."""

    retryable = False


class InvalidSignature(RecoveryError):
    """Webhook signature or timestamp failed verification."""


class MalformedPayload(RecoveryError):
    """Webhook body could not be parsed into a provider event."""


class TransientDownstreamError(RecoveryError):
    """Network, timeout or 5xx failure from a collaborator. Safe to retry."""

    retryable = True

    def __init__(self, message: str, downstream: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.downstream = downstream
        self.status_code = status_code


class CircuitOpenError(TransientDownstreamError):
    """Call rejected without reaching the downstream because its breaker is open."""

    def __init__(self, circuit_name: str, retry_in: float = 0.0):
        super().__init__(
            f"Circuit breaker '{circuit_name}' is open (retry in {retry_in:.1f}s)",
            downstream=circuit_name,
        )
        self.circuit_name = circuit_name
        self.retry_in = retry_in


class PermanentError(RecoveryError):
    """Validation or authorization failure. Retrying cannot help."""

    def __init__(self, message: str, downstream: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.downstream = downstream
        self.status_code = status_code


class ConflictError(RecoveryError):
    """Lost a unique-constraint race; the caller attaches to the winner's row."""


class NotFoundError(RecoveryError):
    """Referenced case, action or job does not exist."""


class InvalidStateError(RecoveryError):
    """Operation is not allowed in the entity's current state."""


def is_retryable(exc: BaseException) -> bool:
    """Return True if ``exc`` describes a downstream failure worth retrying."""
    if isinstance(exc, RecoveryError):
        return exc.retryable
    if isinstance(exc, asyncio.TimeoutError | TimeoutError):
        return True
    return isinstance(exc, httpx.TransportError)


def is_permanent(exc: BaseException) -> bool:
    """Return True if a job failing with ``exc`` must skip retries and dead-letter."""
    return isinstance(exc, PermanentError | MalformedPayload | InvalidSignature | ValidationError)


TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


def raise_for_downstream(response: httpx.Response, downstream: str) -> None:
    """Translate a collaborator's error response into the recovery error taxonomy.

    408/425/429 and 5xx are transient; any other 4xx is permanent.
    """
    status = response.status_code
    if status < 400:
        return
    message = f"{downstream} responded {status}: {response.text[:200]}"
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        raise TransientDownstreamError(message, downstream=downstream, status_code=status)
    raise PermanentError(message, downstream=downstream, status_code=status)
