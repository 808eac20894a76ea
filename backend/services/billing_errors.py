"""Error taxonomy for billing reconciliation and webhook delivery.

Reconciliation errors (NotFound, Conflict, InvalidTransition, ProcessorUnavailable)
propagate to callers. Delivery errors are raised and caught inside the delivery
engine; they surface only once an attempt reaches a terminal state.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for all billing engine errors."""


class NotConfigured(BillingError):
    """Processor credentials are absent. Fatal at startup, never per call."""


class NotFound(BillingError):
    """No mirror or canonical record exists where one is expected."""


class Conflict(BillingError):
    """Concurrent mutation of a subscriber mirror was detected."""


class InvalidTransition(BillingError):
    def __init__(self, from_status, to_status, message: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Illegal lifecycle transition {getattr(from_status, 'value', from_status)} -> "
            f"{getattr(to_status, 'value', to_status)}"
        )


class ProcessorUnavailable(BillingError):
    """The payment processor timed out or returned an API error."""


class DeliveryError(BillingError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientDeliveryFailure(DeliveryError):
    """Network failure, timeout, 5xx or 429. Retryable."""


class PermanentDeliveryRejection(DeliveryError):
    """4xx other than 429. Not retried; surfaced to the endpoint owner."""


class RetriesExhausted(DeliveryError):
    """Maximum attempts reached; surfaced for operator alerting."""

    def __init__(self, attempt_id: str, attempts: int, last_error: Optional[str] = None):
        self.attempt_id = attempt_id
        self.attempts = attempts
        super().__init__(
            f"Delivery {attempt_id} exhausted after {attempts} attempts: {last_error or 'unknown error'}"
        )
