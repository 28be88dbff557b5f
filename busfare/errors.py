"""Errors raised by the reconciliation engine.

Exception hierarchy:
    ReconciliationError (base)
    ├── AuthenticationError        401, bad or missing signature
    ├── MalformedEventError        400, body is not a recognizable event
    ├── UnknownCorrelationError    404, no payment for the correlation id
    ├── PaymentNotFoundError       404, status query for an unknown id
    ├── AlreadyTerminalError       200, duplicate or late event, no-op
    ├── FanOutConsistencyError     500, passenger update failed, rolled back
    └── StoreUnavailableError      500, database failure, nothing committed

Every error is translated into an HTTP response at the API boundary.
The two 500-class errors are retryable: the provider redelivers the webhook.
"""

from typing import Optional


class ReconciliationError(Exception):
    status_code = 500
    retryable = False
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)


class AuthenticationError(ReconciliationError):
    """Signature header is missing or does not match the raw body."""

    status_code = 401
    public_message = "Invalid signature"


class MalformedEventError(ReconciliationError):
    """Body cannot be parsed into an event type plus correlation id."""

    status_code = 400
    public_message = "Invalid payload"


class UnknownCorrelationError(ReconciliationError):
    """No payment carries the event's correlation id.

    Provider test deliveries hit this path, so it is logged, not alarmed on.
    """

    status_code = 404
    public_message = "Transaction not found"

    def __init__(self, correlation_id: str) -> None:
        self.correlation_id = correlation_id
        super().__init__(f"No payment for correlation id {correlation_id}")


class PaymentNotFoundError(ReconciliationError):
    status_code = 404
    public_message = "Transaction not found"

    def __init__(self, payment_id: str) -> None:
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} not found")


class AlreadyTerminalError(ReconciliationError):
    """The payment already left pending; the event is acknowledged and dropped."""

    status_code = 200
    public_message = "Already processed"

    def __init__(self, payment_id: str, status: str) -> None:
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"Payment {payment_id} is already {status}")


class FanOutConsistencyError(ReconciliationError):
    """A linked passenger could not be updated; the whole transition rolled back."""

    retryable = True
    public_message = "Passenger update failed, retry later"


class StoreUnavailableError(ReconciliationError):
    retryable = True
    public_message = "Store unavailable, retry later"
