"""Inbound provider webhooks: verification, parsing and dispatch.

Kept apart from the HTTP layer so it can be driven directly in tests.
"""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from busfare.errors import (
    AlreadyTerminalError,
    AuthenticationError,
    FanOutConsistencyError,
    MalformedEventError,
    StoreUnavailableError,
    UnknownCorrelationError,
)
from busfare.events import UnhandledEvent, WebhookPing, parse_event
from busfare.logging_utils import correlation_scope, get_logger, log_webhook_event
from busfare.reconciliation import Reconciler
from busfare.store import PaymentStore

logger = get_logger(__name__)


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> None:
    """HMAC-SHA256 of the raw body, hex encoded.

    Raises:
        AuthenticationError: header missing or digest mismatch.
    """
    if not signature:
        raise AuthenticationError("Missing signature header")
    expected = compute_signature(body, secret).encode("ascii")
    if not hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected):
        raise AuthenticationError("Signature mismatch")


@dataclass(frozen=True)
class IngestionResult:
    result: str     # applied | duplicate | skipped | ping | ignored
    event_type: str
    payment_id: Optional[str] = None
    status: Optional[str] = None


class WebhookIngestor:
    def __init__(
        self,
        store: PaymentStore,
        reconciler: Reconciler,
        secret: str,
        signature_header: str,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._secret = secret
        self.signature_header = signature_header

    def handle(self, body: bytes, signature: Optional[str]) -> IngestionResult:
        """Process one delivery.

        Returns normally for applied events, duplicates, late events on
        settled payments, pings and unhandled event types. Everything else
        raises a ReconciliationError for the HTTP layer to translate.
        """
        try:
            verify_signature(body, signature, self._secret)
            event = parse_event(body)
        except (AuthenticationError, MalformedEventError) as e:
            logger.warning("Rejected webhook: %s", e)
            raise

        with correlation_scope(event.correlation_id):
            if isinstance(event, WebhookPing):
                log_webhook_event(logger, event.event_type, result="ping")
                return IngestionResult(result="ping", event_type=event.event_type)

            if isinstance(event, UnhandledEvent):
                log_webhook_event(logger, event.event_type, result="ignored", reason="unhandled event type")
                return IngestionResult(result="ignored", event_type=event.event_type)

            try:
                payment = self._store.find_by_correlation(event.correlation_id)
            except StoreUnavailableError as e:
                log_webhook_event(logger, event.event_type, result="error", error=str(e))
                raise

            if payment is None:
                log_webhook_event(logger, event.event_type, result="unknown")
                raise UnknownCorrelationError(event.correlation_id)

            try:
                outcome = self._reconciler.apply(payment.id, event)
            except AlreadyTerminalError as e:
                result = "duplicate" if e.status == event.kind else "skipped"
                log_webhook_event(
                    logger,
                    event.event_type,
                    payment_id=payment.id,
                    result=result,
                    status=e.status,
                )
                return IngestionResult(
                    result=result,
                    event_type=event.event_type,
                    payment_id=payment.id,
                    status=e.status,
                )
            except (FanOutConsistencyError, StoreUnavailableError) as e:
                log_webhook_event(
                    logger,
                    event.event_type,
                    payment_id=payment.id,
                    result="error",
                    error=str(e),
                )
                raise

            log_webhook_event(
                logger,
                event.event_type,
                payment_id=payment.id,
                result="applied",
                status=outcome.status,
                passengers=len(outcome.updated_passenger_ids),
            )
            return IngestionResult(
                result="applied",
                event_type=event.event_type,
                payment_id=payment.id,
                status=outcome.status,
            )
