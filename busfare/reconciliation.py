"""Payment state machine and passenger fan-out.

    pending -> confirmed          terminal success
    pending -> failed | expired   terminal non-success

Nothing leaves a terminal state. A transition and the passenger updates it
implies commit together or not at all.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from busfare.errors import AlreadyTerminalError
from busfare.events import ChargeConfirmed, ChargeEvent
from busfare.logging_utils import get_logger
from busfare.models import CONFIRMED, PENDING, TERMINAL_STATUSES, utcnow
from busfare.store import PaymentStore

logger = get_logger(__name__)

TRANSITIONS = {PENDING: TERMINAL_STATUSES}
TRANSITIONS.update({status: frozenset() for status in TERMINAL_STATUSES})


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class ReconciliationOutcome:
    payment_id: str
    status: str
    updated_passenger_ids: tuple[str, ...]
    skipped_passenger_ids: tuple[str, ...]


class Reconciler:
    def __init__(self, store: PaymentStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def apply(self, payment_id: str, event: ChargeEvent) -> ReconciliationOutcome:
        """Apply a charge event to a payment and its passengers atomically.

        Raises:
            AlreadyTerminalError: the payment already left pending; nothing changed.
            FanOutConsistencyError: a passenger update failed; nothing committed.
            StoreUnavailableError: the database failed; nothing committed.
        """
        target = event.kind

        with self._store.transaction(payment_id) as (session, payment):
            if not can_transition(payment.status, target):
                raise AlreadyTerminalError(payment.id, payment.status)

            payment.status = target
            payment.provider_status = event.provider_status
            payment.provider_payload = event.payload
            if isinstance(event, ChargeConfirmed):
                payment.paid_at = event.paid_at or self._clock()
                if event.fee_cents is not None:
                    payment.fee_cents = event.fee_cents

            mirrored = self._store.mirror_passengers(session, payment, target)

        logger.info(
            "Payment %s moved to %s; %d passenger(s) updated, %d skipped",
            payment_id,
            target,
            len(mirrored.updated),
            len(mirrored.skipped),
        )
        return ReconciliationOutcome(
            payment_id=payment_id,
            status=target,
            updated_passenger_ids=tuple(mirrored.updated),
            skipped_passenger_ids=tuple(mirrored.skipped),
        )

    def resync_confirmed(self) -> int:
        """Re-apply confirmed payments to passengers whose mirror drifted.

        Returns the number of passengers repaired.
        """
        repaired = 0
        for payment_id in self._store.confirmed_payment_ids():
            with self._store.transaction(payment_id) as (session, payment):
                if payment.status != CONFIRMED:
                    continue
                drifted = self._store.drifted_passenger_ids(session, payment)
                if not drifted:
                    continue
                mirrored = self._store.mirror_passengers(session, payment, CONFIRMED, drifted)

            if mirrored.updated:
                logger.warning(
                    "Resynced %d passenger(s) of confirmed payment %s",
                    len(mirrored.updated),
                    payment_id,
                )
            repaired += len(mirrored.updated)
        return repaired
