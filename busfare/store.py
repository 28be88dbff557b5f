"""Persistence for payments, passengers and the links between them.

A PaymentStore is built once per application from a session factory and
handed to whoever needs it; nothing here is a module-level singleton.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator, Optional, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from busfare.errors import FanOutConsistencyError, PaymentNotFoundError, StoreUnavailableError
from busfare.logging_utils import get_logger
from busfare.models import CONFIRMED, PENDING, Passenger, Payment, PaymentPassenger

logger = get_logger(__name__)


def split_amount(total_cents: int, parts: int) -> list[int]:
    """Split a total into `parts` shares that sum exactly to the total.

    The first `total % parts` shares carry the extra cent.
    """
    base, remainder = divmod(total_cents, parts)
    return [base + 1 if i < remainder else base for i in range(parts)]


@dataclass
class MirrorResult:
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = Lock()
        self.users = 0


class PaymentLocks:
    """Per-payment locks serializing transitions inside one process.

    An entry lives only while some thread holds or waits for it.
    """

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self._entries: dict[str, _LockEntry] = {}
        self._guard = Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def acquire(self, payment_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(payment_id)
            if entry is None:
                entry = self._entries[payment_id] = _LockEntry()
            entry.users += 1

        try:
            if not entry.lock.acquire(timeout=self.timeout):
                raise StoreUnavailableError(f"Timed out waiting for payment {payment_id}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[payment_id]


class PaymentStore:
    def __init__(self, session_factory: sessionmaker, lock_timeout: float = 10.0) -> None:
        self._session_factory = session_factory
        self.locks = PaymentLocks(lock_timeout)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Short-lived session for reads and setup writes."""
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailableError(str(e)) from e
        finally:
            session.close()

    @contextmanager
    def transaction(self, payment_id: str) -> Iterator[tuple[Session, Payment]]:
        """Run a read-modify-write on one payment as a single unit of work.

        Concurrent callers for the same payment id wait for each other; the
        payment row is also locked with SELECT ... FOR UPDATE on databases
        that support it. Any exception rolls back everything written inside
        the block.
        """
        with self.locks.acquire(payment_id):
            session = self._session_factory()
            try:
                payment = session.execute(
                    select(Payment)
                    .where(Payment.id == payment_id)
                    .options(selectinload(Payment.passenger_links))
                    .with_for_update()
                ).scalar_one_or_none()
                if payment is None:
                    raise PaymentNotFoundError(payment_id)

                yield session, payment
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StoreUnavailableError(str(e)) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self.session() as session:
            return session.execute(
                select(Payment)
                .where(Payment.id == payment_id)
                .options(selectinload(Payment.passenger_links))
            ).scalar_one_or_none()

    def find_by_correlation(self, correlation_id: str) -> Optional[Payment]:
        with self.session() as session:
            return session.execute(
                select(Payment)
                .where(Payment.correlation_id == correlation_id)
                .options(selectinload(Payment.passenger_links))
            ).scalar_one_or_none()

    def get_passengers(self, passenger_ids: Sequence[str]) -> dict[str, Passenger]:
        with self.session() as session:
            rows = session.execute(select(Passenger).where(Passenger.id.in_(passenger_ids))).scalars()
            return {p.id: p for p in rows}

    def confirmed_payment_ids(self) -> list[str]:
        with self.session() as session:
            return list(
                session.execute(
                    select(Payment.id).where(Payment.status == CONFIRMED).order_by(Payment.created_at)
                ).scalars()
            )

    def record_pending_payment(
        self,
        payment_id: str,
        correlation_id: str,
        trip_id: str,
        passenger_ids: Sequence[str],
        total_cents: Optional[int] = None,
        payer_name: Optional[str] = None,
        payer_passenger_id: Optional[str] = None,
    ) -> Payment:
        """Persist a freshly created charge and link it to its passengers.

        The provider-side charge is created elsewhere; this records the local
        pending payment, its ordered passenger links, and points every
        passenger not yet confirmed at the new payment.
        """
        if not passenger_ids:
            raise ValueError("A payment must settle at least one passenger")
        if len(set(passenger_ids)) != len(passenger_ids):
            raise ValueError("Passenger ids must be unique")

        shares = (
            split_amount(total_cents, len(passenger_ids))
            if total_cents is not None
            else [None] * len(passenger_ids)
        )

        with self.session() as session:
            passengers = {
                p.id: p
                for p in session.execute(
                    select(Passenger).where(Passenger.id.in_(passenger_ids))
                ).scalars()
            }
            for pid in passenger_ids:
                passenger = passengers.get(pid)
                if passenger is None or passenger.trip_id != trip_id:
                    raise ValueError(f"Passenger {pid} is not on trip {trip_id}")
            if payer_passenger_id is not None:
                payer = session.get(Passenger, payer_passenger_id)
                if payer is None or payer.trip_id != trip_id:
                    raise ValueError(f"Payer {payer_passenger_id} is not on trip {trip_id}")

            payment = Payment(
                id=payment_id,
                correlation_id=correlation_id,
                trip_id=trip_id,
                status=PENDING,
                total_cents=total_cents,
                payer_name=payer_name,
                payer_passenger_id=payer_passenger_id,
            )
            payment.passenger_links = [
                PaymentPassenger(passenger_id=pid, position=i, amount_cents=share)
                for i, (pid, share) in enumerate(zip(passenger_ids, shares))
            ]
            session.add(payment)
            try:
                session.flush()
            except IntegrityError as e:
                session.rollback()
                raise ValueError(f"Payment {payment_id} or correlation id {correlation_id} already exists") from e

            for passenger in passengers.values():
                if passenger.payment_status != CONFIRMED:
                    passenger.payment_id = payment_id
                    passenger.payment_status = PENDING

            session.commit()
            logger.info(
                "Recorded pending payment %s for %d passenger(s) on trip %s",
                payment_id,
                len(passenger_ids),
                trip_id,
            )
            return payment

    def drifted_passenger_ids(self, session: Session, payment: Payment) -> list[str]:
        """Linked passengers of a confirmed payment whose mirror is not confirmed."""
        drifted = set(
            session.execute(
                select(Passenger.id).where(
                    Passenger.id.in_(payment.passenger_ids),
                    Passenger.trip_id == payment.trip_id,
                    Passenger.payment_status != CONFIRMED,
                )
            ).scalars()
        )
        return [pid for pid in payment.passenger_ids if pid in drifted]

    def mirror_passengers(
        self,
        session: Session,
        payment: Payment,
        status: str,
        passenger_ids: Optional[Sequence[str]] = None,
    ) -> MirrorResult:
        """Copy the payment's status onto its linked passengers.

        Each update is conditional on the passenger's current state:
        confirming never steals a passenger already confirmed by another
        payment, and failing or expiring only touches passengers still
        pointing at this payment that are not confirmed.

        Raises:
            FanOutConsistencyError: a passenger could not be confirmed, or
                the database rejected an update. The caller's transaction
                must roll back.
        """
        if not payment.passenger_links:
            raise FanOutConsistencyError(f"Payment {payment.id} has no linked passengers")

        amounts = {link.passenger_id: link.amount_cents for link in payment.passenger_links}
        result = MirrorResult()

        for pid in passenger_ids if passenger_ids is not None else payment.passenger_ids:
            try:
                applied = self._mirror_passenger(session, payment, pid, status, amounts.get(pid))
            except SQLAlchemyError as e:
                raise FanOutConsistencyError(
                    f"Updating passenger {pid} for payment {payment.id} failed: {e}"
                ) from e

            if applied:
                result.updated.append(pid)
                continue

            if status == CONFIRMED:
                current = session.get(Passenger, pid)
                if current is None or current.trip_id != payment.trip_id:
                    raise FanOutConsistencyError(
                        f"Passenger {pid} of payment {payment.id} is not on trip {payment.trip_id}"
                    )
                logger.warning(
                    "Passenger %s already confirmed by payment %s; payment %s also settled it",
                    pid,
                    current.payment_id,
                    payment.id,
                )
            result.skipped.append(pid)

        return result

    def _mirror_passenger(
        self,
        session: Session,
        payment: Payment,
        passenger_id: str,
        status: str,
        amount_cents: Optional[int],
    ) -> bool:
        conditions = [Passenger.id == passenger_id, Passenger.trip_id == payment.trip_id]
        values: dict = {"payment_status": status, "payment_id": payment.id}

        if status == CONFIRMED:
            conditions.append(
                or_(
                    Passenger.payment_status != CONFIRMED,
                    Passenger.payment_id.is_(None),
                    Passenger.payment_id == payment.id,
                )
            )
            values["amount_paid_cents"] = amount_cents
            if payment.payer_passenger_id and payment.payer_passenger_id != passenger_id:
                values["paid_by"] = payment.payer_passenger_id
        else:
            conditions.append(Passenger.payment_status != CONFIRMED)
            conditions.append(or_(Passenger.payment_id.is_(None), Passenger.payment_id == payment.id))

        stmt = (
            update(Passenger)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount == 1

