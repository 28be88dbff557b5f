from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from busfare.database import Base

PENDING = "pending"
CONFIRMED = "confirmed"
FAILED = "failed"
EXPIRED = "expired"

TERMINAL_STATUSES = frozenset({CONFIRMED, FAILED, EXPIRED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on read; every stored timestamp is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    correlation_id = Column(String, unique=True, index=True, nullable=False)
    trip_id = Column(String, index=True, nullable=False)
    status = Column(String, nullable=False, default=PENDING)    # pending | confirmed | failed | expired
    provider_status = Column(String)                            # verbatim, e.g. COMPLETED
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    paid_at = Column(DateTime(timezone=True))
    fee_cents = Column(Integer)
    total_cents = Column(Integer)
    payer_name = Column(String)
    payer_passenger_id = Column(String)
    provider_payload = Column(JSON)

    passenger_links = relationship(
        "PaymentPassenger",
        order_by="PaymentPassenger.position",
        back_populates="payment",
        cascade="all, delete-orphan",
    )

    @property
    def passenger_ids(self) -> list[str]:
        return [link.passenger_id for link in self.passenger_links]


class PaymentPassenger(Base):
    __tablename__ = "payment_passengers"

    payment_id = Column(String, ForeignKey("payments.id"), primary_key=True)
    passenger_id = Column(String, ForeignKey("passengers.id"), primary_key=True)
    position = Column(Integer, nullable=False)
    amount_cents = Column(Integer)

    payment = relationship("Payment", back_populates="passenger_links")


class Passenger(Base):
    __tablename__ = "passengers"

    id = Column(String, primary_key=True)
    trip_id = Column(String, index=True, nullable=False)
    full_name = Column(String)
    payment_status = Column(String, nullable=False, default=PENDING)
    payment_id = Column(String, ForeignKey("payments.id"), index=True)   # current link
    paid_by = Column(String, ForeignKey("passengers.id"))
    amount_paid_cents = Column(Integer)
