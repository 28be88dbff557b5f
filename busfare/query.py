from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from busfare.errors import PaymentNotFoundError
from busfare.models import as_utc
from busfare.store import PaymentStore


class PaymentStatusView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    provider_status: Optional[str] = Field(default=None, alias="providerStatus")
    paid_at: Optional[datetime] = Field(default=None, alias="paidAt")


class StatusQueryService:
    """Read-only view of a payment for client polling."""

    def __init__(self, store: PaymentStore) -> None:
        self._store = store

    def get_status(self, payment_id: str) -> PaymentStatusView:
        payment = self._store.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)

        return PaymentStatusView(
            status=payment.status,
            provider_status=payment.provider_status,
            paid_at=as_utc(payment.paid_at),
        )
