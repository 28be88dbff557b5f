"""Provider webhook payloads parsed into a closed set of internal events."""

import json
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from busfare.errors import MalformedEventError
from busfare.models import CONFIRMED, EXPIRED, FAILED, as_utc

PING_EVENT_TYPES = frozenset({"teste_webhook", "test_ping"})

# Keyed on the part after the provider prefix: OPENPIX:CHARGE_COMPLETED -> CHARGE_COMPLETED
CHARGE_EVENT_STATUSES = {
    "CHARGE_COMPLETED": (CONFIRMED, "COMPLETED"),
    "CHARGE_FAILED": (FAILED, "FAILED"),
    "CHARGE_EXPIRED": (EXPIRED, "EXPIRED"),
}


class RawCharge(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    correlation_id: Optional[str] = Field(default=None, alias="correlationID")
    status: Optional[str] = None
    fee: Optional[Decimal] = Field(default=None, ge=0, le=10**12)    # cents; fractions rounded half-up
    paid_at: Optional[datetime] = Field(default=None, alias="paidAt")


class RawWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    evento: Optional[str] = None
    charge: Optional[RawCharge] = None


class _ChargeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: str
    correlation_id: str
    provider_status: str
    payload: dict[str, Any]


class ChargeConfirmed(_ChargeEvent):
    kind: Literal["confirmed"] = CONFIRMED
    paid_at: Optional[datetime] = None
    fee_cents: Optional[int] = None


class ChargeFailed(_ChargeEvent):
    kind: Literal["failed"] = FAILED


class ChargeExpired(_ChargeEvent):
    kind: Literal["expired"] = EXPIRED


class WebhookPing(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["ping"] = "ping"
    event_type: str
    correlation_id: Optional[str] = None


class UnhandledEvent(BaseModel):
    """Recognized shape, unknown type. Acknowledged and not acted upon."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["unhandled"] = "unhandled"
    event_type: str
    correlation_id: str


ChargeEvent = Union[ChargeConfirmed, ChargeFailed, ChargeExpired]
ProviderEvent = Union[ChargeConfirmed, ChargeFailed, ChargeExpired, WebhookPing, UnhandledEvent]


def _whole_cents(value: Optional[Decimal]) -> Optional[int]:
    if value is None:
        return None
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_event(body: bytes) -> ProviderEvent:
    """Turn a verified raw webhook body into an internal event.

    Raises:
        MalformedEventError: body is not JSON, has no event type, or a
            non-ping event carries no charge correlation id.
    """
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise MalformedEventError("Body is not valid JSON")

    if not isinstance(payload, dict):
        raise MalformedEventError("Body must be a JSON object")

    try:
        raw = RawWebhook.model_validate(payload)
    except ValidationError as e:
        raise MalformedEventError(f"Unrecognized event shape: {e.error_count()} error(s)")

    event_type = raw.event or raw.evento
    if not event_type:
        raise MalformedEventError("Missing event type")

    correlation_id = raw.charge.correlation_id if raw.charge else None

    if event_type.lower() in PING_EVENT_TYPES:
        return WebhookPing(event_type=event_type, correlation_id=correlation_id)

    if not correlation_id:
        raise MalformedEventError("Missing charge correlation id")

    mapped = CHARGE_EVENT_STATUSES.get(event_type.rsplit(":", 1)[-1].upper())
    if mapped is None:
        return UnhandledEvent(event_type=event_type, correlation_id=correlation_id)

    status, default_provider_status = mapped
    common = dict(
        event_type=event_type,
        correlation_id=correlation_id,
        provider_status=raw.charge.status or default_provider_status,
        payload=payload,
    )
    if status == CONFIRMED:
        return ChargeConfirmed(
            paid_at=as_utc(raw.charge.paid_at),
            fee_cents=_whole_cents(raw.charge.fee),
            **common,
        )
    if status == FAILED:
        return ChargeFailed(**common)
    return ChargeExpired(**common)
