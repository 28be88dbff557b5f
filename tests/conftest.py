import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from busfare.config import Settings
from busfare.ingestion import compute_signature
from busfare.main import create_app
from busfare.models import Passenger

WEBHOOK_SECRET = "whsec_test"
JWT_SECRET = "jwt_test"
TRIP_ID = "trip-1"
PAID_AT = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


def make_body(event: str, correlation_id=None, **charge) -> bytes:
    payload = {"event": event}
    if correlation_id is not None:
        charge["correlationID"] = correlation_id
    if charge:
        payload["charge"] = charge
    return json.dumps(payload).encode()


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(body, secret)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        webhook_secret=WEBHOOK_SECRET,
        jwt_secret=JWT_SECRET,
        lock_timeout_seconds=5.0,
    )


@pytest.fixture
def app(settings):
    fastapi_app = create_app(settings)
    yield fastapi_app
    fastapi_app.state.engine.dispose()


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def store(app):
    return app.state.store


@pytest.fixture
def reconciler(app):
    return app.state.reconciler


@pytest.fixture
def ingestor(app):
    return app.state.ingestor


@pytest.fixture
def add_passengers(store):
    def _add(*passenger_ids, trip_id=TRIP_ID):
        with store.session() as session:
            session.add_all(
                [Passenger(id=pid, trip_id=trip_id, full_name=f"Passenger {pid}") for pid in passenger_ids]
            )
            session.commit()

    return _add


@pytest.fixture
def pending_payment(store, add_passengers):
    """P1 / c-1 settling passengers A, B and C."""
    add_passengers("A", "B", "C")
    return store.record_pending_payment(
        payment_id="P1",
        correlation_id="c-1",
        trip_id=TRIP_ID,
        passenger_ids=["A", "B", "C"],
        total_cents=30001,
        payer_name="Alice",
        payer_passenger_id="A",
    )


@pytest.fixture
def post_webhook(client):
    def _post(body: bytes, signature="__sign__"):
        headers = {"content-type": "application/json"}
        if signature == "__sign__":
            signature = sign(body)
        if signature is not None:
            headers["x-openpix-signature"] = signature
        return client.post("/payment/webhook", content=body, headers=headers)

    return _post
