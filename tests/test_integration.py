from busfare.models import CONFIRMED, EXPIRED, PENDING
from conftest import PAID_AT, TRIP_ID, make_body


def test_full_group_payment_lifecycle(client, post_webhook, store, add_passengers):
    """
    1. A pending charge settling three passengers is recorded
    2. Client polls: pending
    3. Provider confirms (webhook) and redelivers the same event
    4. Client polls: confirmed, every passenger paid
    5. A late expiry for the same charge changes nothing
    """
    add_passengers("A", "B", "C")
    store.record_pending_payment(
        payment_id="P1",
        correlation_id="c-1",
        trip_id=TRIP_ID,
        passenger_ids=["A", "B", "C"],
        total_cents=15000,
        payer_passenger_id="A",
    )

    assert client.get("/payment/status", params={"id": "P1"}).json()["status"] == PENDING

    body = make_body("OPENPIX:CHARGE_COMPLETED", "c-1", status="COMPLETED", fee=85, paidAt=PAID_AT.isoformat())
    first = post_webhook(body)
    second = post_webhook(body)
    assert first.json()["result"] == "applied"
    assert second.json()["result"] == "duplicate"

    status = client.get("/payment/status", params={"id": "P1"}).json()
    assert status["status"] == CONFIRMED
    assert status["providerStatus"] == "COMPLETED"

    passengers = store.get_passengers(["A", "B", "C"])
    assert [passengers[pid].payment_status for pid in ("A", "B", "C")] == [CONFIRMED] * 3
    assert [passengers[pid].amount_paid_cents for pid in ("A", "B", "C")] == [5000, 5000, 5000]
    assert passengers["B"].paid_by == "A"

    late = post_webhook(make_body("OPENPIX:CHARGE_EXPIRED", "c-1"))
    assert late.status_code == 200
    assert late.json()["result"] == "skipped"
    payment = store.get_payment("P1")
    assert payment.status == CONFIRMED
    assert payment.fee_cents == 85


def test_expired_charge_then_new_charge_is_paid(client, post_webhook, store, add_passengers):
    """A charge expires, the group pays with a second charge."""
    add_passengers("A", "B")
    store.record_pending_payment("P1", "c-1", TRIP_ID, ["A", "B"])

    assert post_webhook(make_body("OPENPIX:CHARGE_EXPIRED", "c-1")).json()["status"] == EXPIRED
    passengers = store.get_passengers(["A", "B"])
    assert {p.payment_status for p in passengers.values()} == {EXPIRED}

    store.record_pending_payment("P2", "c-2", TRIP_ID, ["A", "B"])
    passengers = store.get_passengers(["A", "B"])
    assert {p.payment_status for p in passengers.values()} == {PENDING}
    assert {p.payment_id for p in passengers.values()} == {"P2"}

    assert post_webhook(make_body("OPENPIX:CHARGE_COMPLETED", "c-2")).json()["status"] == CONFIRMED
    passengers = store.get_passengers(["A", "B"])
    assert {p.payment_status for p in passengers.values()} == {CONFIRMED}

    assert client.get("/payment/status", params={"id": "P1"}).json()["status"] == EXPIRED
    assert client.get("/payment/status", params={"id": "P2"}).json()["status"] == CONFIRMED


def test_charges_for_different_payments_are_independent(post_webhook, store, add_passengers):
    add_passengers("A", "B")
    store.record_pending_payment("P1", "c-1", TRIP_ID, ["A"])
    store.record_pending_payment("P2", "c-2", TRIP_ID, ["B"])

    post_webhook(make_body("OPENPIX:CHARGE_COMPLETED", "c-1"))
    post_webhook(make_body("OPENPIX:CHARGE_FAILED", "c-2"))

    assert store.get_payment("P1").status == CONFIRMED
    assert store.get_payment("P2").status == "failed"
    passengers = store.get_passengers(["A", "B"])
    assert passengers["A"].payment_status == CONFIRMED
    assert passengers["B"].payment_status == "failed"
