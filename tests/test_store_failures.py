import logging
from contextlib import contextmanager

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from busfare.models import PENDING
from conftest import PAID_AT, make_body


@contextmanager
def failing_statements(engine, marker):
    """Make every SQL statement containing `marker` fail like a dropped database."""

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if marker in statement:
            raise OperationalError(statement, parameters, Exception("disk I/O error"))

    event.listen(engine, "before_cursor_execute", before_cursor_execute)
    try:
        yield
    finally:
        event.remove(engine, "before_cursor_execute", before_cursor_execute)


@contextmanager
def failing_commit(engine):
    """Make the database refuse to commit."""

    def commit(conn):
        raise OperationalError("COMMIT", None, Exception("disk I/O error"))

    event.listen(engine, "commit", commit)
    try:
        yield
    finally:
        event.remove(engine, "commit", commit)


def assert_nothing_committed(store):
    payment = store.get_payment("P1")
    assert payment.status == PENDING
    assert payment.paid_at is None
    assert payment.fee_cents is None
    passengers = store.get_passengers(["A", "B", "C"])
    assert {p.payment_status for p in passengers.values()} == {PENDING}
    assert {p.amount_paid_cents for p in passengers.values()} == {None}


@pytest.fixture
def engine(app):
    return app.state.engine


@pytest.fixture
def confirmation():
    return make_body("OPENPIX:CHARGE_COMPLETED", "c-1", paidAt=PAID_AT.isoformat(), fee=85)


def test_lookup_failure_is_retryable_and_logged(post_webhook, engine, store, pending_payment, confirmation, caplog):
    with caplog.at_level(logging.INFO, logger="busfare"):
        with failing_statements(engine, "WHERE payments.correlation_id"):
            response = post_webhook(confirmation)

    assert response.status_code == 500
    assert response.json() == {"detail": "Store unavailable, retry later", "retryable": True}
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert any("result=error" in r.getMessage() for r in errors)
    assert any(getattr(r, "correlation_id", None) == "c-1" for r in errors)
    assert_nothing_committed(store)


def test_payment_row_lock_failure_is_retryable(post_webhook, engine, store, pending_payment, confirmation):
    with failing_statements(engine, "WHERE payments.id"):
        response = post_webhook(confirmation)

    assert response.status_code == 500
    assert response.json()["retryable"] is True
    assert_nothing_committed(store)


def test_failure_while_committing_rolls_back_passengers(post_webhook, engine, store, pending_payment, confirmation):
    with failing_commit(engine):
        response = post_webhook(confirmation)

    assert response.status_code == 500
    assert response.json()["retryable"] is True
    assert_nothing_committed(store)


def test_redelivery_after_store_failure_applies(post_webhook, engine, store, pending_payment, confirmation):
    with failing_commit(engine):
        assert post_webhook(confirmation).status_code == 500

    response = post_webhook(confirmation)

    assert response.status_code == 200
    assert response.json()["result"] == "applied"
    assert store.get_payment("P1").fee_cents == 85


def test_webhook_gives_up_waiting_for_a_held_payment_lock(post_webhook, store, pending_payment, confirmation, monkeypatch):
    monkeypatch.setattr(store.locks, "timeout", 0.1)

    with store.locks.acquire("P1"):
        response = post_webhook(confirmation)

    assert response.status_code == 500
    assert response.json() == {"detail": "Store unavailable, retry later", "retryable": True}
    assert len(store.locks) == 0
    assert_nothing_committed(store)


def test_status_query_store_failure(client, engine, pending_payment):
    with failing_statements(engine, "WHERE payments.id"):
        response = client.get("/payment/status", params={"id": "P1"})

    assert response.status_code == 500
    assert response.json() == {"detail": "Store unavailable, retry later", "retryable": True}
