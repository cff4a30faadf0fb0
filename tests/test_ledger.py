import threading

import pytest
from sqlalchemy.exc import OperationalError

from checkout.exceptions import StoreUnavailable
from checkout.ledger import IdempotencyLedger, make_key, webhook_key
from checkout.models import IdempotencyRecord


def test_keys():
    assert make_key("paypal", "5O190127TN364715T") == "paypal:5O190127TN364715T"
    assert webhook_key("stripe", "evt_1", "pi_1") == "stripe:event:evt_1"
    assert webhook_key("mercadopago", None, "123") == "mercadopago:123"


def test_claim_is_granted_once(TestingSessionLocal):
    ledger = IdempotencyLedger(TestingSessionLocal)

    assert ledger.is_claimed("fake:1") is False
    assert ledger.try_claim("fake:1") is True
    assert ledger.try_claim("fake:1") is False
    assert ledger.is_claimed("fake:1") is True

    db = TestingSessionLocal()
    assert db.query(IdempotencyRecord).count() == 1
    db.close()


def test_concurrent_claims_have_one_winner(TestingSessionLocal):
    ledger = IdempotencyLedger(TestingSessionLocal)
    results = []
    barrier = threading.Barrier(6, timeout=5)

    def claim():
        barrier.wait()
        results.append(ledger.try_claim("fake:race"))

    threads = [threading.Thread(target=claim) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == [False] * 5 + [True]


def test_store_failure_is_not_treated_as_claimed(mocker):
    session = mocker.Mock()
    session.commit.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))
    ledger = IdempotencyLedger(lambda: session)

    with pytest.raises(StoreUnavailable):
        ledger.try_claim("fake:1")
    session.rollback.assert_called_once()
    session.close.assert_called_once()


def test_claim_lookup_failure_raises_store_unavailable(mocker):
    session = mocker.Mock()
    session.get.side_effect = OperationalError("SELECT", {}, Exception("locked"))

    with pytest.raises(StoreUnavailable):
        IdempotencyLedger(lambda: session).is_claimed("fake:1")
