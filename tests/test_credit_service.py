from __future__ import annotations

import threading

import pytest

from api import credit_service
from api.errors import ConcurrencyConflict, InsufficientCredits, RefundRejected
from db import ledger_db


def _txns(tenant_id, kind=None):
    return credit_service.get_ledger(tenant_id, kind=kind)["entries"]


def test_ensure_balance_is_idempotent() -> None:
    credit_service.ensure_balance("t1")
    credit_service.ensure_balance("t1")
    assert credit_service.get_balance("t1") == {"tenant_id": "t1", "included": 0, "purchased": 0, "total": 0}


def test_get_balance_for_unknown_tenant_is_zero() -> None:
    assert credit_service.get_balance("nobody")["total"] == 0


def test_debit_replay_scenario(fund) -> None:
    fund("t1", included=5)

    assert credit_service.debit("t1", 5, feature_type="rank_tracking", idempotency_key="A")["total"] == 0
    again = credit_service.debit("t1", 5, feature_type="rank_tracking", idempotency_key="A")
    assert (again["included"], again["purchased"]) == (0, 0)

    with pytest.raises(InsufficientCredits) as exc:
        credit_service.debit("t1", 1, feature_type="rank_tracking", idempotency_key="B")
    assert (exc.value.required, exc.value.available) == (1, 0)

    assert len(_txns("t1", kind="debit")) == 1


def test_debit_replayed_many_times_applies_once(fund) -> None:
    fund("t1", purchased=50)
    for _ in range(5):
        credit_service.debit("t1", 7, feature_type="geo_grid", idempotency_key="same")
    assert credit_service.get_balance("t1")["total"] == 43
    assert len(_txns("t1", kind="debit")) == 1


def test_insufficient_debit_writes_nothing(fund) -> None:
    fund("t1", included=3)
    with pytest.raises(InsufficientCredits):
        credit_service.debit("t1", 4, feature_type="llm_visibility", idempotency_key="k")
    assert credit_service.get_balance("t1")["total"] == 3
    assert _txns("t1", kind="debit") == []


def test_debit_takes_purchased_before_included(fund) -> None:
    fund("t1", included=10, purchased=4)
    bal = credit_service.debit("t1", 6, feature_type="rank_tracking", idempotency_key="k")
    assert (bal["included"], bal["purchased"]) == (8, 0)

    entry = _txns("t1", kind="debit")[0]
    assert entry["amount"] == -6
    assert (entry["included_delta"], entry["purchased_delta"]) == (-2, -4)
    assert entry["balance_after"] == 8


def test_refund_restores_purchased_not_included(fund) -> None:
    fund("t1", included=10, purchased=5)
    credit_service.debit("t1", 10, feature_type="rank_tracking", idempotency_key="C")
    assert credit_service.get_balance("t1") == {"tenant_id": "t1", "included": 5, "purchased": 0, "total": 5}

    credit_service.refund_feature("t1", 10, "C", feature_type="rank_tracking")
    assert credit_service.get_balance("t1") == {"tenant_id": "t1", "included": 5, "purchased": 10, "total": 15}

    credit_service.refund_feature("t1", 10, "C", feature_type="rank_tracking")
    assert credit_service.get_balance("t1")["total"] == 15
    refunds = _txns("t1", kind="refund")
    assert len(refunds) == 1
    assert refunds[0]["idempotency_key"] == "C"


def test_refund_without_matching_debit_is_rejected(fund) -> None:
    fund("t1", purchased=5)
    with pytest.raises(RefundRejected):
        credit_service.refund_feature("t1", 5, "never-debited", feature_type="rank_tracking")
    assert credit_service.get_balance("t1")["total"] == 5
    assert _txns("t1", kind="refund") == []


def test_refund_cannot_exceed_original_debit(fund) -> None:
    fund("t1", purchased=5)
    credit_service.debit("t1", 3, feature_type="rank_tracking", idempotency_key="D")
    with pytest.raises(RefundRejected):
        credit_service.refund_feature("t1", 4, "D", feature_type="rank_tracking")
    assert credit_service.get_balance("t1")["total"] == 2


def test_refund_key_is_scoped_to_tenant(fund) -> None:
    fund("t1", purchased=5)
    fund("t2", purchased=5)
    credit_service.debit("t1", 5, feature_type="rank_tracking", idempotency_key="shared")
    with pytest.raises(RefundRejected):
        credit_service.refund_feature("t2", 5, "shared", feature_type="rank_tracking")


@pytest.mark.parametrize("amount", [0, -3])
def test_non_positive_amounts_are_rejected(fund, amount) -> None:
    fund("t1", purchased=5)
    with pytest.raises(ValueError):
        credit_service.debit("t1", amount, feature_type="x", idempotency_key="k")
    with pytest.raises(ValueError):
        credit_service.grant("t1", amount, credit_type="purchased", idempotency_key="g")


def test_monthly_grant_sets_expiry_to_next_month(monkeypatch) -> None:
    # 2026-12-15T00:00:00Z
    monkeypatch.setattr(ledger_db, "now", lambda: 1797292800)
    credit_service.grant("t1", 100, credit_type="included", idempotency_key="m-2026-12", transaction_type="monthly_grant")
    credit_service.grant("t1", 100, credit_type="included", idempotency_key="m-2026-12", transaction_type="monthly_grant")

    assert credit_service.get_balance("t1")["included"] == 100
    from db.database import SessionLocal

    db = SessionLocal()
    try:
        row = ledger_db.get_balance_row(db, "t1")
        # 2027-01-01T00:00:00Z
        assert row.included_credits_expire_ts == 1798761600
        assert row.last_monthly_grant_ts == 1797292800
    finally:
        db.close()


def test_ledger_is_newest_first_and_paginated(fund) -> None:
    fund("t1", purchased=20)
    for i in range(4):
        credit_service.debit("t1", 1, feature_type="rank_tracking", idempotency_key=f"k{i}")

    page = credit_service.get_ledger("t1", limit=2, offset=0)
    assert page["total"] == 5
    assert len(page["entries"]) == 2
    assert credit_service.get_ledger("t1", kind="debit")["total"] == 4
    assert credit_service.get_ledger("t1", feature_type="geo_grid")["total"] == 0


def test_exhausted_compare_and_set_raises_conflict(fund, monkeypatch) -> None:
    fund("t1", purchased=5)
    monkeypatch.setattr(ledger_db, "compare_and_set", lambda *a, **k: False)
    with pytest.raises(ConcurrencyConflict):
        credit_service.debit("t1", 1, feature_type="x", idempotency_key="k")
    monkeypatch.undo()
    assert credit_service.get_balance("t1")["total"] == 5


def _run_threads(n, target):
    errors, results = [], []
    lock = threading.Lock()
    barrier = threading.Barrier(n)

    def worker(i):
        barrier.wait()
        try:
            out = target(i)
            with lock:
                results.append(out)
        except Exception as e:
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


def test_concurrent_debits_never_overdraw(fund, monkeypatch) -> None:
    monkeypatch.setattr(credit_service, "MAX_BALANCE_ATTEMPTS", 100)
    fund("t1", included=3, purchased=2)

    results, errors = _run_threads(
        10, lambda i: credit_service.debit("t1", 1, feature_type="rank_tracking", idempotency_key=f"k{i}")
    )

    assert len(results) == 5
    assert len(errors) == 5
    assert all(isinstance(e, InsufficientCredits) for e in errors)
    assert credit_service.get_balance("t1") == {"tenant_id": "t1", "included": 0, "purchased": 0, "total": 0}
    assert len(_txns("t1", kind="debit")) == 5


def test_concurrent_same_key_debits_apply_once(fund, monkeypatch) -> None:
    monkeypatch.setattr(credit_service, "MAX_BALANCE_ATTEMPTS", 100)
    fund("t1", purchased=10)

    results, errors = _run_threads(
        6, lambda i: credit_service.debit("t1", 4, feature_type="rank_tracking", idempotency_key="dup")
    )

    assert errors == []
    assert len(results) == 6
    assert credit_service.get_balance("t1")["total"] == 6
    assert len(_txns("t1", kind="debit")) == 1


def test_concurrent_refunds_apply_once(fund, monkeypatch) -> None:
    monkeypatch.setattr(credit_service, "MAX_BALANCE_ATTEMPTS", 100)
    fund("t1", purchased=10)
    credit_service.debit("t1", 10, feature_type="rank_tracking", idempotency_key="R")

    _, errors = _run_threads(5, lambda i: credit_service.refund_feature("t1", 10, "R", feature_type="rank_tracking"))

    assert errors == []
    assert credit_service.get_balance("t1")["total"] == 10
    assert len(_txns("t1", kind="refund")) == 1
