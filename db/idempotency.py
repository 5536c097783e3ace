"""
Idempotency guard for ledger writes.

A (tenant_id, idempotency_key, kind) triple maps to at most one committed
transaction. The unique constraint on credit_transactions is the real guard;
these helpers let callers check before writing and recognise the loser of a
concurrent insert afterwards.
"""
from __future__ import annotations
from typing import Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models import CreditTransaction
from api.errors import DuplicateOperation

KINDS = ("debit", "refund", "grant")

def find_committed(db: Session, tenant_id: str, idempotency_key: str, kind: str) -> Optional[CreditTransaction]:
    if kind not in KINDS:
        raise ValueError(f"bad transaction kind: {kind}")
    return db.query(CreditTransaction).filter(
        CreditTransaction.tenant_id == tenant_id,
        CreditTransaction.idempotency_key == idempotency_key,
        CreditTransaction.kind == kind,
    ).first()

def guard(db: Session, tenant_id: str, idempotency_key: str, kind: str) -> None:
    if find_committed(db, tenant_id, idempotency_key, kind):
        raise DuplicateOperation(tenant_id, idempotency_key, kind)

def is_duplicate_key_error(exc: IntegrityError) -> bool:
    msg = str(getattr(exc, "orig", exc)).lower()
    return (
        "uq_credit_transactions_tenant_key_kind" in msg
        or ("unique" in msg and "credit_transactions" in msg)
    )
