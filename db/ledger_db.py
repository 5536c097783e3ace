from __future__ import annotations
import json, time, uuid
from typing import Dict, Any, List, Optional, Tuple
from sqlalchemy import update, func
from sqlalchemy.orm import Session

from db.models import CreditBalance, CreditTransaction

def now() -> int:
    return int(time.time())

def new_id() -> str:
    return str(uuid.uuid4())

def get_balance_row(db: Session, tenant_id: str) -> Optional[CreditBalance]:
    return db.query(CreditBalance).filter(CreditBalance.tenant_id == tenant_id).first()

def insert_balance_if_missing(db: Session, tenant_id: str) -> None:
    """INSERT ... ON CONFLICT DO NOTHING for the tenant's balance row."""
    values = {
        "tenant_id": tenant_id,
        "included_credits": 0,
        "purchased_credits": 0,
        "version": 0,
        "updated_ts": now(),
    }
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as _insert
    else:
        from sqlalchemy.dialects.sqlite import insert as _insert
    stmt = _insert(CreditBalance).values(**values).on_conflict_do_nothing(index_elements=["tenant_id"])
    db.execute(stmt)

def compare_and_set(
    db: Session,
    tenant_id: str,
    expected_version: int,
    included: int,
    purchased: int,
    extra: Optional[Dict[str, Any]] = None,
) -> bool:
    """Write new balance columns only if nobody else wrote since we read `expected_version`."""
    values = {
        "included_credits": included,
        "purchased_credits": purchased,
        "version": expected_version + 1,
        "updated_ts": now(),
    }
    if extra:
        values.update(extra)
    stmt = (
        update(CreditBalance)
        .where(CreditBalance.tenant_id == tenant_id, CreditBalance.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1

def insert_transaction(
    db: Session,
    *,
    tenant_id: str,
    amount: int,
    kind: str,
    idempotency_key: str,
    included_delta: int,
    purchased_delta: int,
    balance_after: int,
    feature_type: str | None = None,
    feature_metadata: Dict[str, Any] | None = None,
    description: str = "",
) -> CreditTransaction:
    row = CreditTransaction(
        txn_id=new_id(),
        tenant_id=tenant_id,
        amount=int(amount),
        kind=kind,
        idempotency_key=idempotency_key,
        included_delta=int(included_delta),
        purchased_delta=int(purchased_delta),
        balance_after=int(balance_after),
        feature_type=feature_type,
        feature_metadata=json.dumps(feature_metadata or {}),
        description=description or "",
        created_ts=now(),
    )
    db.add(row)
    db.flush()
    return row

def list_transactions(
    db: Session,
    tenant_id: str,
    limit: int = 50,
    offset: int = 0,
    feature_type: str | None = None,
    kind: str | None = None,
) -> Tuple[List[CreditTransaction], int]:
    q = db.query(CreditTransaction).filter(CreditTransaction.tenant_id == tenant_id)
    if feature_type:
        q = q.filter(CreditTransaction.feature_type == feature_type)
    if kind:
        q = q.filter(CreditTransaction.kind == kind)
    total = q.with_entities(func.count(CreditTransaction.txn_id)).scalar() or 0
    rows = q.order_by(CreditTransaction.created_ts.desc(), CreditTransaction.txn_id).offset(max(0, offset)).limit(min(limit, 200)).all()
    return rows, int(total)

def transaction_to_dict(r: CreditTransaction) -> Dict[str, Any]:
    return {
        "txn_id": r.txn_id,
        "tenant_id": r.tenant_id,
        "amount": r.amount,
        "kind": r.kind,
        "idempotency_key": r.idempotency_key,
        "included_delta": r.included_delta,
        "purchased_delta": r.purchased_delta,
        "balance_after": r.balance_after,
        "feature_type": r.feature_type,
        "feature_metadata": json.loads(r.feature_metadata or "{}"),
        "description": r.description,
        "created_ts": r.created_ts,
    }

def balance_to_dict(tenant_id: str, row: Optional[CreditBalance]) -> Dict[str, Any]:
    if not row:
        return {"tenant_id": tenant_id, "included": 0, "purchased": 0, "total": 0}
    return {
        "tenant_id": tenant_id,
        "included": int(row.included_credits),
        "purchased": int(row.purchased_credits),
        "total": int(row.included_credits) + int(row.purchased_credits),
    }
