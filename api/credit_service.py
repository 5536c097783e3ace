"""
Credit service: the only code allowed to change balance columns.

Every mutation is a read -> plan -> compare-and-set -> insert transaction
sequence committed as one unit. Losing the compare-and-set means another
writer touched the row first, so we re-read and re-plan (bounded by
MAX_BALANCE_ATTEMPTS). Idempotency keys are checked first on every attempt,
so a retry that lost to its own twin returns the already committed result.
"""
from __future__ import annotations
import calendar, logging, time
from typing import Any, Callable, Dict, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.config import MAX_BALANCE_ATTEMPTS
from api.errors import ConcurrencyConflict, DuplicateOperation, InsufficientCredits, RefundRejected
from db import idempotency, ledger_db
from db.database import SessionLocal
from db.models import CreditBalance

logger = logging.getLogger(__name__)

CREDIT_TYPES = ("included", "purchased")

def _next_month_start_ts(ts: int) -> int:
    t = time.gmtime(ts)
    year, month = (t.tm_year + 1, 1) if t.tm_mon == 12 else (t.tm_year, t.tm_mon + 1)
    return calendar.timegm((year, month, 1, 0, 0, 0))

def ensure_balance(tenant_id: str) -> None:
    db = SessionLocal()
    try:
        ledger_db.insert_balance_if_missing(db, tenant_id)
        db.commit()
    finally:
        db.close()

def get_balance(tenant_id: str) -> Dict[str, Any]:
    db = SessionLocal()
    try:
        return ledger_db.balance_to_dict(tenant_id, ledger_db.get_balance_row(db, tenant_id))
    finally:
        db.close()

def is_refunded(tenant_id: str, idempotency_key: str) -> bool:
    db = SessionLocal()
    try:
        return idempotency.find_committed(db, tenant_id, idempotency_key, "refund") is not None
    finally:
        db.close()

# plan(db, row) -> (new_included, new_purchased, txn_fields, extra_balance_columns)
Plan = Callable[[Session, CreditBalance], Tuple[int, int, Dict[str, Any], Optional[Dict[str, Any]]]]

def _apply(tenant_id: str, kind: str, idempotency_key: str, plan: Plan) -> Dict[str, Any]:
    if not idempotency_key:
        raise ValueError("idempotency_key required")

    for attempt in range(1, MAX_BALANCE_ATTEMPTS + 1):
        db = SessionLocal()
        try:
            idempotency.guard(db, tenant_id, idempotency_key, kind)

            row = ledger_db.get_balance_row(db, tenant_id)
            if row is None:
                ledger_db.insert_balance_if_missing(db, tenant_id)
                db.commit()
                row = ledger_db.get_balance_row(db, tenant_id)

            included, purchased, txn, extra = plan(db, row)

            if not ledger_db.compare_and_set(db, tenant_id, row.version, included, purchased, extra):
                db.rollback()
                logger.warning("Balance conflict for %s (%s attempt %d/%d)", tenant_id, kind, attempt, MAX_BALANCE_ATTEMPTS)
                continue

            ledger_db.insert_transaction(
                db,
                tenant_id=tenant_id,
                kind=kind,
                idempotency_key=idempotency_key,
                included_delta=included - row.included_credits,
                purchased_delta=purchased - row.purchased_credits,
                balance_after=included + purchased,
                **txn,
            )
            db.commit()
            logger.info("%s %s for %s key=%s -> total=%d", kind.capitalize(), txn["amount"], tenant_id, idempotency_key, included + purchased)
            return {"tenant_id": tenant_id, "included": included, "purchased": purchased, "total": included + purchased}
        except DuplicateOperation:
            logger.info("Replayed %s for %s key=%s, not reapplied", kind, tenant_id, idempotency_key)
            return ledger_db.balance_to_dict(tenant_id, ledger_db.get_balance_row(db, tenant_id))
        except IntegrityError as e:
            db.rollback()
            if not idempotency.is_duplicate_key_error(e):
                raise
            # lost the insert race to a twin request carrying the same key
            logger.info("Concurrent duplicate %s for %s key=%s", kind, tenant_id, idempotency_key)
            return ledger_db.balance_to_dict(tenant_id, ledger_db.get_balance_row(db, tenant_id))
        finally:
            db.close()

    raise ConcurrencyConflict(tenant_id, MAX_BALANCE_ATTEMPTS)

def debit(
    tenant_id: str,
    amount: int,
    *,
    feature_type: str,
    idempotency_key: str,
    feature_metadata: Dict[str, Any] | None = None,
    description: str = "",
) -> Dict[str, Any]:
    """Take `amount` credits, purchased first, or raise InsufficientCredits without writing anything."""
    amount = int(amount)
    if amount <= 0:
        raise ValueError("Debit amount must be positive")

    def plan(db: Session, row: CreditBalance):
        total = row.included_credits + row.purchased_credits
        if total < amount:
            logger.info("Insufficient credits for %s: need %d, have %d", tenant_id, amount, total)
            raise InsufficientCredits(required=amount, available=total)
        from_purchased = min(row.purchased_credits, amount)
        from_included = amount - from_purchased
        txn = {
            "amount": -amount,
            "feature_type": feature_type,
            "feature_metadata": feature_metadata,
            "description": description,
        }
        return row.included_credits - from_included, row.purchased_credits - from_purchased, txn, None

    return _apply(tenant_id, "debit", idempotency_key, plan)

def refund_feature(
    tenant_id: str,
    amount: int,
    idempotency_key: str,
    *,
    feature_type: str,
    feature_metadata: Dict[str, Any] | None = None,
    description: str = "",
) -> Dict[str, Any]:
    """Give back credits of an earlier debit, always as purchased credits. At most once per key."""
    amount = int(amount)
    if amount <= 0:
        raise ValueError("Refund amount must be positive")

    def plan(db: Session, row: CreditBalance):
        original = idempotency.find_committed(db, tenant_id, idempotency_key, "debit")
        if not original:
            raise RefundRejected(idempotency_key, "no matching debit")
        if amount > -original.amount:
            raise RefundRejected(idempotency_key, f"refund {amount} exceeds debit {-original.amount}")
        txn = {
            "amount": amount,
            "feature_type": feature_type,
            "feature_metadata": feature_metadata,
            "description": description or f"Refund for failed {feature_type} operation",
        }
        return row.included_credits, row.purchased_credits + amount, txn, None

    return _apply(tenant_id, "refund", idempotency_key, plan)

def grant(
    tenant_id: str,
    amount: int,
    *,
    credit_type: str,
    idempotency_key: str,
    transaction_type: str = "purchase",
    description: str = "",
) -> Dict[str, Any]:
    amount = int(amount)
    if amount <= 0:
        raise ValueError("Grant amount must be positive")
    if credit_type not in CREDIT_TYPES:
        raise ValueError("credit_type must be included|purchased")

    def plan(db: Session, row: CreditBalance):
        included, purchased = row.included_credits, row.purchased_credits
        if credit_type == "included":
            included += amount
        else:
            purchased += amount
        extra = None
        if credit_type == "included" and transaction_type == "monthly_grant":
            ts = ledger_db.now()
            extra = {"included_credits_expire_ts": _next_month_start_ts(ts), "last_monthly_grant_ts": ts}
        txn = {
            "amount": amount,
            "feature_type": None,
            "feature_metadata": {"credit_type": credit_type, "transaction_type": transaction_type},
            "description": description,
        }
        return included, purchased, txn, extra

    return _apply(tenant_id, "grant", idempotency_key, plan)

def get_ledger(
    tenant_id: str,
    limit: int = 50,
    offset: int = 0,
    feature_type: str | None = None,
    kind: str | None = None,
) -> Dict[str, Any]:
    db = SessionLocal()
    try:
        rows, total = ledger_db.list_transactions(db, tenant_id, limit=limit, offset=offset, feature_type=feature_type, kind=kind)
        return {"entries": [ledger_db.transaction_to_dict(r) for r in rows], "total": total}
    finally:
        db.close()
