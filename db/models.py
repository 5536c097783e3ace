from __future__ import annotations
from sqlalchemy import Column, String, Integer, Boolean, Text, ForeignKey, UniqueConstraint, CheckConstraint
from db.database import Base

# run / sub-task / item statuses
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL = (COMPLETED, FAILED)

# one status column per check type on both runs and items (NULL = disabled)
SUB_TASKS = ("search_rank", "llm_visibility", "geo_grid", "review_matching")

def status_column(sub_task: str) -> str:
    if sub_task not in SUB_TASKS:
        raise ValueError(f"unknown sub-task: {sub_task}")
    return f"{sub_task}_status"

class CreditBalance(Base):
    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("included_credits >= 0", name="ck_credit_balances_included_non_negative"),
        CheckConstraint("purchased_credits >= 0", name="ck_credit_balances_purchased_non_negative"),
    )
    tenant_id = Column(String, primary_key=True, index=True)
    included_credits = Column(Integer, nullable=False, default=0)    # plan allotment, resets each cycle
    purchased_credits = Column(Integer, nullable=False, default=0)   # never expires
    version = Column(Integer, nullable=False, default=0)             # bumped on every balance write
    included_credits_expire_ts = Column(Integer, nullable=True)
    last_monthly_grant_ts = Column(Integer, nullable=True)
    updated_ts = Column(Integer, index=True)

class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", "kind", name="uq_credit_transactions_tenant_key_kind"),
    )
    txn_id = Column(String, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)                 # signed: debit < 0, refund/grant > 0
    kind = Column(String, index=True, nullable=False)        # debit | refund | grant
    idempotency_key = Column(String, index=True, nullable=False)
    included_delta = Column(Integer, nullable=False, default=0)
    purchased_delta = Column(Integer, nullable=False, default=0)
    balance_after = Column(Integer, nullable=False)
    feature_type = Column(String, index=True, nullable=True)
    feature_metadata = Column(Text, default="{}")            # opaque JSON
    description = Column(Text, default="")
    created_ts = Column(Integer, index=True)

class BatchRun(Base):
    __tablename__ = "batch_runs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "request_key", name="uq_batch_runs_tenant_request_key"),
    )
    run_id = Column(String, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    status = Column(String, index=True, nullable=False)      # pending | processing | completed | failed
    feature_type = Column(String, default="concept_check")
    providers_json = Column(Text, default="[]")

    total_items = Column(Integer, default=0)
    processed_items = Column(Integer, default=0)
    successful_items = Column(Integer, default=0)
    failed_items = Column(Integer, default=0)

    estimated_credits = Column(Integer, default=0)
    actual_credits_used = Column(Integer, default=0)
    refunded_credits = Column(Integer, default=0)
    idempotency_key = Column(String, index=True)             # ledger key of the upfront debit
    request_key = Column(String, nullable=True)              # caller's Idempotency-Key, if any
    active_tenant_id = Column(String, nullable=True, unique=True)  # set while an immediate run is open
    triggered_by = Column(String, default="")

    search_rank_status = Column(String, nullable=True)
    llm_visibility_status = Column(String, nullable=True)
    geo_grid_status = Column(String, nullable=True)
    review_matching_status = Column(String, nullable=True)

    errors_json = Column(Text, default="[]")                 # accumulated per-sub-task errors
    error_message = Column(Text, nullable=True)

    claim_token = Column(String, nullable=True, index=True)  # held by the orchestrator pass
    claimed_ts = Column(Integer, nullable=True)
    scheduled_for_ts = Column(Integer, nullable=True, index=True)
    created_ts = Column(Integer, index=True)
    started_ts = Column(Integer, nullable=True)
    completed_ts = Column(Integer, nullable=True)
    last_progress_ts = Column(Integer, nullable=True)        # last recorded check outcome
    updated_ts = Column(Integer)

class BatchRunItem(Base):
    __tablename__ = "batch_run_items"
    item_id = Column(String, primary_key=True, index=True)
    batch_run_id = Column(String, ForeignKey("batch_runs.run_id"), index=True, nullable=False)
    position = Column(Integer, default=0)
    reference_id = Column(String, index=True)               # keyword / question / location id
    reference_type = Column(String, default="keyword")
    payload_json = Column(Text, default="{}")

    search_rank_status = Column(String, nullable=True)
    llm_visibility_status = Column(String, nullable=True)
    geo_grid_status = Column(String, nullable=True)
    review_matching_status = Column(String, nullable=True)

    retries_json = Column(Text, default="{}")                # {sub_task: transient retries used}
    result_json = Column(Text, default="{}")                 # {sub_task: metric}
    errors_json = Column(Text, default="{}")                 # {sub_task: error}
    created_ts = Column(Integer, index=True)
    updated_ts = Column(Integer)

class CronExecution(Base):
    __tablename__ = "cron_executions"
    execution_id = Column(String, primary_key=True, index=True)
    job_name = Column(String, index=True)
    started_ts = Column(Integer, index=True)
    finished_ts = Column(Integer, nullable=True)
    ok = Column(Boolean, default=False)
    summary_json = Column(Text, default="{}")
    error = Column(Text, nullable=True)
